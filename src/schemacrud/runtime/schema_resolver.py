"""
Schema flattening and field-set derivation.

``flatten(doc, "list,form")`` selects the requested contexts of a schema
document and exposes:

- the merged field set (single context) or per-context field sets (several)
- the sortable / filterable / listable name lists the query builder needs
- the introspection payload in one of the three response shapes

Field-name lists are always sanitized: blank or non-string names are dropped
and logged, never passed on to query construction.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from schemacrud.runtime.logging import get_logger, log_with_context
from schemacrud.specs.schema import ContextDef, ContextName, SchemaDoc

logger = get_logger("Resolver")


# =============================================================================
# Field-name sanitation
# =============================================================================


def sanitize_field_names(
    names: Iterable[Any] | None,
    *,
    source: str,
    model: str | None = None,
) -> list[str]:
    """
    Keep only non-empty string names, trimmed and de-duplicated, in order.

    Dropped entries are logged at WARNING with the list they came from.

    Args:
        names: Candidate field names
        source: Which list is being cleaned (e.g. "filterable", "list_fields")
        model: Owning model, for the log line
    """
    if not names:
        return []

    kept: list[str] = []
    dropped: list[Any] = []
    for name in names:
        if not isinstance(name, str) or not name.strip():
            dropped.append(name)
            continue
        cleaned = name.strip()
        if cleaned not in kept:
            kept.append(cleaned)

    if dropped:
        log_with_context(
            logger,
            logging.WARNING,
            f"Dropped {len(dropped)} blank or invalid field name(s) from {source}"
            + (f" on model '{model}'" if model else ""),
            model=model,
            source=source,
            dropped=[repr(d) for d in dropped],
        )
    return kept


def parse_context_selector(context: str | Iterable[str] | None) -> list[str]:
    """Split ``"list,form"`` style selectors into ordered, unique names."""
    if context is None:
        return []
    parts = context.split(",") if isinstance(context, str) else list(context)
    names: list[str] = []
    for part in parts:
        if isinstance(part, str) and part.strip() and part.strip() not in names:
            names.append(part.strip())
    return names


# =============================================================================
# Response shapes
# =============================================================================


class SchemaShape(StrEnum):
    """The three valid schema introspection payload shapes."""

    SINGLE = "fields"  # {"fields": {...}, ...}
    WRAPPED = "schema"  # {"schema": {...}}
    MULTI = "contexts"  # {"contexts": {"list": {"fields": {...}}, ...}, ...}


def detect_shape(payload: dict[str, Any]) -> SchemaShape:
    """
    Work out which shape a schema payload has.

    Raises:
        ValueError: If the payload matches none of the shapes
    """
    if isinstance(payload.get("contexts"), dict):
        return SchemaShape.MULTI
    if isinstance(payload.get("fields"), dict):
        return SchemaShape.SINGLE
    if isinstance(payload.get("schema"), dict):
        return SchemaShape.WRAPPED
    raise ValueError("Unrecognized schema payload: expected 'contexts', 'fields' or 'schema'")


def extract_fields(payload: dict[str, Any]) -> dict[str, Any]:
    """Return the (combined) field map from a payload of any shape."""
    shape = detect_shape(payload)
    if shape == SchemaShape.WRAPPED:
        return extract_fields(payload["schema"])
    if shape == SchemaShape.SINGLE:
        return dict(payload["fields"])
    combined: dict[str, Any] = {}
    for context in payload["contexts"].values():
        for key, value in (context.get("fields") or {}).items():
            combined.setdefault(key, value)
    return combined


# =============================================================================
# Flattened schema
# =============================================================================


@dataclass(frozen=True)
class FlatSchema:
    """
    A schema document narrowed to the requested contexts.

    Unknown context names contribute no fields; they are remembered in
    ``requested`` so the response shape still follows the request.
    """

    doc: SchemaDoc
    requested: tuple[str, ...]
    contexts: dict[str, ContextDef] = field(default_factory=dict)

    @property
    def model(self) -> str:
        return self.doc.model

    @property
    def multi(self) -> bool:
        """True when more than one context was requested."""
        return len(self.requested) > 1

    @property
    def primary_key(self) -> str:
        return self.doc.primary_key.strip()

    def combined_fields(self) -> dict[str, Any]:
        """Union of the fields of every resolved context, first context wins."""
        combined: dict[str, Any] = {}
        for context in self.contexts.values():
            for key, field_def in context.fields.items():
                combined.setdefault(key, field_def)
        return combined

    # -------------------------------------------------------------------------
    # Derived name sets
    # -------------------------------------------------------------------------

    def sortable(self) -> list[str]:
        names = [k for k, f in self.combined_fields().items() if f.sortable and not f.computed]
        return sanitize_field_names(names, source="sortable", model=self.model)

    def filterable(self) -> list[str]:
        names = [k for k, f in self.combined_fields().items() if f.filterable and not f.computed]
        return sanitize_field_names(names, source="filterable", model=self.model)

    def listable(self) -> list[str]:
        """
        Columns to project when listing.

        A ``list_fields`` override on a resolved context replaces the
        ``show_in`` derived set. Computed fields are never listed.
        """
        fields = self.combined_fields()
        for context in self.contexts.values():
            if context.list_fields is not None:
                names = sanitize_field_names(
                    context.list_fields, source="list_fields", model=self.model
                )
                return [n for n in names if not _is_computed(fields.get(n))]
        names = [
            k
            for k, f in fields.items()
            if f.shown_in(ContextName.LIST) and not f.computed
        ]
        return sanitize_field_names(names, source="listable", model=self.model)

    def default_sort(self) -> dict[str, str]:
        """Context-level default sort, else the document-level one."""
        for context in self.contexts.values():
            if context.default_sort:
                return dict(context.default_sort)
        return dict(self.doc.default_sort)

    # -------------------------------------------------------------------------
    # Introspection payload
    # -------------------------------------------------------------------------

    def base(self) -> dict[str, Any]:
        """Root-level schema properties shared by every shape."""
        doc = self.doc
        return {
            "model": doc.model,
            "title": doc.title,
            "singular_title": doc.singular_title,
            "description": doc.description,
            "primary_key": doc.primary_key,
            "title_field": doc.title_field,
            "permissions": dict(doc.permissions),
            "actions": [a.model_dump(mode="json", exclude_none=True) for a in doc.actions],
        }

    def to_dict(self, hidden: set[str] | None = None) -> dict[str, Any]:
        """
        Build the introspection payload.

        Args:
            hidden: Field keys to leave out
        """
        result = self.base()
        if self.multi:
            result["contexts"] = {
                name: {"fields": _dump_fields(self.contexts[name].fields, hidden)}
                if name in self.contexts
                else {"fields": {}}
                for name in self.requested
            }
        else:
            result["fields"] = _dump_fields(self.combined_fields(), hidden)
        if ContextName.DETAIL in self.requested:
            result["details"] = [
                d.model_dump(mode="json", exclude_none=True) for d in self.doc.all_details()
            ]
            result["relationships"] = [
                r.model_dump(mode="json", exclude_none=True) for r in self.doc.relationships
            ]
        return result


def _is_computed(field_def: Any | None) -> bool:
    return bool(field_def is not None and field_def.computed)


def _dump_fields(fields: dict[str, Any], hidden: set[str] | None) -> dict[str, Any]:
    return {
        key: f.model_dump(mode="json", exclude_none=True)
        for key, f in fields.items()
        if not hidden or key not in hidden
    }


def flatten(doc: SchemaDoc, context: str | Iterable[str] | None = ContextName.LIST) -> FlatSchema:
    """
    Narrow a schema document to the requested context(s).

    Args:
        doc: Decoded schema document
        context: Context name or comma-separated list (``"list,form"``)

    Returns:
        FlatSchema over the contexts that exist; unknown names are ignored
    """
    requested = tuple(parse_context_selector(context))
    resolved = {name: doc.contexts[name] for name in requested if name in doc.contexts}
    missing = [name for name in requested if name not in resolved]
    if missing:
        log_with_context(
            logger,
            logging.DEBUG,
            f"Context(s) {missing} not declared on '{doc.model}', contributing no fields",
            model=doc.model,
        )
    return FlatSchema(doc=doc, requested=requested, contexts=resolved)
