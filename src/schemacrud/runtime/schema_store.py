"""
Schema document store.

Maps model names to decoded ``SchemaDoc`` instances. Documents come from a
directory of ``<model>.json`` files (loaded lazily, once) and/or from
explicit registration.

Readers always see an immutable snapshot. Writers (register, reload,
invalidate) build a new mapping and swap it in under a lock, so a request
in flight never observes a half-updated store.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from schemacrud.runtime.errors import SchemaNotFound, SchemaValidationError
from schemacrud.runtime.logging import get_logger, log_with_context
from schemacrud.specs.schema import SchemaDoc

logger = get_logger("Store")


def decode_schema(data: Any, model: str | None = None) -> SchemaDoc:
    """
    Decode and validate a raw schema document.

    Args:
        data: Parsed JSON object
        model: Model name to report in errors when the document lacks one

    Raises:
        SchemaValidationError: If the document is malformed
    """
    name = model or (data.get("model") if isinstance(data, dict) else None) or "<unknown>"
    if not isinstance(data, dict):
        raise SchemaValidationError(name, f"expected an object, got {type(data).__name__}")
    if model and not data.get("model"):
        data = {**data, "model": model}
    try:
        return SchemaDoc.model_validate(data)
    except PydanticValidationError as e:
        raise SchemaValidationError(name, str(e)) from e
    except ValueError as e:
        raise SchemaValidationError(name, str(e)) from e


class SchemaStore:
    """
    Thread-safe model → schema document store.

    Example:
        store = SchemaStore(Path("schema"))
        users = store.get("users")
    """

    def __init__(self, schema_dir: str | Path | None = None):
        self.schema_dir = Path(schema_dir) if schema_dir is not None else None
        self._lock = threading.Lock()
        self._snapshot: Mapping[str, SchemaDoc] = MappingProxyType({})
        self._registered: dict[str, SchemaDoc] = {}
        self._loaded = self.schema_dir is None

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, model: str) -> SchemaDoc:
        """
        Get the schema for a model.

        Raises:
            SchemaNotFound: If no document is known for the model
        """
        self._ensure_loaded()
        doc = self._snapshot.get(model)
        if doc is None:
            raise SchemaNotFound(model)
        return doc

    def has(self, model: str) -> bool:
        self._ensure_loaded()
        return model in self._snapshot

    def models(self) -> list[str]:
        """Known model names, sorted."""
        self._ensure_loaded()
        return sorted(self._snapshot)

    def snapshot(self) -> Mapping[str, SchemaDoc]:
        """The current immutable view of the store."""
        self._ensure_loaded()
        return self._snapshot

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def register(self, doc: SchemaDoc | dict[str, Any]) -> SchemaDoc:
        """Add or replace a schema. Registered documents win over files."""
        if not isinstance(doc, SchemaDoc):
            doc = decode_schema(doc)
        with self._lock:
            self._registered[doc.model] = doc
            self._snapshot = MappingProxyType({**self._snapshot, doc.model: doc})
        logger.debug(f"Registered schema '{doc.model}'")
        return doc

    def reload(self) -> None:
        """Re-read the schema directory and swap in a fresh snapshot."""
        loaded = self._read_directory()
        with self._lock:
            self._snapshot = MappingProxyType({**loaded, **self._registered})
            self._loaded = True
        log_with_context(
            logger, logging.INFO, "Schema store reloaded", models=sorted(self._snapshot)
        )

    def invalidate(self, model: str | None = None) -> None:
        """
        Drop one model (or everything) from the store.

        File-backed documents are read again on next access.
        """
        with self._lock:
            if model is None:
                self._registered.clear()
                self._snapshot = MappingProxyType({})
            else:
                self._registered.pop(model, None)
                self._snapshot = MappingProxyType(
                    {k: v for k, v in self._snapshot.items() if k != model}
                )
            self._loaded = self.schema_dir is None
        log_with_context(logger, logging.DEBUG, "Schema invalidated", model=model or "*")

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.reload()

    def _read_directory(self) -> dict[str, SchemaDoc]:
        if self.schema_dir is None or not self.schema_dir.is_dir():
            return {}
        docs: dict[str, SchemaDoc] = {}
        for path in sorted(self.schema_dir.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise SchemaValidationError(path.stem, f"{path.name}: {e}") from e
            doc = decode_schema(data, model=path.stem)
            docs[doc.model] = doc
        return docs
