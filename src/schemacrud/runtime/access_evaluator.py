"""
Permission checks for schema actions and fields.

Authorization is a pure function of (schema, action, caller permissions):
no request, session or database is consulted. ``enforce`` is the raising
variant used by the engine facade.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from schemacrud.runtime.errors import AccessDenied
from schemacrud.runtime.logging import get_logger, log_with_context
from schemacrud.runtime.schema_resolver import FlatSchema
from schemacrud.specs.schema import ContextName, SchemaDoc

logger = get_logger("Access")


class CrudAction(StrEnum):
    """Standard actions keyed in a schema's ``permissions`` map."""

    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# =============================================================================
# Decisions
# =============================================================================


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of an authorization check."""

    allowed: bool
    action: str
    model: str
    permission: str | None = None
    reason: str | None = None

    @classmethod
    def allow(cls, action: str, model: str, permission: str | None = None) -> AccessDecision:
        return cls(allowed=True, action=action, model=model, permission=permission)

    @classmethod
    def deny(cls, action: str, model: str, permission: str | None, note: str = "") -> AccessDecision:
        reason = f"Access denied for action '{action}' on model '{model}'"
        if permission:
            reason = f"{reason} (requires permission: '{permission}')"
        if note:
            reason = f"{reason}: {note}"
        return cls(allowed=False, action=action, model=model, permission=permission, reason=reason)

    def __bool__(self) -> bool:
        return self.allowed

    def to_error(self) -> AccessDenied:
        return AccessDenied(
            action=self.action,
            model=self.model,
            permission=self.permission,
            reason=self.reason or "",
        )


# =============================================================================
# Evaluator
# =============================================================================


class AccessEvaluator:
    """
    Decides whether a caller may run an action, and which fields they see.

    By default an action with no declared permission is allowed. In strict
    mode it is denied instead.
    """

    def __init__(self, strict: bool = False):
        self.strict = strict

    def required_permission(self, schema: SchemaDoc, action: str) -> str | None:
        """Permission key for an action: ``permissions[action]``, then ``actions[].permission``."""
        permission = schema.permissions.get(action)
        if permission:
            return permission
        action_def = schema.get_action(action)
        if action_def is not None and action_def.permission:
            return action_def.permission
        return None

    def authorize(
        self,
        schema: SchemaDoc,
        action: str,
        caller_permissions: Iterable[str],
    ) -> AccessDecision:
        """
        Check a caller against the permission an action requires.

        Args:
            schema: Schema document for the model
            action: Action name ("read", "create", a custom action key, ...)
            caller_permissions: Permissions the caller holds

        Returns:
            AccessDecision; denials carry a reason naming action, model and permission
        """
        permission = self.required_permission(schema, action)
        if permission is None:
            if self.strict:
                return AccessDecision.deny(
                    action, schema.model, None, note="no permission declared for this action"
                )
            return AccessDecision.allow(action, schema.model)

        held = set(caller_permissions)
        if permission in held:
            return AccessDecision.allow(action, schema.model, permission)
        return AccessDecision.deny(action, schema.model, permission)

    def enforce(
        self,
        schema: SchemaDoc,
        action: str,
        caller_permissions: Iterable[str],
    ) -> AccessDecision:
        """
        Authorize, raising on denial.

        Raises:
            AccessDenied: If the caller lacks the required permission
        """
        decision = self.authorize(schema, action, caller_permissions)
        if not decision.allowed:
            log_with_context(
                logger,
                logging.WARNING,
                decision.reason or "Access denied",
                model=decision.model,
                action=decision.action,
                permission=decision.permission,
            )
            raise decision.to_error()
        return decision

    # -------------------------------------------------------------------------
    # Field-level filtering
    # -------------------------------------------------------------------------

    def visible_fields(
        self,
        flat: FlatSchema,
        context: str,
        caller_permissions: Iterable[str],
    ) -> set[str]:
        """
        Field keys the caller may see in a context.

        A field must be shown in the context AND, if it declares a
        ``permission``, the caller must hold it.
        """
        held = set(caller_permissions)
        return {
            key
            for key, field_def in flat.combined_fields().items()
            if field_def.shown_in(context) and _field_permitted(field_def, held)
        }

    def editable_fields(
        self,
        flat: FlatSchema,
        caller_permissions: Iterable[str],
    ) -> set[str]:
        """Field keys the caller may write: shown in a form context, writable, permitted."""
        held = set(caller_permissions)
        return {
            key
            for key, field_def in flat.doc.all_fields().items()
            if field_def.is_writable
            and field_def.shown_in(ContextName.FORM)
            and _field_permitted(field_def, held)
        }

    def hidden_fields(self, schema: SchemaDoc, caller_permissions: Iterable[str]) -> set[str]:
        """Field keys guarded by a ``permission`` the caller does not hold."""
        held = set(caller_permissions)
        hidden = {k for k, f in schema.all_fields().items() if not _field_permitted(f, held)}
        for context in schema.contexts.values():
            hidden.update(k for k, f in context.fields.items() if not _field_permitted(f, held))
        return hidden


def _field_permitted(field_def: Any, held: set[str]) -> bool:
    return not field_def.permission or field_def.permission in held
