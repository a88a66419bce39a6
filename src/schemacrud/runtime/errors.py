"""
Error taxonomy for the CRUD engine.

Every error carries a human-readable message naming the failing model and,
where one applies, the action, plus a ``context`` dict that is passed through
to structured logs and HTTP error bodies unchanged.
"""

from __future__ import annotations

from typing import Any


class CrudError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context: dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        super().__init__(message)

    @property
    def model(self) -> str | None:
        return self.context.get("model")

    @property
    def action(self) -> str | None:
        return self.context.get("action")

    def to_dict(self) -> dict[str, Any]:
        """Serialize for an error response body."""
        return {"detail": self.message, "type": self.error_type, **self.context}

    @property
    def error_type(self) -> str:
        """snake_case error type name."""
        name = type(self).__name__
        return "".join(f"_{c.lower()}" if c.isupper() else c for c in name).lstrip("_")


# =============================================================================
# Schema / configuration errors
# =============================================================================


class SchemaNotFound(CrudError):
    """Raised when no schema document is registered for a model."""

    def __init__(self, model: str, action: str | None = None):
        super().__init__(f"Schema not found for model '{model}'", model=model, action=action)


class SchemaValidationError(CrudError):
    """Raised when a schema document fails to decode."""

    def __init__(self, model: str, detail: str):
        self.detail = detail
        super().__init__(f"Invalid schema for model '{model}': {detail}", model=model)


class RelationNotConfigured(CrudError):
    """
    Raised when a relation name matches no detail or relationship declaration.

    Recoverable: the engine facade falls back to listing the request's own
    model instead of failing the request.
    """

    def __init__(self, model: str, relation: str):
        self.relation = relation
        super().__init__(
            f"Relation '{relation}' is not configured on model '{model}'",
            model=model,
            relation=relation,
        )


class MissingPivotMetadata(CrudError):
    """Raised when a many-to-many declaration lacks its pivot table or keys."""

    def __init__(self, model: str, relation: str, missing: str = "pivot_table"):
        self.relation = relation
        self.missing = missing
        super().__init__(
            f"Relation '{relation}' on model '{model}' is missing '{missing}'",
            model=model,
            relation=relation,
            missing=missing,
        )


# =============================================================================
# Request errors
# =============================================================================


class AccessDenied(CrudError):
    """
    Raised when a caller lacks the permission an action requires.

    The message always names the action, the model and the required
    permission key.
    """

    def __init__(self, action: str, model: str, permission: str | None, reason: str):
        self.permission = permission
        self.reason = reason
        super().__init__(reason, model=model, action=action, permission=permission)


class ValidationError(CrudError):
    """Raised when a submitted value breaks a field rule."""

    def __init__(
        self,
        field: str,
        rule: str,
        message: str | None = None,
        model: str | None = None,
        action: str | None = None,
    ):
        self.field = field
        self.rule = rule
        super().__init__(
            message or f"Field '{field}' failed validation rule '{rule}'",
            model=model,
            action=action,
            field=field,
            rule=rule,
        )


class RecordNotFound(CrudError):
    """Raised when a mutation targets a record that does not exist."""

    def __init__(self, model: str, record_id: Any, action: str | None = None):
        self.record_id = record_id
        super().__init__(
            f"Record '{record_id}' not found on model '{model}'",
            model=model,
            action=action,
            id=record_id,
        )


class ActionNotFound(CrudError):
    """Raised when a schema declares no action with the requested key."""

    def __init__(self, model: str, action: str):
        super().__init__(
            f"Action '{action}' is not declared on model '{model}'",
            model=model,
            action=action,
        )


class QueryPlanError(CrudError):
    """Raised when request parameters cannot form a valid query plan."""


# =============================================================================
# Execution errors
# =============================================================================


class QueryExecutionError(CrudError):
    """A database failure, wrapped with the table and column context."""

    def __init__(
        self,
        message: str,
        table: str,
        column: str | None = None,
        model: str | None = None,
        action: str | None = None,
    ):
        self.table = table
        self.column = column
        super().__init__(message, model=model, action=action, table=table, column=column)


class ConstraintViolationError(QueryExecutionError):
    """Raised when a unique or foreign-key constraint is violated."""

    def __init__(
        self,
        message: str,
        table: str,
        column: str | None = None,
        constraint_type: str = "integrity",
        model: str | None = None,
        action: str | None = None,
    ):
        self.constraint_type = constraint_type  # "unique" | "foreign_key" | "not_null"
        super().__init__(message, table=table, column=column, model=model, action=action)
        self.context["constraint_type"] = constraint_type
