"""
Exception handlers for FastAPI applications hosting the engine.

Maps the engine's error taxonomy onto JSON responses:
- SchemaNotFound, RecordNotFound, ActionNotFound: 404
- AccessDenied: 403
- ValidationError, ConstraintViolationError, SchemaValidationError: 422
- RelationNotConfigured, MissingPivotMetadata, QueryPlanError: 400
- QueryExecutionError: 500

Every body carries ``detail``, ``type`` and the error's context (model,
action and whatever else the error knows).
"""

from fastapi import FastAPI
from fastapi.responses import Response

from schemacrud.runtime.errors import (
    AccessDenied,
    ActionNotFound,
    ConstraintViolationError,
    CrudError,
    MissingPivotMetadata,
    QueryExecutionError,
    QueryPlanError,
    RecordNotFound,
    RelationNotConfigured,
    SchemaNotFound,
    SchemaValidationError,
    ValidationError,
)

# Checked in order; subclasses before their bases
STATUS_CODES: tuple[tuple[type[CrudError], int], ...] = (
    (SchemaNotFound, 404),
    (RecordNotFound, 404),
    (ActionNotFound, 404),
    (AccessDenied, 403),
    (ValidationError, 422),
    (ConstraintViolationError, 422),
    (SchemaValidationError, 422),
    (RelationNotConfigured, 400),
    (MissingPivotMetadata, 400),
    (QueryPlanError, 400),
    (QueryExecutionError, 500),
)


def status_for(exc: CrudError) -> int:
    """HTTP status code for an engine error."""
    for error_type, status in STATUS_CODES:
        if isinstance(exc, error_type):
            return status
    return 500


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register engine exception handlers on a FastAPI application.

    Args:
        app: FastAPI application instance
    """
    from fastapi import Request
    from fastapi.encoders import jsonable_encoder
    from fastapi.responses import JSONResponse as _JSONResponse

    @app.exception_handler(CrudError)
    async def crud_error_handler(request: Request, exc: CrudError) -> Response:
        """Convert engine errors to JSON responses."""
        return _JSONResponse(status_code=status_for(exc), content=jsonable_encoder(exc.to_dict()))
