"""
schemacrud runtime

Request pipeline over decoded schema documents:

- SchemaStore: model name -> SchemaDoc, snapshot-swapped on reload
- flatten / FlatSchema: context selection and field-set derivation
- AccessEvaluator: action and field permissions
- RelationshipResolver: direct / pivot / nested-pivot classification
- QueryPlanBuilder / QueryPlan: plan construction and SQL rendering
- ListingEngine / MutationDispatcher: execution against SQLite
- CrudEngine: the facade wiring all of the above

Example usage:
    >>> from schemacrud.runtime import CrudEngine, CrudRequest, DatabaseManager, SchemaStore
    >>>
    >>> engine = CrudEngine(SchemaStore("schema"), DatabaseManager("app.db"))
    >>> page = engine.list(CrudRequest(model="users", relation="roles", id=1))
    >>> page.to_response()
    {'rows': [...], 'count': 2, 'count_filtered': 2}
"""

from schemacrud.runtime.access_evaluator import AccessDecision, AccessEvaluator, CrudAction
from schemacrud.runtime.config import EngineConfig, get_engine_config
from schemacrud.runtime.crypto import hash_password, verify_password
from schemacrud.runtime.engine import CrudEngine, CrudRequest, ListQuery
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
from schemacrud.runtime.listing import ListingEngine, Page
from schemacrud.runtime.model_generator import PayloadValidator
from schemacrud.runtime.mutations import MutationDispatcher, MutationResult
from schemacrud.runtime.query_builder import ListParams, QueryPlan, QueryPlanBuilder
from schemacrud.runtime.relation_resolver import RelationKind, RelationPlan, RelationshipResolver
from schemacrud.runtime.repository import DatabaseManager
from schemacrud.runtime.schema_resolver import FlatSchema, SchemaShape, detect_shape, flatten
from schemacrud.runtime.schema_store import SchemaStore

__all__ = [
    # Access
    "AccessDecision",
    "AccessEvaluator",
    "CrudAction",
    # Config
    "EngineConfig",
    "get_engine_config",
    # Engine
    "CrudEngine",
    "CrudRequest",
    "ListQuery",
    # Passwords
    "hash_password",
    "verify_password",
    # Errors
    "AccessDenied",
    "ActionNotFound",
    "ConstraintViolationError",
    "CrudError",
    "MissingPivotMetadata",
    "QueryExecutionError",
    "QueryPlanError",
    "RecordNotFound",
    "RelationNotConfigured",
    "SchemaNotFound",
    "SchemaValidationError",
    "ValidationError",
    # Execution
    "ListingEngine",
    "Page",
    "MutationDispatcher",
    "MutationResult",
    "PayloadValidator",
    "DatabaseManager",
    # Planning
    "ListParams",
    "QueryPlan",
    "QueryPlanBuilder",
    "RelationKind",
    "RelationPlan",
    "RelationshipResolver",
    # Schemas
    "FlatSchema",
    "SchemaShape",
    "SchemaStore",
    "detect_shape",
    "flatten",
]
