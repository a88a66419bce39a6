"""
CRUD engine facade.

Wires the per-request pipeline:

    SchemaStore → flatten → AccessEvaluator → RelationshipResolver
        → QueryPlanBuilder → ListingEngine / MutationDispatcher

The engine holds no per-request state; one instance serves concurrent
requests.

Relation fallback: a relation name that matches no declaration does NOT
fail the request. The engine lists the request's own model instead, logs a
warning and marks the page with ``fallback=True``. Callers relying on
relation listings should check that flag.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from schemacrud.runtime.access_evaluator import AccessDecision, AccessEvaluator, CrudAction
from schemacrud.runtime.config import EngineConfig, get_engine_config
from schemacrud.runtime.errors import (
    ActionNotFound,
    RecordNotFound,
    RelationNotConfigured,
    ValidationError,
)
from schemacrud.runtime.listing import ListingEngine, Page
from schemacrud.runtime.logging import get_logger, log_with_context, setup_logging
from schemacrud.runtime.mutations import MutationDispatcher, MutationResult
from schemacrud.runtime.query_builder import ListParams, QueryPlanBuilder
from schemacrud.runtime.relation_resolver import RelationPlan, RelationshipResolver
from schemacrud.runtime.repository import DatabaseManager
from schemacrud.runtime.schema_resolver import flatten
from schemacrud.runtime.schema_store import SchemaStore
from schemacrud.specs.schema import FIELD_UPDATE_ACTION, ContextName, SchemaDoc

logger = get_logger("Engine")


# =============================================================================
# Request Models
# =============================================================================


class ListQuery(BaseModel):
    """Paging, sort, search and filter parameters."""

    page: int = Field(default=0, description="Zero-based page index")
    size: int | None = Field(default=None, description="Page size; config default when omitted")
    sort: str | None = Field(default=None, description="'field', '-field' or a comma list")
    search: str | None = Field(default=None, description="Term matched against filterable fields")
    filters: dict[str, Any] = Field(default_factory=dict, description="field__op -> value")

    model_config = ConfigDict(frozen=True)


class CrudRequest(BaseModel):
    """
    A listing or introspection request.

    Example:
        CrudRequest(model="users", relation="permissions", id=1,
                    caller_permissions={"uri_users"}, query=ListQuery(size=25))
    """

    model: str = Field(description="Model to read")
    context: str = Field(default=ContextName.LIST, description="Context selector, comma list allowed")
    relation: str | None = Field(default=None, description="Relation of record `id` to list")
    id: Any | None = Field(default=None, description="Source record id for relation listings")
    action: str = Field(default=CrudAction.READ, description="Action to authorize")
    caller_permissions: frozenset[str] = Field(
        default_factory=frozenset, description="Permissions the caller holds"
    )
    query: ListQuery = Field(default_factory=ListQuery)

    model_config = ConfigDict(frozen=True)


# =============================================================================
# Engine
# =============================================================================


class CrudEngine:
    """
    Schema-driven CRUD over one database.

    Example:
        engine = CrudEngine(SchemaStore("schema"), DatabaseManager("app.db"))
        page = engine.list(CrudRequest(model="users", caller_permissions={"uri_users"}))
    """

    def __init__(
        self,
        store: SchemaStore,
        db: DatabaseManager,
        config: EngineConfig | None = None,
    ):
        self.store = store
        self.db = db
        self.config = config or get_engine_config()
        self.access = AccessEvaluator(strict=self.config.strict_permissions)
        self.relations = RelationshipResolver(store)
        self.builder = QueryPlanBuilder(placeholder=db.placeholder)
        self.listing = ListingEngine(db)
        self.mutations = MutationDispatcher(db, store)

    @classmethod
    def from_config(cls, config: EngineConfig | None = None) -> CrudEngine:
        """Build an engine over the configured schema directory and database, with logging set up."""
        config = config or get_engine_config()
        setup_logging(config.log_dir, config.log_level)
        return cls(SchemaStore(config.schema_dir), DatabaseManager(config.db_path), config)

    # =========================================================================
    # Reads
    # =========================================================================

    def authorize(
        self, model: str, action: str, caller_permissions: Iterable[str]
    ) -> AccessDecision:
        """Non-raising permission check for any action, including custom action keys."""
        return self.access.authorize(self.store.get(model), action, caller_permissions)

    def describe_schema(
        self,
        model: str,
        context: str = ContextName.LIST,
        caller_permissions: Iterable[str] = (),
        wrap: bool = False,
    ) -> dict[str, Any]:
        """
        Schema introspection payload for the requested context(s).

        Single context → ``{"fields": ...}``; several → ``{"contexts": ...}``;
        ``wrap=True`` nests either under ``{"schema": ...}``. Fields guarded by
        a permission the caller lacks are left out.
        """
        doc = self.store.get(model)
        self.access.enforce(doc, CrudAction.READ, caller_permissions)
        flat = flatten(doc, context)
        payload = flat.to_dict(hidden=self.access.hidden_fields(doc, caller_permissions))
        return {"schema": payload} if wrap else payload

    def list(self, request: CrudRequest) -> Page:
        """
        List a model, or one record's relation.

        Raises:
            SchemaNotFound: Unknown model
            AccessDenied: Caller lacks the action's permission
            MissingPivotMetadata: A matching many-to-many lacks its pivot table
            QueryPlanError / QueryExecutionError: Bad parameters or database failure
        """
        doc = self.store.get(request.model)
        self.access.enforce(doc, request.action, request.caller_permissions)

        target: SchemaDoc = doc
        relation_plan: RelationPlan | None = None
        fallback = False
        if request.relation:
            try:
                relation_plan = self._resolve(doc, request.id, request.relation, request.action)
                target = relation_plan.target
            except RelationNotConfigured as e:
                fallback = True
                log_with_context(
                    logger,
                    logging.WARNING,
                    f"{e.message}; listing '{doc.model}' instead",
                    model=doc.model,
                    relation=request.relation,
                    action=request.action,
                )

        query = request.query
        params = ListParams(
            page=query.page,
            size=self.config.clamp_page_size(query.size),
            sort=query.sort,
            search=query.search,
            filters=dict(query.filters),
        )
        flat = flatten(target, request.context if not request.relation else ContextName.LIST)
        plan = self.builder.build(
            flat,
            relation_plan,
            params,
            hidden=self.access.hidden_fields(target, request.caller_permissions),
        )
        page = self.listing.execute(plan)
        if fallback:
            page = page.model_copy(update={"fallback": True})
        return page

    # =========================================================================
    # Record mutations
    # =========================================================================

    def create(
        self,
        model: str,
        data: dict[str, Any],
        caller_permissions: Iterable[str] = (),
        actor_id: Any = None,
    ) -> MutationResult:
        """
        Create a record.

        ``actor_id`` fills ``current_user`` in relationship action pivot data.
        """
        doc = self.store.get(model)
        self.access.enforce(doc, CrudAction.CREATE, caller_permissions)
        flat = flatten(doc, ContextName.CREATE)
        allowed = self.access.editable_fields(flat, caller_permissions)
        hidden = self.access.hidden_fields(doc, caller_permissions)
        return self.mutations.create(flat, data, allowed, hidden=hidden, actor_id=actor_id)

    def update(
        self,
        model: str,
        record_id: Any,
        data: dict[str, Any],
        caller_permissions: Iterable[str] = (),
        actor_id: Any = None,
    ) -> MutationResult:
        doc = self.store.get(model)
        self.access.enforce(doc, CrudAction.UPDATE, caller_permissions)
        flat = flatten(doc, ContextName.EDIT)
        allowed = self.access.editable_fields(flat, caller_permissions)
        hidden = self.access.hidden_fields(doc, caller_permissions)
        return self.mutations.update(
            flat, record_id, data, allowed, hidden=hidden, actor_id=actor_id
        )

    def update_field(
        self,
        model: str,
        record_id: Any,
        field: str,
        value: Any,
        caller_permissions: Iterable[str] = (),
    ) -> MutationResult:
        doc = self.store.get(model)
        self.access.enforce(doc, CrudAction.UPDATE, caller_permissions)
        allowed = self.access.editable_fields(flatten(doc, ContextName.EDIT), caller_permissions)
        hidden = self.access.hidden_fields(doc, caller_permissions)
        return self.mutations.update_field(doc, record_id, field, value, allowed, hidden=hidden)

    def delete(
        self,
        model: str,
        record_id: Any,
        caller_permissions: Iterable[str] = (),
        actor_id: Any = None,
    ) -> MutationResult:
        doc = self.store.get(model)
        self.access.enforce(doc, CrudAction.DELETE, caller_permissions)
        hidden = self.access.hidden_fields(doc, caller_permissions)
        return self.mutations.delete(doc, record_id, hidden=hidden, actor_id=actor_id)

    def run_action(
        self,
        model: str,
        record_id: Any,
        action_key: str,
        caller_permissions: Iterable[str] = (),
        value: Any = None,
    ) -> MutationResult:
        """
        Run a declared ``field_update`` action on one record.

        The action is authorized with its own permission when it declares
        one, else as an update. A ``toggle`` action flips the field's current
        value; otherwise the action's fixed ``value`` is written, or the
        caller's ``value`` when the action has none.

        Raises:
            ActionNotFound: The schema declares no action ``action_key``
            AccessDenied: Caller lacks the action's permission
            ValidationError: Unsupported action type, no target field or no value
            RecordNotFound: No record has ``record_id``
        """
        doc = self.store.get(model)
        action = doc.get_action(action_key)
        if action is None:
            raise ActionNotFound(doc.model, action_key)
        if self.access.required_permission(doc, action_key):
            self.access.enforce(doc, action_key, caller_permissions)
        else:
            self.access.enforce(doc, CrudAction.UPDATE, caller_permissions)

        if action.type != FIELD_UPDATE_ACTION:
            raise ValidationError(
                "type",
                "supported",
                f"Action '{action_key}' of type '{action.type}' cannot be run on '{doc.model}'",
                model=doc.model,
                action=action_key,
            )
        field = action.target_field
        if field is None:
            raise ValidationError(
                "field",
                "required",
                f"Action '{action_key}' of '{doc.model}' names no field",
                model=doc.model,
                action=action_key,
            )

        if action.toggle:
            record = self.mutations.fetch(doc, record_id)
            if record is None:
                raise RecordNotFound(doc.model, record_id, action=action_key)
            new_value = True if record.get(field) is None else not record[field]
        elif action.value is not None:
            new_value = action.value
        elif value is not None:
            new_value = value
        else:
            raise ValidationError(
                field,
                "required",
                f"Action '{action_key}' of '{doc.model}' needs a value",
                model=doc.model,
                action=action_key,
            )

        log_with_context(
            logger,
            logging.INFO,
            f"Running action '{action_key}' on {doc.model} {record_id}",
            model=doc.model,
            action=action_key,
            field=field,
        )
        hidden = self.access.hidden_fields(doc, caller_permissions)
        return self.mutations.update_field(doc, record_id, field, new_value, hidden=hidden)

    # =========================================================================
    # Relationship mutations (authorized as an update of the source record)
    # =========================================================================

    def attach(
        self,
        model: str,
        record_id: Any,
        relation: str,
        ids: Iterable[Any],
        caller_permissions: Iterable[str] = (),
    ) -> int:
        plan = self._relation_for_update(model, record_id, relation, caller_permissions)
        return self.mutations.attach(plan, ids)

    def detach(
        self,
        model: str,
        record_id: Any,
        relation: str,
        ids: Iterable[Any],
        caller_permissions: Iterable[str] = (),
    ) -> int:
        plan = self._relation_for_update(model, record_id, relation, caller_permissions)
        return self.mutations.detach(plan, ids)

    def sync(
        self,
        model: str,
        record_id: Any,
        relation: str,
        ids: Iterable[Any],
        caller_permissions: Iterable[str] = (),
    ) -> tuple[int, int]:
        plan = self._relation_for_update(model, record_id, relation, caller_permissions)
        return self.mutations.sync(plan, ids)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _relation_for_update(
        self, model: str, record_id: Any, relation: str, caller_permissions: Iterable[str]
    ) -> RelationPlan:
        doc = self.store.get(model)
        self.access.enforce(doc, CrudAction.UPDATE, caller_permissions)
        return self._resolve(doc, record_id, relation, CrudAction.UPDATE)

    def _resolve(self, doc: SchemaDoc, record_id: Any, relation: str, action: str) -> RelationPlan:
        if record_id is None:
            raise ValidationError(
                "id",
                "required",
                f"Relation '{relation}' of '{doc.model}' needs a source record id",
                model=doc.model,
                action=action,
            )
        return self.relations.resolve(doc, record_id, relation)
