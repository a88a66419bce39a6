"""
Record and pivot mutations.

Create/update payloads are built centrally from the schema: computed,
readonly, auto-increment and non-editable fields are stripped no matter what
the caller sends. Password fields are hashed before they are written; a
blank password leaves the stored hash unchanged.

Each record mutation runs in one transaction together with its side
effects: relationship actions declared for the event (``on_create``,
``on_update``, ``on_delete``) and, on delete, removal of detail rows. Pivot
attach/detach/sync also run inside one transaction and roll back entirely if
any row fails.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field

from schemacrud.runtime.crypto import hash_password
from schemacrud.runtime.errors import (
    ConstraintViolationError,
    QueryExecutionError,
    RecordNotFound,
    RelationNotConfigured,
    SchemaNotFound,
    ValidationError,
)
from schemacrud.runtime.logging import get_logger, log_with_context
from schemacrud.runtime.model_generator import PayloadValidator
from schemacrud.runtime.query_builder import quote_identifier
from schemacrud.runtime.relation_resolver import PivotSpec, RelationKind, RelationPlan, pivot_for
from schemacrud.runtime.repository import (
    DatabaseManager,
    parse_constraint_error,
    python_to_sqlite,
    row_to_dict,
)
from schemacrud.runtime.schema_resolver import FlatSchema
from schemacrud.runtime.schema_store import SchemaStore
from schemacrud.specs.schema import DetailDef, RelationType, SchemaDoc, is_sql_identifier

logger = get_logger("Mutations")


class MutationResult(BaseModel):
    """User-displayable outcome of a mutation."""

    title: str = Field(description="Short headline")
    description: str = Field(description="One-sentence summary")
    model: str = Field(description="Affected model")
    id: Any = Field(default=None, description="Affected record id")
    record: dict[str, Any] | None = Field(
        default=None, description="Record after the change, without hidden or password fields"
    )


class MutationDispatcher:
    """
    Executes create/update/delete and pivot mutations.

    ``store`` resolves the tables of detail models for cascading deletes;
    without it the detail's model name is used as its table.
    """

    def __init__(self, db: DatabaseManager, store: SchemaStore | None = None):
        self.db = db
        self.store = store

    # =========================================================================
    # Payload
    # =========================================================================

    def build_payload(
        self,
        schema: SchemaDoc,
        data: dict[str, Any],
        allowed: set[str] | None = None,
    ) -> dict[str, Any]:
        """
        Keep only writable schema fields from caller input.

        Args:
            schema: Schema of the model being written
            data: Caller input
            allowed: Further restrict to these keys (e.g. caller-editable fields)
        """
        fields = schema.all_fields()
        payload: dict[str, Any] = {}
        stripped: list[str] = []
        for key, value in data.items():
            field_def = fields.get(key)
            if field_def is None or not field_def.is_writable:
                stripped.append(key)
                continue
            if allowed is not None and key not in allowed:
                stripped.append(key)
                continue
            payload[key] = value
        if stripped:
            log_with_context(
                logger,
                logging.DEBUG,
                f"Stripped non-writable keys from '{schema.model}' payload",
                model=schema.model,
                keys=stripped,
            )
        return payload

    def _prepare(
        self,
        schema: SchemaDoc,
        payload: dict[str, Any],
        *,
        partial: bool,
        action: str,
    ) -> dict[str, Any]:
        """Validate a built payload and hash its password fields."""
        passwords = _password_fields(schema)
        payload = {k: v for k, v in payload.items() if not (k in passwords and _is_blank(v))}
        clean = PayloadValidator(schema).validate(payload, partial=partial, action=action)
        for key in passwords:
            if clean.get(key) is not None:
                clean[key] = hash_password(str(clean[key]))
        return clean

    # =========================================================================
    # Records
    # =========================================================================

    def fetch(self, schema: SchemaDoc, record_id: Any) -> dict[str, Any] | None:
        """Read one raw record, or None."""
        with self._translate_errors(schema, "read"), self.db.connection() as conn:
            return self._fetch(conn, schema, record_id)

    def create(
        self,
        flat: FlatSchema,
        data: dict[str, Any],
        allowed: set[str] | None = None,
        hidden: set[str] | None = None,
        actor_id: Any = None,
    ) -> MutationResult:
        """
        Insert a record and apply its ``on_create`` relationship actions.

        Raises:
            ValidationError: If a field rule fails
            ConstraintViolationError: On unique/foreign-key violations
        """
        schema = flat.doc
        payload = self._prepare(
            schema, self.build_payload(schema, data, allowed), partial=False, action="create"
        )
        ph = self.db.placeholder
        table = quote_identifier(schema.table)
        if payload:
            columns = ", ".join(quote_identifier(k) for k in payload)
            placeholders = ", ".join(ph for _ in payload)
            sql = f"INSERT INTO {table} ({columns}) VALUES ({placeholders})"
        else:
            sql = f"INSERT INTO {table} DEFAULT VALUES"

        with self._translate_errors(schema, "create"), self.db.connection() as conn:
            cursor = conn.execute(sql, [python_to_sqlite(v) for v in payload.values()])
            record_id = payload.get(schema.primary_key, cursor.lastrowid)
            self._apply_relationship_actions(conn, schema, record_id, "on_create", data, actor_id)
            record = self._fetch(conn, schema, record_id)

        log_with_context(
            logger, logging.INFO, f"Created {schema.model} {record_id}", model=schema.model, id=record_id
        )
        return self._result(schema, "created", record_id, record, hidden)

    def update(
        self,
        flat: FlatSchema,
        record_id: Any,
        data: dict[str, Any],
        allowed: set[str] | None = None,
        hidden: set[str] | None = None,
        actor_id: Any = None,
    ) -> MutationResult:
        """
        Update a record with the writable fields of ``data``.

        ``on_update`` relationship actions run in the same transaction; a
        ``sync`` action reads its ids from ``data``.

        Raises:
            RecordNotFound: If no record has ``record_id``
        """
        schema = flat.doc
        payload = self._prepare(
            schema, self.build_payload(schema, data, allowed), partial=True, action="update"
        )
        return self._update(
            schema, record_id, payload, "update", hidden=hidden, event_data=data, actor_id=actor_id
        )

    def update_field(
        self,
        schema: SchemaDoc,
        record_id: Any,
        field: str,
        value: Any,
        allowed: set[str] | None = None,
        hidden: set[str] | None = None,
    ) -> MutationResult:
        """
        Update a single field.

        Raises:
            ValidationError: If the field is unknown or not editable
        """
        field_def = schema.all_fields().get(field)
        if field_def is None:
            raise ValidationError(
                field, "exists", f"Field '{field}' does not exist on '{schema.model}'",
                model=schema.model, action="update",
            )
        if not field_def.is_writable or (allowed is not None and field not in allowed):
            raise ValidationError(
                field, "editable", f"Field '{field}' of '{schema.model}' is not editable",
                model=schema.model, action="update",
            )
        payload = self._prepare(schema, {field: value}, partial=True, action="update")
        return self._update(schema, record_id, payload, "update", hidden=hidden)

    def delete(
        self,
        schema: SchemaDoc,
        record_id: Any,
        hidden: set[str] | None = None,
        actor_id: Any = None,
    ) -> MutationResult:
        """
        Delete a record with its ``on_delete`` relationship actions and detail rows.

        Raises:
            RecordNotFound: If no record has ``record_id``
        """
        ph = self.db.placeholder
        table = quote_identifier(schema.table)
        pk = quote_identifier(schema.primary_key)
        with self._translate_errors(schema, "delete"), self.db.connection() as conn:
            record = self._fetch(conn, schema, record_id)
            if record is None:
                raise RecordNotFound(schema.model, record_id, action="delete")
            self._apply_relationship_actions(conn, schema, record_id, "on_delete", None, actor_id)
            self._cascade_details(conn, schema, record_id)
            conn.execute(f"DELETE FROM {table} WHERE {pk} = {ph}", [python_to_sqlite(record_id)])

        log_with_context(
            logger, logging.INFO, f"Deleted {schema.model} {record_id}", model=schema.model, id=record_id
        )
        return self._result(schema, "deleted", record_id, record, hidden)

    def _update(
        self,
        schema: SchemaDoc,
        record_id: Any,
        payload: dict[str, Any],
        action: str,
        hidden: set[str] | None = None,
        event_data: dict[str, Any] | None = None,
        actor_id: Any = None,
    ) -> MutationResult:
        ph = self.db.placeholder
        table = quote_identifier(schema.table)
        pk = quote_identifier(schema.primary_key)
        with self._translate_errors(schema, action), self.db.connection() as conn:
            if payload:
                assignments = ", ".join(f"{quote_identifier(k)} = {ph}" for k in payload)
                params = [python_to_sqlite(v) for v in payload.values()]
                cursor = conn.execute(
                    f"UPDATE {table} SET {assignments} WHERE {pk} = {ph}",
                    [*params, python_to_sqlite(record_id)],
                )
                if cursor.rowcount == 0:
                    raise RecordNotFound(schema.model, record_id, action=action)
            record = self._fetch(conn, schema, record_id)
            if record is None:
                raise RecordNotFound(schema.model, record_id, action=action)
            if event_data is not None:
                self._apply_relationship_actions(
                    conn, schema, record_id, "on_update", event_data, actor_id
                )

        log_with_context(
            logger,
            logging.INFO,
            f"Updated {schema.model} {record_id}",
            model=schema.model,
            id=record_id,
            fields=list(payload),
        )
        return self._result(schema, "updated", record_id, record, hidden)

    # =========================================================================
    # Record side effects
    # =========================================================================

    def _apply_relationship_actions(
        self,
        conn: sqlite3.Connection,
        schema: SchemaDoc,
        record_id: Any,
        event: str,
        data: dict[str, Any] | None,
        actor_id: Any,
    ) -> None:
        """
        Run the pivot changes declared for ``event`` on each relationship.

        Order per relationship: attach, then sync (``on_update`` only), then detach.
        """
        source_id = python_to_sqlite(record_id)
        for relationship in schema.relationships:
            step = relationship.actions.for_event(event)
            if step is None:
                continue
            if relationship.type != RelationType.MANY_TO_MANY:
                log_with_context(
                    logger,
                    logging.WARNING,
                    f"Skipping {event} actions of non many_to_many relation '{relationship.name}'",
                    model=schema.model,
                    relation=relationship.name,
                )
                continue

            pivot = pivot_for(schema, relationship)
            attached = detached = 0
            for item in step.attach:
                extra = _pivot_values(item.pivot_data, actor_id)
                attached += self._insert_links(
                    conn, pivot, source_id, _clean_ids([item.related_id]), extra
                )

            if event == "on_update" and step.sync:
                key = step.sync if isinstance(step.sync, str) else f"{relationship.name}_ids"
                if data is not None and key in data:
                    synced = self._sync_links(conn, pivot, source_id, _clean_ids(_as_list(data[key])))
                    attached += synced[0]
                    detached += synced[1]

            if step.detach == "all":
                detached += self._delete_all_links(conn, pivot, source_id)
            elif step.detach:
                ids = _clean_ids(step.detach)
                detached += self._delete_links(conn, pivot, source_id, ids) if ids else 0

            log_with_context(
                logger,
                logging.INFO,
                f"Applied {event} actions of '{schema.model}.{relationship.name}' for {record_id}",
                model=schema.model,
                relation=relationship.name,
                attached=attached,
                detached=detached,
            )

    def _cascade_details(self, conn: sqlite3.Connection, schema: SchemaDoc, record_id: Any) -> None:
        ph = self.db.placeholder
        for detail in schema.all_details():
            if not detail.cascade_delete:
                continue
            table = self._detail_table(schema, detail)
            if table is None:
                continue
            fk = detail.foreign_key or f"{schema.model}_id"
            cursor = conn.execute(
                f"DELETE FROM {quote_identifier(table)} WHERE {quote_identifier(fk)} = {ph}",
                [python_to_sqlite(record_id)],
            )
            log_with_context(
                logger,
                logging.INFO,
                f"Deleted {cursor.rowcount} '{detail.model}' row(s) of {schema.model} {record_id}",
                model=schema.model,
                detail=detail.model,
                count=cursor.rowcount,
            )

    def _detail_table(self, schema: SchemaDoc, detail: DetailDef) -> str | None:
        if self.store is None:
            table = detail.model
        else:
            try:
                table = self.store.get(detail.model).table
            except SchemaNotFound:
                table = None
        if table is None or not is_sql_identifier(table):
            log_with_context(
                logger,
                logging.WARNING,
                f"Skipping cascade of unknown detail model '{detail.model}'",
                model=schema.model,
                detail=detail.model,
            )
            return None
        return table

    # =========================================================================
    # Pivots
    # =========================================================================

    def attach(self, plan: RelationPlan, ids: Iterable[Any]) -> int:
        """
        Link ids to the source record; already-linked ids are ignored.

        Returns:
            Number of pivot rows inserted
        """
        pivot, related_ids = self._pivot_args(plan, ids, "attach")
        with self._translate_pivot_errors(plan, pivot, "attach"), self.db.connection() as conn:
            attached = self._insert_links(
                conn, pivot, python_to_sqlite(plan.source_id), related_ids
            )
        self._log_pivot(plan, "Attached", attached)
        return attached

    def detach(self, plan: RelationPlan, ids: Iterable[Any]) -> int:
        """
        Unlink ids from the source record.

        Returns:
            Number of pivot rows deleted
        """
        pivot, related_ids = self._pivot_args(plan, ids, "detach")
        with self._translate_pivot_errors(plan, pivot, "detach"), self.db.connection() as conn:
            detached = self._delete_links(
                conn, pivot, python_to_sqlite(plan.source_id), related_ids
            )
        self._log_pivot(plan, "Detached", detached)
        return detached

    def sync(self, plan: RelationPlan, ids: Iterable[Any]) -> tuple[int, int]:
        """
        Make the linked set exactly ``ids``.

        Returns:
            (attached, detached) row counts
        """
        pivot, related_ids = self._pivot_args(plan, ids, "sync", allow_empty=True)
        with self._translate_pivot_errors(plan, pivot, "sync"), self.db.connection() as conn:
            attached, detached = self._sync_links(
                conn, pivot, python_to_sqlite(plan.source_id), related_ids
            )

        log_with_context(
            logger,
            logging.INFO,
            f"Synced '{plan.source_model}.{plan.relation}' for {plan.source_id}",
            model=plan.source_model,
            relation=plan.relation,
            attached=attached,
            detached=detached,
        )
        return attached, detached

    def _pivot_args(
        self, plan: RelationPlan, ids: Iterable[Any], action: str, allow_empty: bool = False
    ) -> tuple[PivotSpec, list[Any]]:
        if plan.kind != RelationKind.PIVOT or plan.pivot is None:
            raise RelationNotConfigured(plan.source_model, plan.relation)
        if plan.source_id is None:
            raise ValidationError(
                "id", "required", f"A source id is required to {action} '{plan.relation}'",
                model=plan.source_model, action=action,
            )
        related_ids = _clean_ids(ids)
        if not related_ids and not allow_empty:
            raise ValidationError(
                "ids", "required", f"No ids given to {action} on '{plan.relation}'",
                model=plan.source_model, action=action,
            )
        return plan.pivot, related_ids

    def _insert_links(
        self,
        conn: sqlite3.Connection,
        pivot: PivotSpec,
        source_id: Any,
        ids: list[Any],
        extra: dict[str, Any] | None = None,
    ) -> int:
        ph = self.db.placeholder
        extra = extra or {}
        columns = [pivot.foreign_key, pivot.related_key, *extra]
        sql = (
            f"INSERT OR IGNORE INTO {quote_identifier(pivot.table)} "
            f"({', '.join(quote_identifier(c) for c in columns)}) "
            f"VALUES ({', '.join(ph for _ in columns)})"
        )
        inserted = 0
        for related_id in ids:
            inserted += conn.execute(sql, [source_id, related_id, *extra.values()]).rowcount
        return inserted

    def _delete_links(
        self, conn: sqlite3.Connection, pivot: PivotSpec, source_id: Any, ids: list[Any]
    ) -> int:
        ph = self.db.placeholder
        placeholders = ", ".join(ph for _ in ids)
        sql = (
            f"DELETE FROM {quote_identifier(pivot.table)} "
            f"WHERE {quote_identifier(pivot.foreign_key)} = {ph} "
            f"AND {quote_identifier(pivot.related_key)} IN ({placeholders})"
        )
        return conn.execute(sql, [source_id, *ids]).rowcount

    def _delete_all_links(self, conn: sqlite3.Connection, pivot: PivotSpec, source_id: Any) -> int:
        sql = (
            f"DELETE FROM {quote_identifier(pivot.table)} "
            f"WHERE {quote_identifier(pivot.foreign_key)} = {self.db.placeholder}"
        )
        return conn.execute(sql, [source_id]).rowcount

    def _sync_links(
        self, conn: sqlite3.Connection, pivot: PivotSpec, source_id: Any, ids: list[Any]
    ) -> tuple[int, int]:
        current = [
            row[0]
            for row in conn.execute(
                f"SELECT {quote_identifier(pivot.related_key)} "
                f"FROM {quote_identifier(pivot.table)} "
                f"WHERE {quote_identifier(pivot.foreign_key)} = {self.db.placeholder}",
                [source_id],
            ).fetchall()
        ]
        wanted = set(ids)
        stale = [v for v in current if v not in wanted]
        detached = self._delete_links(conn, pivot, source_id, stale) if stale else 0
        missing = [v for v in ids if v not in set(current)]
        attached = self._insert_links(conn, pivot, source_id, missing) if missing else 0
        return attached, detached

    def _log_pivot(self, plan: RelationPlan, verb: str, count: int) -> None:
        log_with_context(
            logger,
            logging.INFO,
            f"{verb} {count} '{plan.relation}' link(s) for {plan.source_model} {plan.source_id}",
            model=plan.source_model,
            relation=plan.relation,
            count=count,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _fetch(self, conn: sqlite3.Connection, schema: SchemaDoc, record_id: Any) -> dict[str, Any] | None:
        row = conn.execute(
            f"SELECT * FROM {quote_identifier(schema.table)} "
            f"WHERE {quote_identifier(schema.primary_key)} = {self.db.placeholder}",
            [python_to_sqlite(record_id)],
        ).fetchone()
        return row_to_dict(row) if row is not None else None

    def _result(
        self,
        schema: SchemaDoc,
        verb: str,
        record_id: Any,
        record: dict[str, Any] | None,
        hidden: set[str] | None = None,
    ) -> MutationResult:
        name = schema.display_name
        label = record.get(schema.title_field) if record and schema.title_field else None
        return MutationResult(
            title=f"{name} {verb}",
            description=f"Successfully {verb} {name} '{label if label is not None else record_id}'",
            model=schema.model,
            id=record_id,
            record=_visible_record(schema, record, hidden),
        )

    @contextmanager
    def _translate_errors(self, schema: SchemaDoc, action: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.IntegrityError as e:
            constraint_type, column = parse_constraint_error(e)
            error = ConstraintViolationError(
                f"Cannot {action} {schema.model}: {e}",
                table=schema.table,
                column=column,
                constraint_type=constraint_type,
                model=schema.model,
                action=action,
            )
            log_with_context(logger, logging.ERROR, error.message, error.context)
            raise error from e
        except sqlite3.Error as e:
            error = QueryExecutionError(
                f"Cannot {action} {schema.model}: {e}",
                table=schema.table,
                model=schema.model,
                action=action,
            )
            log_with_context(logger, logging.ERROR, error.message, error.context)
            raise error from e

    @contextmanager
    def _translate_pivot_errors(
        self, plan: RelationPlan, pivot: PivotSpec, action: str
    ) -> Iterator[None]:
        try:
            yield
        except sqlite3.IntegrityError as e:
            constraint_type, column = parse_constraint_error(e)
            error = ConstraintViolationError(
                f"Cannot {action} '{plan.relation}' on {plan.source_model} {plan.source_id}: {e}",
                table=pivot.table,
                column=column or pivot.related_key,
                constraint_type=constraint_type,
                model=plan.source_model,
                action=action,
            )
            log_with_context(logger, logging.ERROR, error.message, error.context)
            raise error from e
        except sqlite3.Error as e:
            error = QueryExecutionError(
                f"Cannot {action} '{plan.relation}' on {plan.source_model} {plan.source_id}: {e}",
                table=pivot.table,
                model=plan.source_model,
                action=action,
            )
            log_with_context(logger, logging.ERROR, error.message, error.context)
            raise error from e


# =============================================================================
# Module helpers
# =============================================================================


def _password_fields(schema: SchemaDoc) -> set[str]:
    return {k for k, f in schema.all_fields().items() if f.type == "password"}


def _visible_record(
    schema: SchemaDoc, record: dict[str, Any] | None, hidden: set[str] | None
) -> dict[str, Any] | None:
    """Drop permission-guarded and password columns from a fetched row."""
    if record is None:
        return None
    excluded = _password_fields(schema) | set(hidden or ())
    return {k: v for k, v in record.items() if k not in excluded}


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",")]
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def _clean_ids(ids: Iterable[Any]) -> list[Any]:
    """SQLite values of ``ids``, blanks dropped, first occurrence kept."""
    cleaned: list[Any] = []
    for value in ids:
        value = python_to_sqlite(value)
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        if value not in cleaned:
            cleaned.append(value)
    return cleaned


def _pivot_values(pivot_data: dict[str, Any], actor_id: Any) -> dict[str, Any]:
    """Resolve ``now``, ``current_date`` and ``current_user`` in pivot data."""
    values: dict[str, Any] = {}
    for column, value in pivot_data.items():
        if value == "now":
            value = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        elif value == "current_date":
            value = date.today().isoformat()
        elif value == "current_user":
            value = actor_id
        values[column] = python_to_sqlite(value)
    return values
