"""
Relationship classification and join planning.

Given a source schema, a record id and a relation name, the resolver decides
which of three query shapes serves the relation, in this order:

1. DIRECT        one-to-many: filter the target table on a foreign key
2. PIVOT         many-to-many: one join through a pivot table
3. NESTED_PIVOT  many-to-many reached through an intermediate many-to-many:
                 two joins, DISTINCT on the target primary key

For the nested shape, a relationship may be declared explicitly
(``belongs_to_many_through`` / ``through``); otherwise the resolver walks
the source's many-to-many relationships and looks for one whose target
model itself declares a many-to-many named after the relation.

Example (users → roles → permissions):

    SELECT DISTINCT permissions.*
    FROM permissions
    JOIN permission_roles ON permissions.id = permission_roles.permission_id
    JOIN role_users ON permission_roles.role_id = role_users.role_id
    WHERE role_users.user_id = ?
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, NamedTuple

from schemacrud.runtime.errors import MissingPivotMetadata, RelationNotConfigured, SchemaNotFound
from schemacrud.runtime.logging import get_logger, log_with_context
from schemacrud.runtime.schema_store import SchemaStore
from schemacrud.specs.schema import RelationshipDef, RelationType, SchemaDoc

logger = get_logger("Relations")


# =============================================================================
# Plan Types
# =============================================================================


class RelationKind(StrEnum):
    """Query shape a relation resolves to."""

    DIRECT = "direct"
    PIVOT = "pivot"
    NESTED_PIVOT = "nested_pivot"


class ColumnRef(NamedTuple):
    """A column qualified by the alias of a table bound in the query."""

    alias: str
    column: str


@dataclass(frozen=True)
class JoinSpec:
    """``JOIN table AS alias ON left = right``; ``left`` is always already bound."""

    table: str
    alias: str
    left: ColumnRef
    right: ColumnRef


@dataclass(frozen=True)
class PivotSpec:
    """Pivot table metadata used by attach/detach/sync."""

    table: str
    foreign_key: str  # column holding the source id
    related_key: str  # column holding the target id


@dataclass(frozen=True)
class RelationPlan:
    """
    Resolved relation: which rows of ``target`` belong to ``source_id``.

    The base table of the query is always the target table, aliased by its
    table name; ``joins`` lead from it towards the source.
    """

    kind: RelationKind
    source_model: str
    source_id: Any
    relation: str
    target: SchemaDoc
    where_fk: ColumnRef
    joins: tuple[JoinSpec, ...] = ()
    distinct: bool = False
    pivot: PivotSpec | None = None
    list_fields: tuple[Any, ...] | None = None
    through: str | None = None

    @property
    def base_alias(self) -> str:
        return self.target.table


# =============================================================================
# Resolver
# =============================================================================


class RelationshipResolver:
    """
    Classifies relation names and builds join plans.

    Classification is a pure function of the schema documents in the store:
    the same schema and relation name always give the same kind.
    """

    def __init__(self, store: SchemaStore):
        self.store = store

    def classify(self, schema: SchemaDoc, relation: str) -> RelationKind:
        """Return the query shape for a relation without building a plan."""
        return self.resolve(schema, None, relation).kind

    def resolve(self, schema: SchemaDoc, source_id: Any, relation: str) -> RelationPlan:
        """
        Resolve a relation of ``schema`` for one source record.

        Raises:
            RelationNotConfigured: No declaration matches any tier
            MissingPivotMetadata: A matching many-to-many lacks pivot metadata
            SchemaNotFound: The target (or declared intermediate) model is unknown
        """
        plan = (
            self._resolve_direct(schema, source_id, relation)
            or self._resolve_pivot(schema, source_id, relation)
            or self._resolve_declared_nested(schema, source_id, relation)
            or self._resolve_inferred_nested(schema, source_id, relation)
        )
        if plan is None:
            raise RelationNotConfigured(schema.model, relation)

        log_with_context(
            logger,
            logging.DEBUG,
            f"Resolved '{schema.model}.{relation}' as {plan.kind}",
            model=schema.model,
            relation=relation,
            kind=str(plan.kind),
            joins=len(plan.joins),
        )
        return plan

    # -------------------------------------------------------------------------
    # Tier 1: direct
    # -------------------------------------------------------------------------

    def _resolve_direct(
        self, schema: SchemaDoc, source_id: Any, relation: str
    ) -> RelationPlan | None:
        for detail in schema.all_details():
            if detail.model == relation:
                target = self.store.get(detail.model)
                return RelationPlan(
                    kind=RelationKind.DIRECT,
                    source_model=schema.model,
                    source_id=source_id,
                    relation=relation,
                    target=target,
                    where_fk=ColumnRef(target.table, detail.foreign_key or f"{schema.model}_id"),
                    list_fields=_as_tuple(detail.list_fields),
                )

        relationship = schema.get_relationship(relation)
        if relationship is not None and relationship.type == RelationType.ONE_TO_MANY:
            target = self.store.get(relationship.target_model)
            return RelationPlan(
                kind=RelationKind.DIRECT,
                source_model=schema.model,
                source_id=source_id,
                relation=relation,
                target=target,
                where_fk=ColumnRef(target.table, relationship.foreign_key or f"{schema.model}_id"),
                list_fields=_as_tuple(relationship.list_fields),
            )
        return None

    # -------------------------------------------------------------------------
    # Tier 2: single pivot
    # -------------------------------------------------------------------------

    def _resolve_pivot(
        self, schema: SchemaDoc, source_id: Any, relation: str
    ) -> RelationPlan | None:
        relationship = schema.get_relationship(relation)
        if relationship is None or relationship.type != RelationType.MANY_TO_MANY:
            return None

        pivot = pivot_for(schema, relationship)
        target = self.store.get(relationship.target_model)
        alias = _unique_alias(pivot.table, {target.table})
        join = JoinSpec(
            table=pivot.table,
            alias=alias,
            left=ColumnRef(target.table, target.primary_key),
            right=ColumnRef(alias, pivot.related_key),
        )
        return RelationPlan(
            kind=RelationKind.PIVOT,
            source_model=schema.model,
            source_id=source_id,
            relation=relation,
            target=target,
            where_fk=ColumnRef(alias, pivot.foreign_key),
            joins=(join,),
            pivot=pivot,
            list_fields=_as_tuple(relationship.list_fields),
        )

    # -------------------------------------------------------------------------
    # Tier 3: nested pivot
    # -------------------------------------------------------------------------

    def _resolve_declared_nested(
        self, schema: SchemaDoc, source_id: Any, relation: str
    ) -> RelationPlan | None:
        relationship = schema.get_relationship(relation)
        if relationship is None or not relationship.is_transitive:
            return None
        if not relationship.through:
            raise MissingPivotMetadata(schema.model, relation, "through")

        through = relationship.through
        first_hop = _find_many_to_many(schema, through)
        second_hop: RelationshipDef | None = None
        try:
            intermediate = self.store.get(through)
        except SchemaNotFound:
            intermediate = None
        if intermediate is not None:
            candidate = intermediate.get_relationship(relation) or _find_many_to_many(
                intermediate, relationship.target_model
            )
            if candidate is not None and candidate.type == RelationType.MANY_TO_MANY:
                second_hop = candidate

        def pick(explicit: str | None, hop: RelationshipDef | None, attr: str, name: str) -> str:
            value = explicit or (getattr(hop, attr) if hop is not None else None)
            if not value:
                raise MissingPivotMetadata(schema.model, relation, name)
            return value

        first = PivotSpec(
            table=pick(relationship.first_pivot_table, first_hop, "pivot_table", "first_pivot_table"),
            foreign_key=pick(
                relationship.first_foreign_key, first_hop, "foreign_key", "first_foreign_key"
            ),
            related_key=pick(
                relationship.first_related_key, first_hop, "related_key", "first_related_key"
            ),
        )
        second = PivotSpec(
            table=pick(
                relationship.second_pivot_table, second_hop, "pivot_table", "second_pivot_table"
            ),
            foreign_key=pick(
                relationship.second_foreign_key, second_hop, "foreign_key", "second_foreign_key"
            ),
            related_key=pick(
                relationship.second_related_key, second_hop, "related_key", "second_related_key"
            ),
        )
        target = self.store.get(relationship.target_model)
        return self._nested_plan(
            schema, source_id, relation, target, first, second, through, relationship.list_fields
        )

    def _resolve_inferred_nested(
        self, schema: SchemaDoc, source_id: Any, relation: str
    ) -> RelationPlan | None:
        for first_hop in schema.relationships:
            if first_hop.type != RelationType.MANY_TO_MANY:
                continue
            try:
                intermediate = self.store.get(first_hop.target_model)
            except SchemaNotFound:
                continue
            second_hop = intermediate.get_relationship(relation)
            if second_hop is None or second_hop.type != RelationType.MANY_TO_MANY:
                continue

            first = pivot_for(schema, first_hop)
            second = pivot_for(intermediate, second_hop)
            target = self.store.get(second_hop.target_model)
            return self._nested_plan(
                schema,
                source_id,
                relation,
                target,
                first,
                second,
                intermediate.model,
                second_hop.list_fields,
            )
        return None

    def _nested_plan(
        self,
        schema: SchemaDoc,
        source_id: Any,
        relation: str,
        target: SchemaDoc,
        first: PivotSpec,
        second: PivotSpec,
        through: str,
        list_fields: list[Any] | None,
    ) -> RelationPlan:
        second_alias = _unique_alias(second.table, {target.table})
        first_alias = _unique_alias(first.table, {target.table, second_alias})
        joins = (
            JoinSpec(
                table=second.table,
                alias=second_alias,
                left=ColumnRef(target.table, target.primary_key),
                right=ColumnRef(second_alias, second.related_key),
            ),
            JoinSpec(
                table=first.table,
                alias=first_alias,
                left=ColumnRef(second_alias, second.foreign_key),
                right=ColumnRef(first_alias, first.related_key),
            ),
        )
        return RelationPlan(
            kind=RelationKind.NESTED_PIVOT,
            source_model=schema.model,
            source_id=source_id,
            relation=relation,
            target=target,
            where_fk=ColumnRef(first_alias, first.foreign_key),
            joins=joins,
            distinct=True,
            list_fields=_as_tuple(list_fields),
            through=through,
        )


# =============================================================================
# Helpers
# =============================================================================


def pivot_for(schema: SchemaDoc, relationship: RelationshipDef) -> PivotSpec:
    """
    Pivot metadata of a many-to-many relationship, with key defaults applied.

    Raises:
        MissingPivotMetadata: If ``pivot_table`` is not declared
    """
    if not relationship.pivot_table:
        raise MissingPivotMetadata(schema.model, relationship.name, "pivot_table")
    return PivotSpec(
        table=relationship.pivot_table,
        foreign_key=relationship.foreign_key or f"{schema.model}_id",
        related_key=relationship.related_key or f"{relationship.name}_id",
    )


def _find_many_to_many(schema: SchemaDoc, target_model: str) -> RelationshipDef | None:
    for relationship in schema.relationships:
        if (
            relationship.type == RelationType.MANY_TO_MANY
            and relationship.target_model == target_model
        ):
            return relationship
    return None


def _unique_alias(table: str, taken: set[str]) -> str:
    alias = table
    n = 2
    while alias in taken:
        alias = f"{table}_{n}"
        n += 1
    return alias


def _as_tuple(values: list[Any] | None) -> tuple[Any, ...] | None:
    return tuple(values) if values is not None else None
