"""
Query plan construction and SQL rendering.

``QueryPlanBuilder.build`` turns a flattened schema, an optional relation
plan and the request parameters into a ``QueryPlan``: base table, joins,
relation scope, search group, filters, sort, limit/offset and projection.
``QueryPlan.to_sql`` renders it to parameterized SQL with quoted
identifiers.

Every field name that reaches a clause has been sanitized and validated as a
SQL identifier; blank names never produce a predicate or a projected column.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, assert_never

from schemacrud.runtime.errors import QueryPlanError
from schemacrud.runtime.logging import get_logger, log_with_context
from schemacrud.runtime.relation_resolver import ColumnRef, JoinSpec, RelationKind, RelationPlan
from schemacrud.runtime.repository import python_to_sqlite
from schemacrud.runtime.schema_resolver import FlatSchema, sanitize_field_names
from schemacrud.specs.schema import SQL_IDENTIFIER_PATTERN

logger = get_logger("Query")

def validate_sql_identifier(name: str, context: str = "identifier") -> str:
    """
    Validate that a string is a safe SQL identifier.

    Raises:
        ValueError: If the name is empty or contains invalid characters
    """
    if not name:
        raise ValueError(f"SQL {context} cannot be empty")
    if not SQL_IDENTIFIER_PATTERN.match(name):
        raise ValueError(
            f"Invalid SQL {context} '{name}': must contain only letters, digits, "
            "and underscores, and cannot start with a digit"
        )
    return name


def quote_identifier(name: str) -> str:
    """Validate and double-quote an identifier."""
    return f'"{validate_sql_identifier(name)}"'


def qualify(alias: str | None, column: str) -> str:
    """``"alias"."column"``, or just ``"column"`` without an alias."""
    if alias:
        return f"{quote_identifier(alias)}.{quote_identifier(column)}"
    return quote_identifier(column)


def _sql_params(value: Any) -> Any:
    """SQLite parameter(s) for a filter value; sequences convert element-wise."""
    if isinstance(value, (list, tuple, set)):
        return [python_to_sqlite(v) for v in value]
    return python_to_sqlite(value)


# Escape character for LIKE patterns built from user input
LIKE_ESCAPE = "\\"


def escape_like(value: Any) -> str:
    """Escape LIKE wildcards so the value matches literally."""
    text = str(value)
    for char in (LIKE_ESCAPE, "%", "_"):
        text = text.replace(char, LIKE_ESCAPE + char)
    return text


# =============================================================================
# Filters
# =============================================================================


class FilterOperator(StrEnum):
    """Supported filter operators."""

    EQ = "eq"  # Equal (default)
    NE = "ne"  # Not equal
    GT = "gt"  # Greater than
    GTE = "gte"  # Greater than or equal
    LT = "lt"  # Less than
    LTE = "lte"  # Less than or equal
    CONTAINS = "contains"  # Contains substring
    ICONTAINS = "icontains"  # Case-insensitive contains
    STARTSWITH = "startswith"  # Starts with
    ISTARTSWITH = "istartswith"  # Case-insensitive starts with
    ENDSWITH = "endswith"  # Ends with
    IENDSWITH = "iendswith"  # Case-insensitive ends with
    IN = "in"  # In list
    NOT_IN = "not_in"  # Not in list
    ISNULL = "isnull"  # Is null / is not null
    BETWEEN = "between"  # Between two values


OPERATOR_SQL: dict[FilterOperator, str] = {
    FilterOperator.EQ: "{field} = ?",
    FilterOperator.NE: "{field} != ?",
    FilterOperator.GT: "{field} > ?",
    FilterOperator.GTE: "{field} >= ?",
    FilterOperator.LT: "{field} < ?",
    FilterOperator.LTE: "{field} <= ?",
    FilterOperator.CONTAINS: "{field} LIKE ? ESCAPE '\\'",
    FilterOperator.ICONTAINS: "LOWER({field}) LIKE LOWER(?) ESCAPE '\\'",
    FilterOperator.STARTSWITH: "{field} LIKE ? ESCAPE '\\'",
    FilterOperator.ISTARTSWITH: "LOWER({field}) LIKE LOWER(?) ESCAPE '\\'",
    FilterOperator.ENDSWITH: "{field} LIKE ? ESCAPE '\\'",
    FilterOperator.IENDSWITH: "LOWER({field}) LIKE LOWER(?) ESCAPE '\\'",
    FilterOperator.IN: "{field} IN ({placeholders})",
    FilterOperator.NOT_IN: "{field} NOT IN ({placeholders})",
    FilterOperator.ISNULL: "{field} IS NULL",
    FilterOperator.BETWEEN: "{field} BETWEEN ? AND ?",
}


@dataclass(frozen=True)
class FilterCondition:
    """A single ``field__op=value`` filter."""

    field: str
    operator: FilterOperator
    value: Any

    @classmethod
    def parse(cls, key: str, value: Any) -> FilterCondition:
        """
        Parse a filter key-value pair.

        Examples:
            - ("status", "active") -> FilterCondition(field="status", op=EQ, value="active")
            - ("created_at__gt", "2024-01-01") -> FilterCondition(field="created_at", op=GT, ...)
        """
        field_name, sep, suffix = key.rpartition("__")
        if sep:
            try:
                return cls(field=field_name, operator=FilterOperator(suffix.lower()), value=value)
            except ValueError:
                pass
        return cls(field=key, operator=FilterOperator.EQ, value=value)

    def to_sql(self, table_alias: str | None = None) -> tuple[str, list[Any]]:
        """
        Convert the condition to a SQL fragment and parameters.

        Raises:
            ValueError: For a malformed BETWEEN value or an empty IN list
        """
        field_ref = qualify(table_alias, self.field)
        converted = _sql_params(self.value)
        template = OPERATOR_SQL[self.operator]

        match self.operator:
            case FilterOperator.ISNULL:
                if self.value:
                    return f"{field_ref} IS NULL", []
                return f"{field_ref} IS NOT NULL", []
            case FilterOperator.IN | FilterOperator.NOT_IN:
                if not isinstance(converted, list):
                    converted = [converted]
                if not converted:
                    raise ValueError(f"{self.operator.upper()} filter on '{self.field}' needs values")
                placeholders = ", ".join("?" * len(converted))
                return template.format(field=field_ref, placeholders=placeholders), converted
            case FilterOperator.BETWEEN:
                if not isinstance(converted, list) or len(converted) != 2:
                    raise ValueError("BETWEEN operator requires a list of two values")
                return template.format(field=field_ref), converted
            case FilterOperator.CONTAINS | FilterOperator.ICONTAINS:
                return template.format(field=field_ref), [f"%{escape_like(converted)}%"]
            case FilterOperator.STARTSWITH | FilterOperator.ISTARTSWITH:
                return template.format(field=field_ref), [f"{escape_like(converted)}%"]
            case FilterOperator.ENDSWITH | FilterOperator.IENDSWITH:
                return template.format(field=field_ref), [f"%{escape_like(converted)}"]
            case _:
                return template.format(field=field_ref), [converted]


# =============================================================================
# Sorting
# =============================================================================


@dataclass(frozen=True)
class SortField:
    """A single ORDER BY term."""

    field: str
    descending: bool = False

    @classmethod
    def parse(cls, sort_str: str) -> SortField:
        """
        Parse a sort token.

        Examples:
            - "created_at" -> SortField(field="created_at", descending=False)
            - "-created_at" -> SortField(field="created_at", descending=True)
        """
        sort_str = sort_str.strip()
        if sort_str.startswith("-"):
            return cls(field=sort_str[1:].strip(), descending=True)
        return cls(field=sort_str.lstrip("+").strip())

    @classmethod
    def from_mapping(cls, sort: dict[str, str]) -> list[SortField]:
        """``{"name": "desc"}`` style default sorts."""
        return [
            cls(field=name, descending=str(direction).lower() == "desc")
            for name, direction in sort.items()
        ]

    def to_sql(self, table_alias: str | None = None) -> str:
        direction = "DESC" if self.descending else "ASC"
        return f"{qualify(table_alias, self.field)} {direction}"


def parse_sort_string(sort_str: str | None) -> list[str]:
    """
    Split a sort string into tokens.

    Format: "field1,-field2" (comma-separated, - for descending)
    """
    if not sort_str:
        return []
    return [s.strip() for s in sort_str.split(",") if s.strip()]


# =============================================================================
# Search predicate group
# =============================================================================


@dataclass
class PredicateGroup:
    """
    A parenthesised group of predicates.

    The first predicate always binds as a plain WHERE; ``or_where`` on an
    empty group is promoted to ``where`` so the group never starts with OR.
    """

    predicates: list[tuple[str | None, str, list[Any]]] = field(default_factory=list)

    def where(self, sql: str, params: list[Any]) -> PredicateGroup:
        connector = "AND" if self.predicates else None
        self.predicates.append((connector, sql, params))
        return self

    def or_where(self, sql: str, params: list[Any]) -> PredicateGroup:
        if not self.predicates:
            return self.where(sql, params)
        self.predicates.append(("OR", sql, params))
        return self

    def __bool__(self) -> bool:
        return bool(self.predicates)

    def to_sql(self) -> tuple[str, list[Any]]:
        parts: list[str] = []
        params: list[Any] = []
        for connector, sql, predicate_params in self.predicates:
            parts.append(f"{connector} {sql}" if connector else sql)
            params.extend(predicate_params)
        return f"({' '.join(parts)})", params


# =============================================================================
# Request parameters
# =============================================================================


@dataclass(frozen=True)
class ListParams:
    """Paging, sort, search and filter parameters of a listing request."""

    page: int = 0
    size: int = 10
    sort: str | None = None
    search: str | None = None
    filters: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Query plan
# =============================================================================


@dataclass(frozen=True)
class QueryPlan:
    """
    Abstract listing query for one request.

    Joins are ordered from the base table outwards so each join's left side
    is already bound. ``projection`` never holds a blank or computed name.
    """

    model: str
    base_table: str
    base_alias: str
    primary_key: str
    projection: tuple[str, ...]
    limit: int
    offset: int
    joins: tuple[JoinSpec, ...] = ()
    where_fk: tuple[ColumnRef, Any] | None = None
    search_columns: tuple[str, ...] = ()
    search_term: str | None = None
    filters: tuple[FilterCondition, ...] = ()
    sort: tuple[SortField, ...] = ()
    distinct: bool = False
    placeholder: str = "?"

    def search_group(self) -> PredicateGroup:
        """OR-of-LIKE over the search columns: first as WHERE, the rest as OR WHERE."""
        group = PredicateGroup()
        if not self.search_term:
            return group
        pattern = f"%{escape_like(self.search_term)}%"
        for column in self.search_columns:
            group.or_where(
                f"{qualify(self.base_alias, column)} LIKE ? ESCAPE '{LIKE_ESCAPE}'", [pattern]
            )
        return group

    def where_sql(self, filtered: bool = True) -> tuple[str, list[Any]]:
        """
        Build the WHERE clause.

        Args:
            filtered: Include search and filters; otherwise only the relation scope
        """
        clauses: list[str] = []
        params: list[Any] = []

        if self.where_fk is not None:
            column, value = self.where_fk
            clauses.append(f"{qualify(column.alias, column.column)} = ?")
            params.append(python_to_sqlite(value))

        if filtered:
            group = self.search_group()
            if group:
                sql, group_params = group.to_sql()
                clauses.append(sql)
                params.extend(group_params)
            for condition in self.filters:
                sql, condition_params = condition.to_sql(self.base_alias)
                clauses.append(sql)
                params.extend(condition_params)

        if not clauses:
            return "", []
        return f"WHERE {' AND '.join(clauses)}", params

    def from_sql(self) -> str:
        parts = [f"FROM {quote_identifier(self.base_table)} AS {quote_identifier(self.base_alias)}"]
        for join in self.joins:
            parts.append(
                f"JOIN {quote_identifier(join.table)} AS {quote_identifier(join.alias)} "
                f"ON {qualify(join.left.alias, join.left.column)} = "
                f"{qualify(join.right.alias, join.right.column)}"
            )
        return " ".join(parts)

    def to_sql(self) -> tuple[str, list[Any]]:
        """Render the page query."""
        columns = ", ".join(
            f"{qualify(self.base_alias, c)} AS {quote_identifier(c)}" for c in self.projection
        )
        select = f"SELECT DISTINCT {columns}" if self.distinct else f"SELECT {columns}"
        where, params = self.where_sql()

        parts = [select, self.from_sql()]
        if where:
            parts.append(where)
        if self.sort:
            parts.append("ORDER BY " + ", ".join(s.to_sql(self.base_alias) for s in self.sort))
        parts.append("LIMIT ? OFFSET ?")
        params.extend([self.limit, self.offset])
        return self._placeholders(" ".join(parts)), params

    def to_count_sql(self, filtered: bool = True) -> tuple[str, list[Any]]:
        """Render a count query; nested traversals count distinct primary keys."""
        if self.distinct:
            count = f"COUNT(DISTINCT {qualify(self.base_alias, self.primary_key)})"
        else:
            count = "COUNT(*)"
        where, params = self.where_sql(filtered=filtered)
        parts = [f"SELECT {count}", self.from_sql()]
        if where:
            parts.append(where)
        return self._placeholders(" ".join(parts)), params

    def _placeholders(self, sql: str) -> str:
        # Identifiers are validated, so "?" only ever appears as a placeholder
        if self.placeholder == "?":
            return sql
        return sql.replace("?", self.placeholder)


# =============================================================================
# Builder
# =============================================================================


class QueryPlanBuilder:
    """
    Builds query plans from schema field sets and request parameters.

    Example:
        builder = QueryPlanBuilder()
        plan = builder.build(flatten(users, "list"), None, ListParams(search="bob"))
        sql, params = plan.to_sql()
    """

    def __init__(self, placeholder: str = "?"):
        self.placeholder = placeholder

    def build(
        self,
        flat: FlatSchema,
        relation: RelationPlan | None,
        params: ListParams,
        hidden: set[str] | None = None,
    ) -> QueryPlan:
        """
        Build a plan listing ``flat``'s model, scoped by ``relation`` when given.

        Args:
            flat: Flattened schema of the model being listed
            relation: Relation plan whose target is that model, or None
            params: Page, size, sort, search and filters
            hidden: Field keys the caller may not see; dropped from the projection,
                the search columns, filters and sort

        Raises:
            QueryPlanError: For invalid paging or unusable identifiers
        """
        model = flat.model
        if params.size <= 0:
            raise QueryPlanError(f"Page size must be positive, got {params.size}", model=model)
        if params.page < 0:
            raise QueryPlanError(f"Page must not be negative, got {params.page}", model=model)
        if relation is not None and relation.target.model != model:
            raise QueryPlanError(
                f"Relation '{relation.relation}' targets '{relation.target.model}', not '{model}'",
                model=model,
            )

        doc = flat.doc
        table = doc.table
        pk = flat.primary_key
        self._check_identifier(table, "table", model)
        self._check_identifier(pk, "primary key", model)

        projection = self._projection(flat, relation, hidden)
        hidden = set(hidden or ())
        filterable = [name for name in flat.filterable() if name not in hidden]
        search_term = params.search.strip() if params.search and params.search.strip() else None

        joins: tuple[JoinSpec, ...] = ()
        where_fk: tuple[ColumnRef, Any] | None = None
        distinct = False
        if relation is not None:
            where_fk = (relation.where_fk, relation.source_id)
            match relation.kind:
                case RelationKind.DIRECT:
                    pass
                case RelationKind.PIVOT:
                    joins = relation.joins
                case RelationKind.NESTED_PIVOT:
                    joins = relation.joins
                    distinct = relation.distinct
                case _:
                    assert_never(relation.kind)
            for join in joins:
                for name in (join.table, join.alias, join.left.column, join.right.column):
                    self._check_identifier(name, "join identifier", model)
            self._check_identifier(relation.where_fk.column, "foreign key", model)

        for name in filterable:
            self._check_identifier(name, "filterable field", model)

        plan = QueryPlan(
            model=model,
            base_table=table,
            base_alias=table,
            primary_key=pk,
            projection=tuple(projection),
            limit=params.size,
            offset=params.page * params.size,
            joins=joins,
            where_fk=where_fk,
            search_columns=tuple(filterable) if search_term else (),
            search_term=search_term,
            filters=tuple(self._filters(flat, params.filters, filterable)),
            sort=tuple(self._sort(flat, params.sort, hidden)),
            distinct=distinct,
            placeholder=self.placeholder,
        )
        log_with_context(
            logger,
            logging.DEBUG,
            f"Built query plan for '{model}'",
            model=model,
            relation=relation.relation if relation else None,
            joins=len(joins),
            distinct=distinct,
            columns=list(plan.projection),
        )
        return plan

    # -------------------------------------------------------------------------
    # Clause helpers
    # -------------------------------------------------------------------------

    def _projection(
        self, flat: FlatSchema, relation: RelationPlan | None, hidden: set[str] | None
    ) -> list[str]:
        pk = flat.primary_key
        if relation is not None and relation.list_fields is not None:
            names = sanitize_field_names(
                relation.list_fields, source=f"{relation.relation}.list_fields", model=flat.model
            )
        else:
            names = flat.listable()

        fields = flat.doc.all_fields()
        columns = [pk]
        for name in names:
            field_def = fields.get(name)
            if field_def is not None and field_def.computed:
                continue
            if hidden and name in hidden:
                continue
            if name not in columns:
                self._check_identifier(name, "listed field", flat.model)
                columns.append(name)
        return columns

    def _filters(
        self, flat: FlatSchema, filters: dict[str, Any], filterable: list[str]
    ) -> list[FilterCondition]:
        cleaned = {k.strip(): v for k, v in filters.items() if isinstance(k, str) and k.strip()}
        sanitize_field_names(list(filters), source="filters", model=flat.model)

        conditions: list[FilterCondition] = []
        for key, value in cleaned.items():
            condition = FilterCondition.parse(key, value)
            if condition.field not in filterable:
                log_with_context(
                    logger,
                    logging.WARNING,
                    f"Ignoring filter on non-filterable field '{condition.field}' of '{flat.model}'",
                    model=flat.model,
                    field=condition.field,
                )
                continue
            try:
                condition.to_sql()
            except ValueError as e:
                raise QueryPlanError(str(e), model=flat.model, column=condition.field) from e
            conditions.append(condition)
        return conditions

    def _sort(self, flat: FlatSchema, sort: str | None, hidden: set[str]) -> list[SortField]:
        sortable = set(flat.sortable()) - hidden
        requested = [SortField.parse(token) for token in parse_sort_string(sort)]
        kept: list[SortField] = []
        for sort_field in requested:
            if sort_field.field in sortable:
                self._check_identifier(sort_field.field, "sort field", flat.model)
                kept.append(sort_field)
            else:
                log_with_context(
                    logger,
                    logging.WARNING,
                    f"Ignoring sort on non-sortable field '{sort_field.field}' of '{flat.model}'",
                    model=flat.model,
                    field=sort_field.field,
                )
        if kept:
            return kept

        default = flat.default_sort()
        names = sanitize_field_names(list(default), source="default_sort", model=flat.model)
        fields = flat.doc.all_fields()
        defaults: list[SortField] = []
        for raw, direction in default.items():
            name = raw.strip() if isinstance(raw, str) else ""
            if name not in names or name in hidden or _computed(fields.get(name)):
                continue
            self._check_identifier(name, "sort field", flat.model)
            defaults.extend(SortField.from_mapping({name: direction}))
        return defaults or [SortField(field=flat.primary_key)]

    @staticmethod
    def _check_identifier(name: str, what: str, model: str) -> None:
        try:
            validate_sql_identifier(name, what)
        except ValueError as e:
            raise QueryPlanError(str(e), model=model, column=name) from e


def _computed(field_def: Any | None) -> bool:
    return bool(field_def is not None and field_def.computed)
