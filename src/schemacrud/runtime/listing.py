"""
Listing execution.

Runs a ``QueryPlan`` against the database and returns one page of rows with
the scoped and filtered counts. Driver errors are re-raised as
``QueryExecutionError`` naming the model, table and (when the driver reports
one) the offending column.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import Any

from pydantic import BaseModel, Field

from schemacrud.runtime.errors import QueryExecutionError
from schemacrud.runtime.logging import get_logger, log_with_context
from schemacrud.runtime.query_builder import QueryPlan
from schemacrud.runtime.repository import DatabaseManager, row_to_dict

logger = get_logger("Listing")

_COLUMN_PATTERN = re.compile(r"no such column: (?:[\w\"]+\.)?\"?(\w+)\"?")


class Page(BaseModel):
    """One page of listing results."""

    rows: list[dict[str, Any]] = Field(default_factory=list, description="Projected rows")
    count: int = Field(default=0, description="Rows in scope, ignoring search and filters")
    count_filtered: int = Field(default=0, description="Rows matching search and filters")
    page: int = Field(default=0, description="Zero-based page index")
    size: int = Field(default=0, description="Page size")
    fallback: bool = Field(
        default=False, description="Relation was not configured; the base model was listed"
    )

    def to_response(self) -> dict[str, Any]:
        """The ``{rows, count, count_filtered}`` listing payload."""
        return {"rows": self.rows, "count": self.count, "count_filtered": self.count_filtered}


class ListingEngine:
    """Executes query plans."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def execute(self, plan: QueryPlan) -> Page:
        """
        Run a plan: page query, scoped count and filtered count in one connection.

        Raises:
            QueryExecutionError: If the database rejects any of the queries
        """
        sql, params = plan.to_sql()
        count_sql, count_params = plan.to_count_sql(filtered=False)
        filtered_sql, filtered_params = plan.to_count_sql(filtered=True)

        try:
            with self.db.connection() as conn:
                rows = [row_to_dict(r) for r in conn.execute(sql, params).fetchall()]
                count = conn.execute(count_sql, count_params).fetchone()[0]
                count_filtered = conn.execute(filtered_sql, filtered_params).fetchone()[0]
        except sqlite3.Error as e:
            raise self._wrap(plan, e, sql) from e

        return Page(
            rows=rows,
            count=count,
            count_filtered=count_filtered,
            page=plan.offset // plan.limit,
            size=plan.limit,
        )

    def _wrap(self, plan: QueryPlan, exc: sqlite3.Error, sql: str) -> QueryExecutionError:
        message = str(exc)
        match = _COLUMN_PATTERN.search(message)
        column = match.group(1) if match else None
        error = QueryExecutionError(
            f"Listing '{plan.model}' failed on table '{plan.base_table}'"
            + (f" (column '{column}')" if column else "")
            + f": {message}",
            table=plan.base_table,
            column=column,
            model=plan.model,
            action="read",
        )
        log_with_context(logger, logging.ERROR, error.message, {**error.context, "sql": sql})
        return error
