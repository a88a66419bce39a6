"""
SQLite persistence collaborator.

Connection management and value conversion for the listing engine and the
mutation dispatcher. Every ``connection()`` block is one transaction:
committed on success, rolled back on any exception.
"""

from __future__ import annotations

import json
import re
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID

# =============================================================================
# Value conversion
# =============================================================================


def python_to_sqlite(value: Any) -> Any:
    """Convert a Python value to a SQLite-compatible value."""
    if value is None:
        return None
    elif isinstance(value, UUID):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, date):
        return value.isoformat()
    elif isinstance(value, Decimal):
        return float(value)
    elif isinstance(value, bool):
        return 1 if value else 0
    elif isinstance(value, (dict, list)):
        return json.dumps(value)
    else:
        return value


def row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    return {key: row[key] for key in row.keys()}


# =============================================================================
# Constraint errors
# =============================================================================


def parse_constraint_error(exc: str | Exception) -> tuple[str, str | None]:
    """Parse an integrity error message into (constraint_type, column_or_none).

    Examples:
        "UNIQUE constraint failed: users.email" -> ("unique", "email")
        "FOREIGN KEY constraint failed" -> ("foreign_key", None)
        "NOT NULL constraint failed: users.user_name" -> ("not_null", "user_name")
    """
    err = exc if isinstance(exc, str) else str(exc)

    for marker, kind in (
        ("UNIQUE constraint failed:", "unique"),
        ("NOT NULL constraint failed:", "not_null"),
    ):
        if marker in err:
            parts = err.split(marker)[-1].strip()
            # "users.email, users.name" -> "email"
            first = parts.split(",")[0].strip()
            column = first.split(".")[-1].strip() if first else None
            return kind, column or None

    if "FOREIGN KEY constraint failed" in err:
        return "foreign_key", None

    match = re.search(r"CHECK constraint failed: (\w+)", err)
    if match:
        return "check", match.group(1)

    return "integrity", None


# =============================================================================
# Database Manager
# =============================================================================


class DatabaseManager:
    """
    Manages the SQLite database file and connections.

    Example:
        db = DatabaseManager("app.db")
        with db.connection() as conn:
            conn.execute("SELECT 1")
    """

    def __init__(self, db_path: str | Path = ".schemacrud/data.db"):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        """Ensure the database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """
        Get a transactional connection.

        Yields:
            SQLite connection with ``sqlite3.Row`` rows and foreign keys enforced
        """
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def execute_script(self, sql: str) -> None:
        """Run a multi-statement script (schema setup, fixtures)."""
        with self.connection() as conn:
            conn.executescript(sql)

    @property
    def placeholder(self) -> str:
        """Return the SQL placeholder style."""
        return "?"
