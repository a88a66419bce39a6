"""
Engine configuration.

Single source of truth for paths, paging limits and the permission policy,
read from ``SCHEMACRUD_*`` environment variables.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import cache
from pathlib import Path

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {value!r}") from e


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration.

    Attributes:
        schema_dir: Directory holding ``<model>.json`` schema documents
        db_path: SQLite database file
        log_dir: Directory for the JSONL log (console only when None)
        default_page_size: Page size used when a request gives none
        max_page_size: Upper bound requests are clamped to
        strict_permissions: Deny actions that declare no permission
        debug: Log plan construction at DEBUG
    """

    schema_dir: Path = Path("schema")
    db_path: Path = Path(".schemacrud/data.db")
    log_dir: Path | None = None
    default_page_size: int = 10
    max_page_size: int = 100
    strict_permissions: bool = False
    debug: bool = False

    def __post_init__(self) -> None:
        if self.default_page_size <= 0:
            raise ValueError("default_page_size must be positive")
        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be >= default_page_size")

    @property
    def log_level(self) -> int:
        return logging.DEBUG if self.debug else logging.INFO

    def clamp_page_size(self, size: int | None) -> int:
        """Apply the default and upper bound to a requested page size.

        Non-positive sizes pass through unchanged so the query builder can
        reject them.
        """
        if size is None:
            return self.default_page_size
        return min(size, self.max_page_size)


@cache
def get_engine_config() -> EngineConfig:
    """Load engine configuration from environment variables.

    Environment variables:
        - SCHEMACRUD_SCHEMA_DIR → schema_dir
        - SCHEMACRUD_DB_PATH → db_path
        - SCHEMACRUD_LOG_DIR → log_dir
        - SCHEMACRUD_DEFAULT_PAGE_SIZE → default_page_size (10)
        - SCHEMACRUD_MAX_PAGE_SIZE → max_page_size (100)
        - SCHEMACRUD_STRICT_PERMISSIONS → strict_permissions
        - SCHEMACRUD_DEBUG → debug
    """
    log_dir = os.environ.get("SCHEMACRUD_LOG_DIR")
    return EngineConfig(
        schema_dir=Path(os.environ.get("SCHEMACRUD_SCHEMA_DIR", "schema")),
        db_path=Path(os.environ.get("SCHEMACRUD_DB_PATH", ".schemacrud/data.db")),
        log_dir=Path(log_dir) if log_dir else None,
        default_page_size=_env_int("SCHEMACRUD_DEFAULT_PAGE_SIZE", 10),
        max_page_size=_env_int("SCHEMACRUD_MAX_PAGE_SIZE", 100),
        strict_permissions=_env_bool("SCHEMACRUD_STRICT_PERMISSIONS"),
        debug=_env_bool("SCHEMACRUD_DEBUG"),
    )
