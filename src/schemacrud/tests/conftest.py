"""
Shared fixtures: schema documents for a users/roles/permissions model and a
seeded SQLite database.

Seed data:
- user 1 (alice) holds roles 1 and 2; user 2 (bob) holds role 3; user 3 (carol) none
- role 1 grants permission 5; role 2 grants 5 and 6; role 3 grants 7
- alice has two activities, bob one
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import pytest

from schemacrud.runtime.config import EngineConfig
from schemacrud.runtime.engine import CrudEngine
from schemacrud.runtime.repository import DatabaseManager
from schemacrud.runtime.schema_store import SchemaStore

ALL_PERMISSIONS = frozenset(
    {
        "uri_users",
        "create_user",
        "update_user_field",
        "delete_user",
        "view_salary",
        "uri_roles",
    }
)

USERS_SCHEMA: dict[str, Any] = {
    "model": "users",
    "title": "Users",
    "singular_title": "User",
    "title_field": "user_name",
    "permissions": {
        "read": "uri_users",
        "create": "create_user",
        "update": "update_user_field",
        "delete": "delete_user",
    },
    "actions": [
        {"key": "toggle_enabled", "type": "field_update", "field": "flag_enabled", "toggle": True},
        {"key": "disable", "type": "field_update", "field": "flag_enabled", "value": False},
        {"key": "password_action", "type": "field_update", "label": "Set password"},
        {"key": "reset_password", "type": "api_call", "permission": "update_user_field"},
    ],
    "default_sort": {"user_name": "asc"},
    "fields": {
        "id": {
            "type": "integer",
            "auto_increment": True,
            "readonly": True,
            "sortable": True,
            "show_in": ["list", "detail"],
        },
        "user_name": {
            "type": "string",
            "label": "Username",
            "sortable": True,
            "filterable": True,
            "required": True,
            "validation": {"length": {"min": 1, "max": 50}},
        },
        "first_name": {"type": "string", "sortable": True, "filterable": True},
        "email": {
            "type": "email",
            "filterable": True,
            "required": True,
            "validation": {"email": True},
        },
        "flag_enabled": {"type": "boolean", "sortable": True, "ui": "toggle"},
        "password": {"type": "password"},
        "salary": {"type": "decimal", "permission": "view_salary"},
        "full_name": {"type": "computed", "sortable": True, "filterable": True},
    },
    "details": [
        {
            "model": "activities",
            "foreign_key": "user_id",
            "list_fields": ["occurred_at", "description"],
        }
    ],
    "relationships": [
        {
            "name": "roles",
            "type": "many_to_many",
            "pivot_table": "role_users",
            "foreign_key": "user_id",
            "related_key": "role_id",
        },
        {
            "name": "permissions",
            "type": "belongs_to_many_through",
            "through": "roles",
            "first_pivot_table": "role_users",
            "first_foreign_key": "user_id",
            "first_related_key": "role_id",
            "second_pivot_table": "permission_roles",
            "second_foreign_key": "role_id",
            "second_related_key": "permission_id",
        },
    ],
}

ROLES_SCHEMA: dict[str, Any] = {
    "model": "roles",
    "permissions": {"read": "uri_roles"},
    "title_field": "name",
    "fields": {
        "id": {"type": "integer", "auto_increment": True, "sortable": True},
        "slug": {"type": "string", "sortable": True, "filterable": True},
        "name": {"type": "string", "sortable": True, "filterable": True},
    },
    "relationships": [
        {
            "name": "permissions",
            "type": "many_to_many",
            "pivot_table": "permission_roles",
            "foreign_key": "role_id",
            "related_key": "permission_id",
        },
        {
            "name": "users",
            "type": "many_to_many",
            "pivot_table": "role_users",
            "foreign_key": "role_id",
            "related_key": "user_id",
        },
    ],
}

PERMISSIONS_SCHEMA: dict[str, Any] = {
    "model": "permissions",
    "fields": {
        "id": {"type": "integer", "auto_increment": True, "sortable": True},
        "slug": {"type": "string", "sortable": True, "filterable": True},
        "name": {"type": "string", "sortable": True, "filterable": True},
    },
}

ACTIVITIES_SCHEMA: dict[str, Any] = {
    "model": "activities",
    "fields": {
        "id": {"type": "integer", "auto_increment": True, "sortable": True},
        "user_id": {"type": "integer", "listable": False},
        "occurred_at": {"type": "datetime", "sortable": True},
        "description": {"type": "text", "filterable": True},
    },
}

DDL = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_name TEXT NOT NULL UNIQUE,
    first_name TEXT,
    email TEXT NOT NULL,
    flag_enabled INTEGER NOT NULL DEFAULT 1,
    password TEXT,
    salary REAL
);
CREATE TABLE roles (id INTEGER PRIMARY KEY AUTOINCREMENT, slug TEXT NOT NULL, name TEXT);
CREATE TABLE permissions (id INTEGER PRIMARY KEY AUTOINCREMENT, slug TEXT NOT NULL, name TEXT);
CREATE TABLE activities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    occurred_at TEXT,
    description TEXT
);
CREATE TABLE role_users (
    user_id INTEGER NOT NULL REFERENCES users(id),
    role_id INTEGER NOT NULL REFERENCES roles(id),
    created_at TEXT,
    PRIMARY KEY (user_id, role_id)
);
CREATE TABLE permission_roles (
    permission_id INTEGER NOT NULL REFERENCES permissions(id),
    role_id INTEGER NOT NULL REFERENCES roles(id),
    PRIMARY KEY (permission_id, role_id)
);

INSERT INTO users (id, user_name, first_name, email, flag_enabled, password, salary) VALUES
    (1, 'alice', 'Alice', 'alice@example.com', 1, 'x', 1000.0),
    (2, 'bob', 'Bob', 'bob@example.com', 1, 'y', 2000.0),
    (3, 'carol', 'Carol', 'carol@example.org', 0, 'z', 3000.0);
INSERT INTO roles (id, slug, name) VALUES
    (1, 'site-admin', 'Site Administrator'),
    (2, 'group-admin', 'Group Administrator'),
    (3, 'user', 'User');
INSERT INTO permissions (id, slug, name) VALUES
    (5, 'uri_users', 'View users'),
    (6, 'create_user', 'Create user'),
    (7, 'delete_user', 'Delete user');
INSERT INTO role_users (user_id, role_id) VALUES (1, 1), (1, 2), (2, 3);
INSERT INTO permission_roles (permission_id, role_id) VALUES (5, 1), (5, 2), (6, 2), (7, 3);
INSERT INTO activities (id, user_id, occurred_at, description) VALUES
    (1, 1, '2026-01-01T10:00:00', 'Signed in'),
    (2, 1, '2026-01-02T10:00:00', 'Updated profile'),
    (3, 2, '2026-01-03T10:00:00', 'Signed in');
"""


@pytest.fixture
def schema_docs() -> dict[str, dict[str, Any]]:
    """Fresh copies of the raw schema documents, keyed by model."""
    return {
        doc["model"]: copy.deepcopy(doc)
        for doc in (USERS_SCHEMA, ROLES_SCHEMA, PERMISSIONS_SCHEMA, ACTIVITIES_SCHEMA)
    }


@pytest.fixture
def all_permissions() -> frozenset[str]:
    """Every permission the fixture schemas mention."""
    return ALL_PERMISSIONS


@pytest.fixture
def store(schema_docs: dict[str, dict[str, Any]]) -> SchemaStore:
    """Store with all four schemas registered."""
    store = SchemaStore()
    for doc in schema_docs.values():
        store.register(doc)
    return store


@pytest.fixture
def db(tmp_path: Path) -> DatabaseManager:
    """Seeded SQLite database."""
    manager = DatabaseManager(tmp_path / "test.db")
    manager.execute_script(DDL)
    return manager


@pytest.fixture
def config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(schema_dir=tmp_path / "schema", db_path=tmp_path / "test.db")


@pytest.fixture
def engine(store: SchemaStore, db: DatabaseManager, config: EngineConfig) -> CrudEngine:
    return CrudEngine(store, db, config)
