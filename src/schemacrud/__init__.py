"""
schemacrud - schema-driven CRUD engine

Turns declarative JSON model descriptions into paginated, filtered, sorted
listing queries and one-to-many / many-to-many / nested many-to-many
relationship traversals, with per-action and per-field access control.

This package provides:
- specs: Schema document types (SchemaDoc, FieldDef, RelationshipDef)
- runtime: Store, resolvers, query builder, listing and mutation engines
"""

__version__ = "0.4.0"

from schemacrud.runtime.engine import CrudEngine, CrudRequest, ListQuery
from schemacrud.specs.schema import SchemaDoc

__all__ = ["CrudEngine", "CrudRequest", "ListQuery", "SchemaDoc", "__version__"]
