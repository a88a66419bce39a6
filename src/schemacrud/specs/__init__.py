"""
Schema document type definitions.

This module exports all schema specification types.
"""

from schemacrud.specs.schema import (
    ActionDef,
    BaseFieldDef,
    BooleanFieldDef,
    ChoiceFieldDef,
    ComputedFieldDef,
    ContextDef,
    ContextName,
    DetailDef,
    FieldDef,
    LookupFieldDef,
    NumericFieldDef,
    PasswordFieldDef,
    RelationshipDef,
    RelationType,
    SchemaDoc,
    TemporalFieldDef,
    TextFieldDef,
    normalize_field,
)

__all__ = [
    "ActionDef",
    "BaseFieldDef",
    "BooleanFieldDef",
    "ChoiceFieldDef",
    "ComputedFieldDef",
    "ContextDef",
    "ContextName",
    "DetailDef",
    "FieldDef",
    "LookupFieldDef",
    "NumericFieldDef",
    "PasswordFieldDef",
    "RelationType",
    "RelationshipDef",
    "SchemaDoc",
    "TemporalFieldDef",
    "TextFieldDef",
    "normalize_field",
]
