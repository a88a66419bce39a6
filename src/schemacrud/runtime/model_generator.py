"""
Model generator - generates Pydantic payload models from schema documents.

Create and update payloads are validated by models built at runtime from a
schema's writable fields. Field types, length bounds, patterns and numeric
bounds become Pydantic constraints; choice options become ``Literal`` types.
Pydantic errors are translated into the engine's ``ValidationError`` with the
schema rule that failed (``required``, ``length``, ``email``, ``min``, ...).
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from functools import cached_property
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    create_model,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError

from schemacrud.runtime.errors import ValidationError
from schemacrud.specs.schema import CHOICE_TYPES, SchemaDoc

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
URL_PATTERN = r"(?i)^https?://[^\s/$.?#].[^\s]*$"

# =============================================================================
# Type Mapping
# =============================================================================


def _field_type_to_python(field_type: str) -> Any:
    """Map schema field types to Python types."""
    mapping: dict[str, Any] = {
        "integer": int,
        "decimal": Decimal,
        "float": float,
        "boolean": bool,
        "date": date,
        "datetime": datetime,
        "json": Any,
        "smartlookup": Any,
    }
    return mapping.get(field_type, str)


# Rule reported when a value cannot be parsed as the field's type
_TYPE_RULES: dict[str, str] = {
    "integer": "integer",
    "decimal": "numeric",
    "float": "numeric",
    "boolean": "boolean",
    "date": "date",
    "datetime": "datetime",
}

# Pydantic error type -> schema rule
_ERROR_RULES: dict[str, str] = {
    "string_too_short": "length",
    "string_too_long": "length",
    "greater_than_equal": "min",
    "less_than_equal": "max",
    "literal_error": "in",
}


def _split_csv(value: Any) -> Any:
    """Multiselect values may arrive as ``"a, b"``."""
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def _is_required(field_def: Any) -> bool:
    return bool(field_def.required or (field_def.validation or {}).get("required"))


# =============================================================================
# Base Model
# =============================================================================


class PayloadModel(BaseModel):
    """Base for generated payload models: trimmed text, blank means None."""

    model_config = ConfigDict(
        extra="ignore",
        str_strip_whitespace=True,
        coerce_numbers_to_str=True,
        regex_engine="python-re",
    )

    @model_validator(mode="before")
    @classmethod
    def _blank_to_none(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: None if isinstance(v, str) and not v.strip() else v for k, v in data.items()
            }
        return data


# =============================================================================
# Field Definitions
# =============================================================================


def _python_type(field_def: Any) -> Any:
    rules = field_def.validation or {}
    if field_def.type in CHOICE_TYPES:
        allowed = rules.get("in") or field_def.option_values()
        member = Literal[tuple(allowed)] if allowed else str  # type: ignore[valid-type]
        if field_def.type == "multiselect":
            return Annotated[list[member], BeforeValidator(_split_csv)]  # type: ignore[valid-type]
        return member
    if rules.get("integer"):
        return int
    if rules.get("numeric"):
        return Decimal
    python_type = _field_type_to_python(field_def.type)
    allowed = rules.get("in")
    if python_type is str and isinstance(allowed, (list, tuple)) and allowed:
        return Literal[tuple(allowed)]  # type: ignore[valid-type]
    return python_type


def _pattern(field_def: Any) -> tuple[str, str] | None:
    """``(pattern, rule)`` for the field's text pattern; regex wins over email and url."""
    rules = field_def.validation or {}
    regex = rules.get("regex") or rules.get("pattern")
    if regex:
        return str(regex), "regex"
    if rules.get("email") or field_def.type == "email":
        return EMAIL_PATTERN, "email"
    if rules.get("url") or field_def.type == "url":
        return URL_PATTERN, "url"
    return None


def _build_field_info(key: str, field_def: Any, *, partial: bool) -> tuple[Any, Any]:
    """
    Build the ``(type, FieldInfo)`` pair for create_model.

    Create payloads must carry required fields. Update payloads may leave
    them out but may not set them to None.
    """
    python_type = _python_type(field_def)
    rules = field_def.validation or {}
    field_kwargs: dict[str, Any] = {"alias": key}

    if field_def.label:
        field_kwargs["description"] = field_def.label

    if python_type is str:
        length = rules.get("length")
        if isinstance(length, dict):
            if length.get("min") is not None:
                field_kwargs["min_length"] = int(length["min"])
            if length.get("max") is not None:
                field_kwargs["max_length"] = int(length["max"])
        elif isinstance(length, int) and not isinstance(length, bool):
            field_kwargs["max_length"] = length
        pattern = _pattern(field_def)
        if pattern:
            field_kwargs["pattern"] = pattern[0]

    if python_type in (int, float, Decimal):
        lower = rules.get("min", getattr(field_def, "min", None))
        upper = rules.get("max", getattr(field_def, "max", None))
        if lower is not None:
            field_kwargs["ge"] = lower
        if upper is not None:
            field_kwargs["le"] = upper

    required = _is_required(field_def) and field_def.default is None
    if required and not partial:
        return (python_type, Field(**field_kwargs))
    if required:
        return (python_type, Field(default=None, **field_kwargs))
    if python_type is Any:
        return (Any, Field(default=None, **field_kwargs))
    return (python_type | None, Field(default=None, **field_kwargs))


def _writable_fields(schema: SchemaDoc) -> list[tuple[str, Any]]:
    return [(k, f) for k, f in schema.all_fields().items() if k.strip() and f.is_writable]


def _model_name(schema: SchemaDoc) -> str:
    return "".join(part.title() for part in schema.model.split("_"))


def generate_create_schema(schema: SchemaDoc, name_suffix: str = "Create") -> type[BaseModel]:
    """
    Generate a Pydantic model validating create payloads.

    Fields are declared under positional names and aliased to their schema
    keys, so keys such as ``model_config`` never clash with BaseModel.
    """
    field_definitions = {
        f"f{i}": _build_field_info(key, field_def, partial=False)
        for i, (key, field_def) in enumerate(_writable_fields(schema))
    }
    return create_model(  # type: ignore[call-overload]
        f"{_model_name(schema)}{name_suffix}",
        __base__=PayloadModel,
        __doc__=f"Create schema for {schema.model}",
        **field_definitions,
    )


def generate_update_schema(schema: SchemaDoc, name_suffix: str = "Update") -> type[BaseModel]:
    """Generate a Pydantic model validating partial update payloads."""
    field_definitions = {
        f"f{i}": _build_field_info(key, field_def, partial=True)
        for i, (key, field_def) in enumerate(_writable_fields(schema))
    }
    return create_model(  # type: ignore[call-overload]
        f"{_model_name(schema)}{name_suffix}",
        __base__=PayloadModel,
        __doc__=f"Update schema for {schema.model}",
        **field_definitions,
    )


# =============================================================================
# Validator
# =============================================================================


class PayloadValidator:
    """
    Validates and coerces mutation payloads through the generated models.

    Example:
        validator = PayloadValidator(users_schema)
        clean = validator.validate({"user_name": "bob", "email": "bob@example.com"})
    """

    def __init__(self, schema: SchemaDoc):
        self.schema = schema
        self.fields = schema.all_fields()

    @cached_property
    def create_model(self) -> type[BaseModel]:
        return generate_create_schema(self.schema)

    @cached_property
    def update_model(self) -> type[BaseModel]:
        return generate_update_schema(self.schema)

    def validate(
        self,
        payload: dict[str, Any],
        *,
        partial: bool = False,
        action: str = "create",
    ) -> dict[str, Any]:
        """
        Validate a payload.

        Args:
            payload: Field values keyed by field name
            partial: Validate against the update model (required fields may be absent)
            action: Action name reported in errors

        Returns:
            The submitted fields with coerced values

        Raises:
            ValidationError: For the first field that fails
        """
        model = self.update_model if partial else self.create_model
        try:
            instance = model.model_validate(payload)
        except PydanticValidationError as e:
            raise self._translate(e, action) from None
        return instance.model_dump(by_alias=True, exclude_unset=True)

    def validate_value(self, key: str, value: Any, *, action: str = "update") -> Any:
        """Validate and coerce a single field value."""
        return self.validate({key: value}, partial=True, action=action).get(key)

    def _translate(self, exc: PydanticValidationError, action: str) -> ValidationError:
        error = exc.errors()[0]
        key = str(error["loc"][0]) if error["loc"] else ""
        rule = self._rule_for(key, error)
        if rule == "required":
            message = f"Field '{key}' is required"
        else:
            message = f"Field '{key}' failed validation rule '{rule}': {error['msg']}"
        return ValidationError(key, rule, message, model=self.schema.model, action=action)

    def _rule_for(self, key: str, error: Any) -> str:
        kind = error["type"]
        if kind == "missing" or error.get("input") is None:
            return "required"
        field_def = self.fields.get(key)
        if kind == "string_pattern_mismatch" and field_def is not None:
            pattern = _pattern(field_def)
            return pattern[1] if pattern else "regex"
        if kind in _ERROR_RULES:
            return _ERROR_RULES[kind]
        if field_def is not None:
            rules = field_def.validation or {}
            if rules.get("integer"):
                return "integer"
            if rules.get("numeric"):
                return "numeric"
            if field_def.type in _TYPE_RULES:
                return _TYPE_RULES[field_def.type]
        return kind
