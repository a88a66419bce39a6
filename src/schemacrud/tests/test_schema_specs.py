"""
Tests for schema document types.

Tests field normalization, discriminated field types, context derivation,
and document-level defaults, SQL identifier checks, actions and relationship
actions.
"""

from __future__ import annotations

from typing import Any

import pytest
from pydantic import ValidationError as PydanticValidationError

from schemacrud.runtime.errors import SchemaValidationError
from schemacrud.runtime.schema_store import SchemaStore
from schemacrud.specs import (
    ActionDef,
    BooleanFieldDef,
    ChoiceFieldDef,
    ComputedFieldDef,
    LookupFieldDef,
    RelationshipDef,
    SchemaDoc,
    TextFieldDef,
    normalize_field,
)

# =============================================================================
# normalize_field Tests
# =============================================================================


class TestNormalizeField:
    """Tests for raw field normalization."""

    def test_missing_type_defaults_to_string(self) -> None:
        """Test that a field without a type becomes a string field."""
        data = normalize_field("name", {})

        assert data["type"] == "string"

    def test_legacy_flags_default_to_every_context(self) -> None:
        """Test that a plain field is listed, editable and viewable."""
        data = normalize_field("name", {"type": "string"})

        assert data["show_in"] == ("list", "create", "edit", "detail")

    def test_listable_false_removes_list(self) -> None:
        """Test the legacy listable flag."""
        data = normalize_field("notes", {"type": "text", "listable": False})

        assert data["show_in"] == ("create", "edit", "detail")
        assert "listable" not in data

    def test_password_hidden_from_list_and_detail(self) -> None:
        """Test that password fields only appear in forms by default."""
        data = normalize_field("password", {"type": "password"})

        assert data["show_in"] == ("create", "edit")

    def test_show_in_form_expands(self) -> None:
        """Test that 'form' expands to create and edit."""
        data = normalize_field("name", {"show_in": ["form", "list"]})

        assert data["show_in"] == ("create", "edit", "list")
        assert data["editable"] is True

    def test_show_in_without_form_is_not_editable(self) -> None:
        """Test that explicit show_in without a form context disables editing."""
        data = normalize_field("id", {"type": "integer", "show_in": ["list", "detail"]})

        assert data["editable"] is False

    def test_password_never_shown_in_detail(self) -> None:
        """Test that an explicit detail context is dropped for passwords."""
        data = normalize_field("password", {"type": "password", "show_in": ["list", "detail"]})

        assert data["show_in"] == ("list",)

    def test_orm_aliases_folded(self) -> None:
        """Test nullable, autoIncrement, length and unique aliases."""
        data = normalize_field(
            "code",
            {"nullable": False, "autoIncrement": False, "length": 12, "unique": True},
        )

        assert data["required"] is True
        assert data["auto_increment"] is False
        assert data["validation"]["length"] == {"max": 12}
        assert data["validation"]["unique"] is True

    def test_validate_alias(self) -> None:
        """Test that 'validate' becomes 'validation'."""
        data = normalize_field("email", {"validate": {"email": True}})

        assert data["validation"] == {"email": True}

    def test_lookup_flattened(self) -> None:
        """Test that a nested lookup block becomes lookup_* keys."""
        data = normalize_field(
            "group_id",
            {"type": "smartlookup", "lookup": {"model": "groups", "id": "id", "desc": "name"}},
        )

        assert data["lookup_model"] == "groups"
        assert data["lookup_id"] == "id"
        assert data["lookup_desc"] == "name"

    def test_computed_type_sets_flag(self) -> None:
        """Test that computed fields are flagged as computed."""
        data = normalize_field("full_name", {"type": "computed"})

        assert data["computed"] is True

    def test_non_object_rejected(self) -> None:
        """Test that a field declared as a scalar is rejected."""
        with pytest.raises(ValueError, match="must be an object"):
            normalize_field("name", "string")


# =============================================================================
# Field Type Tests
# =============================================================================


class TestFieldTypes:
    """Tests for the discriminated field union."""

    def test_field_classes_by_type(self, schema_docs: dict[str, dict[str, Any]]) -> None:
        """Test that each field decodes to the class of its type."""
        users = SchemaDoc.model_validate(schema_docs["users"])

        assert isinstance(users.fields["user_name"], TextFieldDef)
        assert isinstance(users.fields["flag_enabled"], BooleanFieldDef)
        assert isinstance(users.fields["full_name"], ComputedFieldDef)

    def test_presentation_extras_kept(self, schema_docs: dict[str, dict[str, Any]]) -> None:
        """Test that unknown presentation keys survive decoding."""
        schema_docs["users"]["fields"]["first_name"]["width"] = 120
        users = SchemaDoc.model_validate(schema_docs["users"])

        assert users.fields["first_name"].model_extra == {"width": 120}
        assert users.fields["flag_enabled"].ui == "toggle"

    def test_unknown_type_rejected(self) -> None:
        """Test that an unknown field type fails validation."""
        with pytest.raises(PydanticValidationError):
            SchemaDoc.model_validate({"model": "things", "fields": {"x": {"type": "hologram"}}})

    def test_choice_option_values(self) -> None:
        """Test option value extraction from mixed option declarations."""
        doc = SchemaDoc.model_validate(
            {
                "model": "tickets",
                "fields": {
                    "status": {
                        "type": "select",
                        "options": [{"value": "open", "label": "Open"}, "closed"],
                    }
                },
            }
        )
        status = doc.fields["status"]

        assert isinstance(status, ChoiceFieldDef)
        assert status.option_values() == ["open", "closed"]

    def test_lookup_defaults(self) -> None:
        """Test lookup id and description defaults."""
        doc = SchemaDoc.model_validate(
            {"model": "users", "fields": {"group_id": {"type": "smartlookup", "lookup_model": "groups"}}}
        )
        lookup = doc.fields["group_id"]

        assert isinstance(lookup, LookupFieldDef)
        assert lookup.lookup_id == "id"
        assert lookup.lookup_desc == "name"

    def test_writability(self, schema_docs: dict[str, dict[str, Any]]) -> None:
        """Test is_writable for computed, auto-increment and plain fields."""
        users = SchemaDoc.model_validate(schema_docs["users"])

        assert users.fields["user_name"].is_writable
        assert not users.fields["id"].is_writable
        assert not users.fields["full_name"].is_writable


# =============================================================================
# SchemaDoc Tests
# =============================================================================


class TestSchemaDoc:
    """Tests for schema document defaults and derived contexts."""

    def test_defaults_from_model(self) -> None:
        """Test table, title and singular title defaults."""
        doc = SchemaDoc.model_validate({"model": "groups"})

        assert doc.table == "groups"
        assert doc.title == "Groups"
        assert doc.singular_title == "Groups"
        assert doc.primary_key == "id"

    def test_empty_model_rejected(self) -> None:
        """Test that a blank model name fails validation."""
        with pytest.raises(PydanticValidationError):
            SchemaDoc.model_validate({"model": ""})

    def test_derived_contexts(self, schema_docs: dict[str, dict[str, Any]]) -> None:
        """Test the standard contexts derived from show_in."""
        users = SchemaDoc.model_validate(schema_docs["users"])

        assert set(users.contexts) == {"list", "create", "edit", "form", "detail", "meta"}
        assert "password" not in users.contexts["list"].fields
        assert "password" in users.contexts["create"].fields
        assert "id" not in users.contexts["form"].fields
        assert users.contexts["meta"].fields == {}

    def test_default_sort_copied_to_list_context(
        self, schema_docs: dict[str, dict[str, Any]]
    ) -> None:
        """Test that the document default sort lands on the list context."""
        users = SchemaDoc.model_validate(schema_docs["users"])

        assert users.contexts["list"].default_sort == {"user_name": "asc"}

    def test_declared_contexts_kept(self) -> None:
        """Test that declared contexts are used as given."""
        doc = SchemaDoc.model_validate(
            {
                "model": "notes",
                "contexts": {"list": {"fields": {"title": {"sortable": True}}}},
            }
        )

        assert list(doc.contexts) == ["list"]
        assert doc.all_fields()["title"].sortable

    def test_computed_primary_key_rejected(self) -> None:
        """Test that a computed primary key fails validation."""
        with pytest.raises(PydanticValidationError):
            SchemaDoc.model_validate({"model": "things", "fields": {"id": {"type": "computed"}}})

    def test_all_details_includes_legacy_detail(self) -> None:
        """Test that the singular detail follows the plural details."""
        doc = SchemaDoc.model_validate(
            {
                "model": "users",
                "details": [{"model": "activities"}],
                "detail": {"model": "sessions"},
            }
        )

        assert [d.model for d in doc.all_details()] == ["activities", "sessions"]

    def test_lookups(self, schema_docs: dict[str, dict[str, Any]]) -> None:
        """Test relationship and action lookups."""
        users = SchemaDoc.model_validate(schema_docs["users"])

        assert users.get_relationship("roles").pivot_table == "role_users"
        assert users.get_relationship("ghosts") is None
        assert users.get_action("reset_password").permission == "update_user_field"
        assert users.display_name == "User"


class TestRelationshipDef:
    """Tests for relationship declarations."""

    def test_target_defaults_to_name(self) -> None:
        """Test that the target model defaults to the relation name."""
        rel = RelationshipDef(name="roles", type="many_to_many", pivot_table="role_users")

        assert rel.target_model == "roles"
        assert not rel.is_transitive

    def test_through_is_transitive(self) -> None:
        """Test that declaring 'through' makes a relationship transitive."""
        rel = RelationshipDef(name="permissions", type="many_to_many", through="roles")

        assert rel.is_transitive

    def test_unknown_type_rejected(self) -> None:
        """Test that unsupported relationship types fail validation."""
        with pytest.raises(PydanticValidationError):
            RelationshipDef(name="x", type="polymorphic")

    def test_relationship_actions_parsed(self) -> None:
        """Test that per-event relationship actions are decoded."""
        rel = RelationshipDef.model_validate(
            {
                "name": "roles",
                "type": "many_to_many",
                "pivot_table": "role_users",
                "actions": {
                    "on_create": {"attach": [{"related_id": 3, "pivot_data": {"created_at": "now"}}]},
                    "on_update": {"sync": "role_ids"},
                    "on_delete": {"detach": "all"},
                },
            }
        )

        on_create = rel.actions.for_event("on_create")
        assert on_create.attach[0].related_id == 3
        assert on_create.attach[0].pivot_data == {"created_at": "now"}
        assert rel.actions.for_event("on_update").sync == "role_ids"
        assert rel.actions.for_event("on_delete").detach == "all"
        assert RelationshipDef(name="x", type="many_to_many").actions.for_event("on_create") is None

    def test_bad_detach_rejected(self) -> None:
        """Test that detach takes 'all' or a list of ids."""
        with pytest.raises(PydanticValidationError):
            RelationshipDef.model_validate(
                {"name": "roles", "type": "many_to_many", "actions": {"on_delete": {"detach": "some"}}}
            )


class TestActionDef:
    """Tests for declared record actions."""

    def test_target_field_declared(self) -> None:
        """Test that an explicit field wins."""
        assert ActionDef(key="toggle_enabled", field="flag_enabled").target_field == "flag_enabled"

    def test_target_field_from_key(self) -> None:
        """Test that '<field>_action' keys name their field."""
        assert ActionDef(key="password_action").target_field == "password"

    def test_no_target_field(self) -> None:
        assert ActionDef(key="reset").target_field is None
        assert ActionDef(key="_action").target_field is None


# =============================================================================
# SQL Identifier Tests
# =============================================================================


def register(doc: dict[str, Any]) -> None:
    SchemaStore().register(doc)


class TestSqlIdentifiers:
    """Tests that names interpolated into SQL are checked when a schema is decoded."""

    def test_valid_schema_accepted(self, schema_docs: dict[str, dict[str, Any]]) -> None:
        """Test that the fixture schemas decode."""
        for doc in schema_docs.values():
            register(doc)

    def test_field_key_rejected(self) -> None:
        """Test that a field key which is not an identifier fails decoding."""
        with pytest.raises(SchemaValidationError, match="first-name"):
            register({"model": "people", "fields": {"first-name": {"type": "string"}}})

    def test_context_field_key_rejected(self) -> None:
        """Test that context field keys are checked too."""
        with pytest.raises(SchemaValidationError):
            register(
                {"model": "people", "contexts": {"list": {"fields": {"a b": {"sortable": True}}}}}
            )

    def test_computed_key_allowed(self) -> None:
        """Test that computed fields are exempt since they never reach SQL."""
        register({"model": "people", "fields": {"full name": {"type": "computed"}}})

    def test_table_rejected(self) -> None:
        """Test that an invalid table name fails decoding."""
        with pytest.raises(SchemaValidationError, match="table"):
            register({"model": "people", "table": "people; DROP TABLE users"})

    def test_primary_key_rejected(self) -> None:
        """Test that an invalid primary key fails decoding."""
        with pytest.raises(SchemaValidationError, match="primary_key"):
            register({"model": "people", "primary_key": "1id"})

    def test_detail_foreign_key_rejected(self) -> None:
        with pytest.raises(SchemaValidationError):
            register({"model": "people", "details": [{"model": "notes", "foreign_key": "x.y"}]})

    def test_pivot_table_rejected(self) -> None:
        """Test that relationship pivot tables are checked."""
        with pytest.raises(SchemaValidationError, match="pivot_table"):
            register(
                {
                    "model": "people",
                    "relationships": [
                        {"name": "roles", "type": "many_to_many", "pivot_table": "role users"}
                    ],
                }
            )

    def test_default_pivot_keys_checked(self) -> None:
        """Test that keys derived from the model name are checked."""
        with pytest.raises(SchemaValidationError, match="default foreign_key"):
            register(
                {
                    "model": "site-people",
                    "table": "people",
                    "relationships": [
                        {"name": "roles", "type": "many_to_many", "pivot_table": "role_users"}
                    ],
                }
            )

    def test_pivot_data_column_rejected(self) -> None:
        """Test that pivot_data columns in relationship actions are checked."""
        with pytest.raises(SchemaValidationError, match="pivot_data"):
            register(
                {
                    "model": "people",
                    "relationships": [
                        {
                            "name": "roles",
                            "type": "many_to_many",
                            "pivot_table": "role_users",
                            "actions": {
                                "on_create": {
                                    "attach": [
                                        {"related_id": 1, "pivot_data": {"added-at": "now"}}
                                    ]
                                }
                            },
                        }
                    ],
                }
            )

    def test_model_validate_raises_pydantic_error(self) -> None:
        """Test that the check also fires when validating directly."""
        with pytest.raises(PydanticValidationError):
            SchemaDoc.model_validate({"model": "people", "table": "bad table"})
