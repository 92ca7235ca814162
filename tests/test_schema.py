"""Tests for schema compatibility, inference, validation and flattening."""

import pytest

from flowcore.core.models import FlowParameter, NodeInstance, NodeType
from flowcore.core.node_types import (
    API_CALL_BASE_OUTPUT,
    category_of,
    get_node_type,
    transform_node_types,
)
from flowcore.core.schema import (
    CompatibilityStatus,
    IssueSeverity,
    IssueType,
    check_schema_compatibility,
    create_user_intent_output_schema,
    flatten_schema,
    flow_parameters_to_schema,
    infer_schema_from_sample,
    validate_data_against_schema,
)


def _issue_types(result):
    return [(i.type, i.path) for i in result.issues]


class TestCheckSchemaCompatibility:
    """Tests for producer -> consumer compatibility."""

    consumer = {"type": "object", "required": ["a"], "properties": {"a": {"type": "string"}}}

    def test_matching_field_is_compatible(self):
        result = check_schema_compatibility(
            {"type": "object", "properties": {"a": {"type": "string"}}}, self.consumer
        )

        assert result.status == CompatibilityStatus.COMPATIBLE
        assert result.issues == []
        assert result.is_compatible

    def test_type_mismatch_is_incompatible(self):
        result = check_schema_compatibility(
            {"type": "object", "properties": {"a": {"type": "object"}}}, self.consumer
        )

        assert result.status == CompatibilityStatus.INCOMPATIBLE
        assert _issue_types(result) == [(IssueType.TYPE_MISMATCH, "a")]

    def test_number_to_string_is_risky_coercion(self):
        result = check_schema_compatibility(
            {"type": "object", "properties": {"a": {"type": "number"}}}, self.consumer
        )

        assert result.status == CompatibilityStatus.RISKY
        assert result.issues[0].severity == IssueSeverity.RISKY
        assert result.issues[0].type == IssueType.TYPE_MISMATCH

    def test_missing_required_field_is_incompatible(self):
        result = check_schema_compatibility(
            {"type": "object", "properties": {"b": {"type": "string"}}}, self.consumer
        )

        assert result.status == CompatibilityStatus.INCOMPATIBLE
        assert _issue_types(result) == [(IssueType.MISSING_REQUIRED_FIELD, "a")]

    def test_empty_declared_properties_still_closed(self):
        result = check_schema_compatibility({"type": "object", "properties": {}}, self.consumer)
        assert result.status == CompatibilityStatus.INCOMPATIBLE

    @pytest.mark.parametrize("producer", [{"type": "object"}, {}, {"additionalProperties": True}])
    def test_undeclared_required_field_is_incompatible(self, producer):
        result = check_schema_compatibility(producer, self.consumer)

        assert result.status == CompatibilityStatus.INCOMPATIBLE
        assert _issue_types(result) == [(IssueType.MISSING_REQUIRED_FIELD, "a")]

    def test_untyped_producer_without_required_fields_is_risky(self):
        result = check_schema_compatibility({}, {"type": "object", "properties": {"a": {"type": "string"}}})

        assert result.status == CompatibilityStatus.RISKY
        assert _issue_types(result) == [(IssueType.UNKNOWN_FIELD, "")]

    def test_integer_to_number_is_compatible(self):
        result = check_schema_compatibility({"type": "integer"}, {"type": "number"})
        assert result.status == CompatibilityStatus.COMPATIBLE

    def test_enum_of_compatible_type(self):
        result = check_schema_compatibility({"enum": ["a", "b"]}, {"type": "string"})
        assert result.status == CompatibilityStatus.COMPATIBLE

    def test_untyped_producer_field_is_risky(self):
        result = check_schema_compatibility(
            {"type": "object", "properties": {"a": {}}}, self.consumer
        )

        assert result.status == CompatibilityStatus.RISKY
        assert _issue_types(result) == [(IssueType.UNKNOWN_FIELD, "a")]

    def test_nested_paths(self):
        producer = {
            "type": "object",
            "properties": {
                "user": {
                    "type": "object",
                    "properties": {
                        "tags": {"type": "array", "items": {"type": "object", "properties": {"id": {"type": "string"}}}}
                    },
                }
            },
        }
        consumer = {
            "type": "object",
            "properties": {
                "user": {
                    "type": "object",
                    "properties": {
                        "tags": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "required": ["id"],
                                "properties": {"id": {"type": "integer"}},
                            },
                        }
                    },
                }
            },
        }

        result = check_schema_compatibility(producer, consumer)

        assert result.status == CompatibilityStatus.INCOMPATIBLE
        assert _issue_types(result) == [(IssueType.TYPE_MISMATCH, "user.tags[].id")]

    def test_format_mismatch_is_risky(self):
        result = check_schema_compatibility(
            {"type": "string", "format": "date"}, {"type": "string", "format": "date-time"}
        )

        assert result.status == CompatibilityStatus.RISKY
        assert result.issues[0].type == IssueType.FORMAT_MISMATCH

    def test_extra_producer_fields_ignored(self):
        producer = {
            "type": "object",
            "properties": {"a": {"type": "string"}, "extra": {"type": "boolean"}},
        }
        assert check_schema_compatibility(producer, self.consumer).status == CompatibilityStatus.COMPATIBLE

    def test_missing_consumer_schema_is_compatible(self):
        assert check_schema_compatibility({"type": "string"}, None).status == CompatibilityStatus.COMPATIBLE

    def test_missing_producer_schema_is_risky(self):
        assert check_schema_compatibility(None, self.consumer).status == CompatibilityStatus.RISKY

    def test_inferred_producer_downgrades_to_risky(self):
        result = check_schema_compatibility(
            {"type": "object", "properties": {"a": {"type": "string"}}},
            self.consumer,
            producer_inferred=True,
        )

        assert result.status == CompatibilityStatus.RISKY
        assert result.issues[-1].type == IssueType.INFERRED_SCHEMA

    def test_inferred_does_not_mask_incompatible(self):
        result = check_schema_compatibility(
            {"type": "object", "properties": {}}, self.consumer, producer_inferred=True
        )

        assert result.status == CompatibilityStatus.INCOMPATIBLE
        assert all(i.type != IssueType.INFERRED_SCHEMA for i in result.issues)


class TestTriggerSchemas:
    """Tests for parameter and UserIntent schemas."""

    params = [
        FlowParameter(name="city", type="string", description="City name"),
        FlowParameter(name="days", type="integer", optional=True),
    ]

    def test_flow_parameters_to_schema(self):
        schema = flow_parameters_to_schema(self.params)

        assert schema == {
            "type": "object",
            "properties": {
                "city": {"type": "string", "description": "City name"},
                "days": {"type": "integer"},
            },
            "required": ["city"],
        }

    def test_user_intent_output_schema(self):
        schema = create_user_intent_output_schema(self.params)

        assert schema["required"] == ["type", "triggered", "toolName", "city"]
        assert schema["properties"]["type"]["const"] == "trigger"
        assert "days" in schema["properties"]

    def test_user_intent_schema_from_node(self):
        node = NodeInstance(
            name="Start",
            slug="start",
            type="UserIntent",
            parameters={"parameters": [{"name": "q"}]},
        )
        assert "q" in create_user_intent_output_schema(node)["properties"]

    def test_non_trigger_node_rejected(self):
        node = NodeInstance(name="Done", slug="done", type="Return")
        with pytest.raises(ValueError, match="not a UserIntent"):
            create_user_intent_output_schema(node)


class TestInferSchemaFromSample:
    """Tests for schema inference."""

    def test_object_sample(self):
        schema = infer_schema_from_sample(
            {
                "id": "123e4567-e89b-12d3-a456-426614174000",
                "email": "a@example.com",
                "created": "2024-01-02T03:04:05Z",
                "day": "2024-01-02",
                "link": "https://example.com",
                "count": 3,
                "ratio": 0.5,
                "whole": 2.0,
                "ok": True,
                "missing": None,
                "items": [{"name": "x"}],
            }
        )
        props = schema["properties"]

        assert props["id"] == {"type": "string", "format": "uuid"}
        assert props["email"]["format"] == "email"
        assert props["created"]["format"] == "date-time"
        assert props["day"]["format"] == "date"
        assert props["link"]["format"] == "uri"
        assert props["count"] == {"type": "integer"}
        assert props["ratio"] == {"type": "number"}
        assert props["whole"] == {"type": "integer"}
        assert props["ok"] == {"type": "boolean"}
        assert props["items"]["items"]["properties"]["name"] == {"type": "string"}
        assert "missing" not in schema["required"]
        assert "count" in schema["required"]

    def test_empty_array(self):
        assert infer_schema_from_sample([]) == {"type": "array"}

    def test_depth_limit(self):
        schema = infer_schema_from_sample({"a": {"b": {"c": 1}}}, max_depth=2)
        assert schema["properties"]["a"]["properties"]["b"] == {}


class TestValidateDataAgainstSchema:
    """Tests for run-time payload validation."""

    schema = {
        "type": "object",
        "required": ["name"],
        "properties": {"name": {"type": "string"}, "age": {"type": "integer"}},
    }

    def test_valid(self):
        result = validate_data_against_schema({"name": "Ada", "age": 36}, self.schema)

        assert result.valid
        assert result.errors == []

    def test_errors_carry_paths(self):
        result = validate_data_against_schema({"age": "old"}, self.schema)

        assert not result.valid
        assert any(e.startswith("/: ") and "name" in e for e in result.errors)
        assert any(e.startswith("/age: ") for e in result.errors)

    def test_format_checked(self):
        result = validate_data_against_schema("not-an-email", {"type": "string", "format": "email"})
        assert not result.valid


class TestFlattenSchema:
    """Tests for field-picker flattening."""

    def test_nested_and_array_paths(self):
        schema = {
            "type": "object",
            "required": ["user"],
            "properties": {
                "user": {
                    "type": "object",
                    "properties": {"name": {"type": "string", "description": "Full name"}},
                },
                "tags": {"type": "array", "items": {"type": "object", "properties": {"id": {}}}},
            },
        }

        fields = {f.path: f for f in flatten_schema(schema)}

        assert list(fields) == ["user", "user.name", "tags", "tags[].id"]
        assert fields["user"].required
        assert fields["user.name"].description == "Full name"
        assert fields["tags[].id"].type == "any"

    def test_static_and_dynamic_sources(self):
        fields = flatten_schema(
            {"type": "object", "properties": {"status": {"type": "integer"}, "city": {"type": "string"}}},
            static_fields={"status"},
        )

        assert [(f.path, f.source) for f in fields] == [("status", "static"), ("city", "dynamic")]

    def test_empty(self):
        assert flatten_schema(None) == []


class TestNodeTypeRegistry:
    """Tests for per-kind schema definitions."""

    def test_every_kind_registered(self):
        for node_type in NodeType:
            assert get_node_type(node_type).name == node_type

    def test_categories(self):
        assert category_of(NodeType.USER_INTENT).value == "trigger"
        assert category_of(NodeType.INTERFACE).value == "interface"
        assert category_of(NodeType.LINK).value == "action"
        assert [d.name for d in transform_node_types()] == [NodeType.JAVASCRIPT_CODE_TRANSFORM]

    def test_api_call_output_merges_resolved_schema(self):
        node = NodeInstance(
            name="Fetch",
            slug="fetch",
            type="ApiCall",
            parameters={"resolved_output_schema": {"type": "object", "properties": {"temp": {"type": "number"}}}},
        )

        schema = get_node_type(node.type).resolve_output_schema(node.parameters)

        assert "temp" in schema["properties"]
        assert set(API_CALL_BASE_OUTPUT["properties"]) <= set(schema["properties"])

    def test_interface_input_from_parameters(self):
        input_schema = {"type": "object", "properties": {"rows": {"type": "array"}}}
        node = NodeInstance(
            name="Table", slug="table", type="Interface", parameters={"input_schema": input_schema}
        )

        assert get_node_type(node.type).resolve_input_schema(node.parameters) == input_schema

    def test_link_output_from_fields(self):
        node = NodeInstance(name="Link", slug="link", type="Link", parameters={"fields": {"x": "{{a.b}}"}})

        schema = get_node_type(node.type).resolve_output_schema(node.parameters)

        assert schema["required"] == ["x"]

    def test_transform_without_resolved_schema_is_unknown(self):
        node = NodeInstance(name="T", slug="t", type="JavaScriptCodeTransform")
        assert get_node_type(node.type).resolve_output_schema(node.parameters) is None
