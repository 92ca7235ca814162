"""Structural JSON Schema compatibility checking and schema utilities.

The checker compares what a producer declares it outputs against what a
consumer declares it needs. It never looks at run-time data; for that see
``validate_data_against_schema``.

Severity model:
- ``incompatible``: provably wrong (missing required field, primitive mismatch)
- ``risky``: cannot be proven either way (untyped or inferred producer data,
  lossy coercion, format disagreement)
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from jsonschema import Draft7Validator
from pydantic import BaseModel, Field

from flowcore.core.models import FlowParameter, JSONSchema, NodeInstance, NodeType


class CompatibilityStatus(str, Enum):
    COMPATIBLE = "compatible"
    RISKY = "risky"
    INCOMPATIBLE = "incompatible"


class IssueType(str, Enum):
    MISSING_REQUIRED_FIELD = "missing_required_field"
    TYPE_MISMATCH = "type_mismatch"
    UNKNOWN_FIELD = "unknown_field"
    FORMAT_MISMATCH = "format_mismatch"
    INFERRED_SCHEMA = "inferred_schema"


class IssueSeverity(str, Enum):
    RISKY = "risky"
    INCOMPATIBLE = "incompatible"


class CompatibilityIssue(BaseModel):
    type: IssueType
    severity: IssueSeverity
    path: str
    message: str
    source_value: str | None = None
    target_value: str | None = None


class SchemaCompatibilityResult(BaseModel):
    """Outcome of comparing one producer/consumer schema pair."""

    status: CompatibilityStatus
    issues: list[CompatibilityIssue] = Field(default_factory=list)
    source_schema: JSONSchema | None = None
    target_schema: JSONSchema | None = None
    validated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_compatible(self) -> bool:
        return self.status == CompatibilityStatus.COMPATIBLE


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class FlattenedSchemaField(BaseModel):
    """One addressable field of a schema, for field pickers and references."""

    path: str  # "data.items[].name"
    type: str
    description: str | None = None
    source: str | None = None  # static | dynamic
    required: bool = False


# ========== Compatibility ==========

PRIMITIVE_TYPES = {"string", "number", "integer", "boolean", "null"}


def _schema_type(schema: JSONSchema) -> str | None:
    """Primary type of a schema, or None if it accepts anything.

    List types use the first non-null entry. Untyped schemas are typed by
    their shape keywords or by the values of ``enum``/``const``.
    """
    declared = schema.get("type")
    if isinstance(declared, list):
        non_null = [t for t in declared if t != "null"]
        declared = non_null[0] if non_null else (declared[0] if declared else None)
    if declared:
        return declared
    if "properties" in schema:
        return "object"
    if "items" in schema:
        return "array"
    values = schema.get("enum") or ([schema["const"]] if "const" in schema else [])
    value_types = {_json_type(v) for v in values}
    if len(value_types) == 1:
        return value_types.pop()
    return None


def _json_type(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def _join(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


class _Checker:
    def __init__(self) -> None:
        self.issues: list[CompatibilityIssue] = []

    def add(
        self,
        issue_type: IssueType,
        severity: IssueSeverity,
        path: str,
        message: str,
        source_value: str | None = None,
        target_value: str | None = None,
    ) -> None:
        self.issues.append(
            CompatibilityIssue(
                type=issue_type,
                severity=severity,
                path=path,
                message=message,
                source_value=source_value,
                target_value=target_value,
            )
        )

    def compare(self, producer: JSONSchema, consumer: JSONSchema, path: str) -> None:
        label = path or "<root>"
        consumer_type = _schema_type(consumer)
        if consumer_type is None:
            return

        producer_type = _schema_type(producer)
        if producer_type is None and consumer_type == "object" and consumer.get("required"):
            # An untyped source declares none of the fields the target requires
            self.compare_objects(producer, consumer, path)
            return
        if producer_type is None:
            self.add(
                IssueType.UNKNOWN_FIELD,
                IssueSeverity.RISKY,
                path,
                f"'{label}' has no declared type in the source; expected {consumer_type}",
                target_value=consumer_type,
            )
            return

        if producer_type != consumer_type:
            if producer_type == "integer" and consumer_type == "number":
                pass
            elif producer_type in ("number", "integer", "boolean") and consumer_type == "string":
                self.add(
                    IssueType.TYPE_MISMATCH,
                    IssueSeverity.RISKY,
                    path,
                    f"Type coercion: '{label}' is {producer_type} in source, "
                    f"{consumer_type} in target",
                    source_value=producer_type,
                    target_value=consumer_type,
                )
            else:
                self.add(
                    IssueType.TYPE_MISMATCH,
                    IssueSeverity.INCOMPATIBLE,
                    path,
                    f"Type mismatch: '{label}' is {producer_type} in source, "
                    f"expected {consumer_type}",
                    source_value=producer_type,
                    target_value=consumer_type,
                )
                return

        source_format = producer.get("format")
        target_format = consumer.get("format")
        if source_format and target_format and source_format != target_format:
            self.add(
                IssueType.FORMAT_MISMATCH,
                IssueSeverity.RISKY,
                path,
                f"Format mismatch: '{label}' has format '{source_format}' in source, "
                f"expected '{target_format}'",
                source_value=source_format,
                target_value=target_format,
            )

        if consumer_type == "object":
            self.compare_objects(producer, consumer, path)
        elif consumer_type == "array":
            self.compare_arrays(producer, consumer, path)

    def compare_objects(self, producer: JSONSchema, consumer: JSONSchema, path: str) -> None:
        producer_props: dict[str, JSONSchema] = producer.get("properties") or {}
        consumer_props: dict[str, JSONSchema] = consumer.get("properties") or {}

        for name in consumer.get("required") or []:
            if name in producer_props:
                continue
            field_path = _join(path, name)
            self.add(
                IssueType.MISSING_REQUIRED_FIELD,
                IssueSeverity.INCOMPATIBLE,
                field_path,
                f"Required field '{field_path}' is missing from source output",
            )

        for name, consumer_field in consumer_props.items():
            if name in producer_props:
                self.compare(producer_props[name], consumer_field, _join(path, name))

    def compare_arrays(self, producer: JSONSchema, consumer: JSONSchema, path: str) -> None:
        consumer_items = consumer.get("items")
        if not isinstance(consumer_items, dict):
            return
        producer_items = producer.get("items")
        if not isinstance(producer_items, dict):
            producer_items = {}
        self.compare(producer_items, consumer_items, f"{path}[]")


def check_schema_compatibility(
    producer: JSONSchema | None,
    consumer: JSONSchema | None,
    producer_inferred: bool = False,
) -> SchemaCompatibilityResult:
    """Compare a producer's output schema against a consumer's input schema.

    Walks the consumer side recursively. Extra producer fields are ignored.
    The overall status is the worst severity among the issues found.
    """
    checker = _Checker()

    if consumer is None:
        pass
    elif producer is None:
        checker.add(
            IssueType.UNKNOWN_FIELD,
            IssueSeverity.RISKY,
            "",
            "Source output schema is unknown",
        )
    else:
        checker.compare(producer, consumer, "")

    if any(i.severity == IssueSeverity.INCOMPATIBLE for i in checker.issues):
        status = CompatibilityStatus.INCOMPATIBLE
    elif checker.issues:
        status = CompatibilityStatus.RISKY
    else:
        status = CompatibilityStatus.COMPATIBLE

    if producer_inferred and status == CompatibilityStatus.COMPATIBLE:
        checker.add(
            IssueType.INFERRED_SCHEMA,
            IssueSeverity.RISKY,
            "",
            "Source schema was inferred from a sample and may not cover every response",
        )
        status = CompatibilityStatus.RISKY

    return SchemaCompatibilityResult(
        status=status,
        issues=checker.issues,
        source_schema=producer,
        target_schema=consumer,
    )


# ========== Trigger parameter schemas ==========


def flow_parameters_to_schema(parameters: list[FlowParameter]) -> JSONSchema:
    """Object schema for user-declared trigger parameters."""
    properties: dict[str, JSONSchema] = {}
    required: list[str] = []
    for param in parameters:
        prop: JSONSchema = {"type": param.type}
        if param.description:
            prop["description"] = param.description
        properties[param.name] = prop
        if not param.optional:
            required.append(param.name)

    schema: JSONSchema = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def create_user_intent_output_schema(source: NodeInstance | list[FlowParameter] | None = None) -> JSONSchema:
    """Trigger output schema: static trigger fields plus declared parameters."""
    if isinstance(source, NodeInstance):
        if source.type != NodeType.USER_INTENT:
            raise ValueError(f"Node '{source.slug}' is not a UserIntent trigger")
        parameters = source.parameters.parameters
    else:
        parameters = source or []

    param_schema = flow_parameters_to_schema(parameters)
    return {
        "type": "object",
        "properties": {
            "type": {"type": "string", "const": "trigger"},
            "triggered": {"type": "boolean"},
            "toolName": {"type": "string"},
            **param_schema["properties"],
        },
        "required": ["type", "triggered", "toolName", *param_schema.get("required", [])],
    }


# ========== Inference ==========

_STRING_FORMATS = [
    ("date-time", re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")),
    ("date", re.compile(r"^\d{4}-\d{2}-\d{2}$")),
    ("email", re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")),
    ("uri", re.compile(r"^https?://")),
    (
        "uuid",
        re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE),
    ),
]


def infer_schema_from_sample(value: Any, max_depth: int = 5) -> JSONSchema:
    """Best-effort schema from one example payload.

    Object keys become properties (non-null ones required), arrays infer from
    their first element, strings detect common formats. Anything below
    ``max_depth`` becomes the empty schema.
    """
    return _infer(value, 0, max_depth)


def _infer(value: Any, depth: int, max_depth: int) -> JSONSchema:
    if depth >= max_depth:
        return {}
    if value is None:
        return {"type": "null"}
    if isinstance(value, bool):
        return {"type": "boolean"}
    if isinstance(value, int):
        return {"type": "integer"}
    if isinstance(value, float):
        return {"type": "integer"} if value.is_integer() else {"type": "number"}
    if isinstance(value, str):
        schema: JSONSchema = {"type": "string"}
        for name, pattern in _STRING_FORMATS:
            if pattern.search(value):
                schema["format"] = name
                break
        return schema
    if isinstance(value, list):
        if not value:
            return {"type": "array"}
        return {"type": "array", "items": _infer(value[0], depth + 1, max_depth)}
    if isinstance(value, dict):
        properties = {key: _infer(child, depth + 1, max_depth) for key, child in value.items()}
        schema = {"type": "object", "properties": properties}
        required = [key for key, child in value.items() if child is not None]
        if required:
            schema["required"] = required
        return schema
    return {}


# ========== Run-time validation ==========


def validate_data_against_schema(value: Any, schema: JSONSchema) -> ValidationResult:
    """Validate a concrete payload with JSON Schema Draft 7."""
    validator = Draft7Validator(schema, format_checker=Draft7Validator.FORMAT_CHECKER)
    errors = []
    for error in sorted(validator.iter_errors(value), key=lambda e: list(e.absolute_path)):
        location = "/" + "/".join(str(p) for p in error.absolute_path)
        errors.append(f"{location}: {error.message}")
    return ValidationResult(valid=not errors, errors=errors)


# ========== Flattening ==========


def flatten_schema(
    schema: JSONSchema | None,
    source: str | None = None,
    static_fields: set[str] | None = None,
) -> list[FlattenedSchemaField]:
    """Flatten nested properties into dot-notation fields.

    Array items are addressed with ``[]`` (``items[].name``). When
    ``static_fields`` is given, top-level fields in it are tagged ``static``
    and all others ``dynamic``; otherwise every field gets ``source``.
    """
    fields: list[FlattenedSchemaField] = []
    if not schema:
        return fields

    def walk(node: JSONSchema, prefix: str, top: str | None) -> None:
        required = set(node.get("required") or [])
        for name, child in (node.get("properties") or {}).items():
            path = _join(prefix, name)
            root = top or name
            field_source = source
            if static_fields is not None:
                field_source = "static" if root in static_fields else "dynamic"
            fields.append(
                FlattenedSchemaField(
                    path=path,
                    type=_schema_type(child) or "any",
                    description=child.get("description"),
                    source=field_source,
                    required=name in required,
                )
            )
            child_type = _schema_type(child)
            if child_type == "object":
                walk(child, path, root)
            elif child_type == "array" and isinstance(child.get("items"), dict):
                items = child["items"]
                if _schema_type(items) == "object":
                    walk(items, f"{path}[]", root)

    walk(schema, "", None)
    return fields
