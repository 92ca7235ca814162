"""Design-time validation API.

``SchemaService`` is bound to one FlowGraph and answers the editor's
questions: what schema does a node produce, is a connection type-safe, is the
whole flow runnable, and what does a sample response or a transform look like
as a schema. Connection results are cached in the graph's
SchemaCompatibilityCache, which the mutation API invalidates.
"""

from __future__ import annotations

import json
import logging
import time
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from flowcore.core.config import EngineConfig
from flowcore.core.errors import NodeExecutionError
from flowcore.core.graph import FlowGraph, SchemaCompatibilityCache
from flowcore.core.models import (
    Connection,
    JSONSchema,
    NodeCategory,
    NodeInstance,
    NodeType,
)
from flowcore.core.node_types import (
    API_CALL_BASE_OUTPUT,
    category_of,
    get_node_type,
    transform_node_types,
)
from flowcore.core.schema import (
    CompatibilityIssue,
    CompatibilityStatus,
    FlattenedSchemaField,
    SchemaCompatibilityResult,
    check_schema_compatibility,
    create_user_intent_output_schema,
    flatten_schema,
    infer_schema_from_sample,
)
from flowcore.core.templates import NodeValidationError, validate_node_references
from flowcore.sandbox.code_runner import CodeRunner, NodeCodeRunner

logger = logging.getLogger(__name__)

# Fields every node of the kind produces regardless of its parameters
_STATIC_FIELDS = {
    NodeType.API_CALL: set(API_CALL_BASE_OUTPUT["properties"]),
    NodeType.USER_INTENT: {"type", "triggered", "toolName"},
}


class SchemaState(str, Enum):
    DEFINED = "defined"
    UNKNOWN = "unknown"  # Node kind declares no schema
    PENDING = "pending"  # Needs a sample response before it is known


class NodeSchemaInfo(BaseModel):
    node_id: str
    node_slug: str
    node_type: NodeType
    input_schema: JSONSchema | None = None
    output_schema: JSONSchema | None = None
    input_state: SchemaState = SchemaState.UNKNOWN
    output_state: SchemaState = SchemaState.UNKNOWN


class SuggestedTransformer(BaseModel):
    node_type: NodeType
    display_name: str
    description: str
    confidence: Literal["high", "medium", "low"] = "medium"


class ValidateConnectionRequest(BaseModel):
    source_node_id: str
    target_node_id: str
    connection_id: str | None = None


class ValidateConnectionResponse(BaseModel):
    source_node_id: str
    target_node_id: str
    connection_id: str | None = None
    result: SchemaCompatibilityResult
    suggested_transformers: list[SuggestedTransformer] = Field(default_factory=list)


class ConnectionValidationResult(BaseModel):
    connection_id: str
    source_node_id: str
    target_node_id: str
    status: CompatibilityStatus
    issues: list[CompatibilityIssue] = Field(default_factory=list)


class FlowIssue(BaseModel):
    """Structural problem found by flow-level validation."""

    code: str  # LINK_SOURCE_NOT_INTERFACE | TRANSFORM_NO_INPUT
    node_id: str
    message: str


class ValidationSummary(BaseModel):
    total: int = 0
    compatible: int = 0
    risky: int = 0
    incompatible: int = 0


class FlowValidationResponse(BaseModel):
    flow_id: str
    status: Literal["valid", "warnings", "errors"]
    connections: list[ConnectionValidationResult] = Field(default_factory=list)
    node_errors: list[NodeValidationError] = Field(default_factory=list)
    flow_issues: list[FlowIssue] = Field(default_factory=list)
    summary: ValidationSummary = Field(default_factory=ValidationSummary)


class ResolveSchemaRequest(BaseModel):
    sample_response: Any = None  # JSON text or an already-parsed value
    save: bool = True
    target_node_id: str | None = None  # Also check compatibility against this consumer


class ResolveSchemaResponse(BaseModel):
    node_id: str
    resolved: bool
    output_schema: JSONSchema | None = None
    fields: list[FlattenedSchemaField] = Field(default_factory=list)
    compatibility: SchemaCompatibilityResult | None = None
    suggested_transformer: SuggestedTransformer | None = None
    error: str | None = None


class TestTransformResponse(BaseModel):
    __test__ = False  # Not a pytest class

    success: bool
    output: Any = None
    output_schema: JSONSchema | None = None
    error: str | None = None
    execution_time_ms: int = 0


class SchemaService:
    """Schema resolution and compatibility checks for one flow."""

    def __init__(
        self,
        graph: FlowGraph,
        code_runner: CodeRunner | None = None,
        config: EngineConfig | None = None,
    ):
        self.graph = graph
        self.config = config or EngineConfig()
        self.code_runner = code_runner or NodeCodeRunner(self.config.node_binary)

    @property
    def cache(self) -> SchemaCompatibilityCache:
        return self.graph.cache

    # --- Node schemas ---

    def resolve_node_schema(self, node: NodeInstance) -> NodeSchemaInfo:
        definition = get_node_type(node.type)
        input_schema = definition.resolve_input_schema(node.parameters)
        output_schema = definition.resolve_output_schema(node.parameters)

        if node.type == NodeType.API_CALL and node.parameters.resolved_output_schema is None:
            output_state = SchemaState.PENDING
        elif output_schema is None:
            output_state = SchemaState.UNKNOWN
        else:
            output_state = SchemaState.DEFINED

        return NodeSchemaInfo(
            node_id=node.id,
            node_slug=node.slug,
            node_type=node.type,
            input_schema=input_schema,
            output_schema=output_schema,
            input_state=SchemaState.DEFINED if input_schema is not None else SchemaState.UNKNOWN,
            output_state=output_state,
        )

    def get_flow_schemas(self) -> dict[str, NodeSchemaInfo]:
        return {node.id: self.resolve_node_schema(node) for node in self.graph.flow.nodes}

    # --- Connections ---

    def validate_connection(self, request: ValidateConnectionRequest) -> ValidateConnectionResponse:
        connection = None
        if request.connection_id is not None:
            connection = self.graph.require_connection(request.connection_id)

        result = self.cache.get(request.connection_id) if connection else None
        if result is None:
            result = self._check_pair(request.source_node_id, request.target_node_id)
            if connection is not None:
                self.cache.set(connection, result)

        return ValidateConnectionResponse(
            source_node_id=request.source_node_id,
            target_node_id=request.target_node_id,
            connection_id=request.connection_id,
            result=result,
            suggested_transformers=self._suggest_transformers(result),
        )

    def _check_pair(self, source_node_id: str, target_node_id: str) -> SchemaCompatibilityResult:
        source = self.resolve_node_schema(self.graph.require_node(source_node_id))
        target = self.resolve_node_schema(self.graph.require_node(target_node_id))
        # ApiCall schemas are inferred from a sample response
        inferred = source.node_type == NodeType.API_CALL and source.output_state == SchemaState.DEFINED
        return check_schema_compatibility(
            source.output_schema, target.input_schema, producer_inferred=inferred
        )

    def _connection_result(self, connection: Connection) -> SchemaCompatibilityResult:
        result = self.cache.get(connection.id)
        if result is None:
            result = self._check_pair(connection.source_node_id, connection.target_node_id)
            self.cache.set(connection, result)
        return result

    @staticmethod
    def _suggest_transformers(result: SchemaCompatibilityResult) -> list[SuggestedTransformer]:
        if result.status == CompatibilityStatus.COMPATIBLE:
            return []
        return [
            SuggestedTransformer(
                node_type=definition.name,
                display_name=definition.display_name,
                description=definition.description,
                confidence="high" if definition.name == NodeType.JAVASCRIPT_CODE_TRANSFORM else "medium",
            )
            for definition in transform_node_types()
        ]

    # --- Flow ---

    def validate_flow(self) -> FlowValidationResponse:
        """Check every connection, structural rule and template reference."""
        flow = self.graph.flow
        summary = ValidationSummary()
        connections = []
        for conn in flow.connections:
            result = self._connection_result(conn)
            connections.append(
                ConnectionValidationResult(
                    connection_id=conn.id,
                    source_node_id=conn.source_node_id,
                    target_node_id=conn.target_node_id,
                    status=result.status,
                    issues=result.issues,
                )
            )
            summary.total += 1
            match result.status:
                case CompatibilityStatus.COMPATIBLE:
                    summary.compatible += 1
                case CompatibilityStatus.RISKY:
                    summary.risky += 1
                case CompatibilityStatus.INCOMPATIBLE:
                    summary.incompatible += 1

        flow_issues = self._structural_issues()
        node_errors = validate_node_references(flow)

        if summary.incompatible or node_errors or flow_issues:
            status = "errors"
        elif summary.risky:
            status = "warnings"
        else:
            status = "valid"
        logger.debug(
            f"Validated flow {flow.id}: {status} ({summary.total} connections, "
            f"{len(node_errors)} reference errors)"
        )
        return FlowValidationResponse(
            flow_id=flow.id,
            status=status,
            connections=connections,
            node_errors=node_errors,
            flow_issues=flow_issues,
            summary=summary,
        )

    def _structural_issues(self) -> list[FlowIssue]:
        flow = self.graph.flow
        issues = []
        for node in flow.nodes:
            incoming = [c for c in flow.connections if c.target_node_id == node.id]
            if node.type == NodeType.LINK:
                for conn in incoming:
                    source = flow.get_node(conn.source_node_id)
                    if source is not None and category_of(source.type) != NodeCategory.INTERFACE:
                        issues.append(
                            FlowIssue(
                                code="LINK_SOURCE_NOT_INTERFACE",
                                node_id=node.id,
                                message=f"Link node '{node.slug}' must follow an interface node, "
                                f"not '{source.slug}'",
                            )
                        )
            if category_of(node.type) == NodeCategory.TRANSFORM and not incoming:
                issues.append(
                    FlowIssue(
                        code="TRANSFORM_NO_INPUT",
                        node_id=node.id,
                        message=f"Transform node '{node.slug}' has no input connection",
                    )
                )
        return issues

    # --- Schema resolution ---

    def resolve_schema(self, node_id: str, request: ResolveSchemaRequest) -> ResolveSchemaResponse:
        """Work out a node's output schema, inferring it from a sample for ApiCall nodes."""
        node = self.graph.require_node(node_id)

        if node.type == NodeType.API_CALL:
            if request.sample_response is None:
                return ResolveSchemaResponse(
                    node_id=node_id, resolved=False, error="A sample response is required"
                )
            sample = request.sample_response
            if isinstance(sample, str):
                try:
                    sample = json.loads(sample)
                except json.JSONDecodeError as e:
                    return ResolveSchemaResponse(
                        node_id=node_id, resolved=False, error=f"Invalid JSON in sample response: {e}"
                    )
            inferred = infer_schema_from_sample(sample)
            if request.save:
                node = self.graph.update_node(
                    node_id, parameters={"resolved_output_schema": inferred}
                )
                logger.info(f"Saved inferred output schema for '{node.slug}'")
            else:
                node = node.model_copy(deep=True)
                node.parameters.resolved_output_schema = inferred
            output_schema = get_node_type(node.type).resolve_output_schema(node.parameters)
        elif node.type == NodeType.USER_INTENT:
            output_schema = create_user_intent_output_schema(node)
        else:
            output_schema = get_node_type(node.type).resolve_output_schema(node.parameters)

        response = ResolveSchemaResponse(
            node_id=node_id,
            resolved=output_schema is not None,
            output_schema=output_schema,
            fields=flatten_schema(output_schema, static_fields=_STATIC_FIELDS.get(node.type)),
        )

        if request.target_node_id is not None and output_schema is not None:
            target = self.resolve_node_schema(self.graph.require_node(request.target_node_id))
            compatibility = check_schema_compatibility(
                output_schema,
                target.input_schema,
                producer_inferred=node.type == NodeType.API_CALL,
            )
            response.compatibility = compatibility
            suggestions = self._suggest_transformers(compatibility)
            response.suggested_transformer = suggestions[0] if suggestions else None
        return response

    async def test_transform(self, code: str, sample_input: Any) -> TestTransformResponse:
        """Run transform code against a sample and describe its output."""
        start = time.perf_counter()
        try:
            output = await self.code_runner.run(code, sample_input, self.config.transform_timeout_ms)
        except NodeExecutionError as e:
            return TestTransformResponse(
                success=False,
                error=str(e),
                execution_time_ms=int((time.perf_counter() - start) * 1000),
            )
        return TestTransformResponse(
            success=True,
            output=output,
            output_schema=infer_schema_from_sample(output),
            execution_time_ms=int((time.perf_counter() - start) * 1000),
        )
