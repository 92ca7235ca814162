"""Node type registry.

Each node kind declares its category, display metadata and the schemas it
consumes and produces. Schemas are either static or derived from the node's
parameters (``get_input_schema`` / ``get_output_schema``).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from flowcore.core.models import (
    ApiCallNodeParameters,
    InterfaceNodeParameters,
    JavaScriptCodeTransformParameters,
    JSONSchema,
    LinkNodeParameters,
    NodeCategory,
    NodeType,
    UserIntentNodeParameters,
)
from flowcore.core.schema import create_user_intent_output_schema

ANY_OBJECT: JSONSchema = {"type": "object", "additionalProperties": True}

API_CALL_BASE_OUTPUT: JSONSchema = {
    "type": "object",
    "properties": {
        "type": {"type": "string", "const": "apiCall"},
        "success": {"type": "boolean", "description": "Whether the request completed"},
        "status": {"type": "integer", "description": "HTTP status code"},
        "statusText": {"type": "string", "description": "HTTP status text"},
        "headers": {
            "type": "object",
            "additionalProperties": {"type": "string"},
            "description": "Response headers",
        },
        "body": {"description": "Response body (JSON parsed if Content-Type is application/json)"},
        "requestDuration": {"type": "integer", "description": "Request duration in milliseconds"},
    },
    "required": ["type", "success", "status"],
}


@dataclass(frozen=True)
class NodeTypeDefinition:
    """Static description of one node kind."""

    name: NodeType
    display_name: str
    category: NodeCategory
    description: str
    inputs: tuple[str, ...] = ("main",)
    outputs: tuple[str, ...] = ("main",)
    input_schema: JSONSchema | None = None
    output_schema: JSONSchema | None = None
    get_input_schema: Callable[[Any], JSONSchema | None] | None = field(default=None, compare=False)
    get_output_schema: Callable[[Any], JSONSchema | None] | None = field(default=None, compare=False)

    @property
    def has_dynamic_input(self) -> bool:
        return self.get_input_schema is not None

    @property
    def has_dynamic_output(self) -> bool:
        return self.get_output_schema is not None

    def resolve_input_schema(self, parameters: Any) -> JSONSchema | None:
        if self.get_input_schema is not None:
            return self.get_input_schema(parameters)
        return self.input_schema

    def resolve_output_schema(self, parameters: Any) -> JSONSchema | None:
        if self.get_output_schema is not None:
            return self.get_output_schema(parameters)
        return self.output_schema


# --- Dynamic schema builders ---


def _user_intent_output(params: UserIntentNodeParameters) -> JSONSchema:
    return create_user_intent_output_schema(params.parameters)


def _interface_input(params: InterfaceNodeParameters) -> JSONSchema:
    return params.input_schema or ANY_OBJECT


def _api_call_output(params: ApiCallNodeParameters) -> JSONSchema:
    """Base response shape merged with the properties of a resolved sample schema."""
    if not params.resolved_output_schema:
        return API_CALL_BASE_OUTPUT
    resolved_props = params.resolved_output_schema.get("properties") or {}
    return {
        **API_CALL_BASE_OUTPUT,
        "properties": {**API_CALL_BASE_OUTPUT["properties"], **resolved_props},
    }


def _transform_output(params: JavaScriptCodeTransformParameters) -> JSONSchema | None:
    return params.resolved_output_schema


def _link_output(params: LinkNodeParameters) -> JSONSchema | None:
    # Empty fields forward the upstream value, whose shape is unknown here
    if not params.fields:
        return None
    return {
        "type": "object",
        "properties": {name: {} for name in params.fields},
        "required": list(params.fields),
    }


NODE_TYPES: dict[NodeType, NodeTypeDefinition] = {
    NodeType.USER_INTENT: NodeTypeDefinition(
        name=NodeType.USER_INTENT,
        display_name="User Intent",
        category=NodeCategory.TRIGGER,
        description="Entry point triggered when the user's request matches this tool",
        inputs=(),
        get_output_schema=_user_intent_output,
    ),
    NodeType.INTERFACE: NodeTypeDefinition(
        name=NodeType.INTERFACE,
        display_name="Interface",
        category=NodeCategory.INTERFACE,
        description="Render data to the end user",
        get_input_schema=_interface_input,
        output_schema=ANY_OBJECT,
    ),
    NodeType.RETURN: NodeTypeDefinition(
        name=NodeType.RETURN,
        display_name="Return",
        category=NodeCategory.RETURN,
        description="Produce the flow's final output and end the run",
        outputs=(),
        input_schema=ANY_OBJECT,
    ),
    NodeType.CALL_FLOW: NodeTypeDefinition(
        name=NodeType.CALL_FLOW,
        display_name="Call Flow",
        category=NodeCategory.ACTION,
        description="Invoke another flow with mapped inputs",
        input_schema=ANY_OBJECT,
        output_schema=ANY_OBJECT,
    ),
    NodeType.API_CALL: NodeTypeDefinition(
        name=NodeType.API_CALL,
        display_name="API Call",
        category=NodeCategory.ACTION,
        description="Make HTTP requests to external APIs",
        input_schema={
            **ANY_OBJECT,
            "description": "Data available for template resolution in URL, headers and body",
        },
        get_output_schema=_api_call_output,
    ),
    NodeType.JAVASCRIPT_CODE_TRANSFORM: NodeTypeDefinition(
        name=NodeType.JAVASCRIPT_CODE_TRANSFORM,
        display_name="JavaScript Code",
        category=NodeCategory.TRANSFORM,
        description="Transform data using custom JavaScript code",
        input_schema={"description": "Input data from the upstream node to be transformed"},
        get_output_schema=_transform_output,
    ),
    NodeType.LINK: NodeTypeDefinition(
        name=NodeType.LINK,
        display_name="Link",
        category=NodeCategory.ACTION,
        description="Forward or rename values after a user interaction",
        input_schema=ANY_OBJECT,
        get_output_schema=_link_output,
    ),
}


def get_node_type(node_type: NodeType | str) -> NodeTypeDefinition:
    return NODE_TYPES[NodeType(node_type)]


def category_of(node_type: NodeType | str) -> NodeCategory:
    return get_node_type(node_type).category


def transform_node_types() -> list[NodeTypeDefinition]:
    return [d for d in NODE_TYPES.values() if d.category == NodeCategory.TRANSFORM]
