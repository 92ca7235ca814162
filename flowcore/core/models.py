"""Data models for flows, nodes, connections and execution records.

Uses Pydantic for schema-enforced structures. Node parameters are a tagged
variant: ``NodeInstance.type`` selects exactly one parameter model from
``PARAMETER_MODELS`` and the validator below coerces raw dicts into it.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

JSONSchema = dict[str, Any]


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


class NodeType(str, Enum):
    """Supported node kinds"""

    USER_INTENT = "UserIntent"  # Trigger; entry point carrying declared inputs
    INTERFACE = "Interface"  # Renders to the end user, no computed value
    RETURN = "Return"  # Terminal; produces the flow's final output
    CALL_FLOW = "CallFlow"  # Invokes another flow as a sub-routine
    API_CALL = "ApiCall"  # Performs an HTTP request
    JAVASCRIPT_CODE_TRANSFORM = "JavaScriptCodeTransform"  # Sandboxed user code
    LINK = "Link"  # Passthrough / rename


class NodeCategory(str, Enum):
    TRIGGER = "trigger"
    INTERFACE = "interface"
    ACTION = "action"
    TRANSFORM = "transform"
    RETURN = "return"


class Position(BaseModel):
    """Canvas coordinate. Irrelevant to execution."""

    x: float = 0
    y: float = 0


# --- Node parameter payloads ---


class FlowParameter(BaseModel):
    """A user-declared trigger input."""

    name: str
    type: Literal["string", "number", "integer", "boolean"] = "string"
    description: str | None = None
    optional: bool = False


class UserIntentNodeParameters(BaseModel):
    when_to_use: str | None = Field(default=None, max_length=500)
    when_not_to_use: str | None = Field(default=None, max_length=500)
    tool_name: str = ""
    tool_description: str = ""
    is_active: bool = True
    parameters: list[FlowParameter] = Field(default_factory=list)


class InterfaceNodeParameters(BaseModel):
    layout_template: str = "table"
    input_schema: JSONSchema | None = None  # Shape of the data this node renders
    mock_data: dict[str, Any] | None = None


class ReturnNodeParameters(BaseModel):
    value: Any = None  # Template-able; becomes the flow's final output


class CallFlowNodeParameters(BaseModel):
    target_flow_id: str | None = None
    input_mapping: dict[str, Any] = Field(default_factory=dict)  # Target param -> template


class HeaderEntry(BaseModel):
    key: str
    value: str = ""


class InputMapping(BaseModel):
    """Routes a resolved upstream value into one part of an HTTP request."""

    target: Literal["query", "header", "body", "path"]
    name: str
    value: Any = None  # Template-able


class ApiCallNodeParameters(BaseModel):
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    url: str = ""
    headers: list[HeaderEntry] = Field(default_factory=list)
    body: Any = None
    timeout_ms: int | None = Field(default=None, gt=0)  # None uses the engine default
    input_mappings: list[InputMapping] = Field(default_factory=list)
    resolved_output_schema: JSONSchema | None = None  # Inferred from a sample response


class JavaScriptCodeTransformParameters(BaseModel):
    code: str = "return input;"
    timeout_ms: int | None = Field(default=None, gt=0)  # None uses the engine default
    resolved_output_schema: JSONSchema | None = None


class LinkNodeParameters(BaseModel):
    fields: dict[str, Any] = Field(default_factory=dict)  # Output field -> template


NodeParameters = (
    UserIntentNodeParameters
    | InterfaceNodeParameters
    | ReturnNodeParameters
    | CallFlowNodeParameters
    | ApiCallNodeParameters
    | JavaScriptCodeTransformParameters
    | LinkNodeParameters
)

PARAMETER_MODELS: dict[NodeType, type[BaseModel]] = {
    NodeType.USER_INTENT: UserIntentNodeParameters,
    NodeType.INTERFACE: InterfaceNodeParameters,
    NodeType.RETURN: ReturnNodeParameters,
    NodeType.CALL_FLOW: CallFlowNodeParameters,
    NodeType.API_CALL: ApiCallNodeParameters,
    NodeType.JAVASCRIPT_CODE_TRANSFORM: JavaScriptCodeTransformParameters,
    NodeType.LINK: LinkNodeParameters,
}


def build_parameters(node_type: NodeType, raw: dict[str, Any] | BaseModel | None) -> NodeParameters:
    """Validate raw parameters into the model for ``node_type``."""
    model = PARAMETER_MODELS[node_type]
    if isinstance(raw, model):
        return raw  # type: ignore[return-value]
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    return model.model_validate(raw or {})  # type: ignore[return-value]


# --- Graph entities ---


class NodeInstance(BaseModel):
    """One node placed in a flow."""

    id: str = Field(default_factory=new_id)
    name: str
    slug: str
    type: NodeType
    position: Position = Field(default_factory=Position)
    parameters: NodeParameters

    @model_validator(mode="before")
    @classmethod
    def coerce_parameters(cls, data: Any) -> Any:
        """Select the parameter model from the node type."""
        if isinstance(data, dict) and "type" in data:
            data = dict(data)
            data["parameters"] = build_parameters(NodeType(data["type"]), data.get("parameters"))
        return data

    def parameters_dict(self) -> dict[str, Any]:
        return self.parameters.model_dump(mode="json")


ERROR_HANDLE = "error"
DEFAULT_HANDLE = "main"


class Connection(BaseModel):
    """Directed edge: source output feeds target input."""

    id: str = Field(default_factory=new_id)
    source_node_id: str
    source_handle: str = DEFAULT_HANDLE  # ERROR_HANDLE marks a fallback path
    target_node_id: str
    target_handle: str = DEFAULT_HANDLE

    @property
    def is_fallback(self) -> bool:
        return self.source_handle == ERROR_HANDLE


class Flow(BaseModel):
    """A named graph of nodes and connections."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str | None = None
    nodes: list[NodeInstance] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)

    def get_node(self, node_id: str) -> NodeInstance | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def get_node_by_slug(self, slug: str) -> NodeInstance | None:
        return next((n for n in self.nodes if n.slug == slug), None)

    def triggers(self) -> list[NodeInstance]:
        return [n for n in self.nodes if n.type == NodeType.USER_INTENT]


# --- Execution records ---


class ExecutionStatus(str, Enum):
    """Overall status of a flow run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @classmethod
    def _missing_(cls, value: object) -> ExecutionStatus | None:
        # Records persisted before the running/completed split used "fulfilled"
        if value == "fulfilled":
            return cls.COMPLETED
        return None

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.ERROR)


class NodeExecutionStatus(str, Enum):
    """Status stored on a node record (fallback when output lacks metadata)."""

    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"


class NodeExecutionData(BaseModel):
    """One row of the run-time trace. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    node_id: str
    node_slug: str
    node_name: str = ""
    node_type: str
    executed_at: datetime = Field(default_factory=_utc_now)
    input_data: dict[str, Any] = Field(default_factory=dict)
    output_data: Any = None
    status: NodeExecutionStatus = NodeExecutionStatus.COMPLETED
    error: str | None = None
    execution_time_ms: int | None = None


class ExecutionErrorInfo(BaseModel):
    message: str
    kind: str = "node_error"  # node_error | cancelled | timeout | invalid_input
    node_id: str | None = None
    node_slug: str | None = None


class FlowExecution(BaseModel):
    """Aggregate record of one run."""

    id: str = Field(default_factory=new_id)
    flow_id: str
    flow_name: str = ""
    flow_tool_name: str = ""
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime = Field(default_factory=_utc_now)
    ended_at: datetime | None = None
    initial_params: dict[str, Any] = Field(default_factory=dict)
    node_executions: list[NodeExecutionData] = Field(default_factory=list)
    error_info: ExecutionErrorInfo | None = None
    output: Any = None
    parent_execution_id: str | None = None
    depth: int = 0
    is_preview: bool = False

    def record_for(self, node_id: str) -> NodeExecutionData | None:
        return next((r for r in self.node_executions if r.node_id == node_id), None)

    @property
    def duration_ms(self) -> int | None:
        if self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at).total_seconds() * 1000)


PAGINATION_DEFAULTS = {"page": 1, "limit": 20, "max_limit": 100}


class ExecutionListQuery(BaseModel):
    page: int = Field(default=PAGINATION_DEFAULTS["page"], ge=1)
    limit: int = Field(
        default=PAGINATION_DEFAULTS["limit"], ge=1, le=PAGINATION_DEFAULTS["max_limit"]
    )
    status: ExecutionStatus | None = None
    is_preview: bool | None = None  # None = all


class ExecutionListItem(BaseModel):
    id: str
    flow_id: str
    flow_name: str
    flow_tool_name: str
    status: ExecutionStatus
    started_at: datetime
    ended_at: datetime | None = None
    duration: int | None = None
    initial_params_preview: str = ""
    is_preview: bool = False

    @classmethod
    def from_execution(cls, execution: FlowExecution) -> ExecutionListItem:
        params = execution.initial_params
        first_value = str(next(iter(params.values()))) if params else ""
        preview = first_value[:50] + "..." if len(first_value) > 50 else first_value
        return cls(
            id=execution.id,
            flow_id=execution.flow_id,
            flow_name=execution.flow_name,
            flow_tool_name=execution.flow_tool_name,
            status=execution.status,
            started_at=execution.started_at,
            ended_at=execution.ended_at,
            duration=execution.duration_ms,
            initial_params_preview=preview,
            is_preview=execution.is_preview,
        )


class ExecutionListResponse(BaseModel):
    items: list[ExecutionListItem]
    total: int
    page: int
    limit: int
    total_pages: int
    has_pending_executions: bool = False
