"""Node-kind handlers.

A handler receives a NodeContext with the node's parameters already resolved
and returns a HandlerResult holding the clean output value plus any
kind-specific ``_execution`` fields. Failures are raised; the executor turns
them into error metadata. Handlers own their timeouts.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from flowcore.core.errors import (
    CallFlowCancelledError,
    HttpRequestError,
    InputValidationError,
    NodeExecutionError,
)
from flowcore.core.metadata import (
    ApiExecutionMetadata,
    CallFlowExecutionMetadata,
    ExecutionMetadata,
    TriggerExecutionMetadata,
)
from flowcore.core.models import FlowExecution, NodeInstance
from flowcore.core.schema import flow_parameters_to_schema, validate_data_against_schema
from flowcore.sandbox.transport import HttpRequest

if TYPE_CHECKING:
    from flowcore.core.executor import CancellationToken, FlowExecutor


@dataclass
class NodeContext:
    """Everything one handler invocation may use."""

    node: NodeInstance
    params: dict[str, Any]  # Resolved parameters
    inputs: dict[str, Any]  # Clean outputs of connected upstream nodes, by slug
    execution: FlowExecution
    executor: FlowExecutor
    call_stack: tuple[str, ...]
    trigger_params: dict[str, Any] = field(default_factory=dict)
    secrets: dict[str, Any] = field(default_factory=dict)
    cancel_token: CancellationToken | None = None
    # Envelope fields known before the handler can fail (e.g. requestUrl)
    metadata_extra: dict[str, Any] = field(default_factory=dict)
    input_data: dict[str, Any] = field(default_factory=dict)

    @property
    def upstream_value(self) -> Any:
        """Single upstream output as-is; several are keyed by slug; none is {}."""
        if len(self.inputs) == 1:
            return next(iter(self.inputs.values()))
        return dict(self.inputs)


@dataclass
class HandlerResult:
    value: Any
    extra: ExecutionMetadata = field(default_factory=ExecutionMetadata)


# --- Trigger / interface / return / link ---


async def handle_user_intent(ctx: NodeContext) -> HandlerResult:
    params = ctx.node.parameters
    provided = dict(ctx.trigger_params)

    if params.parameters:
        missing = [
            p.name for p in params.parameters if not p.optional and provided.get(p.name) is None
        ]
        if missing:
            raise InputValidationError(
                f"Missing required parameters: {', '.join(missing)}", errors=missing
            )
        result = validate_data_against_schema(provided, flow_parameters_to_schema(params.parameters))
        if not result.valid:
            raise InputValidationError(
                f"Invalid trigger parameters: {'; '.join(result.errors)}", errors=result.errors
            )

    ctx.input_data = provided
    value = {"type": "trigger", "triggered": True, "toolName": params.tool_name, **provided}
    extra: TriggerExecutionMetadata = {"type": "trigger", "toolName": params.tool_name}
    return HandlerResult(value=value, extra=extra)


async def handle_interface(ctx: NodeContext) -> HandlerResult:
    # Rendering marker: input shape is checked by the executor, nothing is computed
    return HandlerResult(value={})


async def handle_return(ctx: NodeContext) -> HandlerResult:
    return HandlerResult(value=ctx.params.get("value"))


async def handle_link(ctx: NodeContext) -> HandlerResult:
    fields = ctx.params.get("fields") or {}
    if not fields:
        return HandlerResult(value=ctx.upstream_value)
    return HandlerResult(value=dict(fields))


# --- Actions ---


async def handle_call_flow(ctx: NodeContext) -> HandlerResult:
    target_flow_id = ctx.params.get("target_flow_id")
    if not target_flow_id:
        raise NodeExecutionError("No target flow configured")

    child = await ctx.executor.run_nested(
        target_flow_id,
        params=ctx.params.get("input_mapping") or {},
        parent=ctx.execution,
        call_stack=ctx.call_stack,
        secrets=ctx.secrets,
        cancel_token=ctx.cancel_token,
    )
    if child.error_info is not None and child.error_info.kind == "cancelled":
        raise CallFlowCancelledError(f"Called flow '{child.flow_name}' was cancelled")
    if child.error_info is not None:
        raise NodeExecutionError(f"Called flow '{child.flow_name}' failed: {child.error_info.message}")
    extra: CallFlowExecutionMetadata = {"childExecutionId": child.id}
    return HandlerResult(value=child.output, extra=extra)


_PATH_PLACEHOLDER = "(?::{name}\\b|\\{{{name}\\}})"


def build_http_request(params: dict[str, Any], default_timeout_ms: int) -> HttpRequest:
    """Assemble the request from resolved ApiCall parameters and input mappings."""
    url = (params.get("url") or "").strip()
    if not url:
        raise HttpRequestError("URL is required for API Call node")

    headers = {
        h["key"].strip(): "" if h.get("value") is None else str(h["value"])
        for h in params.get("headers") or []
        if h.get("key") and h["key"].strip()
    }
    query: dict[str, Any] = {}
    body = params.get("body")

    for mapping in params.get("input_mappings") or []:
        name, value = mapping["name"], mapping.get("value")
        match mapping["target"]:
            case "path":
                pattern = _PATH_PLACEHOLDER.format(name=re.escape(name))
                url = re.sub(pattern, lambda _m: str(value), url)
            case "query":
                query[name] = value
            case "header":
                headers[name] = str(value)
            case "body":
                if body is None:
                    body = {}
                if not isinstance(body, dict):
                    raise HttpRequestError(f"Cannot map '{name}' into a non-object request body")
                body = {**body, name: value}

    return HttpRequest(
        method=params.get("method") or "GET",
        url=url,
        headers=headers,
        params=query,
        body=body,
        timeout_ms=params.get("timeout_ms") or default_timeout_ms,
    )


async def handle_api_call(ctx: NodeContext) -> HandlerResult:
    config = ctx.executor.config
    request = build_http_request(ctx.params, config.api_timeout_ms)
    # Secrets resolved into the URL are recorded redacted
    recorded = build_http_request(ctx.input_data, config.api_timeout_ms) if ctx.secrets else request
    ctx.metadata_extra["requestUrl"] = recorded.url

    response = await ctx.executor.transport.send(request)
    value = {
        "type": "apiCall",
        "success": True,
        "status": response.status,
        "statusText": response.status_text,
        "headers": response.headers,
        "body": response.body,
        "requestDuration": response.duration_ms,
    }
    extra: ApiExecutionMetadata = {
        "httpStatus": response.status,
        "httpStatusText": response.status_text,
        "requestUrl": recorded.full_url if ctx.secrets else response.url,
    }
    return HandlerResult(value=value, extra=extra)


async def handle_transform(ctx: NodeContext) -> HandlerResult:
    config = ctx.executor.config
    input_value = ctx.upstream_value
    ctx.input_data = {**ctx.input_data, "input": input_value}
    result = await ctx.executor.code_runner.run(
        ctx.params.get("code") or "return input;",
        input_value,
        ctx.params.get("timeout_ms") or config.transform_timeout_ms,
    )
    return HandlerResult(value=result)
