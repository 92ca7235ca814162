"""Flow executor.

Runs a flow from one UserIntent trigger. Scheduling is dependency driven:
a node starts once every producer it depends on (explicit connections and
template references) has finished, ready ties start in declaration order,
and at most ``max_parallel_nodes`` handlers are in flight.

Node failures never escape ``run``; they are recorded in the node's
``_execution`` envelope. Only structural problems (unknown flow, broken
invariants, missing or inactive trigger) raise before a run starts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, assert_never

import networkx as nx

from flowcore.core.config import EngineConfig
from flowcore.core.errors import (
    CallFlowCancelledError,
    CallFlowRecursionError,
    CycleError,
    FlowNotFoundError,
    InputValidationError,
    TriggerInactiveError,
    TriggerNotFoundError,
)
from flowcore.core.graph import FlowGraph, FlowRepository, dependency_graph, find_dependency_cycle
from flowcore.core.handlers import (
    HandlerResult,
    NodeContext,
    handle_api_call,
    handle_call_flow,
    handle_interface,
    handle_link,
    handle_return,
    handle_transform,
    handle_user_intent,
)
from flowcore.core.metadata import create_error_metadata, create_success_metadata
from flowcore.core.models import (
    ExecutionErrorInfo,
    ExecutionListQuery,
    ExecutionListResponse,
    ExecutionStatus,
    Flow,
    FlowExecution,
    NodeExecutionData,
    NodeExecutionStatus,
    NodeInstance,
    NodeType,
    _utc_now,
)
from flowcore.core.node_types import get_node_type
from flowcore.core.schema import flow_parameters_to_schema, validate_data_against_schema
from flowcore.core.store import ExecutionStore, InMemoryExecutionStore
from flowcore.core.templates import SECRETS_NAMESPACE, extract_all_references, resolve_value
from flowcore.sandbox.code_runner import CodeRunner, NodeCodeRunner
from flowcore.sandbox.transport import HttpTransport, HttpxTransport

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag, checked before each node is dispatched."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


# ========== Graph helpers ==========


def execution_order(flow: Flow) -> list[NodeInstance]:
    """Deterministic topological order over the whole flow.

    Dependencies are connections plus template references; independent
    nodes keep their declaration order.
    """
    G = dependency_graph(flow)
    order = nx.get_node_attributes(G, "order")
    try:
        node_ids = list(nx.lexicographical_topological_sort(G, key=order.get))
    except nx.NetworkXUnfeasible:
        cycle = find_dependency_cycle(flow) or []
        raise CycleError(f"Flow contains a circular reference: {' -> '.join(cycle)}", cycle=cycle)
    return [flow.get_node(node_id) for node_id in node_ids]


REDACTED = "[redacted]"


def _redact(value: Any) -> Any:
    """Same shape as ``value`` with every leaf replaced, for recorded node inputs."""
    if isinstance(value, dict):
        return {key: _redact(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return REDACTED


def compute_run_set(flow: Flow, trigger_id: str, G: nx.DiGraph | None = None) -> set[str]:
    """Node ids taking part in a run started from ``trigger_id``.

    The trigger and everything downstream of it, plus the producers those
    nodes need. Other triggers and nodes reachable only from them stay out.
    """
    G = G if G is not None else dependency_graph(flow)
    reached = {trigger_id} | nx.descendants(G, trigger_id)

    other_triggers = {n.id for n in flow.triggers() if n.id != trigger_id}
    foreign: set[str] = set(other_triggers)
    for other in other_triggers:
        foreign |= nx.descendants(G, other) - reached

    needed: set[str] = set()
    for node_id in reached:
        needed |= nx.ancestors(G, node_id)
    return reached | (needed - foreign)


def _error_kind(error: Exception | None) -> str:
    if isinstance(error, CallFlowCancelledError):
        return "cancelled"
    if isinstance(error, InputValidationError):
        return "invalid_input"
    return "node_error"


@dataclass
class _Requirement:
    source_id: str
    on_failure: bool = False  # Fallback edge: satisfied when the source fails


@dataclass
class _NodeOutcome:
    node: NodeInstance
    record: NodeExecutionData
    value: Any = None
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class _RunState:
    """Mutable bookkeeping for one run."""

    outputs: dict[str, Any]  # Clean outputs by slug, plus the secrets namespace
    finished: dict[str, bool] = field(default_factory=dict)  # node id -> succeeded
    errors: dict[str, str] = field(default_factory=dict)
    skipped: set[str] = field(default_factory=set)
    returned: bool = False
    failed: bool = False
    cancelled: bool = False


# ========== Executor ==========


class FlowExecutor:
    """Executes flows and keeps their execution records."""

    def __init__(
        self,
        repository: FlowRepository | None = None,
        store: ExecutionStore | None = None,
        transport: HttpTransport | None = None,
        code_runner: CodeRunner | None = None,
        config: EngineConfig | None = None,
    ):
        self.config = config or EngineConfig()
        self.repository = repository or FlowRepository()
        self.store = store or InMemoryExecutionStore()
        self._owned_transport = (
            HttpxTransport(block_private_networks=self.config.block_private_networks)
            if transport is None
            else None
        )
        self.transport: HttpTransport = transport or self._owned_transport
        self.code_runner = code_runner or NodeCodeRunner(self.config.node_binary)
        self._active: dict[str, CancellationToken] = {}

    async def aclose(self) -> None:
        """Close the HTTP transport if this executor created it."""
        if self._owned_transport is not None:
            await self._owned_transport.aclose()

    async def __aenter__(self) -> FlowExecutor:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # --- Public API ---

    async def run(
        self,
        flow: Flow | str,
        params: dict[str, Any] | None = None,
        trigger_node_id: str | None = None,
        *,
        secrets: dict[str, Any] | None = None,
        is_preview: bool = False,
        cancel_token: CancellationToken | None = None,
        parent_execution_id: str | None = None,
        call_stack: tuple[str, ...] = (),
    ) -> FlowExecution:
        """Run ``flow`` from one trigger and return the finished execution.

        ``call_stack`` lists the flow ids of the enclosing CallFlow chain and
        is empty for a top-level run.
        """
        if isinstance(flow, str):
            flow = self.repository.require(flow)
        # Later graph mutations must not affect a run in progress
        flow = flow.model_copy(deep=True)
        FlowGraph(flow, repository=self.repository).check_invariants()
        trigger = self._select_trigger(flow, trigger_node_id, is_preview)
        params = dict(params or {})

        execution = FlowExecution(
            flow_id=flow.id,
            flow_name=flow.name,
            flow_tool_name=trigger.parameters.tool_name,
            initial_params=params,
            parent_execution_id=parent_execution_id,
            depth=len(call_stack),
            is_preview=is_preview,
        )
        self.store.create(execution)

        token = cancel_token or CancellationToken()
        self._active[execution.id] = token
        execution.status = ExecutionStatus.RUNNING
        self.store.save(execution)
        logger.info(
            f"Starting execution {execution.id} of flow '{flow.name}' from trigger '{trigger.slug}'"
        )

        try:
            await self._execute(
                flow,
                trigger,
                execution,
                params,
                secrets or {},
                token,
                (*call_stack, flow.id),
            )
        finally:
            self._active.pop(execution.id, None)

        execution.ended_at = _utc_now()
        self.store.save(execution)
        if execution.status == ExecutionStatus.COMPLETED:
            logger.info(f"Execution {execution.id} completed in {execution.duration_ms}ms")
        else:
            logger.info(f"Execution {execution.id} failed: {execution.error_info.message}")
        return execution

    async def run_nested(
        self,
        target_flow_id: str,
        params: dict[str, Any],
        parent: FlowExecution,
        call_stack: tuple[str, ...],
        secrets: dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> FlowExecution:
        """Run a flow on behalf of a CallFlow node.

        Raises CallFlowRecursionError when the depth limit is exceeded. Call
        cycles between flows are rejected by the invariant check before a run.
        """
        if len(call_stack) > self.config.max_call_depth:
            raise CallFlowRecursionError(
                f"Maximum flow call depth of {self.config.max_call_depth} exceeded"
            )

        target = self.repository.get(target_flow_id)
        if target is None:
            raise FlowNotFoundError(f"Target flow {target_flow_id} not found")

        trigger = self._select_trigger(target, None, parent.is_preview)
        declared = trigger.parameters.parameters
        if declared:
            result = validate_data_against_schema(params, flow_parameters_to_schema(declared))
            if not result.valid:
                raise InputValidationError(
                    f"Invalid inputs for flow '{target.name}': {'; '.join(result.errors)}",
                    errors=result.errors,
                )

        return await self.run(
            target,
            params,
            trigger.id,
            secrets=secrets,
            is_preview=parent.is_preview,
            cancel_token=cancel_token,
            parent_execution_id=parent.id,
            call_stack=call_stack,
        )

    def cancel(self, execution_id: str) -> bool:
        """Request cancellation of a running execution. False if it is not running."""
        token = self._active.get(execution_id)
        if token is None:
            return False
        token.cancel()
        logger.warning(f"Cancellation requested for execution {execution_id}")
        return True

    def get_execution(self, execution_id: str) -> FlowExecution:
        return self.store.require(execution_id)

    def list_executions(
        self, flow_id: str, query: ExecutionListQuery | None = None
    ) -> ExecutionListResponse:
        return self.store.list(flow_id, query)

    def mark_timed_out(self) -> int:
        return self.store.mark_timed_out(self.config.execution_timeout_minutes)

    # --- Trigger selection ---

    @staticmethod
    def _select_trigger(flow: Flow, trigger_node_id: str | None, is_preview: bool) -> NodeInstance:
        if trigger_node_id is not None:
            trigger = flow.get_node(trigger_node_id)
            if trigger is None or trigger.type != NodeType.USER_INTENT:
                raise TriggerNotFoundError(
                    f"Trigger node {trigger_node_id} not found in flow '{flow.name}'"
                )
        else:
            triggers = flow.triggers()
            if not triggers:
                raise TriggerNotFoundError(f"Flow '{flow.name}' has no UserIntent trigger")
            trigger = next((t for t in triggers if t.parameters.is_active), triggers[0])

        if not trigger.parameters.is_active and not is_preview:
            raise TriggerInactiveError(f"Trigger '{trigger.slug}' is not active")
        return trigger

    # --- Scheduling ---

    async def _execute(
        self,
        flow: Flow,
        trigger: NodeInstance,
        execution: FlowExecution,
        params: dict[str, Any],
        secrets: dict[str, Any],
        token: CancellationToken,
        call_stack: tuple[str, ...],
    ) -> None:
        run_set = compute_run_set(flow, trigger.id)
        requirements = self._requirements(flow, run_set)
        order = {node.id: index for index, node in enumerate(flow.nodes)}
        state = _RunState(outputs={SECRETS_NAMESPACE: secrets})

        waiting = sorted(run_set, key=order.__getitem__)
        running: dict[asyncio.Task, str] = {}

        while True:
            ready = self._collect_ready(waiting, requirements, state)

            for node_id in ready:
                if state.returned or (state.failed and self.config.fail_fast):
                    break
                if len(running) >= self.config.max_parallel_nodes:
                    break
                if token.cancelled:
                    state.cancelled = True
                    break
                waiting.remove(node_id)
                node = flow.get_node(node_id)
                logger.debug(f"Dispatching {node.type.value} node '{node.slug}'")
                task = asyncio.create_task(
                    self._run_node(
                        flow, node, execution, params, state, token, call_stack
                    )
                )
                running[task] = node_id

            if not running:
                break

            done, _ = await asyncio.wait(set(running), return_when=asyncio.FIRST_COMPLETED)
            # Record in declaration order when several finish together
            for task in sorted(done, key=lambda t: order[running[t]]):
                running.pop(task)
                self._record(flow, execution, state, task.result())

        self._finish(execution, state)

    @staticmethod
    def _requirements(flow: Flow, run_set: set[str]) -> dict[str, list[_Requirement]]:
        """Per node, the producers it waits for. Producers outside the run set are ignored."""
        by_slug = {n.slug: n.id for n in flow.nodes}
        requirements: dict[str, list[_Requirement]] = {node_id: [] for node_id in run_set}
        for conn in flow.connections:
            if conn.target_node_id in run_set and conn.source_node_id in run_set:
                requirements[conn.target_node_id].append(
                    _Requirement(conn.source_node_id, on_failure=conn.is_fallback)
                )
        for node in flow.nodes:
            if node.id not in run_set:
                continue
            for ref in extract_all_references(node):
                source_id = by_slug.get(ref.node_slug)
                if source_id in run_set and source_id != node.id:
                    requirements[node.id].append(_Requirement(source_id))
        return requirements

    @staticmethod
    def _collect_ready(
        waiting: list[str],
        requirements: dict[str, list[_Requirement]],
        state: _RunState,
    ) -> list[str]:
        """Ready node ids in declaration order; unreachable nodes move to ``skipped``."""
        changed = True
        while changed:
            changed = False
            for node_id in list(waiting):
                reqs = requirements[node_id]
                settled = [r for r in reqs if r.source_id in state.finished or r.source_id in state.skipped]
                if len(settled) < len(reqs):
                    continue
                satisfied = all(
                    r.source_id in state.finished and state.finished[r.source_id] != r.on_failure
                    for r in reqs
                )
                if not satisfied:
                    waiting.remove(node_id)
                    state.skipped.add(node_id)
                    changed = True
        return [
            node_id
            for node_id in waiting
            if all(
                r.source_id in state.finished or r.source_id in state.skipped
                for r in requirements[node_id]
            )
        ]

    def _record(
        self, flow: Flow, execution: FlowExecution, state: _RunState, outcome: _NodeOutcome
    ) -> None:
        node = outcome.node
        execution.node_executions.append(outcome.record)
        state.finished[node.id] = outcome.succeeded

        if outcome.succeeded:
            state.outputs[node.slug] = outcome.value
            if node.type == NodeType.RETURN:
                execution.output = outcome.value
                state.returned = True
        else:
            message = outcome.record.error or ""
            state.errors[node.id] = message
            has_fallback = any(
                c.source_node_id == node.id and c.is_fallback for c in flow.connections
            )
            if has_fallback:
                logger.warning(f"Node '{node.slug}' failed, continuing on its error path: {message}")
            elif not state.failed:
                state.failed = True
                kind = _error_kind(outcome.error)
                execution.error_info = ExecutionErrorInfo(
                    message=message, kind=kind, node_id=node.id, node_slug=node.slug
                )
        self.store.save(execution)

    def _finish(self, execution: FlowExecution, state: _RunState) -> None:
        if state.cancelled and execution.error_info is None:
            execution.error_info = ExecutionErrorInfo(message="Execution cancelled", kind="cancelled")
            logger.warning(f"Execution {execution.id} cancelled")
        if execution.error_info is not None:
            execution.status = ExecutionStatus.ERROR
        else:
            execution.status = ExecutionStatus.COMPLETED

    # --- Node execution ---

    async def _run_node(
        self,
        flow: Flow,
        node: NodeInstance,
        execution: FlowExecution,
        params: dict[str, Any],
        state: _RunState,
        token: CancellationToken,
        call_stack: tuple[str, ...],
    ) -> _NodeOutcome:
        executed_at = _utc_now()
        start = time.perf_counter()
        raw_params = node.parameters_dict()
        ctx = NodeContext(
            node=node,
            params=raw_params,
            inputs=self._upstream_inputs(flow, node, state),
            execution=execution,
            executor=self,
            call_stack=call_stack,
            trigger_params=params,
            secrets=state.outputs[SECRETS_NAMESPACE],
            cancel_token=token,
            input_data=raw_params,
        )

        try:
            ctx.params = resolve_value(raw_params, state.outputs)
            ctx.input_data = self._recorded_params(raw_params, ctx.params, state)
            if self.config.validate_runtime_inputs:
                self._validate_inputs(ctx)
            result = await self._dispatch(ctx)
            self._check_output(node, result.value)
        except Exception as e:
            duration_ms = int((time.perf_counter() - start) * 1000)
            message = str(e) or type(e).__name__
            logger.debug(f"Node '{node.slug}' failed after {duration_ms}ms: {message}")
            record = NodeExecutionData(
                node_id=node.id,
                node_slug=node.slug,
                node_name=node.name,
                node_type=node.type.value,
                executed_at=executed_at,
                input_data=ctx.input_data,
                output_data=create_error_metadata(
                    message, duration_ms, extra={"errorType": type(e).__name__, **ctx.metadata_extra}
                ),
                status=NodeExecutionStatus.ERROR,
                error=message,
                execution_time_ms=duration_ms,
            )
            return _NodeOutcome(node=node, record=record, error=e)

        duration_ms = int((time.perf_counter() - start) * 1000)
        record = NodeExecutionData(
            node_id=node.id,
            node_slug=node.slug,
            node_name=node.name,
            node_type=node.type.value,
            executed_at=executed_at,
            input_data=ctx.input_data,
            output_data=create_success_metadata(result.value, duration_ms, extra=result.extra),
            status=NodeExecutionStatus.COMPLETED,
            execution_time_ms=duration_ms,
        )
        logger.debug(f"Node '{node.slug}' completed in {duration_ms}ms")
        return _NodeOutcome(node=node, record=record, value=result.value)

    async def _dispatch(self, ctx: NodeContext) -> HandlerResult:
        match ctx.node.type:
            case NodeType.USER_INTENT:
                return await handle_user_intent(ctx)
            case NodeType.INTERFACE:
                return await handle_interface(ctx)
            case NodeType.RETURN:
                return await handle_return(ctx)
            case NodeType.CALL_FLOW:
                return await handle_call_flow(ctx)
            case NodeType.API_CALL:
                return await handle_api_call(ctx)
            case NodeType.JAVASCRIPT_CODE_TRANSFORM:
                return await handle_transform(ctx)
            case NodeType.LINK:
                return await handle_link(ctx)
            case _ as unreachable:
                assert_never(unreachable)

    @staticmethod
    def _recorded_params(
        raw: dict[str, Any], resolved: dict[str, Any], state: _RunState
    ) -> dict[str, Any]:
        secrets = state.outputs[SECRETS_NAMESPACE]
        if not secrets:
            return resolved
        return resolve_value(raw, {**state.outputs, SECRETS_NAMESPACE: _redact(secrets)})

    @staticmethod
    def _upstream_inputs(flow: Flow, node: NodeInstance, state: _RunState) -> dict[str, Any]:
        """Outputs of connected producers by slug. A failed producer on an error path gives its error."""
        inputs: dict[str, Any] = {}
        for conn in flow.connections:
            if conn.target_node_id != node.id:
                continue
            source = flow.get_node(conn.source_node_id)
            succeeded = state.finished.get(source.id)
            if succeeded:
                inputs[source.slug] = state.outputs[source.slug]
            elif succeeded is False and conn.is_fallback:
                inputs[source.slug] = {"error": state.errors.get(source.id)}
        return inputs

    @staticmethod
    def _validate_inputs(ctx: NodeContext) -> None:
        """Check upstream data against a node's parameter-defined input schema."""
        definition = get_node_type(ctx.node.type)
        if not definition.has_dynamic_input or not ctx.inputs:
            return
        schema = definition.resolve_input_schema(ctx.node.parameters)
        if not schema:
            return
        merged: dict[str, Any] = {}
        for value in ctx.inputs.values():
            if isinstance(value, dict):
                merged.update(value)
        result = validate_data_against_schema(merged, schema)
        if not result.valid:
            raise InputValidationError(
                f"Input does not match the schema of '{ctx.node.slug}': {'; '.join(result.errors)}",
                errors=result.errors,
            )

    @staticmethod
    def _check_output(node: NodeInstance, value: Any) -> None:
        # Declared output schemas are advisory; violations are only reported
        definition = get_node_type(node.type)
        if not definition.has_dynamic_output or node.type == NodeType.USER_INTENT:
            return
        schema = definition.resolve_output_schema(node.parameters)
        if not schema:
            return
        result = validate_data_against_schema(value, schema)
        if not result.valid:
            logger.warning(
                f"Output of '{node.slug}' does not match its declared schema: {'; '.join(result.errors)}"
            )
