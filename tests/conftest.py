# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the flowcore test suite.

This module provides foundational fixtures used across all test modules:
- Flow repositories and graphs built through the mutation API
- Executors wired to an httpx.MockTransport and a fake code runner
- Sample flow files for CLI tests

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    All fixtures in this file are automatically available in test modules.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest
import yaml

from flowcore.core.config import EngineConfig
from flowcore.core.executor import FlowExecutor
from flowcore.core.graph import FlowGraph, FlowRepository
from flowcore.core.models import Flow, FlowExecution, NodeType
from flowcore.core.store import InMemoryExecutionStore
from flowcore.sandbox.transport import HttpxTransport


# =============================================================================
# Fakes
# =============================================================================


class FakeCodeRunner:
    """CodeRunner double.

    ``behavior`` is returned as-is, called with the input when callable, or
    raised when it is an exception.
    """

    def __init__(self, behavior: Any = None):
        self.behavior = behavior
        self.calls: list[dict[str, Any]] = []

    async def run(self, code: str, input_data: Any, timeout_ms: int) -> Any:
        self.calls.append({"code": code, "input": input_data, "timeout_ms": timeout_ms})
        if isinstance(self.behavior, Exception):
            raise self.behavior
        if callable(self.behavior):
            return self.behavior(input_data)
        return self.behavior


def json_handler(payload: Any, status: int = 200) -> Callable[[httpx.Request], httpx.Response]:
    """MockTransport handler that always answers with ``payload`` as JSON."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=payload)

    return handler


def mock_transport(handler: Callable[[httpx.Request], httpx.Response]) -> HttpxTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpxTransport(client=client)


def run_sync(executor: FlowExecutor, flow: Flow | str, params: dict | None = None, **kwargs) -> FlowExecution:
    return asyncio.run(executor.run(flow, params, **kwargs))


# =============================================================================
# Graph Fixtures
# =============================================================================


@pytest.fixture
def repository() -> FlowRepository:
    return FlowRepository()


@pytest.fixture
def graph(repository: FlowRepository) -> FlowGraph:
    """Empty flow registered in ``repository``."""
    flow = repository.save(Flow(name="Test Flow"))
    return FlowGraph(flow, repository=repository)


@pytest.fixture
def linear_graph(graph: FlowGraph) -> FlowGraph:
    """Trigger -> A -> B -> C.

    Node slugs: ``trigger``, ``a``, ``b``, ``c``. A, B and C are
    JavaScriptCodeTransform nodes, so the fake runner decides their output.
    """
    trigger = graph.add_node(NodeType.USER_INTENT, "Trigger")
    previous = trigger
    for name in ("A", "B", "C"):
        node = graph.add_node(NodeType.JAVASCRIPT_CODE_TRANSFORM, name)
        graph.add_connection(previous.id, node.id)
        previous = node
    return graph


# =============================================================================
# Executor Fixtures
# =============================================================================


@pytest.fixture
def code_runner() -> FakeCodeRunner:
    return FakeCodeRunner(lambda data: data)


@pytest.fixture
def make_executor(repository: FlowRepository, code_runner: FakeCodeRunner):
    """Factory for executors sharing the test repository.

    Example:
        def test_x(make_executor):
            executor = make_executor(handler=json_handler({"ok": True}), fail_fast=False)
    """

    def factory(
        handler: Callable[[httpx.Request], httpx.Response] | None = None,
        runner: Any = None,
        **config: Any,
    ) -> FlowExecutor:
        return FlowExecutor(
            repository=repository,
            store=InMemoryExecutionStore(),
            transport=mock_transport(handler or json_handler({})),
            code_runner=runner or code_runner,
            config=EngineConfig(**config),
        )

    return factory


# =============================================================================
# File Fixtures
# =============================================================================


@pytest.fixture
def flow_file(tmp_path: Path) -> Path:
    """YAML flow: greet trigger -> done return."""
    data = {
        "id": "flow-greet",
        "name": "Greeter",
        "nodes": [
            {
                "id": "n-trigger",
                "name": "Greet",
                "slug": "greet",
                "type": "UserIntent",
                "parameters": {
                    "tool_name": "greet",
                    "parameters": [{"name": "who", "type": "string"}],
                },
            },
            {
                "id": "n-done",
                "name": "Done",
                "slug": "done",
                "type": "Return",
                "parameters": {"value": "Hello {{greet.who}}"},
            },
        ],
        "connections": [{"id": "c1", "source_node_id": "n-trigger", "target_node_id": "n-done"}],
    }
    path = tmp_path / "greeter.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


@pytest.fixture
def json_flow_file(tmp_path: Path, flow_file: Path) -> Path:
    path = tmp_path / "greeter.json"
    path.write_text(json.dumps(yaml.safe_load(flow_file.read_text())))
    return path
