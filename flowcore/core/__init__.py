"""Core modules for the flowcore engine."""

from flowcore.core.errors import FlowcoreError, GraphInvariantError
from flowcore.core.models import (
    Connection,
    ExecutionStatus,
    Flow,
    FlowExecution,
    NodeInstance,
    NodeType,
)

__all__ = [
    "Connection",
    "ExecutionStatus",
    "Flow",
    "FlowExecution",
    "FlowcoreError",
    "GraphInvariantError",
    "NodeInstance",
    "NodeType",
]
