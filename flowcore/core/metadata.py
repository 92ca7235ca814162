"""Execution metadata envelope (``_execution``) attached to node outputs.

Every node output is one self-describing value: the node's own fields plus an
``_execution`` object. Non-object values are wrapped as
``{"_value": value, "_execution": {...}}``. Envelope keys keep their persisted
camelCase names.

The ``extract_*`` accessors reconcile three generations of stored output,
each field independently:

1. ``_execution.<field>`` (current format)
2. a legacy root-level field (``success``, ``error``, ``status``)
3. the node record's own fallback value

This is a migration shim; once every persisted record carries ``_execution``
tier 2 can be dropped.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, TypedDict

from pydantic import BaseModel

from flowcore.core.models import NodeExecutionData

EXECUTION_KEY = "_execution"
VALUE_KEY = "_value"


class ExecutionMetadata(TypedDict, total=False):
    success: bool
    error: str
    errorType: str
    durationMs: int


class ApiExecutionMetadata(ExecutionMetadata, total=False):
    httpStatus: int
    httpStatusText: str
    requestUrl: str


class CallFlowExecutionMetadata(ExecutionMetadata, total=False):
    childExecutionId: str


class TriggerExecutionMetadata(ExecutionMetadata, total=False):
    type: Literal["trigger"]
    toolName: str


class NodeDisplayStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    PENDING = "pending"


class NodeExecutionStatusInfo(BaseModel):
    status: NodeDisplayStatus
    error: str | None = None
    duration_ms: int | None = None
    http_status: int | None = None
    request_url: str | None = None


# ========== Constructors ==========


def _needs_wrapping(value: Any) -> bool:
    if not isinstance(value, dict):
        return True
    # Would be ambiguous when stripped back
    return EXECUTION_KEY in value or set(value) == {VALUE_KEY}


def _attach(value: Any, metadata: dict[str, Any]) -> dict[str, Any]:
    if _needs_wrapping(value):
        return {VALUE_KEY: value, EXECUTION_KEY: metadata}
    return {**value, EXECUTION_KEY: metadata}


def create_success_metadata(
    value: Any,
    duration_ms: int | None = None,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Attach a success envelope to ``value``."""
    metadata: dict[str, Any] = {"success": True}
    if duration_ms is not None:
        metadata["durationMs"] = duration_ms
    if extra:
        metadata.update(extra)
    return _attach(value, metadata)


def create_error_metadata(
    error: BaseException | str,
    duration_ms: int | None = None,
    extra: dict[str, Any] | None = None,
    value: Any = None,
) -> dict[str, Any]:
    """Build a failed node output.

    ``value`` carries whatever partial output the node produced; without it
    the output is the bare envelope.
    """
    message = error if isinstance(error, str) else (str(error) or type(error).__name__)
    metadata: dict[str, Any] = {"success": False, "error": message}
    if duration_ms is not None:
        metadata["durationMs"] = duration_ms
    if extra:
        metadata.update(extra)
    if value is None:
        return {EXECUTION_KEY: metadata}
    return _attach(value, metadata)


# ========== Type guards ==========


def has_execution_metadata(value: Any) -> bool:
    return isinstance(value, dict) and isinstance(value.get(EXECUTION_KEY), dict)


def get_execution_metadata(value: Any) -> ExecutionMetadata | None:
    return value[EXECUTION_KEY] if has_execution_metadata(value) else None


def is_successful_execution(metadata: dict[str, Any] | None) -> bool:
    return bool(metadata) and metadata.get("success") is True


def is_api_execution_metadata(metadata: dict[str, Any] | None) -> bool:
    return bool(metadata) and ("httpStatus" in metadata or "requestUrl" in metadata)


# ========== Accessors ==========


def extract_node_status(output: Any, fallback: str | Enum | None = None) -> NodeDisplayStatus:
    """Node status: ``_execution.success``, then root ``success``, then the record status."""
    metadata = get_execution_metadata(output)
    if metadata is not None and isinstance(metadata.get("success"), bool):
        return NodeDisplayStatus.SUCCESS if metadata["success"] else NodeDisplayStatus.ERROR

    if isinstance(output, dict) and isinstance(output.get("success"), bool):
        return NodeDisplayStatus.SUCCESS if output["success"] else NodeDisplayStatus.ERROR

    fallback_value = fallback.value if isinstance(fallback, Enum) else fallback
    if fallback_value == "completed":
        return NodeDisplayStatus.SUCCESS
    if fallback_value == "error":
        return NodeDisplayStatus.ERROR
    return NodeDisplayStatus.PENDING


def extract_error_message(output: Any, fallback: str | None = None) -> str | None:
    metadata = get_execution_metadata(output)
    if metadata is not None and metadata.get("error"):
        return metadata["error"]
    if isinstance(output, dict) and isinstance(output.get("error"), str):
        return output["error"]
    return fallback


def extract_duration_ms(output: Any, fallback: int | None = None) -> int | None:
    metadata = get_execution_metadata(output)
    if metadata is not None:
        duration = metadata.get("durationMs")
        if isinstance(duration, (int, float)) and not isinstance(duration, bool):
            return int(duration)
    return fallback


def extract_http_status(output: Any) -> int | None:
    metadata = get_execution_metadata(output)
    if metadata is not None and _is_int(metadata.get("httpStatus")):
        return metadata["httpStatus"]
    # Older ApiCall outputs carried the status code at the root
    if isinstance(output, dict) and _is_int(output.get("status")):
        return output["status"]
    return None


def extract_http_status_text(output: Any) -> str | None:
    metadata = get_execution_metadata(output)
    if metadata is not None and isinstance(metadata.get("httpStatusText"), str):
        return metadata["httpStatusText"]
    if isinstance(output, dict) and isinstance(output.get("statusText"), str):
        return output["statusText"]
    return None


def extract_request_url(output: Any) -> str | None:
    metadata = get_execution_metadata(output)
    if metadata is not None and isinstance(metadata.get("requestUrl"), str):
        return metadata["requestUrl"]
    return None


def extract_output_data_for_display(output: Any) -> Any:
    """Clean value of a node output: envelope stripped, primitives unwrapped.

    Exact inverse of create_success_metadata. Missing or non-object output
    (legacy records) reads as an empty object.
    """
    if not isinstance(output, dict):
        return {}
    if EXECUTION_KEY not in output:
        return output
    data = {key: value for key, value in output.items() if key != EXECUTION_KEY}
    if set(data) == {VALUE_KEY}:
        return data[VALUE_KEY]
    return data


def extract_status_info(record: NodeExecutionData) -> NodeExecutionStatusInfo:
    """All display fields of one node record, each reconciled independently."""
    output = record.output_data if record.output_data is not None else {}
    return NodeExecutionStatusInfo(
        status=extract_node_status(output, record.status),
        error=extract_error_message(output, record.error),
        duration_ms=extract_duration_ms(output, record.execution_time_ms),
        http_status=extract_http_status(output),
        request_url=extract_request_url(output),
    )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
