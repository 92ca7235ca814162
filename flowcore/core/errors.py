"""Error taxonomy for the flow engine.

Structural problems (graph invariants, unknown flows) are raised synchronously
by the mutation API and before a run starts. Node-level problems are raised by
resolvers and handlers, then caught by the executor and recorded as data in the
node's ``_execution`` envelope.
"""


class FlowcoreError(Exception):
    """Base class for all engine errors."""


# --- Structural errors (raised, never recorded) ---


class GraphInvariantError(FlowcoreError):
    """A mutation would break a structural invariant of the flow."""


class CycleError(GraphInvariantError):
    """Adding an edge would make the dependency graph cyclic."""

    def __init__(self, message: str, cycle: list[str] | None = None):
        super().__init__(message)
        self.cycle = cycle or []


class SlugError(GraphInvariantError):
    """Slug is malformed, reserved, or already taken."""


class CallFlowTargetError(GraphInvariantError):
    """CallFlow target is missing or leads back to the containing flow."""


class TriggerNotFoundError(FlowcoreError):
    """No usable UserIntent trigger to start the run from."""


class TriggerInactiveError(FlowcoreError):
    """The selected trigger is switched off."""


class FlowNotFoundError(FlowcoreError):
    """Flow id is not known to the repository."""


class NodeNotFoundError(FlowcoreError):
    """Node id is not present in the flow."""


class ConnectionNotFoundError(FlowcoreError):
    """Connection id is not present in the flow."""


class ExecutionNotFoundError(FlowcoreError):
    """Execution id is not known to the store."""


class ConfigError(FlowcoreError):
    """Engine configuration is invalid."""


# --- Node-level errors (recorded in the trace) ---


class MissingReferenceError(FlowcoreError):
    """A template reference could not be resolved against run-time data."""

    def __init__(self, message: str, node_slug: str, field_path: str = ""):
        super().__init__(message)
        self.node_slug = node_slug
        self.field_path = field_path


class NodeExecutionError(FlowcoreError):
    """A node handler failed."""


class HttpRequestError(NodeExecutionError):
    """ApiCall transport failure (network error, invalid request)."""


class NodeTimeoutError(NodeExecutionError):
    """A handler exceeded its time limit."""


class TransformError(NodeExecutionError):
    """User transform code failed to run or returned invalid output."""


class CallFlowRecursionError(NodeExecutionError):
    """CallFlow chain exceeded the depth limit."""


class CallFlowCancelledError(NodeExecutionError):
    """The flow called by a CallFlow node was cancelled."""


class InputValidationError(NodeExecutionError):
    """Run-time data violates the schema a node declares for its input."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []
