"""Exception hierarchy for the query engine."""


class AgentflowError(RuntimeError):
    """Base class for engine errors; ``kind`` is reported in ``error`` stream events."""

    kind = "internal"


class ToolExecutionError(AgentflowError):
    """Raised when a requested tool cannot run or fails."""

    kind = "tool_execution"


class ToolResolutionError(AgentflowError):
    """The model named a tool that was never declared to it."""

    kind = "tool_resolution"


class ToolLoopExceeded(AgentflowError):
    """The tool-calling loop hit its configured iteration cap."""

    kind = "tool_loop_exceeded"

    def __init__(self, limit: int, subquery: str):
        super().__init__(f"Tool loop exceeded {limit} iterations while fulfilling {subquery!r}")
        self.limit = limit
        self.subquery = subquery


class ModelBackendError(AgentflowError):
    """A model backend is missing, misconfigured or its transport failed."""

    kind = "model_backend"


class ConnectorError(AgentflowError):
    """A tool connector could not be reached or answered with a protocol error."""

    kind = "connector"
