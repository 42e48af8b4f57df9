"""Structured error types for the orchestrator."""


class AgentError(Exception):
    """Base error for all agent operations."""
    pass


class ConfigError(AgentError):
    """Raised when configuration cannot be resolved."""
    pass


class LLMConnectionError(AgentError):
    """Chat-completion endpoint unreachable or returned a non-2xx status."""
    pass


class InvalidResponseError(AgentError):
    """Chat-completion endpoint answered with something we cannot read."""
    pass


class ToolError(AgentError):
    """Error raised while decoding or dispatching a tool call."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"{tool_name} error: {message}")


class IntegrityError(AgentError):
    """Conversation bookkeeping is inconsistent; the turn must not go upstream."""

    def __init__(self, message: str, tool_call_id: str = None):
        self.tool_call_id = tool_call_id
        super().__init__(message)


class IterationLimitError(AgentError):
    """Error recovery ran out of attempts."""

    def __init__(self, max_iterations: int):
        self.max_iterations = max_iterations
        super().__init__(
            f"Maximum iteration limit ({max_iterations}) reached. Unable to fix the error."
        )


class ExecutionCancelled(AgentError):
    """The user rejected a pending code execution, or its connection went away."""

    def __init__(self, reason: str = "Code execution cancelled by user"):
        self.reason = reason
        super().__init__(reason)


class ExecutorUnavailableError(AgentError):
    """The code executor could not be reached at all."""
    pass


class SessionBusyError(AgentError):
    """A turn is already in flight for this session."""

    def __init__(self, session_id: str = None):
        self.session_id = session_id
        label = f" {session_id}" if session_id else ""
        super().__init__(f"Session{label} is busy; wait for the current turn to finish.")


class SessionInUseError(SessionBusyError):
    """The session is already open on another connection."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        AgentError.__init__(self, f"Session {session_id} is already open on another connection.")


class UnknownExecutionError(AgentError):
    """No pending execution is registered under the given id."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"No pending code execution found: {execution_id}")


class RoundLimitError(AgentError):
    """A turn made too many chat-completion requests without a final answer."""

    def __init__(self, max_rounds: int):
        self.max_rounds = max_rounds
        super().__init__(f"No final answer after {max_rounds} model requests; turn aborted.")
