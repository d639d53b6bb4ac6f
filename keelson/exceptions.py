"""Custom exceptions for Keelson."""


class KeelsonError(Exception):
    """Base exception for Keelson."""

    pass


class ConfigurationError(KeelsonError):
    """Configuration-related errors."""

    pass


class LLMError(KeelsonError):
    """LLM-related errors."""

    pass


class TransportError(LLMError):
    """Provider call failed at the transport level.

    ``kind`` is one of ``timeout``, ``connect``, ``status`` or ``protocol``.
    """

    RETRYABLE_KINDS = ("timeout", "connect")

    def __init__(
        self,
        message: str,
        kind: str = "protocol",
        status_code: int | None = None,
        attempts: int = 1,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code
        self.attempts = attempts

    @property
    def retryable(self) -> bool:
        """Timeouts, connect failures and 5xx responses are worth retrying."""
        if self.kind in self.RETRYABLE_KINDS:
            return True
        return self.kind == "status" and self.status_code is not None and self.status_code >= 500

    def __str__(self) -> str:
        if self.attempts > 1:
            return f"Failed to complete request after {self.attempts} attempts. Original error: {self.message}"
        return self.message


class ToolError(KeelsonError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ToolBlockedError(ToolError):
    """Tool execution blocked by policy."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Tool '{tool_name}' blocked: {reason}")
        self.tool_name = tool_name
        self.reason = reason


class PathViolationError(ToolError):
    """Path escapes the workspace root."""

    def __init__(self, path: str, reason: str | None = None):
        message = f"Path '{path}' is outside the workspace"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.path = path


class PermissionDeniedError(ToolError):
    """Command or path refused by the sandbox."""

    def __init__(self, subject: str, reason: str, label: str = "Command blocked"):
        super().__init__(f"{label}: '{subject}'\nReason: {reason}")
        self.subject = subject
        self.reason = reason


class SessionError(KeelsonError):
    """Session-related errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id
