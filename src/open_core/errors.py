from __future__ import annotations


class OpenCoreError(Exception):
    """Base class for every error raised by the session core."""


class ConfigError(OpenCoreError, ValueError):
    pass


class SessionError(OpenCoreError):
    NOT_FOUND = "NOT_FOUND"
    LOCKED = "LOCKED"
    BUSY = "BUSY"
    QUEUE_FULL = "QUEUE_FULL"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    REVERT_DISABLED = "REVERT_DISABLED"

    def __init__(self, code: str, message: str, *, session_id: str | None = None):
        super().__init__(message)
        self.code = code
        self.session_id = session_id

    def __str__(self) -> str:
        return f"[{self.code}] {self.args[0]}"


class CompressionError(OpenCoreError):
    pass


class ToolError(OpenCoreError):
    def __init__(self, message: str, *, tool_name: str | None = None):
        super().__init__(message)
        self.tool_name = tool_name


class ToolValidationError(ToolError):
    def __init__(self, message: str, *, tool_name: str | None = None, errors: list[str] | None = None):
        super().__init__(message, tool_name=tool_name)
        self.errors = errors or []


class ToolSecurityError(ToolError):
    pass


class ToolPermissionError(ToolError):
    pass


class ToolExecutionError(ToolError):
    pass


# Validation, security and permission failures surface to the caller instead of
# becoming tool-error events the model can retry around.
FATAL_TOOL_ERRORS: tuple[type[ToolError], ...] = (
    ToolValidationError,
    ToolSecurityError,
    ToolPermissionError,
)


class EditMatchError(OpenCoreError):
    def __init__(self, message: str, *, ambiguous: bool = False):
        super().__init__(message)
        self.ambiguous = ambiguous


class ProviderError(OpenCoreError):
    def __init__(self, message: str, *, status_code: int | None = None, provider_id: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.provider_id = provider_id


class NetworkError(ProviderError):
    pass


class StreamProtocolError(OpenCoreError):
    pass


class StreamAbortedError(OpenCoreError):
    pass


class InvalidToolTransitionError(OpenCoreError):
    pass
