from typing import Literal, Optional, get_args

ModelErrorType = Literal[
    "invalid_request",
    "authentication_error",
    "permission_error",
    "quota_exceeded",
    "rate_limited",
    "transient_network",
    "unknown",
]

MODEL_ERROR_TYPES: tuple[str, ...] = get_args(ModelErrorType)


class AgentLoopError(Exception):
    """Base exception for stepwise errors."""


class ConfigurationError(AgentLoopError):
    """Raised when settings are missing or invalid, before any run starts."""


class StepLimitError(AgentLoopError):
    """Raised when the agent runs out of steps without completing."""


class RunCancelled(AgentLoopError):
    """Raised when a run is cancelled through its cancel event."""


class ModelError(AgentLoopError):
    """Raised by a model adaptor. ``type`` is one of MODEL_ERROR_TYPES."""

    def __init__(self, type: str, message: str):
        if type not in MODEL_ERROR_TYPES:
            type = "unknown"
        super().__init__(message)
        self.type = type
        self.message = message

    def __repr__(self) -> str:
        return f"ModelError(type={self.type!r}, message={self.message!r})"


class ToolError(AgentLoopError):
    """Raised by tools. ``code`` follows HTTP conventions."""

    code = 500

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ToolValidationError(ToolError):
    """Raised when tool input fails Pydantic validation."""

    code = 400


class ToolNotFound(ToolError):
    """Raised when model calls a tool that doesn't exist."""

    code = 404


class ToolTimeoutError(ToolError):
    """Raised when a tool does not finish within its timeout."""

    code = 408


class ToolExecutionError(ToolError):
    """Raised when tool execution fails critically."""

    code = 500


class RetryError(AgentLoopError):
    """Base for errors raised by RetryingModel; wraps the last model error."""

    def __init__(self, message: str, last_error: BaseException, attempts: int):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


class RetryExhaustedError(RetryError):
    """Every attempt failed with a retryable error."""


class NonRetryableError(RetryError):
    """The model failed with an error the retry predicate rejected."""


class RetryCancelled(RetryError):
    """The caller cancelled while a retry was waiting."""
