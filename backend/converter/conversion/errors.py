"""Error taxonomy for the conversion pipeline."""
from typing import Optional


class ConversionError(Exception):
    """Base class for pipeline errors."""


class ValidationError(ConversionError):
    """Bad input format or options at creation time. The task is never created."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason


class NotSupportedError(ConversionError):
    """No configured engine handles the request."""


class NotFoundError(ConversionError):
    pass


class ConflictError(ConversionError):
    """A compare-and-swap transition lost a race; the stored state did not match."""

    def __init__(self, task_id: str, expected: str, actual: Optional[str] = None):
        msg = f"task {task_id}: expected state {expected}"
        if actual:
            msg += f", found {actual}"
        super().__init__(msg)
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


class InvalidTransitionError(ConversionError):
    """Requested edge is not part of the task state machine."""


class DispatchError(ConversionError):
    """Engine unavailable or queue unreachable. The task stays PENDING."""

    def __init__(self, message: str, task=None):
        super().__init__(message)
        self.task = task


# Execution error classifications
TIMEOUT = "TimeoutError"
CORRUPT_INPUT = "CorruptInput"
UNSUPPORTED_CODEC = "UnsupportedCodec"
FILE_TOO_LARGE = "FileTooLarge"
INVALID_INPUT = "InvalidInput"
VALIDATION_DRIFT = "ValidationDrift"
RESOURCE_EXHAUSTED = "ResourceExhausted"
NETWORK_ERROR = "NetworkError"
ENGINE_UNAVAILABLE = "EngineUnavailable"
PROCESS_ERROR = "ProcessError"
REMOTE_ERROR = "RemoteError"

RETRYABLE_CLASSIFICATIONS = frozenset({
    TIMEOUT,
    RESOURCE_EXHAUSTED,
    NETWORK_ERROR,
    ENGINE_UNAVAILABLE,
    PROCESS_ERROR,
    REMOTE_ERROR,
})


class ExecutionError(ConversionError):
    """Failure reported by an engine executor."""

    def __init__(self, classification: str, message: str, retryable: Optional[bool] = None):
        super().__init__(f"{classification}: {message}")
        self.classification = classification
        self.message = message
        self.retryable = classification in RETRYABLE_CLASSIFICATIONS if retryable is None else retryable


class ExecutionCancelled(ConversionError):
    """The task was cancelled while an executor held it."""
