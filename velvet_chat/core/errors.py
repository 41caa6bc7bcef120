"""
Error taxonomy for the request pipeline.

Every failure that leaves the executor carries an ``ErrorKind`` so
callers branch on the kind instead of matching error text.
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Optional


class ErrorKind(Enum):
    """Classification of a failed turn."""
    ADMISSION_DENIED = auto()   # Local pre-check refused, no network call
    QUOTA_EXHAUSTED = auto()    # Provider confirmed quota exhaustion
    TRANSIENT_FAILURE = auto()  # Retryable (5xx, network, timeout)
    EMPTY_RESPONSE = auto()     # Stream finished with nothing displayable
    FATAL = auto()              # Anything else, including retry exhaustion


class ConversationError(Exception):
    """Base exception for classified pipeline failures."""

    kind = ErrorKind.FATAL

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        self.message = message
        self.original_error = original_error
        super().__init__(message)

    def __str__(self):
        if self.original_error:
            return f"{self.message} (Caused by: {self.original_error})"
        return self.message


class AdmissionDenied(ConversationError):
    """Raised when the local usage guard refuses a new request."""

    kind = ErrorKind.ADMISSION_DENIED

    def __init__(self, retry_after: int, message: str = "Request blocked by local rate limit"):
        self.retry_after = retry_after
        super().__init__(message)

    def __str__(self):
        return f"{self.message}. Try again in {self.retry_after} seconds."


class QuotaExhausted(ConversationError):
    """Raised when the provider reports quota/resource exhaustion."""

    kind = ErrorKind.QUOTA_EXHAUSTED


class EmptyResponse(ConversationError):
    """Raised when a stream completes without any displayable text."""

    kind = ErrorKind.EMPTY_RESPONSE

    def __init__(self, message: str = "EMPTY_RESPONSE"):
        super().__init__(message)


class FatalError(ConversationError):
    """Raised for non-retryable failures and exhausted retry budgets."""

    kind = ErrorKind.FATAL


class RequestTimeout(Exception):
    """An attempt lost the race against its timer."""

    SENTINEL = "REQUEST_TIMEOUT"

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"{self.SENTINEL}: no response after {timeout_ms}ms")


class TurnInProgress(RuntimeError):
    """A new message was sent while the previous turn is still in flight."""


@dataclass(frozen=True)
class RetryOutcome:
    """Tagged result of a single execution attempt."""
    kind: Optional[ErrorKind]  # None means success
    value: Any = None
    attempt: int = 0
    cause: Optional[BaseException] = None

    @property
    def success(self) -> bool:
        return self.kind is None

    @classmethod
    def succeeded(cls, value: Any, attempt: int = 0) -> "RetryOutcome":
        return cls(kind=None, value=value, attempt=attempt)

    @classmethod
    def quota_exhausted(cls, cause: BaseException, attempt: int = 0) -> "RetryOutcome":
        return cls(kind=ErrorKind.QUOTA_EXHAUSTED, attempt=attempt, cause=cause)

    @classmethod
    def transient_failure(cls, cause: BaseException, attempt: int) -> "RetryOutcome":
        return cls(kind=ErrorKind.TRANSIENT_FAILURE, attempt=attempt, cause=cause)

    @classmethod
    def fatal(cls, cause: BaseException, attempt: int = 0) -> "RetryOutcome":
        return cls(kind=ErrorKind.FATAL, attempt=attempt, cause=cause)
