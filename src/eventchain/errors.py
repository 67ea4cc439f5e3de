"""
Error taxonomy for the event pipeline.

Every failure the pipeline can produce is an :class:`EventChainError`.  The
``retryable`` flag is fixed where the error is created, so the retry executor
never has to guess from message text whether an operation is worth repeating.

    EventChainError
    ├── ConfigError            fatal, raised at construction
    ├── PayloadTooLargeError   terminal, the payload itself is the problem
    ├── DecodeError            terminal, malformed bytes
    ├── NetworkError           retryable unless built with retryable=False
    ├── RequestTimeoutError    retryable
    ├── TerminalSubmitError    terminal (unauthorized, malformed transaction)
    ├── RetryExhaustedError    wraps the last retryable error
    ├── DeadLetterWriteError   the dead-letter store could not be written
    ├── DeadLetterNotFound     unknown or already resolved dead-letter id
    └── OperationCancelled     a caller-supplied cancel signal was observed

Example:
    try:
        await publisher.publish(event)
    except EventChainError as e:
        print(f"{e.code} (retryable={e.retryable}): {e}")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(eq=False)
class EventChainError(Exception):
    """
    Base exception for the event pipeline.

    Attributes:
        message: Human-readable error message.
        code: Stable machine-readable error code (e.g. "NETWORK_ERROR").
        retryable: Whether repeating the failed operation may succeed.
        detail: Additional context, if available.
    """

    message: str
    code: str = "EVENTCHAIN_ERROR"
    retryable: bool = False
    detail: str = ""

    def __str__(self) -> str:
        """Return a formatted error message."""
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable description of the error."""
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "detail": self.detail,
        }


@dataclass(eq=False)
class ConfigError(EventChainError):
    """Raised when required configuration is missing or invalid."""

    code: str = "INVALID_CONFIGURATION"


@dataclass(eq=False)
class PayloadTooLargeError(EventChainError):
    """
    Raised when an encoded event exceeds the transport size limit.

    Attributes:
        size_bytes: Encoded size of the rejected payload.
        limit_bytes: Configured maximum payload size.
    """

    code: str = "PAYLOAD_TOO_LARGE"
    size_bytes: int = 0
    limit_bytes: int = 0


@dataclass(eq=False)
class DecodeError(EventChainError):
    """Raised when bytes cannot be decoded into an EventRecord."""

    code: str = "DECODE_ERROR"


@dataclass(eq=False)
class NetworkError(EventChainError):
    """
    Raised when the log or its query API cannot be reached, or answers with a
    non-success status.

    Attributes:
        status_code: HTTP status code, or 0 when no response was received.
    """

    code: str = "NETWORK_ERROR"
    retryable: bool = True
    status_code: int = 0


@dataclass(eq=False)
class RequestTimeoutError(EventChainError):
    """Raised when a request exceeds its configured timeout."""

    code: str = "TIMEOUT"
    retryable: bool = True
    timeout_ms: float = 0.0


@dataclass(eq=False)
class TerminalSubmitError(EventChainError):
    """Raised when the log rejects a submission in a way retrying cannot fix."""

    code: str = "SUBMISSION_REJECTED"


@dataclass(eq=False)
class RetryExhaustedError(EventChainError):
    """
    Raised by the retry executor once every retry has failed.

    Attributes:
        attempts: Number of retries performed (the operation ran attempts + 1 times).
        last_error: The error raised by the final invocation.
    """

    code: str = "RETRY_EXHAUSTED"
    retryable: bool = True
    attempts: int = 0
    last_error: BaseException | None = field(default=None, repr=False)


@dataclass(eq=False)
class DeadLetterWriteError(EventChainError):
    """Raised when the dead-letter store cannot be written."""

    code: str = "DEAD_LETTER_WRITE_FAILED"
    retryable: bool = True


@dataclass(eq=False)
class DeadLetterNotFound(EventChainError):
    """Raised when a dead-letter id does not name an open failure."""

    code: str = "DEAD_LETTER_NOT_FOUND"


@dataclass(eq=False)
class OperationCancelled(EventChainError):
    """Raised when a caller-supplied cancellation signal interrupts a wait."""

    code: str = "CANCELLED"


def error_for_status(status_code: int, message: str, detail: str = "") -> NetworkError:
    """
    Map a non-success HTTP status to a tagged NetworkError.

    429 is ``RATE_LIMITED`` and retryable, 401/403 are ``UNAUTHORIZED`` and
    terminal, 5xx are retryable and any other status is terminal.
    """
    if status_code == 429:
        return NetworkError(message, code="RATE_LIMITED", detail=detail, status_code=status_code)
    if status_code in (401, 403):
        return NetworkError(
            message, code="UNAUTHORIZED", retryable=False, detail=detail, status_code=status_code
        )
    return NetworkError(
        message, detail=detail, retryable=status_code >= 500, status_code=status_code
    )
