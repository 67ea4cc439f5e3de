"""
Data model for lifecycle events and the results the pipeline returns.

Every type here is a plain dataclass.  Events are frozen once constructed;
the pipeline reads them but never mutates them.  Results (receipts,
retrieval results, verdicts) are created once per call and handed back to
the caller as values.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from eventchain.errors import EventChainError

SCHEMA_VERSION = "1.0"


class EventType(str, Enum):
    """Lifecycle stage an event records."""

    CREATED = "created"
    PROCESSED = "processed"
    VERIFIED = "verified"
    REJECTED = "rejected"
    CUSTOM = "custom"


class ActorRole(str, Enum):
    """Role of the actor that produced an event."""

    PRODUCER = "producer"
    PROCESSOR = "processor"
    VERIFIER = "verifier"


@dataclass(frozen=True)
class Actor:
    """The identity that performed the recorded action."""

    identity: str
    role: ActorRole
    organization_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", ActorRole(self.role))


@dataclass(frozen=True)
class Location:
    """Where the recorded action happened.  All fields are optional."""

    latitude: float | None = None
    longitude: float | None = None
    address: str = ""
    region: str = ""


def _new_event_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class EventRecord:
    """
    One tamper-evident lifecycle event about a subject.

    Attributes:
        subject_id: The entity (e.g. a product batch) the event is about.
        event_type: Lifecycle stage recorded by this event.  The plain string
                    value (e.g. ``"created"``) is coerced to :class:`EventType`;
                    an unknown value raises ``ValueError``.
        actor: Who performed the action.
        signature: Signature over the event by the actor.  Counts as present
                   only when it meets the configured minimum length.
        payload: Application-defined, JSON-compatible key/value data.
        location: Optional place the action happened.
        previous_event_id: ``event_id`` of the prior event in this subject's
                           chain, or ``None`` for the first event.
        timestamp: Timezone-aware instant of the action.
        event_id: Unique id of this event (32-char UUID4 hex by default).
        schema_version: Version of the event schema.
    """

    subject_id: str
    event_type: EventType
    actor: Actor
    signature: str
    payload: dict[str, Any] = field(default_factory=dict)
    location: Location | None = None
    previous_event_id: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)
    event_id: str = field(default_factory=_new_event_id)
    schema_version: str = SCHEMA_VERSION

    def __post_init__(self) -> None:
        # Plain strings such as "created" are accepted for the enum fields
        object.__setattr__(self, "event_type", EventType(self.event_type))
        if not isinstance(self.actor, Actor):
            raise TypeError(f"actor must be an Actor, got {type(self.actor).__name__}")
        if not isinstance(self.timestamp, datetime):
            raise TypeError(f"timestamp must be a datetime, got {type(self.timestamp).__name__}")


@dataclass(frozen=True)
class EncodedPayload:
    """Transport-ready bytes produced by the codec."""

    data: bytes
    size_bytes: int
    valid: bool = True


@dataclass(frozen=True)
class ErrorInfo:
    """Structured description of a failure, carried on receipts."""

    code: str
    message: str
    retryable: bool
    detail: str = ""

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorInfo:
        """Describe ``exc``; errors outside the taxonomy are treated as terminal."""
        if isinstance(exc, EventChainError):
            return cls(code=exc.code, message=exc.message, retryable=exc.retryable, detail=exc.detail)
        return cls(code="UNEXPECTED_ERROR", message=str(exc) or type(exc).__name__, retryable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class SubmissionReceipt:
    """
    Outcome of publishing one event.

    Attributes:
        success: True if the log accepted the event.
        sequence_number: Sequence number assigned by the log, on success.
        transaction_id: Transaction id assigned by the log, on success.
        error: Failure description, on failure.
        duration_ms: End-to-end publish time in milliseconds.
        attempts: Retries performed before the final outcome.
        size_bytes: Encoded payload size, when encoding succeeded.
        dead_letter_id: Id of the dead-letter entry written for this failure.
    """

    success: bool
    duration_ms: float
    sequence_number: str | None = None
    transaction_id: str | None = None
    error: ErrorInfo | None = None
    attempts: int = 0
    size_bytes: int | None = None
    dead_letter_id: str | None = None


@dataclass(frozen=True)
class TopicAccess:
    """Whether the configured topic can be read, and how long the check took."""

    accessible: bool
    response_time_ms: float
    error: ErrorInfo | None = None


@dataclass(frozen=True)
class RetrievalMetadata:
    """Timing and diagnostics for one query against the read-side API."""

    query_time_ms: float
    within_budget: bool
    message_count: int
    warnings: list[str] = field(default_factory=list)
    log_response_time_ms: float = 0.0
    scanned_count: int = 0


@dataclass(frozen=True)
class RetrievalResult:
    """Events matching a query, in log order, plus retrieval metadata."""

    found: bool
    events: list[EventRecord]
    metadata: RetrievalMetadata


@dataclass(frozen=True)
class MissingLink:
    """An event whose ``previous_event_id`` does not resolve to an earlier event."""

    event_id: str
    previous_event_id: str


@dataclass(frozen=True)
class IntegrityDetails:
    """Diagnostics attached to an :class:`IntegrityVerdict`."""

    expected_sequence: list[int]
    actual_sequence: list[int]
    missing_links: list[MissingLink]
    validated_at: datetime


@dataclass(frozen=True)
class IntegrityVerdict:
    """Result of validating one subject's event chain."""

    valid: bool
    sequence_valid: bool
    signatures_valid: bool
    tampering_detected: bool
    details: IntegrityDetails
