"""JSONL dead-letter store for failed submissions.

Overview
--------
When a publish fails terminally, or exhausts its retries, the event is set
aside here for manual inspection and, later, a manual retry.  The store is a
single append-only JSONL file::

    data/dead_letters.jsonl

The file is never rewritten.  Reviewing, resolving or retrying a failure
appends a status line that refers back to the original failure; readers fold
the lines together in append order.

Envelope format
---------------
Every line is a self-contained JSON object:

.. code-block:: json

    {
      "entry_id":       "5be0c2...",
      "kind":           "failure",
      "failure_id":     "a3f91c9e2d4b5e6f...",
      "recorded_at":    "2026-02-27T14:23:01.452345+00:00",
      "schema_version": "1.0",
      "data":           { ... kind-specific body ... },
      "_checksum":      "sha256:b94f3e..."
    }

``kind`` is one of ``failure``, ``reviewed``, ``retry_attempt`` or
``resolved``.  ``_checksum`` is computed over the JSON-serialised envelope
body (all fields except ``_checksum``, ``sort_keys=True``).  Lines whose
checksum does not match are skipped with a warning when the store is read.

Concurrency
-----------
``fcntl.flock(LOCK_EX)`` is held for every append and ``LOCK_SH`` for every
read.  This serialises writers across threads and processes on one host.
File I/O runs in a worker thread (:func:`asyncio.to_thread`) so the event
loop is never blocked.  ``fcntl`` is POSIX-only.

Failure isolation
-----------------
:meth:`DeadLetterRecorder.record` never raises.  A broken store must not
crash the publisher, so write failures are logged at ``ERROR`` and ``None``
is returned in place of a failure id.  The operator-facing calls
(:meth:`~DeadLetterRecorder.mark_reviewed` and friends) do raise
:exc:`~eventchain.errors.DeadLetterWriteError`, because an operator needs to
know their action was not stored.
"""

from __future__ import annotations

import asyncio
import fcntl
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Literal

from eventchain.codec import event_from_dict, event_to_dict
from eventchain.errors import (
    DeadLetterNotFound,
    DeadLetterWriteError,
    DecodeError,
    RetryExhaustedError,
)
from eventchain.models import ActorRole, ErrorInfo, EventRecord, EventType

logger = logging.getLogger(__name__)

# Increment when the envelope format changes in a backwards-incompatible way.
_SCHEMA_VERSION = "1.0"

# Number of bytes read from the end of the file by verify().  A failure line
# carries one event (<= ~1 KiB encoded) plus error text, so 16 KiB is ample.
_TAIL_CHUNK_BYTES = 16_384

Category = Literal["network", "validation", "rate_limit", "service", "unknown"]
Priority = Literal["low", "medium", "high", "critical"]

_PRIORITY_ORDER: dict[str, int] = {"critical": 4, "high": 3, "medium": 2, "low": 1}

# Error code -> failure category.  Codes not listed are "unknown".
_CATEGORY_BY_CODE: dict[str, Category] = {
    "NETWORK_ERROR": "network",
    "TIMEOUT": "network",
    "RATE_LIMITED": "rate_limit",
    "PAYLOAD_TOO_LARGE": "validation",
    "DECODE_ERROR": "validation",
    "INVALID_CONFIGURATION": "validation",
    "SUBMISSION_REJECTED": "service",
    "UNAUTHORIZED": "service",
}


# ── Result types ──────────────────────────────────────────────────────────────


@dataclass
class DeadLetter:
    """One open failure, folded from its failure line and any status lines.

    Attributes:
        failure_id: Id assigned when the failure was recorded.
        event: The event that could not be published.
        error: The last error seen for this event.
        attempts: Retries performed, including manual retries.
        category: Coarse failure class derived from the error code.
        priority: Review priority derived from the event.
        first_failed_at: When the failure was first recorded.
        last_retry_at: When the event was last attempted.
        reviewed: Whether an operator has reviewed it.
        review_notes: Operator notes, if any.
    """

    failure_id: str
    event: EventRecord
    error: ErrorInfo
    attempts: int
    category: Category
    priority: Priority
    first_failed_at: datetime
    last_retry_at: datetime
    reviewed: bool = False
    review_notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "failure_id": self.failure_id,
            "event": event_to_dict(self.event),
            "error": self.error.to_dict(),
            "attempts": self.attempts,
            "category": self.category,
            "priority": self.priority,
            "first_failed_at": self.first_failed_at.isoformat(),
            "last_retry_at": self.last_retry_at.isoformat(),
            "reviewed": self.reviewed,
            "review_notes": self.review_notes,
        }


@dataclass(frozen=True)
class DeadLetterStatistics:
    """Aggregate view of the open failures, for monitoring."""

    total_failures: int
    failures_by_category: dict[str, int] = field(default_factory=dict)
    failures_by_error_code: dict[str, int] = field(default_factory=dict)
    recent_failures: int = 0
    average_attempts: float = 0.0


@dataclass(frozen=True)
class DeadLetterVerifyResult:
    """Result of :meth:`DeadLetterRecorder.verify`.

    Attributes:
        status: ``"ok"``, ``"empty"`` or ``"corrupt"``.
        last_entry_id: ``entry_id`` of the last line when status is ``"ok"``.
        error_detail: Why the last line is corrupt, otherwise ``None``.
    """

    status: Literal["ok", "empty", "corrupt"]
    last_entry_id: str | None
    error_detail: str | None


# ── Classification ────────────────────────────────────────────────────────────


def categorize(code: str) -> Category:
    """Map an error code to a failure category."""
    return _CATEGORY_BY_CODE.get(code, "unknown")


def determine_priority(event: EventRecord) -> Priority:
    """Rank a failed event for review.

    Verification events and anything signed by a verifier are critical;
    creation events are high, processing events medium, the rest low.
    """
    if event.event_type is EventType.VERIFIED or event.actor.role is ActorRole.VERIFIER:
        return "critical"
    if event.event_type is EventType.CREATED:
        return "high"
    if event.event_type is EventType.PROCESSED:
        return "medium"
    return "low"


def _root_error(error: BaseException) -> BaseException:
    """Unwrap a RetryExhaustedError to the error that caused it."""
    if isinstance(error, RetryExhaustedError) and error.last_error is not None:
        return error.last_error
    return error


# ── Recorder ──────────────────────────────────────────────────────────────────


class DeadLetterRecorder:
    """Append-only, checksummed dead-letter store backed by one JSONL file.

    The recorder owns no in-memory state beyond its path, so any number of
    recorders (in any number of processes) may share one file.

    Example::

        recorder = DeadLetterRecorder(Path("data/dead_letters.jsonl"))
        failure_id = await recorder.record(event, error, attempts=3)
        for letter in await recorder.list_failures(priority="critical"):
            print(letter.failure_id, letter.error.code)
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    # ── Writes ────────────────────────────────────────────────────────────────

    async def record(
        self, event: EventRecord, error: BaseException, *, attempts: int = 0
    ) -> str | None:
        """Set ``event`` aside after a failed publish.

        Never raises; store failures are logged and reported as ``None``.

        Args:
            event: The event that could not be published.
            error: The final error.  A :exc:`RetryExhaustedError` is
                   categorised by the error it wraps.
            attempts: Retries performed before giving up.

        Returns:
            The new failure id, or ``None`` if the store could not be written.
        """
        failure_id = uuid.uuid4().hex
        info = ErrorInfo.from_exception(error)
        try:
            root_code = ErrorInfo.from_exception(_root_error(error)).code
            data = {
                "event": event_to_dict(event),
                "error": info.to_dict(),
                "root_code": root_code,
                "attempts": attempts,
                "category": categorize(root_code),
                "priority": determine_priority(event),
            }
            await asyncio.to_thread(self._append_entry, "failure", failure_id, data)
        except Exception:
            logger.error(
                "Dead-letter write failed for event %s (subject %s); the failure is lost",
                event.event_id,
                event.subject_id,
                exc_info=True,
            )
            return None

        logger.error(
            "Event %s for subject %s dead-lettered as %s (%s, %d retries)",
            event.event_id,
            event.subject_id,
            failure_id,
            info.code,
            attempts,
        )
        return failure_id

    async def mark_reviewed(self, failure_id: str, notes: str | None = None) -> None:
        """Record that an operator reviewed ``failure_id``.

        Raises:
            DeadLetterNotFound: If the id does not name an open failure.
            DeadLetterWriteError: If the store cannot be written.
        """
        await self._require_open(failure_id)
        await self._append_status("reviewed", failure_id, {"notes": notes})
        logger.info("Dead letter %s marked as reviewed", failure_id)

    async def mark_resolved(self, failure_id: str) -> None:
        """Close ``failure_id``; it no longer appears in listings.

        Raises:
            DeadLetterNotFound: If the id does not name an open failure.
            DeadLetterWriteError: If the store cannot be written.
        """
        await self._require_open(failure_id)
        await self._append_status("resolved", failure_id, {})
        logger.info("Dead letter %s resolved", failure_id)

    async def record_retry_attempt(self, failure_id: str, error: BaseException) -> None:
        """Record a failed manual retry of ``failure_id``.

        Raises:
            DeadLetterNotFound: If the id does not name an open failure.
            DeadLetterWriteError: If the store cannot be written.
        """
        await self._require_open(failure_id)
        await self._append_status(
            "retry_attempt", failure_id, {"error": ErrorInfo.from_exception(error).to_dict()}
        )
        logger.warning("Manual retry of dead letter %s failed: %s", failure_id, error)

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get(self, failure_id: str) -> DeadLetter | None:
        """Return the open failure with ``failure_id``, or ``None``."""
        letters = await asyncio.to_thread(self._fold)
        return letters.get(failure_id)

    async def list_failures(
        self,
        *,
        priority: Priority | None = None,
        category: Category | None = None,
        reviewed: bool | None = None,
        subject_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DeadLetter]:
        """List open failures, highest priority first, newest first within a priority."""
        letters = list((await asyncio.to_thread(self._fold)).values())

        if priority is not None:
            letters = [f for f in letters if f.priority == priority]
        if category is not None:
            letters = [f for f in letters if f.category == category]
        if reviewed is not None:
            letters = [f for f in letters if f.reviewed == reviewed]
        if subject_id is not None:
            letters = [f for f in letters if f.event.subject_id == subject_id]

        letters.sort(key=lambda f: f.first_failed_at, reverse=True)
        letters.sort(key=lambda f: _PRIORITY_ORDER[f.priority], reverse=True)
        return letters[offset : offset + limit]

    async def statistics(self, *, now: datetime | None = None) -> DeadLetterStatistics:
        """Summarise the open failures."""
        letters = list((await asyncio.to_thread(self._fold)).values())
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(hours=24)

        by_category: dict[str, int] = {}
        by_code: dict[str, int] = {}
        recent = 0
        for letter in letters:
            by_category[letter.category] = by_category.get(letter.category, 0) + 1
            by_code[letter.error.code] = by_code.get(letter.error.code, 0) + 1
            if letter.first_failed_at > cutoff:
                recent += 1

        average = sum(f.attempts for f in letters) / len(letters) if letters else 0.0
        return DeadLetterStatistics(
            total_failures=len(letters),
            failures_by_category=by_category,
            failures_by_error_code=by_code,
            recent_failures=recent,
            average_attempts=average,
        )

    def verify(self) -> DeadLetterVerifyResult:
        """Check the integrity of the last line in the store.

        Only the tail of the file is read, so this is cheap enough to run at
        startup.  A corrupt last line usually means a write was interrupted.
        """
        if not self.path.exists():
            return DeadLetterVerifyResult(status="empty", last_entry_id=None, error_detail=None)

        last_line = _read_last_nonempty_line(self.path)
        if last_line is None:
            return DeadLetterVerifyResult(status="empty", last_entry_id=None, error_detail=None)

        try:
            envelope = _parse_line(last_line)
        except ValueError as exc:
            return DeadLetterVerifyResult(status="corrupt", last_entry_id=None, error_detail=str(exc))

        return DeadLetterVerifyResult(
            status="ok", last_entry_id=envelope["entry_id"], error_detail=None
        )

    # ── Internal helpers ──────────────────────────────────────────────────────

    async def _require_open(self, failure_id: str) -> None:
        if await self.get(failure_id) is None:
            raise DeadLetterNotFound("Dead letter not found", detail=failure_id)

    async def _append_status(self, kind: str, failure_id: str, data: dict) -> None:
        try:
            await asyncio.to_thread(self._append_entry, kind, failure_id, data)
        except (OSError, TypeError, ValueError) as exc:
            raise DeadLetterWriteError(
                "Could not write to the dead-letter store", detail=f"{self.path}: {exc}"
            ) from exc

    def _append_entry(self, kind: str, failure_id: str, data: dict) -> None:
        body = {
            "entry_id": uuid.uuid4().hex,
            "kind": kind,
            "failure_id": failure_id,
            "recorded_at": datetime.now(UTC).isoformat(),
            "schema_version": _SCHEMA_VERSION,
            "data": data,
        }
        envelope = {**body, "_checksum": f"sha256:{_compute_checksum(body)}"}
        line = json.dumps(envelope, ensure_ascii=False, sort_keys=True)
        _append_line_locked(self.path, line)

    def _read_entries(self) -> list[dict]:
        """Read every valid line, skipping corrupt ones with a warning."""
        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as fh:
            fcntl.flock(fh, fcntl.LOCK_SH)
            try:
                lines = fh.read().splitlines()
            finally:
                fcntl.flock(fh, fcntl.LOCK_UN)

        entries = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                entries.append(_parse_line(line))
            except ValueError as exc:
                logger.warning("Skipping corrupt dead-letter line %d in %s: %s", number, self.path, exc)
        return entries

    def _fold(self) -> dict[str, DeadLetter]:
        """Replay the store into the set of open failures, keyed by failure id."""
        open_letters: dict[str, DeadLetter] = {}
        for entry in self._read_entries():
            failure_id = entry["failure_id"]
            kind = entry["kind"]
            data = entry["data"]
            recorded_at = datetime.fromisoformat(entry["recorded_at"])

            if kind == "failure":
                try:
                    event = event_from_dict(data["event"])
                except (DecodeError, KeyError) as exc:
                    logger.warning("Skipping dead letter %s with unreadable event: %s", failure_id, exc)
                    continue
                open_letters[failure_id] = DeadLetter(
                    failure_id=failure_id,
                    event=event,
                    error=ErrorInfo(**data["error"]),
                    attempts=int(data.get("attempts", 0)),
                    category=data.get("category", "unknown"),
                    priority=data.get("priority", "low"),
                    first_failed_at=recorded_at,
                    last_retry_at=recorded_at,
                )
                continue

            letter = open_letters.get(failure_id)
            if letter is None:
                continue
            if kind == "reviewed":
                letter.reviewed = True
                letter.review_notes = data.get("notes")
            elif kind == "retry_attempt":
                letter.attempts += 1
                letter.last_retry_at = recorded_at
                letter.error = ErrorInfo(**data["error"])
            elif kind == "resolved":
                del open_letters[failure_id]
        return open_letters


# ── Module helpers ────────────────────────────────────────────────────────────


def _compute_checksum(payload: dict) -> str:
    """SHA-256 hex digest of the canonical JSON serialisation of ``payload``."""
    canonical = json.dumps(payload, ensure_ascii=False, sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _parse_line(line: str) -> dict:
    """Parse and checksum-verify one line.

    Raises:
        ValueError: If the line is not JSON, not an object, lacks required
            fields or fails its checksum.
    """
    try:
        envelope = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ValueError(f"line is not valid JSON: {exc}") from exc
    if not isinstance(envelope, dict):
        raise ValueError("line deserialised to a non-dict type")

    recorded = envelope.get("_checksum")
    if not isinstance(recorded, str):
        raise ValueError("line is missing or has a non-string '_checksum' field")

    body = {k: v for k, v in envelope.items() if k != "_checksum"}
    expected = f"sha256:{_compute_checksum(body)}"
    if recorded != expected:
        raise ValueError(f"checksum mismatch (recorded {recorded!r}, expected {expected!r})")

    for key in ("entry_id", "kind", "failure_id", "recorded_at"):
        if not isinstance(envelope.get(key), str) or not envelope[key]:
            raise ValueError(f"line is missing a valid {key!r} string")
    if not isinstance(envelope.get("data"), dict):
        raise ValueError("line is missing its 'data' object")
    return envelope


def _append_line_locked(path: Path, line: str) -> None:
    """Append one newline-terminated line under an exclusive POSIX lock.

    Creates the parent directory and the file if needed.  ``LOCK_EX`` blocks
    until the lock is available, so concurrent writers queue in arrival order.

    Raises:
        OSError: If the directory creation, open or write fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        fcntl.flock(fh, fcntl.LOCK_EX)
        try:
            fh.write(line + "\n")
            fh.flush()
        finally:
            fcntl.flock(fh, fcntl.LOCK_UN)


def _read_last_nonempty_line(path: Path) -> str | None:
    """Return the last non-empty line of ``path`` reading only its tail."""
    try:
        with path.open("rb") as fh:
            fh.seek(0, 2)
            size = fh.tell()
            if size == 0:
                return None
            fh.seek(max(0, size - _TAIL_CHUNK_BYTES))
            chunk = fh.read()
    except OSError:
        return None

    for line in reversed(chunk.decode("utf-8", errors="replace").splitlines()):
        stripped = line.strip()
        if stripped:
            return stripped
    return None


