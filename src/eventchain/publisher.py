"""Event publisher: encode, submit with retries, dead-letter on failure.

:class:`EventPublisher` is the write side of the pipeline.  One call to
:meth:`~EventPublisher.publish` takes one event through three stages:

1. **Encode** with the :class:`~eventchain.codec.MessageCodec`.  A codec
   failure (oversized or unserialisable payload) is terminal: the event is
   dead-lettered and never submitted.
2. **Submit** through the injected :class:`LogTransport`, wrapped in the
   :class:`~eventchain.retry.RetryExecutor`.  Transport failures are tagged
   retryable or terminal once, in :meth:`~EventPublisher._submit_once`.
3. **Report** a :class:`~eventchain.models.SubmissionReceipt`.  Every
   failure path yields a failure receipt (after dead-lettering); ``publish``
   only raises if its task is cancelled.

Submission is at-least-once.  A retry after a timeout may land the same
event twice on the log; readers must tolerate duplicates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Protocol

import httpx

from eventchain.codec import MessageCodec
from eventchain.deadletter import DeadLetterRecorder
from eventchain.errors import (
    DeadLetterNotFound,
    EventChainError,
    NetworkError,
    OperationCancelled,
    RequestTimeoutError,
    RetryExhaustedError,
    TerminalSubmitError,
    error_for_status,
)
from eventchain.models import ErrorInfo, EventRecord, SubmissionReceipt
from eventchain.retry import RetryExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransportReceipt:
    """What the log returns for an accepted message."""

    sequence_number: str
    transaction_id: str


class LogTransport(Protocol):
    """Submit side of the external append-only log.

    Implementations should raise :class:`~eventchain.errors.EventChainError`
    subclasses with the right ``retryable`` tag.  Other exceptions are
    classified by the publisher: timeouts and connection errors are
    retryable, everything else is terminal.
    """

    async def submit(self, topic_id: str, payload: bytes) -> TransportReceipt: ...


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000.0


class EventPublisher:
    """Publish events to one topic of the append-only log.

    Attributes:
        topic_id: Topic every event is submitted to.
    """

    def __init__(
        self,
        *,
        transport: LogTransport,
        topic_id: str,
        codec: MessageCodec,
        executor: RetryExecutor,
        recorder: DeadLetterRecorder,
        message_timeout_ms: float | None = None,
    ) -> None:
        self.topic_id = topic_id
        self._transport = transport
        self._codec = codec
        self._executor = executor
        self._recorder = recorder
        self._message_timeout_ms = message_timeout_ms

    async def publish(
        self,
        event: EventRecord,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> SubmissionReceipt:
        """Submit ``event`` and report the outcome.

        Args:
            event: The event to publish.
            cancel_event: Optional signal that abandons pending retries.  A
                cancelled publish returns a failure receipt with code
                ``CANCELLED`` and is not dead-lettered.

        Returns:
            A success receipt carrying the log's sequence number and
            transaction id, or a failure receipt carrying the error.
        """
        return await self._publish(event, cancel_event=cancel_event, dead_letter=True)

    async def republish(self, failure_id: str) -> SubmissionReceipt:
        """Manually retry a dead-lettered event.

        On success the dead letter is resolved.  On failure the attempt is
        recorded against the existing dead letter; no new one is created.

        Raises:
            DeadLetterNotFound: If ``failure_id`` does not name an open failure.
            DeadLetterWriteError: If the outcome cannot be recorded.
        """
        letter = await self._recorder.get(failure_id)
        if letter is None:
            raise DeadLetterNotFound("Dead letter not found", detail=failure_id)

        logger.info("Manual retry of dead letter %s (event %s)", failure_id, letter.event.event_id)
        receipt = await self._publish(letter.event, cancel_event=None, dead_letter=False)
        if receipt.success:
            await self._recorder.mark_resolved(failure_id)
            return receipt

        error = receipt.error or ErrorInfo(
            code="UNEXPECTED_ERROR", message="Manual retry failed", retryable=False
        )
        await self._recorder.record_retry_attempt(
            failure_id,
            EventChainError(
                error.message, code=error.code, retryable=error.retryable, detail=error.detail
            ),
        )
        return receipt

    # ── Internal helpers ──────────────────────────────────────────────────────

    async def _publish(
        self,
        event: EventRecord,
        *,
        cancel_event: asyncio.Event | None,
        dead_letter: bool,
    ) -> SubmissionReceipt:
        start = time.monotonic()

        try:
            encoded = self._codec.encode(event)
        except EventChainError as exc:
            logger.error("Event %s rejected by codec: %s", event.event_id, exc)
            return await self._fail(event, exc, start, attempts=0, dead_letter=dead_letter)

        try:
            outcome = await self._executor.execute(
                lambda: self._submit_once(encoded.data),
                cancel_event=cancel_event,
                label=f"submit {event.event_id}",
            )
        except OperationCancelled as exc:
            logger.info("Publish of event %s cancelled", event.event_id)
            return SubmissionReceipt(
                success=False,
                duration_ms=_elapsed_ms(start),
                error=ErrorInfo.from_exception(exc),
                size_bytes=encoded.size_bytes,
            )
        except RetryExhaustedError as exc:
            return await self._fail(
                event, exc, start, attempts=exc.attempts, size=encoded.size_bytes, dead_letter=dead_letter
            )
        except EventChainError as exc:
            return await self._fail(
                event, exc, start, attempts=0, size=encoded.size_bytes, dead_letter=dead_letter
            )

        receipt = SubmissionReceipt(
            success=True,
            duration_ms=_elapsed_ms(start),
            sequence_number=outcome.result.sequence_number,
            transaction_id=outcome.result.transaction_id,
            attempts=outcome.attempts,
            size_bytes=encoded.size_bytes,
        )
        logger.info(
            "Event %s for subject %s published (sequence=%s, retries=%d, %.0f ms)",
            event.event_id,
            event.subject_id,
            receipt.sequence_number,
            receipt.attempts,
            receipt.duration_ms,
        )
        return receipt

    async def _submit_once(self, payload: bytes) -> TransportReceipt:
        """Make one submission, tagging any failure as retryable or terminal."""
        try:
            if self._message_timeout_ms:
                return await asyncio.wait_for(
                    self._transport.submit(self.topic_id, payload),
                    timeout=self._message_timeout_ms / 1000.0,
                )
            return await self._transport.submit(self.topic_id, payload)
        except EventChainError:
            raise
        except TimeoutError as e:
            raise RequestTimeoutError(
                "Submission timed out",
                detail=f"topic {self.topic_id}",
                timeout_ms=self._message_timeout_ms or 0.0,
            ) from e
        except httpx.TimeoutException as e:
            raise RequestTimeoutError("Submission timed out", detail=str(e)) from e
        except httpx.HTTPStatusError as e:
            raise error_for_status(e.response.status_code, "Submission failed", detail=str(e)) from e
        except (httpx.TransportError, ConnectionError, OSError) as e:
            raise NetworkError("Cannot reach the log", detail=str(e)) from e
        except Exception as e:
            raise TerminalSubmitError("Submission rejected", detail=f"{type(e).__name__}: {e}") from e

    async def _fail(
        self,
        event: EventRecord,
        error: EventChainError,
        start: float,
        *,
        attempts: int,
        size: int | None = None,
        dead_letter: bool,
    ) -> SubmissionReceipt:
        failure_id = None
        if dead_letter:
            failure_id = await self._recorder.record(event, error, attempts=attempts)
        logger.error(
            "Publishing event %s for subject %s failed: %s", event.event_id, event.subject_id, error
        )
        return SubmissionReceipt(
            success=False,
            duration_ms=_elapsed_ms(start),
            error=ErrorInfo.from_exception(error),
            attempts=attempts,
            size_bytes=size,
            dead_letter_id=failure_id,
        )
