"""
Caller-facing facade over the event pipeline.

:class:`EventPipeline` validates the configuration, builds every component
once and owns their lifetimes.  It is an async context manager; the query
API's HTTP connection pool is opened on enter and closed on exit, after any
background publishes have finished.

Example:
    from eventchain.config import load_config
    from eventchain.pipeline import EventPipeline

    async with EventPipeline(load_config(), transport) as pipeline:
        receipt = await pipeline.publish(event)
        if receipt.success:
            await pipeline.wait_for_confirmation(event.subject_id)
        result, verdict = await pipeline.audit(event.subject_id)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from eventchain.codec import MessageCodec
from eventchain.config import PipelineConfig
from eventchain.confirmation import ConfirmationWaiter
from eventchain.deadletter import DeadLetterRecorder
from eventchain.errors import EventChainError
from eventchain.integrity import IntegrityValidator
from eventchain.models import (
    Actor,
    ActorRole,
    ErrorInfo,
    EventRecord,
    EventType,
    IntegrityVerdict,
    Location,
    RetrievalResult,
    SubmissionReceipt,
    TopicAccess,
)
from eventchain.publisher import EventPublisher, LogTransport
from eventchain.query import EventFilter, LogQueryService
from eventchain.retry import RetryExecutor

logger = logging.getLogger(__name__)

# Compliance actions and the lifecycle stage each one records.  Unknown actions
# are recorded as CREATED.
COMPLIANCE_ACTIONS: dict[str, EventType] = {
    "producer_initial_creation": EventType.CREATED,
    "producer_batch_creation": EventType.CREATED,
    "processor_quality_check": EventType.PROCESSED,
    "processor_transformation": EventType.PROCESSED,
    "verifier_final_approval": EventType.VERIFIED,
    "verifier_compliance_check": EventType.VERIFIED,
}

COMPLIANCE_RESULTS = ("APPROVED", "REJECTED")

COMPLIANCE_LOCATION = Location(address="Compliance Engine", region="System")


class EventPipeline:
    """
    Publish, retrieve, confirm and verify lifecycle events.

    Attributes:
        config: The validated configuration.
        codec: Shared message codec.
        recorder: Dead-letter store for failed publishes.
        publisher: Write side.
        query: Read side.
        waiter: Confirmation poller over ``query``.
        validator: Chain integrity validator.
    """

    def __init__(
        self,
        config: PipelineConfig,
        transport: LogTransport,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Build the pipeline.

        Args:
            config: Pipeline configuration; validated here.
            transport: Submit side of the log.
            http_client: Optional pre-configured client for the query API.
                The caller keeps ownership of an injected client.

        Raises:
            ConfigError: If ``config`` is invalid.
        """
        config.validate()
        self.config = config
        self.codec = MessageCodec(config.codec.max_payload_bytes)
        self.recorder = DeadLetterRecorder(config.dead_letter.absolute_path)
        self.publisher = EventPublisher(
            transport=transport,
            topic_id=config.log.topic_id,
            codec=self.codec,
            executor=RetryExecutor(config.retry),
            recorder=self.recorder,
            message_timeout_ms=config.log.message_timeout_ms,
        )
        self.query = LogQueryService(
            config.log,
            self.codec,
            budget_ms=config.confirmation.budget_ms,
            http_client=http_client,
        )
        self.waiter = ConfirmationWaiter(self.query, config.confirmation)
        self.validator = IntegrityValidator(config.integrity)
        self._background: set[asyncio.Task[SubmissionReceipt]] = set()

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> EventPipeline:
        await self.query.__aenter__()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        try:
            await self.drain()
        finally:
            await self.query.__aexit__(exc_type, exc_val, exc_tb)

    # -------------------------------------------------------------------------
    # Write side
    # -------------------------------------------------------------------------

    async def publish(
        self, event: EventRecord, *, cancel_event: asyncio.Event | None = None
    ) -> SubmissionReceipt:
        """Publish ``event`` and wait for the receipt."""
        return await self.publisher.publish(event, cancel_event=cancel_event)

    def publish_in_background(self, event: EventRecord) -> asyncio.Task[SubmissionReceipt]:
        """
        Publish ``event`` in a background task.

        The task is tracked until it finishes and its outcome is logged, so a
        failure is never dropped silently.  Await the returned task to get the
        receipt.  Must be called from a running event loop.
        """
        task = asyncio.create_task(self.publisher.publish(event), name=f"publish-{event.event_id}")
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    async def republish(self, failure_id: str) -> SubmissionReceipt:
        """Manually retry a dead-lettered event.  See :meth:`EventPublisher.republish`."""
        return await self.publisher.republish(failure_id)

    async def publish_created(
        self, subject_id: str, actor: Actor, signature: str, **fields: Any
    ) -> SubmissionReceipt:
        """Publish a CREATED event.  ``fields`` are passed on to :class:`EventRecord`."""
        return await self._publish_as(EventType.CREATED, subject_id, actor, signature, **fields)

    async def publish_processed(
        self, subject_id: str, actor: Actor, signature: str, **fields: Any
    ) -> SubmissionReceipt:
        """Publish a PROCESSED event.  ``fields`` are passed on to :class:`EventRecord`."""
        return await self._publish_as(EventType.PROCESSED, subject_id, actor, signature, **fields)

    async def publish_verified(
        self, subject_id: str, actor: Actor, signature: str, **fields: Any
    ) -> SubmissionReceipt:
        """Publish a VERIFIED event.  ``fields`` are passed on to :class:`EventRecord`."""
        return await self._publish_as(EventType.VERIFIED, subject_id, actor, signature, **fields)

    async def publish_compliance(
        self,
        subject_id: str,
        *,
        action: str,
        result: str,
        actor_identity: str,
        role: ActorRole | str,
        compliance_id: str,
        sequence_step: int,
        violations: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        previous_event_id: str | None = None,
    ) -> SubmissionReceipt:
        """
        Publish the outcome of a compliance check as a lifecycle event.

        The event type follows from ``action`` (see :data:`COMPLIANCE_ACTIONS`).
        The payload records the action, result, compliance id and step, the
        violations when given, and ``metadata`` merged on top.  The event is
        signed ``compliance_<compliance_id>`` and located at the compliance
        engine.

        Raises:
            ValueError: If ``result`` is not APPROVED or REJECTED, or ``role``
                is not a known actor role.
        """
        if result not in COMPLIANCE_RESULTS:
            raise ValueError(f"Compliance result must be APPROVED or REJECTED, got {result!r}")
        event_type = COMPLIANCE_ACTIONS.get(action, EventType.CREATED)

        payload: dict[str, Any] = {
            "action": action,
            "result": result,
            "compliance_id": compliance_id,
            "sequence_step": sequence_step,
        }
        if violations is not None:
            payload["violations"] = list(violations)
        payload.update(metadata or {})

        return await self._publish_as(
            event_type,
            subject_id,
            Actor(identity=actor_identity, role=role),
            f"compliance_{compliance_id}",
            payload=payload,
            location=COMPLIANCE_LOCATION,
            previous_event_id=previous_event_id,
        )

    async def _publish_as(
        self, event_type: EventType, subject_id: str, actor: Actor, signature: str, **fields: Any
    ) -> SubmissionReceipt:
        event = EventRecord(
            subject_id=subject_id, event_type=event_type, actor=actor, signature=signature, **fields
        )
        return await self.publish(event)

    async def drain(self) -> list[SubmissionReceipt]:
        """Wait for every pending background publish; return their receipts."""
        if not self._background:
            return []
        results = await asyncio.gather(*list(self._background), return_exceptions=True)
        return [r for r in results if isinstance(r, SubmissionReceipt)]

    def _on_background_done(self, task: asyncio.Task[SubmissionReceipt]) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.warning("Background publish %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background publish %s crashed: %r", task.get_name(), exc)
            return
        receipt = task.result()
        if receipt.success:
            logger.debug("Background publish %s succeeded", task.get_name())
        else:
            logger.error(
                "Background publish %s failed: %s (dead letter %s)",
                task.get_name(),
                receipt.error.code if receipt.error else "UNKNOWN",
                receipt.dead_letter_id,
            )

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    async def fetch(self, subject_id: str, event_filter: EventFilter | None = None) -> RetrievalResult:
        """Retrieve the events about ``subject_id`` from the configured topic."""
        if event_filter is None:
            event_filter = EventFilter(subject_id=subject_id)
        return await self.query.fetch(self.config.log.topic_id, event_filter)

    async def wait_for_confirmation(
        self,
        subject_id: str,
        deadline_ms: float | None = None,
        *,
        event_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        """Poll until an event about ``subject_id`` is visible or the deadline passes."""
        return await self.waiter.wait_for_confirmation(
            subject_id,
            self.config.log.topic_id,
            deadline_ms,
            event_id=event_id,
            cancel_event=cancel_event,
        )

    async def check_topic_access(self) -> TopicAccess:
        """
        Check that the configured topic can be read.

        Reads a single message; nothing is submitted.  A failure is reported
        in the result rather than raised.
        """
        started = time.perf_counter()
        try:
            await self.query.fetch(self.config.log.topic_id, limit=1, max_pages=1)
        except EventChainError as e:
            elapsed = (time.perf_counter() - started) * 1000.0
            logger.warning("Topic %s is not accessible: %s", self.config.log.topic_id, e)
            return TopicAccess(
                accessible=False, response_time_ms=elapsed, error=ErrorInfo.from_exception(e)
            )
        return TopicAccess(
            accessible=True, response_time_ms=(time.perf_counter() - started) * 1000.0
        )

    def verify(self, events: list[EventRecord]) -> IntegrityVerdict:
        """Validate one subject's event chain."""
        return self.validator.verify(events)

    async def audit(self, subject_id: str) -> tuple[RetrievalResult, IntegrityVerdict]:
        """Fetch a subject's events and validate them as a chain."""
        result = await self.fetch(subject_id)
        return result, self.verify(result.events)
