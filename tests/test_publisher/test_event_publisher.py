"""
Tests for the event publisher.

The transport is a scripted fake (``tests.helpers.FakeTransport``); retries
use millisecond delays and dead letters go to ``tmp_path``.
"""

import asyncio

import httpx
import pytest

from eventchain.codec import MessageCodec
from eventchain.config import RetrySettings
from eventchain.deadletter import DeadLetterRecorder
from eventchain.errors import DeadLetterNotFound, NetworkError, TerminalSubmitError
from eventchain.models import Actor, EventRecord, EventType
from eventchain.publisher import EventPublisher
from eventchain.retry import RetryExecutor
from tests.helpers import TOPIC_ID, VALID_SIGNATURE, FakeTransport, make_event

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def make_publisher(recorder: DeadLetterRecorder, fast_retry: RetrySettings, codec: MessageCodec):
    """Factory building a publisher around a given transport."""

    def _make(transport: FakeTransport, **kwargs) -> EventPublisher:
        return EventPublisher(
            transport=transport,
            topic_id=TOPIC_ID,
            codec=kwargs.pop("codec", codec),
            executor=RetryExecutor(fast_retry),
            recorder=recorder,
            **kwargs,
        )

    return _make


# =============================================================================
# SUCCESS PATHS
# =============================================================================


@pytest.mark.unit
class TestPublishSuccess:
    """Tests for successful publishes."""

    @pytest.mark.asyncio
    async def test_receipt_carries_log_ids(self, make_publisher, codec: MessageCodec):
        """A first-try success returns sequence number and transaction id."""
        transport = FakeTransport()
        event = make_event()

        receipt = await make_publisher(transport).publish(event)

        assert receipt.success is True
        assert receipt.sequence_number == "1"
        assert receipt.transaction_id == "0.0.1001@1"
        assert receipt.error is None
        assert receipt.attempts == 0
        assert receipt.duration_ms >= 0
        assert transport.calls == [(TOPIC_ID, codec.encode(event).data)]
        assert receipt.size_bytes == len(transport.calls[0][1])

    @pytest.mark.asyncio
    async def test_success_after_transient_failures(self, make_publisher, recorder):
        """Retryable failures followed by success report the retry count."""
        transport = FakeTransport([ConnectionError("reset"), httpx.ConnectError("refused")])

        receipt = await make_publisher(transport).publish(make_event())

        assert receipt.success is True
        assert receipt.attempts == 2
        assert len(transport.calls) == 3
        assert await recorder.list_failures() == []


# =============================================================================
# FAILURE PATHS
# =============================================================================


@pytest.mark.unit
class TestPublishFailure:
    """Every failure path returns a receipt and, where due, a dead letter."""

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, make_publisher, recorder, fast_retry: RetrySettings):
        """A log that stays down is retried max_retries times, then dead-lettered."""
        transport = FakeTransport(always=NetworkError("log unavailable"))
        event = make_event()

        receipt = await make_publisher(transport).publish(event)

        assert receipt.success is False
        assert len(transport.calls) == fast_retry.max_retries + 1
        assert receipt.attempts == fast_retry.max_retries
        assert receipt.error.code == "RETRY_EXHAUSTED"
        assert receipt.error.retryable is True
        assert receipt.dead_letter_id is not None

        letter = await recorder.get(receipt.dead_letter_id)
        assert letter.event == event
        assert letter.category == "network"
        assert letter.attempts == fast_retry.max_retries

    @pytest.mark.asyncio
    async def test_terminal_error_is_not_retried(self, make_publisher, recorder):
        """An unclassified transport error is terminal: one call, dead-lettered."""
        transport = FakeTransport(always=RuntimeError("INVALID_SIGNATURE"))

        receipt = await make_publisher(transport).publish(make_event())

        assert len(transport.calls) == 1
        assert receipt.success is False
        assert receipt.attempts == 0
        assert receipt.error.code == "SUBMISSION_REJECTED"
        assert receipt.error.retryable is False
        assert "INVALID_SIGNATURE" in receipt.error.detail
        assert (await recorder.get(receipt.dead_letter_id)).category == "service"

    @pytest.mark.asyncio
    async def test_tagged_terminal_error_passes_through(self, make_publisher):
        """A transport's own EventChainError keeps its code."""
        transport = FakeTransport(always=TerminalSubmitError("unauthorized", code="UNAUTHORIZED"))

        receipt = await make_publisher(transport).publish(make_event())

        assert len(transport.calls) == 1
        assert receipt.error.code == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_oversized_event_is_never_submitted(self, make_publisher, recorder):
        """Codec failures go straight to the dead-letter store."""
        transport = FakeTransport()
        event = make_event(payload={"notes": "x" * 5000})

        receipt = await make_publisher(transport).publish(event)

        assert transport.calls == []
        assert receipt.success is False
        assert receipt.error.code == "PAYLOAD_TOO_LARGE"
        assert receipt.size_bytes is None
        assert (await recorder.get(receipt.dead_letter_id)).category == "validation"

    @pytest.mark.asyncio
    async def test_slow_transport_times_out_and_retries(self, make_publisher, recorder):
        """Each submission is bounded by message_timeout_ms and retried."""
        transport = FakeTransport(delay=1.0)

        receipt = await make_publisher(transport, message_timeout_ms=20).publish(make_event())

        assert receipt.success is False
        assert receipt.error.code == "RETRY_EXHAUSTED"
        assert "timed out" in receipt.error.detail
        assert len(transport.calls) == 4

    @pytest.mark.asyncio
    async def test_cancelled_publish_is_not_dead_lettered(self, make_publisher, recorder):
        """A cancel signal yields a CANCELLED receipt and no dead letter."""
        cancel = asyncio.Event()
        cancel.set()

        receipt = await make_publisher(FakeTransport()).publish(make_event(), cancel_event=cancel)

        assert receipt.success is False
        assert receipt.error.code == "CANCELLED"
        assert receipt.dead_letter_id is None
        assert await recorder.list_failures() == []

    @pytest.mark.asyncio
    async def test_broken_dead_letter_store_still_returns_receipt(self, tmp_path, fast_retry, codec):
        """If the dead letter cannot be written the receipt says so with no id."""
        blocker = tmp_path / "file"
        blocker.write_text("x")
        publisher = EventPublisher(
            transport=FakeTransport(always=RuntimeError("denied")),
            topic_id=TOPIC_ID,
            codec=codec,
            executor=RetryExecutor(fast_retry),
            recorder=DeadLetterRecorder(blocker / "dead.jsonl"),
        )

        receipt = await publisher.publish(make_event())

        assert receipt.success is False
        assert receipt.dead_letter_id is None

    @pytest.mark.asyncio
    async def test_malformed_event_returns_receipt(self, make_publisher, recorder):
        """An event the codec cannot serialise fails with a receipt, not an exception."""
        transport = FakeTransport()
        event = make_event()
        object.__setattr__(event, "location", "warehouse 4")

        receipt = await make_publisher(transport).publish(event)

        assert receipt.success is False
        assert receipt.error.code == "DECODE_ERROR"
        assert transport.calls == []
        # the event cannot be serialised into the store either
        assert receipt.dead_letter_id is None
        assert await recorder.list_failures() == []

    @pytest.mark.asyncio
    async def test_event_built_from_plain_strings(self, make_publisher, codec: MessageCodec):
        """String values for the enum fields are accepted and published."""
        transport = FakeTransport()
        event = EventRecord(
            subject_id="BATCH-7",
            event_type="created",
            actor=Actor("farm-1", role="producer"),
            signature=VALID_SIGNATURE,
        )

        receipt = await make_publisher(transport).publish(event)

        assert receipt.success is True
        assert codec.decode(transport.calls[0][1]).event_type is EventType.CREATED

    @pytest.mark.asyncio
    async def test_rate_limited_transport_is_filed_as_rate_limit(self, make_publisher, recorder):
        """An HTTP 429 from the transport is retried and dead-lettered as rate_limit."""
        throttled = httpx.HTTPStatusError(
            "429 Too Many Requests",
            request=httpx.Request("POST", "http://log.test/submit"),
            response=httpx.Response(429),
        )
        transport = FakeTransport(always=throttled)

        receipt = await make_publisher(transport).publish(make_event())

        assert receipt.error.code == "RETRY_EXHAUSTED"
        assert len(transport.calls) == 4
        assert (await recorder.get(receipt.dead_letter_id)).category == "rate_limit"

    @pytest.mark.asyncio
    async def test_unauthorized_transport_is_terminal(self, make_publisher, recorder):
        denied = httpx.HTTPStatusError(
            "401 Unauthorized",
            request=httpx.Request("POST", "http://log.test/submit"),
            response=httpx.Response(401),
        )
        transport = FakeTransport(always=denied)

        receipt = await make_publisher(transport).publish(make_event())

        assert receipt.error.code == "UNAUTHORIZED"
        assert len(transport.calls) == 1
        assert (await recorder.get(receipt.dead_letter_id)).category == "service"


# =============================================================================
# REPUBLISH
# =============================================================================


@pytest.mark.unit
class TestRepublish:
    """Tests for manual retries of dead letters."""

    @pytest.mark.asyncio
    async def test_successful_republish_resolves(self, make_publisher, recorder):
        """A manual retry that succeeds closes the dead letter."""
        transport = FakeTransport([RuntimeError("denied")])
        publisher = make_publisher(transport)
        event = make_event(event_type=EventType.PROCESSED)
        failed = await publisher.publish(event)

        receipt = await publisher.republish(failed.dead_letter_id)

        assert receipt.success is True
        assert transport.calls[-1][1] == transport.calls[0][1]
        assert await recorder.get(failed.dead_letter_id) is None

    @pytest.mark.asyncio
    async def test_failed_republish_records_attempt(self, make_publisher, recorder):
        """A manual retry that fails updates the same dead letter."""
        publisher = make_publisher(FakeTransport(always=RuntimeError("denied")))
        failed = await publisher.publish(make_event())

        receipt = await publisher.republish(failed.dead_letter_id)

        assert receipt.success is False
        assert receipt.dead_letter_id is None
        letters = await recorder.list_failures()
        assert [letter.failure_id for letter in letters] == [failed.dead_letter_id]
        assert letters[0].attempts == 1

    @pytest.mark.asyncio
    async def test_unknown_failure_id(self, make_publisher):
        with pytest.raises(DeadLetterNotFound):
            await make_publisher(FakeTransport()).republish("nope")
