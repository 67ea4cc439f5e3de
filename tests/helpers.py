"""
Shared builders and fakes for the eventchain test suite.

Kept out of ``conftest.py`` so test modules can import them directly:

    from tests.helpers import FakeTransport, make_chain, make_event
"""

from __future__ import annotations

import asyncio
import base64
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from eventchain.codec import MessageCodec
from eventchain.models import Actor, ActorRole, EventRecord, EventType
from eventchain.publisher import TransportReceipt

TOPIC_ID = "0.0.4242"
MIRROR_URL = "http://mirror.test"
MESSAGES_URL = f"{MIRROR_URL}/api/v1/topics/{TOPIC_ID}/messages"
VALID_SIGNATURE = "sig-0123456789abcdef"
BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def make_event(
    subject_id: str = "BATCH-7",
    *,
    event_type: EventType = EventType.CREATED,
    role: ActorRole = ActorRole.PRODUCER,
    signature: str = VALID_SIGNATURE,
    previous_event_id: str | None = None,
    timestamp: datetime | None = None,
    payload: dict[str, Any] | None = None,
    **kwargs: Any,
) -> EventRecord:
    """Build an event with sensible defaults."""
    return EventRecord(
        subject_id=subject_id,
        event_type=event_type,
        actor=Actor(identity="0.0.1001", role=role, organization_id="org-1"),
        signature=signature,
        payload={"batch_id": subject_id} if payload is None else payload,
        previous_event_id=previous_event_id,
        timestamp=timestamp or BASE_TIME,
        **kwargs,
    )


def make_chain(count: int, subject_id: str = "BATCH-7") -> list[EventRecord]:
    """Build ``count`` correctly linked events one minute apart."""
    types = [EventType.CREATED, EventType.PROCESSED, EventType.VERIFIED]
    events: list[EventRecord] = []
    previous = None
    for i in range(count):
        event = make_event(
            subject_id,
            event_type=types[min(i, len(types) - 1)],
            previous_event_id=previous,
            timestamp=BASE_TIME + timedelta(minutes=i),
        )
        events.append(event)
        previous = event.event_id
    return events


def mirror_record(event: EventRecord, sequence_number: int, codec: MessageCodec | None = None) -> dict:
    """Render ``event`` as one record of the query API (snake_case form)."""
    codec = codec or MessageCodec()
    return {
        "consensus_timestamp": f"1772366400.{sequence_number:09d}",
        "message": base64.b64encode(codec.encode(event).data).decode("ascii"),
        "sequence_number": sequence_number,
        "topic_id": TOPIC_ID,
        "running_hash": "abc",
        "payer_account_id": "0.0.1001",
    }


def serve_topic(records: list[dict]):
    """A respx side effect serving ``records`` (oldest first) like a mirror node.

    Honours ``limit`` and ``order`` and pages through ``links.next`` with an
    ``offset`` parameter.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        params = request.url.params
        limit = int(params.get("limit", "100"))
        order = params.get("order", "asc")
        offset = int(params.get("offset", "0"))
        ordered = records if order == "asc" else records[::-1]
        next_link = None
        if offset + limit < len(ordered):
            next_link = (
                f"/api/v1/topics/{TOPIC_ID}/messages?limit={limit}&order={order}&offset={offset + limit}"
            )
        return httpx.Response(
            200, json={"messages": ordered[offset : offset + limit], "links": {"next": next_link}}
        )

    return handler


class FakeTransport:
    """
    Scripted stand-in for the log's submit side.

    Args:
        outcomes: Consumed one per call.  An exception instance is raised,
            ``None`` succeeds.  Once exhausted every call succeeds.
        always: Exception raised on every call (overrides ``outcomes``).
        delay: Seconds to sleep before answering.
    """

    def __init__(
        self,
        outcomes: list[BaseException | None] | None = None,
        *,
        always: BaseException | None = None,
        delay: float = 0.0,
    ) -> None:
        self.outcomes = list(outcomes or [])
        self.always = always
        self.delay = delay
        self.calls: list[tuple[str, bytes]] = []

    async def submit(self, topic_id: str, payload: bytes) -> TransportReceipt:
        self.calls.append((topic_id, payload))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.always is not None:
            raise self.always
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome is not None:
            raise outcome
        number = len(self.calls)
        return TransportReceipt(sequence_number=str(number), transaction_id=f"0.0.1001@{number}")
