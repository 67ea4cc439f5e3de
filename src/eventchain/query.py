"""
Read-side query client for the append-only log.

This module provides an async HTTP client for the log's query API (a Hedera
mirror node, or anything that answers the same GET).  It fetches the
messages of a topic, decodes each one with the codec, keeps the events that
match a filter and reports how long the whole retrieval took.

The service is designed to be used as an async context manager to ensure
proper resource cleanup:

    async with LogQueryService(settings, codec) as service:
        result = await service.fetch("0.0.12345", EventFilter(subject_id="BATCH-7"))
        print(result.metadata.query_time_ms, len(result.events))

Key Features:
    - Async HTTP requests using httpx
    - One bad message never fails a query; it becomes a warning
    - Accepts both the mirror-node object form and a bare JSON list
    - Follows ``links.next`` pagination up to a page limit
    - Reads newest first by default, so fresh events sit on the first page
    - Non-2xx answers raise NetworkError, timeouts raise RequestTimeoutError
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from eventchain import __version__
from eventchain.codec import MessageCodec, event_to_dict
from eventchain.config import LogSettings
from eventchain.errors import DecodeError, NetworkError, RequestTimeoutError, error_for_status
from eventchain.models import EventRecord, EventType, RetrievalMetadata, RetrievalResult

logger = logging.getLogger(__name__)

DEFAULT_BUDGET_MS = 30_000

# =============================================================================
# QUERY TYPES
# =============================================================================


@dataclass(frozen=True)
class LogMessage:
    """
    One raw record returned by the query API.

    Attributes:
        consensus_timestamp: Consensus timestamp assigned by the log.
        message_base64: Base64-encoded payload bytes.
        topic_id: Topic the message belongs to.
        sequence_number: Sequence number assigned by the log.
        running_hash: Running hash of the topic after this message.
        payer_account_id: Account that paid for the submission.
    """

    consensus_timestamp: str
    message_base64: str
    topic_id: str = ""
    sequence_number: int | None = None
    running_hash: str = ""
    payer_account_id: str = ""

    @classmethod
    def from_json(cls, record: Any) -> LogMessage:
        """Build from either the camelCase or the snake_case record form.

        Raises:
            DecodeError: If the record is not an object or its sequence number
                is not an integer.
        """
        if not isinstance(record, dict):
            raise DecodeError("Record is not a JSON object", detail=type(record).__name__)

        def pick(camel: str, snake: str, default: Any = None) -> Any:
            if camel in record:
                return record[camel]
            return record.get(snake, default)

        sequence = pick("sequenceNumber", "sequence_number")
        try:
            sequence_number = int(sequence) if sequence is not None else None
        except (TypeError, ValueError) as e:
            raise DecodeError("Invalid sequence number", detail=repr(sequence)) from e
        return cls(
            consensus_timestamp=str(pick("consensusTimestamp", "consensus_timestamp", "")),
            message_base64=pick("messageBase64", "message", ""),
            topic_id=str(pick("topicId", "topic_id", "")),
            sequence_number=sequence_number,
            running_hash=str(pick("runningHash", "running_hash", "")),
            payer_account_id=str(pick("payerAccountId", "payer_account_id", "")),
        )


@dataclass(frozen=True)
class EventFilter:
    """
    Selects which decoded events a query returns.

    Every criterion that is set must match.  ``fields`` maps dotted paths
    into the event's dict form (see :func:`~eventchain.codec.event_to_dict`)
    to expected values, e.g. ``{"payload.batch_id": "B-1", "actor.role":
    "verifier"}``.

    Example:
        EventFilter(subject_id="BATCH-7", event_type=EventType.VERIFIED)
    """

    subject_id: str | None = None
    event_type: EventType | None = None
    event_id: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)

    def matches(self, event: EventRecord) -> bool:
        """Return True if ``event`` satisfies every criterion."""
        if self.subject_id is not None and event.subject_id != self.subject_id:
            return False
        if self.event_type is not None and event.event_type is not self.event_type:
            return False
        if self.event_id is not None and event.event_id != self.event_id:
            return False
        if self.fields:
            data = event_to_dict(event)
            for path, expected in self.fields.items():
                found, value = _lookup(data, path)
                if not found or value != expected:
                    return False
        return True


def _lookup(data: Any, path: str) -> tuple[bool, Any]:
    """Resolve a dotted path; returns (found, value)."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return False, None
        current = current[part]
    return True, current


# =============================================================================
# QUERY SERVICE
# =============================================================================


class LogQueryService:
    """
    Async client for the log's read-side query API.

    Must be used as an async context manager unless an ``http_client`` is
    injected, in which case the caller owns that client's lifetime.

    Attributes:
        settings: Log connection settings (topic, base URL, timeout, paging).
        budget_ms: Retrieval time budget reported as ``within_budget``.
    """

    def __init__(
        self,
        settings: LogSettings,
        codec: MessageCodec,
        *,
        budget_ms: float = DEFAULT_BUDGET_MS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.budget_ms = budget_ms
        self._codec = codec
        self._http_client = http_client
        self._owns_client = http_client is None

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> LogQueryService:
        """
        Enter the async context manager.

        Creates the underlying httpx.AsyncClient with the configured timeout,
        unless a client was injected.
        """
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.query_base_url,
                timeout=self.settings.message_timeout_ms / 1000.0,
                headers={
                    "Accept": "application/json",
                    "User-Agent": f"eventchain/{__version__}",
                },
            )
            self._owns_client = True
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Close the HTTP client connection pool if this service created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """
        Get the HTTP client, ensuring it's been initialized.

        Raises:
            RuntimeError: If accessed outside of async context manager.
        """
        if self._http_client is None:
            raise RuntimeError(
                "LogQueryService must be used as an async context manager. "
                "Use 'async with LogQueryService(settings, codec) as service:'"
            )
        return self._http_client

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def fetch(
        self,
        topic_id: str,
        event_filter: EventFilter | None = None,
        *,
        limit: int | None = None,
        order: str = "desc",
        start_time: str | None = None,
        from_sequence: int | None = None,
        max_pages: int | None = None,
    ) -> RetrievalResult:
        """
        Retrieve and decode the events of a topic that match ``event_filter``.

        Args:
            topic_id: Topic to read.
            event_filter: Criteria events must match.  ``None`` keeps all.
            limit: Page size (defaults to ``settings.page_limit``).
            order: ``"desc"`` (newest first, the default) or ``"asc"``
                (oldest first).  Newest first keeps a fresh event inside the
                page budget on a topic with a long history.
            start_time: Only messages with consensus timestamp >= this value.
            from_sequence: Only messages with sequence number >= this value.
            max_pages: Pages to follow (defaults to ``settings.max_pages``).

        Returns:
            RetrievalResult: Matching events in the order the API returned
            them (newest first by default), with timing and per-record
            warnings.

        Raises:
            NetworkError: On a connection failure, non-2xx status or non-JSON body.
            RequestTimeoutError: If a request exceeds the configured timeout.
        """
        start = time.monotonic()
        event_filter = event_filter or EventFilter()

        params: list[tuple[str, str]] = [
            ("limit", str(limit or self.settings.page_limit)),
            ("order", order),
        ]
        if start_time:
            params.append(("timestamp", f"gte:{start_time}"))
        if from_sequence is not None:
            params.append(("sequencenumber", f"gte:{from_sequence}"))

        pages_left = max_pages or self.settings.max_pages
        url: str | None = f"/api/v1/topics/{topic_id}/messages"
        request_params: list[tuple[str, str]] | None = params
        records: list[Any] = []
        response_ms = 0.0

        while url and pages_left > 0:
            request_start = time.monotonic()
            page, url = await self._get_page(url, request_params)
            response_ms += (time.monotonic() - request_start) * 1000.0
            records.extend(page)
            # "next" links already carry their query string
            request_params = None
            pages_left -= 1

        events: list[EventRecord] = []
        warnings: list[str] = []
        for position, record in enumerate(records, start=1):
            try:
                message = LogMessage.from_json(record)
                event = self._codec.decode_base64(message.message_base64)
            except DecodeError as e:
                warnings.append(f"Failed to decode message at {_describe(record, position)}: {e}")
                continue
            if event_filter.matches(event):
                events.append(event)

        query_time_ms = (time.monotonic() - start) * 1000.0
        result = RetrievalResult(
            found=bool(events),
            events=events,
            metadata=RetrievalMetadata(
                query_time_ms=query_time_ms,
                within_budget=query_time_ms <= self.budget_ms,
                message_count=len(events),
                warnings=warnings,
                log_response_time_ms=response_ms,
                scanned_count=len(records),
            ),
        )

        if warnings:
            logger.warning(
                "Topic %s: skipped %d undecodable message(s)", topic_id, len(warnings)
            )
        logger.info(
            "Topic %s: %d matching event(s) of %d scanned in %.0f ms (within budget: %s)",
            topic_id,
            len(events),
            len(records),
            query_time_ms,
            result.metadata.within_budget,
        )
        return result

    async def fetch_subject(self, subject_id: str, **kwargs: Any) -> RetrievalResult:
        """Retrieve every event about ``subject_id`` from the configured topic."""
        return await self.fetch(self.settings.topic_id, EventFilter(subject_id=subject_id), **kwargs)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    async def _get_page(
        self, url: str, params: list[tuple[str, str]] | None
    ) -> tuple[list[Any], str | None]:
        """GET one page; return its raw records and the next page URL, if any."""
        try:
            response = await self.http_client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(
                "Log query timed out",
                detail=f"{url}: {e}",
                timeout_ms=float(self.settings.message_timeout_ms),
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(
                "Log query failed",
                detail=f"Cannot connect to {self.settings.query_base_url}: {e}",
            ) from e

        if not response.is_success:
            raise error_for_status(
                response.status_code,
                "Log query failed",
                detail=f"{url} returned {response.status_code}",
            )

        # Try to parse JSON response, handle non-JSON gracefully
        try:
            body = response.json()
        except ValueError as e:
            raise NetworkError(
                "Log query failed",
                status_code=response.status_code,
                detail="Query API returned a non-JSON body",
            ) from e

        next_url = None
        if isinstance(body, list):
            records = body
        elif isinstance(body, dict) and isinstance(body.get("messages"), list):
            records = body["messages"]
            links = body.get("links") or {}
            next_url = links.get("next") if isinstance(links, dict) else None
        else:
            raise NetworkError("Log query failed", detail="Unexpected response shape")

        return records, next_url


def _describe(record: Any, position: int) -> str:
    """Name a raw record for a warning: its sequence number if it has one."""
    if isinstance(record, dict):
        sequence = record.get("sequence_number", record.get("sequenceNumber"))
        if isinstance(sequence, int) and not isinstance(sequence, bool):
            return f"sequence {sequence}"
    return f"position {position}"
