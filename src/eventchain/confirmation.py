"""Wait until a published event becomes visible on the read side.

The log's query API lags the submit side by a few seconds.  The waiter polls
the :class:`~eventchain.query.LogQueryService` until an event for the subject
appears or the deadline passes.  Intervals start short and grow, and are never
longer than the time left before the deadline.  Polls read the topic newest
first, so a fresh event is on the first page however long the history is.
"""

from __future__ import annotations

import asyncio
import logging
import time

from eventchain.config import ConfirmationSettings
from eventchain.errors import OperationCancelled
from eventchain.query import EventFilter, LogQueryService
from eventchain.retry import sleep_or_cancel

logger = logging.getLogger(__name__)

POLL_GROWTH = 1.5


class ConfirmationWaiter:
    """Poll the read side for an event about a subject.

    Example::

        waiter = ConfirmationWaiter(query_service, ConfirmationSettings())
        if not await waiter.wait_for_confirmation("BATCH-7", "0.0.12345"):
            logger.warning("Event not visible yet")
    """

    def __init__(self, query: LogQueryService, settings: ConfirmationSettings | None = None) -> None:
        self._query = query
        self.settings = settings or ConfirmationSettings()

    async def wait_for_confirmation(
        self,
        subject_id: str,
        topic_id: str,
        deadline_ms: float | None = None,
        *,
        event_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> bool:
        """Return True once an event for ``subject_id`` is visible.

        Args:
            subject_id: Subject the expected event is about.
            topic_id: Topic to poll.
            deadline_ms: Time to wait; defaults to the confirmation budget.
            event_id: When given, only this exact event confirms.
            cancel_event: Optional signal that aborts the wait.

        Returns:
            True if a matching event was seen, False once the deadline passed.

        Raises:
            OperationCancelled: If ``cancel_event`` is set while waiting.
        """
        if deadline_ms is None:
            deadline_ms = self.settings.budget_ms
        event_filter = EventFilter(subject_id=subject_id, event_id=event_id)
        start = time.monotonic()
        deadline = start + deadline_ms / 1000.0
        interval_ms = float(self.settings.initial_poll_interval_ms)
        polls = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled("Confirmation wait cancelled", detail=subject_id)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break

            polls += 1
            try:
                result = await asyncio.wait_for(
                    self._query.fetch(topic_id, event_filter, order="desc"), timeout=remaining
                )
            except TimeoutError:
                logger.debug("Poll %d for %s ran past the deadline", polls, subject_id)
                break
            except Exception as e:
                logger.warning("Poll %d for %s failed: %s", polls, subject_id, e)
            else:
                if result.found:
                    logger.info(
                        "Subject %s confirmed after %d poll(s) in %.0f ms",
                        subject_id,
                        polls,
                        (time.monotonic() - start) * 1000.0,
                    )
                    return True
                logger.debug("Poll %d for %s: not visible yet", polls, subject_id)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if await sleep_or_cancel(min(interval_ms / 1000.0, remaining), cancel_event):
                raise OperationCancelled("Confirmation wait cancelled", detail=subject_id)
            interval_ms = min(interval_ms * POLL_GROWTH, float(self.settings.max_poll_interval_ms))

        logger.info(
            "Subject %s not confirmed within %.0f ms (%d poll(s))", subject_id, deadline_ms, polls
        )
        return False
