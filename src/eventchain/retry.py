"""Bounded retry with exponential backoff.

:class:`RetryExecutor` is the single place that decides whether a failed
operation is attempted again.  It does not look at error messages; it asks
the error.  An :class:`~eventchain.errors.EventChainError` carries its own
``retryable`` flag, set where the error was raised.  Anything else is treated
as terminal.

The loop itself is :class:`tenacity.AsyncRetrying`; this module only maps
:class:`~eventchain.config.RetrySettings` onto tenacity's stop, wait and
retry strategies and translates the outcome into the pipeline's errors.

Delay schedule
--------------
After the n-th failure (n counted from 0) the executor waits::

    min(base_delay_ms * backoff_multiplier ** n, max_delay_ms)

plus, when ``jitter`` is non-zero, a random extra of up to ``jitter`` times
``base_delay_ms``.  With the defaults (1000 ms, x2, cap 10000 ms, 3 retries)
the waits are 1 s, 2 s, 4 s.

Cancellation
------------
Waiting uses :func:`asyncio.sleep`, so other tasks keep running.  Cancelling
the surrounding task interrupts the wait as usual.  A caller may also pass an
:class:`asyncio.Event`; if it is set before or during a backoff wait the
executor raises :exc:`~eventchain.errors.OperationCancelled` instead of
sleeping on.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)
from tenacity.wait import wait_base

from eventchain.config import RetrySettings
from eventchain.errors import EventChainError, OperationCancelled, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryOutcome(Generic[T]):
    """Result of a successful :meth:`RetryExecutor.execute` call.

    Attributes:
        result: Value returned by the operation.
        attempts: Retries performed before the successful invocation.
    """

    result: T
    attempts: int


def is_retryable(exc: BaseException) -> bool:
    """Return the error's own retryable tag; unknown errors are terminal."""
    return isinstance(exc, EventChainError) and exc.retryable


async def sleep_or_cancel(delay_seconds: float, cancel_event: asyncio.Event | None) -> bool:
    """Sleep for ``delay_seconds`` unless ``cancel_event`` is set first.

    Returns:
        True if the wait was cut short by ``cancel_event``.
    """
    if cancel_event is None:
        await asyncio.sleep(delay_seconds)
        return False
    if cancel_event.is_set():
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay_seconds)
    except TimeoutError:
        return False
    return True


class RetryExecutor:
    """Run an async operation with bounded, backed-off retries.

    Example::

        executor = RetryExecutor(RetrySettings(max_retries=3))
        outcome = await executor.execute(lambda: transport.submit(topic, data))
        print(outcome.result, outcome.attempts)
    """

    def __init__(
        self,
        settings: RetrySettings | None = None,
        *,
        classify: Callable[[BaseException], bool] = is_retryable,
    ) -> None:
        self.settings = settings or RetrySettings()
        self._classify = classify

    def delay_ms(self, attempt: int) -> float:
        """Backoff before retry number ``attempt + 1``, jitter excluded."""
        s = self.settings
        return min(s.base_delay_ms * (s.backoff_multiplier**attempt), s.max_delay_ms)

    def wait_strategy(self) -> wait_base:
        """Tenacity wait strategy for the configured schedule, in seconds."""
        s = self.settings
        wait: wait_base = wait_exponential(
            multiplier=s.base_delay_ms / 1000.0,
            exp_base=s.backoff_multiplier,
            max=s.max_delay_ms / 1000.0,
        )
        if s.jitter > 0:
            wait = wait + wait_random(0, s.base_delay_ms * s.jitter / 1000.0)
        return wait

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        cancel_event: asyncio.Event | None = None,
        label: str = "operation",
    ) -> RetryOutcome[T]:
        """Invoke ``operation`` until it succeeds, fails terminally or retries run out.

        Args:
            operation: Zero-argument callable returning a fresh awaitable each call.
            cancel_event: Optional signal that aborts backoff waits.
            label: Name used in log messages.

        Returns:
            The operation's result and the number of retries it took.

        Raises:
            Exception: The operation's own error, unchanged, when it is terminal.
            RetryExhaustedError: When every retry failed with a retryable error.
            OperationCancelled: When ``cancel_event`` was set.
        """
        max_retries = self.settings.max_retries

        async def backoff(seconds: float) -> None:
            if await sleep_or_cancel(seconds, cancel_event):
                raise OperationCancelled(f"{label} cancelled", detail="during backoff")

        def log_retry(state: RetryCallState) -> None:
            delay = state.next_action.sleep if state.next_action else 0.0
            logger.warning(
                "%s failed (retry %d/%d in %.0f ms): %s",
                label,
                state.attempt_number,
                max_retries,
                delay * 1000.0,
                state.outcome.exception() if state.outcome else None,
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception(self._classify),
            stop=stop_after_attempt(max_retries + 1),
            wait=self.wait_strategy(),
            sleep=backoff,
            before_sleep=log_retry,
        )

        try:
            async for attempt in retrying:
                if cancel_event is not None and cancel_event.is_set():
                    raise OperationCancelled(
                        f"{label} cancelled",
                        detail=f"after {attempt.retry_state.attempt_number - 1} retries",
                    )
                with attempt:
                    result = await operation()
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            attempts = exc.last_attempt.attempt_number - 1
            logger.warning("%s failed after %d retries: %s", label, attempts, last_error)
            raise RetryExhaustedError(
                f"{label} failed after {attempts} retries",
                detail=str(last_error),
                attempts=attempts,
                last_error=last_error,
            ) from last_error

        return RetryOutcome(result=result, attempts=attempt.retry_state.attempt_number - 1)
