"""Dead-letter package: append-only JSONL store of failed submissions.

Events that could not be published (terminal error, or retries exhausted)
are set aside here for manual review and manual retry.  The store is one
checksummed JSONL file; status changes are appended, never rewritten.

Public surface
--------------
- :class:`DeadLetterRecorder`     - record, list, review, resolve and verify.
- :class:`DeadLetter`             - one open failure as returned by listings.
- :class:`DeadLetterStatistics`   - aggregate counts for monitoring.
- :class:`DeadLetterVerifyResult` - result of a tail integrity check.

Usage example
-------------
::

    from eventchain.deadletter import DeadLetterRecorder

    recorder = DeadLetterRecorder("data/dead_letters.jsonl")
    failure_id = await recorder.record(event, error, attempts=3)
    if failure_id is None:
        logger.warning("Dead-letter write failed, failure logged only.")
"""

from eventchain.deadletter.recorder import (
    DeadLetter,
    DeadLetterRecorder,
    DeadLetterStatistics,
    DeadLetterVerifyResult,
    categorize,
    determine_priority,
)

__all__ = [
    "DeadLetter",
    "DeadLetterRecorder",
    "DeadLetterStatistics",
    "DeadLetterVerifyResult",
    "categorize",
    "determine_priority",
]
