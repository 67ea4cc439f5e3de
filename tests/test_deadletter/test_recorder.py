"""Unit tests for the dead-letter recorder.

Every test writes to its own ``tmp_path`` file through the ``recorder``
fixture, so no test ever touches the real ``data/`` directory.

Test organisation
-----------------
- :class:`TestClassification` - category and priority rules.
- :class:`TestRecord`         - failure lines, envelope and checksum.
- :class:`TestStatusChanges`  - review, resolve and retry-attempt lines.
- :class:`TestListing`        - filters, ordering and paging.
- :class:`TestStatistics`     - aggregate counts.
- :class:`TestVerify`         - tail integrity check (ok, empty, corrupt).
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from datetime import timedelta
from pathlib import Path

import pytest

from eventchain.deadletter import DeadLetterRecorder, categorize, determine_priority
from eventchain.errors import (
    DeadLetterNotFound,
    NetworkError,
    PayloadTooLargeError,
    RetryExhaustedError,
    TerminalSubmitError,
)
from eventchain.models import ActorRole, EventType
from tests.helpers import make_event


def _all_lines(path: Path) -> list[dict]:
    """Read and parse all non-empty lines of a JSONL file."""
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


# ── TestClassification ────────────────────────────────────────────────────────


@pytest.mark.unit
class TestClassification:
    """Tests for categorize and determine_priority."""

    @pytest.mark.parametrize(
        ("code", "category"),
        [
            ("NETWORK_ERROR", "network"),
            ("TIMEOUT", "network"),
            ("PAYLOAD_TOO_LARGE", "validation"),
            ("DECODE_ERROR", "validation"),
            ("SUBMISSION_REJECTED", "service"),
            ("SOMETHING_NEW", "unknown"),
        ],
    )
    def test_categorize(self, code: str, category: str) -> None:
        assert categorize(code) == category

    def test_verified_events_are_critical(self) -> None:
        assert determine_priority(make_event(event_type=EventType.VERIFIED)) == "critical"

    def test_verifier_actor_is_critical(self) -> None:
        event = make_event(event_type=EventType.CUSTOM, role=ActorRole.VERIFIER)
        assert determine_priority(event) == "critical"

    def test_remaining_priorities(self) -> None:
        assert determine_priority(make_event(event_type=EventType.CREATED)) == "high"
        assert determine_priority(make_event(event_type=EventType.PROCESSED)) == "medium"
        assert determine_priority(make_event(event_type=EventType.REJECTED)) == "low"


# ── TestRecord ────────────────────────────────────────────────────────────────


@pytest.mark.unit
class TestRecord:
    """Tests for DeadLetterRecorder.record."""

    @pytest.mark.asyncio
    async def test_record_creates_file_and_returns_id(
        self, recorder: DeadLetterRecorder, dead_letter_path: Path
    ) -> None:
        """The first record creates the parent directory and the file."""
        assert not dead_letter_path.exists()

        failure_id = await recorder.record(make_event(), NetworkError("down"), attempts=3)

        assert failure_id
        assert dead_letter_path.exists()

    @pytest.mark.asyncio
    async def test_envelope_fields(self, recorder: DeadLetterRecorder, dead_letter_path: Path) -> None:
        """A failure line carries the event, the error and the classification."""
        event = make_event()
        failure_id = await recorder.record(event, TerminalSubmitError("unauthorized"), attempts=0)

        (line,) = _all_lines(dead_letter_path)
        assert line["kind"] == "failure"
        assert line["failure_id"] == failure_id
        assert line["schema_version"] == "1.0"
        assert line["data"]["event"]["event_id"] == event.event_id
        assert line["data"]["error"]["code"] == "SUBMISSION_REJECTED"
        assert line["data"]["category"] == "service"
        assert line["data"]["priority"] == "high"

    @pytest.mark.asyncio
    async def test_checksum_covers_body(self, recorder: DeadLetterRecorder, dead_letter_path: Path) -> None:
        """_checksum is sha256 over the sorted-key body without _checksum."""
        await recorder.record(make_event(), NetworkError("down"))

        (line,) = _all_lines(dead_letter_path)
        body = {k: v for k, v in line.items() if k != "_checksum"}
        canonical = json.dumps(body, ensure_ascii=False, sort_keys=True)
        expected = "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        assert line["_checksum"] == expected

    @pytest.mark.asyncio
    async def test_retry_exhausted_is_categorised_by_cause(
        self, recorder: DeadLetterRecorder
    ) -> None:
        """An exhausted retry is filed under the category of its last error."""
        error = RetryExhaustedError("gave up", attempts=3, last_error=NetworkError("down"))

        failure_id = await recorder.record(make_event(), error, attempts=3)
        letter = await recorder.get(failure_id)

        assert letter is not None
        assert letter.category == "network"
        assert letter.error.code == "RETRY_EXHAUSTED"
        assert letter.attempts == 3

    @pytest.mark.asyncio
    async def test_unserialisable_event_is_not_raised(
        self, recorder: DeadLetterRecorder, dead_letter_path: Path
    ) -> None:
        """An event that cannot be turned into a line yields None and writes nothing."""
        event = make_event()
        object.__setattr__(event, "actor", None)

        assert await recorder.record(event, NetworkError("down")) is None
        assert not dead_letter_path.exists()

    @pytest.mark.asyncio
    async def test_record_never_raises(self, tmp_path: Path) -> None:
        """A store that cannot be written yields None instead of an exception."""
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        recorder = DeadLetterRecorder(blocker / "dead_letters.jsonl")

        assert await recorder.record(make_event(), NetworkError("down")) is None

    @pytest.mark.asyncio
    async def test_concurrent_records_all_land(
        self, recorder: DeadLetterRecorder, dead_letter_path: Path
    ) -> None:
        """Concurrent appends produce one intact line each."""
        ids = await asyncio.gather(
            *(recorder.record(make_event(f"S-{i}"), NetworkError("down")) for i in range(20))
        )

        assert len(set(ids)) == 20
        assert len(_all_lines(dead_letter_path)) == 20
        assert len(await recorder.list_failures()) == 20

    @pytest.mark.asyncio
    async def test_round_trips_event(self, recorder: DeadLetterRecorder) -> None:
        """The stored event decodes back to the original."""
        event = make_event(previous_event_id="f" * 32)
        failure_id = await recorder.record(event, NetworkError("down"))

        letter = await recorder.get(failure_id)

        assert letter is not None
        assert letter.event == event


# ── TestStatusChanges ─────────────────────────────────────────────────────────


@pytest.mark.unit
class TestStatusChanges:
    """Tests for mark_reviewed, mark_resolved and record_retry_attempt."""

    @pytest.mark.asyncio
    async def test_mark_reviewed(self, recorder: DeadLetterRecorder, dead_letter_path: Path) -> None:
        """Reviewing appends a line and sets reviewed/notes on the folded entry."""
        failure_id = await recorder.record(make_event(), NetworkError("down"))

        await recorder.mark_reviewed(failure_id, "checked the topic id")
        letter = await recorder.get(failure_id)

        assert letter.reviewed is True
        assert letter.review_notes == "checked the topic id"
        assert [line["kind"] for line in _all_lines(dead_letter_path)] == ["failure", "reviewed"]

    @pytest.mark.asyncio
    async def test_mark_resolved_hides_entry(self, recorder: DeadLetterRecorder) -> None:
        """A resolved failure no longer appears."""
        failure_id = await recorder.record(make_event(), NetworkError("down"))

        await recorder.mark_resolved(failure_id)

        assert await recorder.get(failure_id) is None
        assert await recorder.list_failures() == []

    @pytest.mark.asyncio
    async def test_retry_attempt_updates_error_and_count(self, recorder: DeadLetterRecorder) -> None:
        """A failed manual retry bumps attempts and replaces the error."""
        failure_id = await recorder.record(make_event(), NetworkError("down"), attempts=3)
        before = await recorder.get(failure_id)

        await recorder.record_retry_attempt(failure_id, TerminalSubmitError("unauthorized"))
        after = await recorder.get(failure_id)

        assert after.attempts == 4
        assert after.error.code == "SUBMISSION_REJECTED"
        assert after.last_retry_at >= before.last_retry_at

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["mark_reviewed", "mark_resolved"])
    async def test_unknown_id_raises(self, recorder: DeadLetterRecorder, method: str) -> None:
        """Status changes on unknown ids raise DeadLetterNotFound."""
        with pytest.raises(DeadLetterNotFound):
            await getattr(recorder, method)("does-not-exist")

    @pytest.mark.asyncio
    async def test_resolved_id_cannot_be_resolved_again(self, recorder: DeadLetterRecorder) -> None:
        failure_id = await recorder.record(make_event(), NetworkError("down"))
        await recorder.mark_resolved(failure_id)

        with pytest.raises(DeadLetterNotFound):
            await recorder.mark_resolved(failure_id)

    @pytest.mark.asyncio
    async def test_corrupt_line_is_skipped(
        self, recorder: DeadLetterRecorder, dead_letter_path: Path
    ) -> None:
        """A tampered line is ignored; other entries still load."""
        keep = await recorder.record(make_event("KEEP"), NetworkError("down"))
        await recorder.record(make_event("TAMPER"), NetworkError("down"))

        lines = dead_letter_path.read_text(encoding="utf-8").splitlines()
        lines[1] = lines[1].replace("TAMPER", "TAMPERED")
        dead_letter_path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        letters = await recorder.list_failures()
        assert [letter.failure_id for letter in letters] == [keep]


# ── TestListing ───────────────────────────────────────────────────────────────


@pytest.mark.unit
class TestListing:
    """Tests for list_failures filters and ordering."""

    @pytest.fixture
    async def populated(self, recorder: DeadLetterRecorder) -> dict[str, str]:
        ids = {
            "low": await recorder.record(make_event("A", event_type=EventType.CUSTOM), NetworkError("down")),
            "critical": await recorder.record(
                make_event("B", event_type=EventType.VERIFIED), TerminalSubmitError("no")
            ),
            "high": await recorder.record(
                make_event("A", event_type=EventType.CREATED),
                PayloadTooLargeError("too big", size_bytes=2000, limit_bytes=1024),
            ),
        }
        return ids

    @pytest.mark.asyncio
    async def test_ordered_by_priority(self, recorder: DeadLetterRecorder, populated: dict) -> None:
        letters = await recorder.list_failures()

        assert [letter.priority for letter in letters] == ["critical", "high", "low"]

    @pytest.mark.asyncio
    async def test_filters(self, recorder: DeadLetterRecorder, populated: dict) -> None:
        assert [f.failure_id for f in await recorder.list_failures(priority="critical")] == [
            populated["critical"]
        ]
        assert [f.failure_id for f in await recorder.list_failures(category="validation")] == [
            populated["high"]
        ]
        assert {f.failure_id for f in await recorder.list_failures(subject_id="A")} == {
            populated["low"],
            populated["high"],
        }

    @pytest.mark.asyncio
    async def test_reviewed_filter(self, recorder: DeadLetterRecorder, populated: dict) -> None:
        await recorder.mark_reviewed(populated["low"])

        unreviewed = await recorder.list_failures(reviewed=False)
        reviewed = await recorder.list_failures(reviewed=True)

        assert populated["low"] not in {f.failure_id for f in unreviewed}
        assert [f.failure_id for f in reviewed] == [populated["low"]]

    @pytest.mark.asyncio
    async def test_paging(self, recorder: DeadLetterRecorder, populated: dict) -> None:
        page = await recorder.list_failures(limit=1, offset=1)

        assert [f.priority for f in page] == ["high"]

    @pytest.mark.asyncio
    async def test_missing_file_lists_nothing(self, recorder: DeadLetterRecorder) -> None:
        assert await recorder.list_failures() == []


# ── TestStatistics ────────────────────────────────────────────────────────────


@pytest.mark.unit
class TestStatistics:
    """Tests for DeadLetterRecorder.statistics."""

    @pytest.mark.asyncio
    async def test_counts(self, recorder: DeadLetterRecorder) -> None:
        await recorder.record(make_event(), NetworkError("down"), attempts=3)
        await recorder.record(make_event(), NetworkError("down"), attempts=1)
        await recorder.record(make_event(), TerminalSubmitError("no"), attempts=0)

        stats = await recorder.statistics()

        assert stats.total_failures == 3
        assert stats.failures_by_category == {"network": 2, "service": 1}
        assert stats.failures_by_error_code == {"NETWORK_ERROR": 2, "SUBMISSION_REJECTED": 1}
        assert stats.recent_failures == 3
        assert stats.average_attempts == pytest.approx(4 / 3)

    @pytest.mark.asyncio
    async def test_old_failures_are_not_recent(self, recorder: DeadLetterRecorder) -> None:
        failure_id = await recorder.record(make_event(), NetworkError("down"))
        letter = await recorder.get(failure_id)

        stats = await recorder.statistics(now=letter.first_failed_at + timedelta(days=2))

        assert stats.total_failures == 1
        assert stats.recent_failures == 0

    @pytest.mark.asyncio
    async def test_empty_store(self, recorder: DeadLetterRecorder) -> None:
        stats = await recorder.statistics()

        assert stats.total_failures == 0
        assert stats.average_attempts == 0.0


# ── TestVerify ────────────────────────────────────────────────────────────────


@pytest.mark.unit
class TestVerify:
    """Tests for DeadLetterRecorder.verify."""

    def test_missing_file_is_empty(self, recorder: DeadLetterRecorder) -> None:
        result = recorder.verify()

        assert result.status == "empty"
        assert result.last_entry_id is None

    @pytest.mark.asyncio
    async def test_intact_file_is_ok(self, recorder: DeadLetterRecorder, dead_letter_path: Path) -> None:
        await recorder.record(make_event(), NetworkError("down"))

        result = recorder.verify()

        assert result.status == "ok"
        assert result.last_entry_id == _all_lines(dead_letter_path)[-1]["entry_id"]

    @pytest.mark.asyncio
    async def test_truncated_last_line_is_corrupt(
        self, recorder: DeadLetterRecorder, dead_letter_path: Path
    ) -> None:
        await recorder.record(make_event(), NetworkError("down"))
        with dead_letter_path.open("a", encoding="utf-8") as fh:
            fh.write('{"entry_id": "half-writ')

        result = recorder.verify()

        assert result.status == "corrupt"
        assert "JSON" in result.error_detail
