"""
Chain integrity validation for one subject's events.

A subject's events form a chain: each event names the one before it through
``previous_event_id``.  :class:`IntegrityValidator` orders the events by
timestamp and checks that

- every event carries a signature of at least ``min_signature_length``
  characters, and
- timestamps never go backwards and every link resolves to an event that
  came earlier.

A broken link, an event that references a later one, or a missing signature
all report ``tampering_detected``.  Validation is pure: the input list is
never modified and nothing is read or written.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from eventchain.config import IntegritySettings
from eventchain.models import EventRecord, IntegrityDetails, IntegrityVerdict, MissingLink

logger = logging.getLogger(__name__)


class IntegrityValidator:
    """Validate the ordering, linkage and signatures of an event chain."""

    def __init__(self, settings: IntegritySettings | None = None) -> None:
        self.settings = settings or IntegritySettings()

    def signature_present(self, event: EventRecord) -> bool:
        """Return True if ``event`` carries a signature of acceptable length."""
        signature = event.signature or ""
        return bool(signature) and len(signature) >= self.settings.min_signature_length

    def verify(self, events: list[EventRecord]) -> IntegrityVerdict:
        """
        Validate ``events`` as one subject's chain.

        Args:
            events: Events in any order.  An empty list is a valid chain.

        Returns:
            IntegrityVerdict with per-check results and diagnostics.
        """
        # sorted() is stable: equal timestamps keep their input order
        indexed = sorted(enumerate(events, start=1), key=lambda pair: pair[1].timestamp)
        ordered = [event for _, event in indexed]

        signatures_valid = all(self.signature_present(e) for e in ordered)

        # After sorting, an event linked to a later one shows up as a missing link
        seen: set[str] = set()
        missing_links: list[MissingLink] = []
        for event in ordered:
            if event.previous_event_id is not None and event.previous_event_id not in seen:
                missing_links.append(
                    MissingLink(event_id=event.event_id, previous_event_id=event.previous_event_id)
                )
            seen.add(event.event_id)

        sequence_valid = not missing_links
        tampering_detected = not (signatures_valid and sequence_valid)

        verdict = IntegrityVerdict(
            valid=not tampering_detected,
            sequence_valid=sequence_valid,
            signatures_valid=signatures_valid,
            tampering_detected=tampering_detected,
            details=IntegrityDetails(
                expected_sequence=list(range(1, len(ordered) + 1)),
                actual_sequence=[position for position, _ in indexed],
                missing_links=missing_links,
                validated_at=datetime.now(UTC),
            ),
        )

        if tampering_detected:
            logger.warning(
                "Integrity check failed for %d event(s): signatures_valid=%s, "
                "sequence_valid=%s, %d missing link(s)",
                len(ordered),
                signatures_valid,
                sequence_valid,
                len(missing_links),
            )
        else:
            logger.info("Integrity check passed for %d event(s)", len(ordered))
        return verdict
