"""Transport codec for lifecycle events.

Events travel inside a small versioned envelope::

    {"event": {...}, "message_type": "lifecycle_event", "version": "1.0"}

Serialisation is canonical (``sort_keys=True``, compact separators, UTF-8)
so the same event always produces the same bytes.  That matters twice: the
size check is reproducible, and a signature computed over the bytes stays
valid after a decode/encode cycle.

The codec enforces the transport size ceiling.  Consensus logs cap message
size (the default here, 1024 bytes, sits well under the common limits), and
an oversized payload is a terminal problem: retrying the same bytes can never
succeed, so :meth:`MessageCodec.encode` raises
:exc:`~eventchain.errors.PayloadTooLargeError` before anything is submitted.

Decoding is strict.  Anything that is not a well-formed envelope holding a
complete event raises :exc:`~eventchain.errors.DecodeError`; the query
service turns those into per-message warnings.
"""

from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime
from typing import Any

from eventchain.errors import DecodeError, PayloadTooLargeError
from eventchain.models import (
    Actor,
    ActorRole,
    EncodedPayload,
    EventRecord,
    EventType,
    Location,
)

ENVELOPE_VERSION = "1.0"
MESSAGE_TYPE = "lifecycle_event"
DEFAULT_MAX_PAYLOAD_BYTES = 1024


class MessageCodec:
    """Encode events into size-bounded payloads and decode them back.

    Attributes:
        max_payload_bytes: Largest encoded payload :meth:`encode` accepts.
    """

    def __init__(self, max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES) -> None:
        self.max_payload_bytes = max_payload_bytes

    # ── Bytes ─────────────────────────────────────────────────────────────────

    def encode(self, event: EventRecord) -> EncodedPayload:
        """Serialise ``event`` into transport bytes.

        Raises:
            PayloadTooLargeError: If the encoded size exceeds
                :attr:`max_payload_bytes`.
            DecodeError: If the event is malformed, the payload is not
                JSON-serialisable or the timestamp is naive.
        """
        try:
            body = event_to_dict(event)
        except (AttributeError, TypeError, ValueError) as e:
            raise DecodeError("Event cannot be serialised", detail=f"{type(e).__name__}: {e}") from e
        if event.timestamp.tzinfo is None:
            raise DecodeError("Event timestamp must be timezone-aware", detail=event.event_id)
        envelope = {
            "version": ENVELOPE_VERSION,
            "message_type": MESSAGE_TYPE,
            "event": body,
        }
        try:
            text = json.dumps(
                envelope,
                sort_keys=True,
                separators=(",", ":"),
                ensure_ascii=False,
                allow_nan=False,
            )
        except (TypeError, ValueError) as e:
            raise DecodeError("Event payload is not JSON-serialisable", detail=str(e)) from e

        data = text.encode("utf-8")
        size = len(data)
        if size > self.max_payload_bytes:
            raise PayloadTooLargeError(
                f"Encoded event is {size} bytes, limit is {self.max_payload_bytes}",
                detail="reduce the event payload or split it across events",
                size_bytes=size,
                limit_bytes=self.max_payload_bytes,
            )
        return EncodedPayload(data=data, size_bytes=size, valid=True)

    def decode(self, data: bytes) -> EventRecord:
        """Parse transport bytes produced by :meth:`encode`.

        Raises:
            DecodeError: On invalid UTF-8, invalid JSON or an invalid envelope.
        """
        try:
            envelope = json.loads(data.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise DecodeError("Message is not valid UTF-8", detail=str(e)) from e
        except json.JSONDecodeError as e:
            raise DecodeError("Message is not valid JSON", detail=str(e)) from e

        if not isinstance(envelope, dict):
            raise DecodeError("Message envelope must be a JSON object")
        if envelope.get("version") != ENVELOPE_VERSION:
            raise DecodeError("Unsupported envelope version", detail=repr(envelope.get("version")))
        if envelope.get("message_type") != MESSAGE_TYPE:
            raise DecodeError("Unsupported message type", detail=repr(envelope.get("message_type")))
        return event_from_dict(envelope.get("event"))

    def decode_base64(self, text: str) -> EventRecord:
        """Decode a base64 message body as returned by the read-side API."""
        try:
            raw = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise DecodeError("Message body is not valid base64", detail=str(e)) from e
        return self.decode(raw)


# ── Dict conversion ───────────────────────────────────────────────────────────


def event_to_dict(event: EventRecord) -> dict[str, Any]:
    """Convert an event to a JSON-compatible dict (no size check)."""
    location = None
    if event.location is not None:
        location = {
            "latitude": event.location.latitude,
            "longitude": event.location.longitude,
            "address": event.location.address,
            "region": event.location.region,
        }
    return {
        "event_id": event.event_id,
        "subject_id": event.subject_id,
        "event_type": event.event_type.value,
        "actor": {
            "identity": event.actor.identity,
            "role": event.actor.role.value,
            "organization_id": event.actor.organization_id,
        },
        "location": location,
        "payload": event.payload,
        "signature": event.signature,
        "previous_event_id": event.previous_event_id,
        "timestamp": event.timestamp.isoformat(),
        "schema_version": event.schema_version,
    }


def event_from_dict(data: Any) -> EventRecord:
    """Rebuild an event from :func:`event_to_dict` output.

    Raises:
        DecodeError: If a field is missing, mistyped or out of range.
    """
    if not isinstance(data, dict):
        raise DecodeError("Event must be a JSON object")

    actor_data = data.get("actor")
    if not isinstance(actor_data, dict):
        raise DecodeError("Event actor must be a JSON object")

    location_data = data.get("location")
    location = None
    if location_data is not None:
        if not isinstance(location_data, dict):
            raise DecodeError("Event location must be a JSON object or null")
        location = Location(
            latitude=_optional_number(location_data, "latitude"),
            longitude=_optional_number(location_data, "longitude"),
            address=_string(location_data, "address", allow_empty=True),
            region=_string(location_data, "region", allow_empty=True),
        )

    payload = data.get("payload")
    if not isinstance(payload, dict):
        raise DecodeError("Event payload must be a JSON object")

    return EventRecord(
        event_id=_string(data, "event_id"),
        subject_id=_string(data, "subject_id"),
        event_type=_enum(EventType, data.get("event_type"), "event_type"),
        actor=Actor(
            identity=_string(actor_data, "identity"),
            role=_enum(ActorRole, actor_data.get("role"), "actor.role"),
            organization_id=_optional_string(actor_data, "organization_id"),
        ),
        location=location,
        payload=payload,
        signature=_string(data, "signature", allow_empty=True),
        previous_event_id=_optional_string(data, "previous_event_id"),
        timestamp=_timestamp(data.get("timestamp")),
        schema_version=_string(data, "schema_version"),
    )


def _string(data: dict, key: str, *, allow_empty: bool = False) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise DecodeError(f"Field {key!r} must be a string")
    if not value and not allow_empty:
        raise DecodeError(f"Field {key!r} must not be empty")
    return value


def _optional_string(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise DecodeError(f"Field {key!r} must be a string or null")
    return value


def _optional_number(data: dict, key: str) -> float | None:
    value = data.get(key)
    if value is None:
        return None
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise DecodeError(f"Field {key!r} must be a number or null")
    return value


def _enum(enum_cls, value: Any, name: str):
    try:
        return enum_cls(value)
    except ValueError as e:
        raise DecodeError(f"Unknown {name}", detail=repr(value)) from e


def _timestamp(value: Any) -> datetime:
    if not isinstance(value, str):
        raise DecodeError("Field 'timestamp' must be an ISO-8601 string")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise DecodeError("Field 'timestamp' is not ISO-8601", detail=repr(value)) from e
    if parsed.tzinfo is None:
        raise DecodeError("Field 'timestamp' must carry a UTC offset", detail=repr(value))
    return parsed
