"""Wire format for bus payloads.

One JSON object per message. Events carry ``type``; commands carry
``action``. Helpers here normalize differing payload shapes so callers
can use a consistent API.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from .errors import DecodeError, ValidationError


class EventType(str, Enum):
    DISPENSE = "dispense"
    CAT_IDENTIFIED = "cat_identified"
    CAT_CAME = "cat_came"
    CAT_LEAVE = "cat_leave"
    TANK_LEVEL = "tank_level"
    ERROR = "error"


class Action(str, Enum):
    FEED = "feed"
    SCHEDULE = "schedule"


REQUIRED_EVENT_FIELDS: dict[str, tuple[str, ...]] = {
    EventType.DISPENSE.value: ("amount",),
    EventType.CAT_IDENTIFIED.value: ("rfid",),
    EventType.CAT_CAME.value: (),
    EventType.CAT_LEAVE.value: (),
    EventType.TANK_LEVEL.value: ("level",),
    EventType.ERROR.value: ("message",),
}

# Display name attached to cat_identified events whose tag has no record.
UNKNOWN_CAT = "Unknown cat"


def decode_payload(raw: bytes | bytearray | str) -> dict[str, Any]:
    """Decode a bus payload into a JSON object.

    Raises:
        DecodeError: If the payload is not UTF-8 JSON or not an object.
    """
    try:
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError, TypeError) as exc:
        raise DecodeError(f"Invalid JSON payload: {exc}") from exc
    if not isinstance(data, dict):
        raise DecodeError(f"Payload root must be an object, got {type(data).__name__}")
    return data


def validate_event(payload: dict[str, Any]) -> str:
    """Return the event type, raising DecodeError when it is absent."""
    event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type.strip():
        raise DecodeError("Event payload has no 'type'")
    return event_type


def missing_event_fields(payload: dict[str, Any]) -> list[str]:
    """List required fields absent from a known event type (empty if unknown)."""
    required = REQUIRED_EVENT_FIELDS.get(str(payload.get("type")), ())
    return [field for field in required if field not in payload]


def encode_command(command: dict[str, Any]) -> str:
    """Serialize a command object to the compact wire form."""
    if not isinstance(command, dict) or not command.get("action"):
        raise ValidationError("Command must be an object with an 'action'")
    try:
        return json.dumps(command, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Command is not JSON serializable: {exc}") from exc


def _positive_int(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field} must be a number, got {value!r}")
    if value != int(value) or value <= 0:
        raise ValidationError(f"{field} must be a positive whole number, got {value!r}")
    return int(value)


def _bounded_int(value: Any, field: str, low: int, high: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer, got {value!r}")
    if not low <= value <= high:
        raise ValidationError(f"{field} must be within {low}-{high}, got {value}")
    return value


def normalize_schedules(entries: Any) -> list[dict[str, Any]]:
    """Validate schedule entries and return them in canonical form.

    Each entry needs ``hour`` (0-23), ``minute`` (0-59) and a positive
    ``amount``; ``enabled`` defaults to True.
    """
    if not isinstance(entries, (list, tuple)):
        raise ValidationError("schedules must be a list")
    out: list[dict[str, Any]] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise ValidationError(f"schedule #{idx} must be an object")
        for field in ("hour", "minute", "amount"):
            if field not in entry:
                raise ValidationError(
                    "Each schedule requires hour, minute, and amount"
                )
        enabled = entry.get("enabled", True)
        if not isinstance(enabled, bool):
            raise ValidationError(f"schedule #{idx} enabled must be a boolean")
        out.append(
            {
                "hour": _bounded_int(entry["hour"], "hour", 0, 23),
                "minute": _bounded_int(entry["minute"], "minute", 0, 59),
                "amount": _positive_int(entry["amount"], "amount"),
                "enabled": enabled,
            }
        )
    return out


def build_feed_command(amount: Any) -> dict[str, Any]:
    return {"action": Action.FEED.value, "amount": _positive_int(amount, "amount")}


def build_schedule_command(schedules: list[dict[str, Any]]) -> dict[str, Any]:
    return {"action": Action.SCHEDULE.value, "schedules": schedules}


__all__ = [
    "Action",
    "EventType",
    "REQUIRED_EVENT_FIELDS",
    "UNKNOWN_CAT",
    "build_feed_command",
    "build_schedule_command",
    "decode_payload",
    "encode_command",
    "missing_event_fields",
    "normalize_schedules",
    "validate_event",
]
