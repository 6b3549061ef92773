"""Backend ingestion: the single wildcard subscriber over every appliance.

Per inbound event: identity from the topic, cat_identified enrichment
(RFID tag to cat name, "Unknown cat" when no record), then an Event Record
with a server timestamp. Failures are isolated per message.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .codec import UNKNOWN_CAT, EventType, missing_event_fields, validate_event
from .errors import DecodeError, PersistenceError
from .logging_setup import relay_logger as logger
from .ports import EventSink, TagLookup
from .topics import EVENT_CHANNEL, parse_topic, wildcard_event_topic

DEDUP_FIELD = "msg_id"


@dataclass
class RelayStats:
    received: int = 0
    persisted: int = 0
    enriched: int = 0
    dropped: int = 0
    duplicates: int = 0
    last_message_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "received": self.received,
            "persisted": self.persisted,
            "enriched": self.enriched,
            "dropped": self.dropped,
            "duplicates": self.duplicates,
            "last_message_at": self.last_message_at,
        }


@dataclass
class DedupCache:
    """In-memory TTL set of recently seen (identity, msg_id) keys.

    Expired entries are purged when the cache passes half its capacity.
    """

    ttl_seconds: float = 300.0
    max_size: int = 50000
    _seen: dict[str, float] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def check_and_mark(self, key: str, now: float | None = None) -> bool:
        """Return True if ``key`` was seen within the TTL; mark it either way."""
        now = time.monotonic() if now is None else now
        with self._lock:
            self._cleanup(now)
            seen_at = self._seen.get(key)
            self._seen[key] = now
            return seen_at is not None and now - seen_at <= self.ttl_seconds

    def forget(self, key: str) -> None:
        with self._lock:
            self._seen.pop(key, None)

    def _cleanup(self, now: float) -> None:
        if len(self._seen) <= self.max_size // 2:
            return
        expired = [k for k, t in self._seen.items() if now - t > self.ttl_seconds]
        for k in expired:
            del self._seen[k]

    def __len__(self) -> int:
        return len(self._seen)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BusRelay:
    """Subscribes once to ``<namespace>/+/event`` and persists what arrives."""

    def __init__(
        self,
        bus,
        tags: TagLookup,
        events: EventSink,
        *,
        dedup: DedupCache | None = None,
        clock=_utcnow,
    ):
        self._bus = bus
        self._tags = tags
        self._events = events
        self._dedup = dedup
        self._clock = clock
        self._topic = wildcard_event_topic(bus.namespace)
        self.stats = RelayStats()

    @property
    def topic(self) -> str:
        return self._topic

    def start(self) -> None:
        self._bus.subscribe(self._topic, self.handle_event)
        logger.info({"event": "relay_started", "topic": self._topic})

    def stop(self) -> None:
        self._bus.unsubscribe(self._topic)
        logger.info({"event": "relay_stopped", **self.stats.to_dict()})

    def handle_event(self, topic: str, payload: dict[str, Any]):
        """Enrich and persist one event. Never raises."""
        self.stats.received += 1
        self.stats.last_message_at = time.time()
        try:
            return self._process(topic, payload)
        except DecodeError as exc:
            self.stats.dropped += 1
            logger.warning({"event": "relay_decode_dropped", "topic": topic, "error": str(exc)})
        except PersistenceError as exc:
            self.stats.dropped += 1
            logger.error({"event": "relay_persist_dropped", "topic": topic, "error": str(exc)})
        except Exception:
            self.stats.dropped += 1
            logger.exception({"event": "relay_unexpected_error", "topic": topic})
        return None

    def _process(self, topic: str, payload: dict[str, Any]):
        parts = parse_topic(topic, self._bus.namespace)
        if parts is None or parts.channel != EVENT_CHANNEL:
            raise DecodeError(f"Unroutable topic {topic!r}")
        identity = parts.identity
        if not isinstance(payload, dict):
            raise DecodeError("Event payload must be an object")
        event_type = validate_event(payload)
        missing = missing_event_fields(payload)
        if missing:
            logger.warning(
                {"event": "relay_missing_fields", "identity": identity, "type": event_type, "missing": missing}
            )

        data = dict(payload)
        dedup_key = self._dedup_key(data)
        if dedup_key is not None and self._is_duplicate(identity, dedup_key):
            self.stats.duplicates += 1
            logger.info({"event": "relay_duplicate", "identity": identity, "msg_id": dedup_key})
            return None

        if event_type == EventType.CAT_IDENTIFIED.value and data.get("rfid"):
            data["cat_name"] = self._resolve_cat(identity, str(data["rfid"]))
            self.stats.enriched += 1

        try:
            record = self._events.insert(
                identity, event_type, data, timestamp=self._clock(), dedup_key=dedup_key
            )
        except PersistenceError:
            if dedup_key is not None and self._dedup is not None:
                self._dedup.forget(f"{identity}:{dedup_key}")
            raise
        self.stats.persisted += 1
        logger.debug({"event": "relay_persisted", "identity": identity, "type": event_type})
        return record

    def _resolve_cat(self, identity: str, rfid: str) -> str:
        try:
            name = self._tags.lookup_tag_name(identity, rfid)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                {"event": "relay_enrich_failed", "identity": identity, "rfid": rfid, "error": str(exc)}
            )
            return UNKNOWN_CAT
        logger.info({"event": "relay_cat_identified", "identity": identity, "rfid": rfid, "found": bool(name)})
        return name or UNKNOWN_CAT

    @staticmethod
    def _dedup_key(data: dict[str, Any]) -> str | None:
        raw = data.get(DEDUP_FIELD)
        if raw is None or raw == "":
            return None
        return str(raw)

    def _is_duplicate(self, identity: str, dedup_key: str) -> bool:
        if self._dedup is not None and self._dedup.check_and_mark(f"{identity}:{dedup_key}"):
            return True
        return self._events.has_dedup_key(identity, dedup_key)


__all__ = ["BusRelay", "DedupCache", "RelayStats"]
