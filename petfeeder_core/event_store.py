"""
event_store.py

Append-only event log, newest-first queries and age-based retention.

Records are never mutated after insert. Pruning is irreversible; there is
no soft delete.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from .db import session_scope
from .errors import PersistenceError
from .logging_setup import store_logger as logger
from .models import Device, Event
from .ownership import find_device, require_device

DEFAULT_LIMIT = 100
DEFAULT_RETENTION_DAYS = 15


@dataclass(frozen=True)
class EventRecord:
    id: int
    identity: str
    type: str
    data: dict[str, Any]
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "identity": self.identity,
            "type": self.type,
            "data": dict(self.data),
            "timestamp": self.timestamp.isoformat(),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is not None:
        return ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


class EventStore:
    def __init__(self, session_factory: sessionmaker):
        self._factory = session_factory

    def insert(
        self,
        identity: str,
        event_type: str,
        payload: dict[str, Any],
        timestamp: datetime | None = None,
        dedup_key: str | None = None,
    ) -> EventRecord:
        """Append one record.

        Raises:
            PersistenceError: The appliance has no record, or the write failed.
        """
        ts = _naive_utc(timestamp) if timestamp is not None else _utcnow()
        data = dict(payload or {})
        with session_scope(self._factory) as s:
            device = require_device(s, identity)
            row = Event(device_pk=device.id, type=event_type, data=data, timestamp=ts, dedup_key=dedup_key)
            s.add(row)
            s.flush()
            return EventRecord(id=row.id, identity=identity, type=row.type, data=data, timestamp=row.timestamp)

    def query(self, identity: str, limit: int = DEFAULT_LIMIT, offset: int = 0) -> list[EventRecord]:
        """Events for ``identity``, newest first. Unknown identities yield []."""
        return self._select(identity, None, limit, offset)

    list_events = query

    def events_by_type(
        self, identity: str, event_type: str, limit: int = DEFAULT_LIMIT, offset: int = 0
    ) -> list[EventRecord]:
        return self._select(identity, event_type, limit, offset)

    def _select(self, identity: str, event_type: str | None, limit: int, offset: int) -> list[EventRecord]:
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be non-negative")
        with session_scope(self._factory) as s:
            device = find_device(s, identity)
            if device is None:
                return []
            stmt = select(Event).where(Event.device_pk == device.id)
            if event_type is not None:
                stmt = stmt.where(Event.type == event_type)
            stmt = stmt.order_by(Event.timestamp.desc(), Event.id.desc()).limit(limit).offset(offset)
            return [
                EventRecord(id=e.id, identity=identity, type=e.type, data=dict(e.data or {}), timestamp=e.timestamp)
                for e in s.execute(stmt).scalars()
            ]

    def has_dedup_key(self, identity: str, dedup_key: str) -> bool:
        with session_scope(self._factory) as s:
            return (
                s.execute(
                    select(Event.id)
                    .join(Device, Event.device_pk == Device.id)
                    .where(Device.device_id == identity, Event.dedup_key == dedup_key)
                    .limit(1)
                ).first()
                is not None
            )

    def prune_older_than(self, days: float, now: datetime | None = None) -> int:
        """Delete records older than ``days``; return how many were removed."""
        if days < 0:
            raise ValueError("days must be non-negative")
        cutoff = (_naive_utc(now) if now is not None else _utcnow()) - timedelta(days=days)
        with session_scope(self._factory) as s:
            result = s.execute(
                delete(Event).where(Event.timestamp < cutoff).execution_options(synchronize_session=False)
            )
            removed = result.rowcount or 0
        logger.info({"event": "events_pruned", "removed": removed, "cutoff": cutoff.isoformat()})
        return removed


class RetentionJob:
    """Background thread pruning the event log every ``interval_hours``.

    The first prune happens one interval after start(); call run_once() for
    an immediate pass.
    """

    def __init__(
        self,
        store: EventStore,
        *,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        interval_hours: float = 24.0,
    ):
        self._store = store
        self._retention_days = retention_days
        self._interval = max(1.0, interval_hours * 3600.0)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        try:
            return self._store.prune_older_than(self._retention_days)
        except PersistenceError as exc:
            logger.error({"event": "retention_prune_failed", "error": str(exc)})
            return 0

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="event-retention", daemon=True)
        self._thread.start()
        logger.info(
            {"event": "retention_started", "days": self._retention_days, "interval_s": self._interval}
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None:
            thread.join(timeout=timeout)
        logger.info({"event": "retention_stopped"})

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self.run_once()


__all__ = ["EventRecord", "EventStore", "RetentionJob"]
