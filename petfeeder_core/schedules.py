from __future__ import annotations

from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from .codec import normalize_schedules
from .db import session_scope
from .logging_setup import store_logger as logger
from .models import Schedule
from .ownership import find_device, require_device


class ScheduleStore:
    """Stored feeding schedule per appliance; writes replace the whole set."""

    def __init__(self, session_factory: sessionmaker):
        self._factory = session_factory

    def set_schedules(self, identity: str, schedules: Any) -> list[dict[str, Any]]:
        entries = normalize_schedules(schedules)
        with session_scope(self._factory) as s:
            device = require_device(s, identity)
            s.execute(delete(Schedule).where(Schedule.device_pk == device.id))
            for entry in entries:
                s.add(Schedule(device_pk=device.id, **entry))
        logger.info({"event": "schedules_saved", "identity": identity, "count": len(entries)})
        return self.get_schedules(identity)

    def get_schedules(self, identity: str) -> list[dict[str, Any]]:
        with session_scope(self._factory) as s:
            device = find_device(s, identity)
            if device is None:
                return []
            rows = s.execute(
                select(Schedule)
                .where(Schedule.device_pk == device.id)
                .order_by(Schedule.hour, Schedule.minute, Schedule.id)
            ).scalars()
            return [row.to_dict() for row in rows]


__all__ = ["ScheduleStore"]
