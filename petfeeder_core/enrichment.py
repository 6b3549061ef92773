"""Enrichment facts: RFID tags registered per appliance, with display names."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .db import session_scope
from .errors import PersistenceError, ValidationError
from .logging_setup import store_logger as logger
from .models import Cat
from .ownership import find_device, require_device


@dataclass(frozen=True)
class TagRecord:
    rfid: str
    name: str | None
    created_at: datetime


def _tag(session: Session, device_pk: int, rfid: str) -> Cat | None:
    return session.execute(
        select(Cat).where(Cat.device_pk == device_pk, Cat.rfid == rfid)
    ).scalar_one_or_none()


class TagStore:
    def __init__(self, session_factory: sessionmaker):
        self._factory = session_factory

    def add_tag(self, identity: str, rfid: str, name: str | None = None) -> TagRecord:
        if not rfid:
            raise ValidationError("RFID is required")
        try:
            with session_scope(self._factory) as s:
                device = require_device(s, identity)
                cat = Cat(device_pk=device.id, rfid=rfid, name=name)
                s.add(cat)
                s.flush()
                record = TagRecord(rfid=cat.rfid, name=cat.name, created_at=cat.created_at)
        except PersistenceError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise ValidationError(f"Tag {rfid} is already registered on {identity}") from exc
            raise
        logger.info({"event": "tag_added", "identity": identity, "rfid": rfid})
        return record

    def lookup_tag_name(self, identity: str, rfid: str) -> str | None:
        """Display name for ``rfid`` on ``identity``; None when unknown or unnamed."""
        with session_scope(self._factory) as s:
            device = find_device(s, identity)
            if device is None:
                return None
            cat = _tag(s, device.id, rfid)
            return cat.name if cat is not None else None

    def rename_tag(self, identity: str, rfid: str, name: str) -> TagRecord | None:
        with session_scope(self._factory) as s:
            device = require_device(s, identity)
            cat = _tag(s, device.id, rfid)
            if cat is None:
                return None
            cat.name = name
            return TagRecord(rfid=cat.rfid, name=cat.name, created_at=cat.created_at)

    def remove_tag(self, identity: str, rfid: str) -> bool:
        with session_scope(self._factory) as s:
            device = find_device(s, identity)
            cat = _tag(s, device.id, rfid) if device is not None else None
            if cat is None:
                return False
            s.delete(cat)
        logger.info({"event": "tag_removed", "identity": identity, "rfid": rfid})
        return True

    def tags_for_device(self, identity: str) -> list[TagRecord]:
        with session_scope(self._factory) as s:
            device = find_device(s, identity)
            if device is None:
                return []
            rows = s.execute(
                select(Cat).where(Cat.device_pk == device.id).order_by(Cat.created_at, Cat.id)
            ).scalars()
            return [TagRecord(rfid=c.rfid, name=c.name, created_at=c.created_at) for c in rows]


__all__ = ["TagRecord", "TagStore"]
