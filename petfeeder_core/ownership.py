"""Ownership facts: which accounts may address which appliance.

An appliance record exists while at least one account is linked to it.
Removing the last owner deletes the record together with its cats,
schedules and events.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import DateTime, Integer, func, insert, literal, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .db import session_scope
from .errors import (
    AccessDeniedError,
    AlreadyLinkedError,
    CapacityError,
    DeviceNotFoundError,
)
from .logging_setup import store_logger as logger
from .models import Device, OwnershipLink, utcnow

DEFAULT_MAX_OWNERS = 5


@dataclass(frozen=True)
class DeviceRecord:
    identity: str
    name: str | None
    max_users: int
    registered_at: datetime
    linked_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Device, linked_at: datetime | None = None) -> "DeviceRecord":
        return cls(
            identity=row.device_id,
            name=row.name,
            max_users=row.max_users,
            registered_at=row.registered_at,
            linked_at=linked_at,
        )


@dataclass(frozen=True)
class OwnerRecord:
    account_id: int
    linked_at: datetime


def find_device(session: Session, identity: str, *, for_update: bool = False) -> Device | None:
    stmt = select(Device).where(Device.device_id == identity)
    if for_update:
        stmt = stmt.with_for_update()
    return session.execute(stmt).scalar_one_or_none()


def require_device(session: Session, identity: str, *, for_update: bool = False) -> Device:
    device = find_device(session, identity, for_update=for_update)
    if device is None:
        raise DeviceNotFoundError(f"Device {identity} not found")
    return device


class OwnershipStore:
    def __init__(self, session_factory: sessionmaker, *, max_owners: int = DEFAULT_MAX_OWNERS):
        self._factory = session_factory
        self._max_owners = max_owners

    @property
    def max_owners(self) -> int:
        return self._max_owners

    def register_device(self, identity: str, name: str | None = None) -> DeviceRecord:
        """Get or create the appliance record for ``identity``."""
        with session_scope(self._factory) as s:
            device = find_device(s, identity)
            if device is None:
                device = Device(device_id=identity, name=name, max_users=self._max_owners)
                s.add(device)
                s.flush()
                logger.info({"event": "device_registered", "identity": identity})
            elif name and not device.name:
                device.name = name
            return DeviceRecord.from_row(device)

    def link(self, account_id: int, identity: str) -> OwnerRecord:
        """Link ``account_id`` to an existing appliance.

        The capacity check and the insert are one conditional statement, run
        with the appliance row locked where the database supports it, so
        concurrent links never push the owner count past ``max_users``.

        Raises:
            DeviceNotFoundError: Unknown identity.
            AlreadyLinkedError: The pair already exists.
            CapacityError: The appliance already has its maximum owners.
        """
        with session_scope(self._factory) as s:
            device = require_device(s, identity, for_update=True)
            existing = s.execute(
                select(OwnershipLink.id).where(
                    OwnershipLink.account_id == account_id,
                    OwnershipLink.device_pk == device.id,
                )
            ).first()
            if existing is not None:
                raise AlreadyLinkedError(f"Account {account_id} is already linked to {identity}")
            linked_at = utcnow()
            owners = (
                select(func.count(OwnershipLink.id))
                .where(OwnershipLink.device_pk == device.id)
                .scalar_subquery()
            )
            claim = insert(OwnershipLink).from_select(
                ["account_id", "device_pk", "linked_at"],
                select(
                    literal(account_id, Integer),
                    literal(device.id, Integer),
                    literal(linked_at, DateTime),
                ).where(owners < device.max_users),
            )
            try:
                result = s.execute(claim)
            except IntegrityError as exc:
                raise AlreadyLinkedError(
                    f"Account {account_id} is already linked to {identity}"
                ) from exc
            if result.rowcount != 1:
                logger.warning(
                    {"event": "link_capacity_reached", "identity": identity, "max_users": device.max_users}
                )
                raise CapacityError(identity, device.max_users)
            logger.info({"event": "device_linked", "identity": identity, "account_id": account_id})
            return OwnerRecord(account_id=account_id, linked_at=linked_at)

    def register_and_link(self, account_id: int, identity: str, name: str | None = None) -> DeviceRecord:
        """Post-provisioning step: ensure the record exists, then claim it."""
        self.register_device(identity, name)
        try:
            owner = self.link(account_id, identity)
        except (AlreadyLinkedError, CapacityError):
            self._drop_if_orphaned(identity)
            raise
        with session_scope(self._factory) as s:
            return DeviceRecord.from_row(require_device(s, identity), linked_at=owner.linked_at)

    def unlink(self, account_id: int, identity: str) -> bool:
        """Remove the link; return True when the appliance record was deleted."""
        with session_scope(self._factory) as s:
            device = find_device(s, identity)
            if device is None:
                return False
            link = s.execute(
                select(OwnershipLink).where(
                    OwnershipLink.account_id == account_id,
                    OwnershipLink.device_pk == device.id,
                )
            ).scalar_one_or_none()
            if link is not None:
                s.delete(link)
                s.flush()
                logger.info({"event": "device_unlinked", "identity": identity, "account_id": account_id})
            if self._count(s, device.id) == 0:
                s.delete(device)
                logger.info({"event": "device_deleted", "identity": identity})
                return True
            return False

    def is_linked(self, account_id: int, identity: str) -> bool:
        with session_scope(self._factory) as s:
            return (
                s.execute(
                    select(OwnershipLink.id)
                    .join(Device, OwnershipLink.device_pk == Device.id)
                    .where(OwnershipLink.account_id == account_id, Device.device_id == identity)
                ).first()
                is not None
            )

    def require_link(self, account_id: int, identity: str) -> None:
        if not self.is_linked(account_id, identity):
            raise AccessDeniedError(f"Account {account_id} has no access to {identity}")

    def get_device(self, identity: str) -> DeviceRecord | None:
        with session_scope(self._factory) as s:
            device = find_device(s, identity)
            return DeviceRecord.from_row(device) if device is not None else None

    def devices_for_account(self, account_id: int) -> list[DeviceRecord]:
        with session_scope(self._factory) as s:
            rows = s.execute(
                select(Device, OwnershipLink.linked_at)
                .join(OwnershipLink, OwnershipLink.device_pk == Device.id)
                .where(OwnershipLink.account_id == account_id)
                .order_by(OwnershipLink.linked_at, Device.id)
            ).all()
            return [DeviceRecord.from_row(device, linked_at) for device, linked_at in rows]

    def owners_of(self, identity: str) -> list[OwnerRecord]:
        with session_scope(self._factory) as s:
            device = find_device(s, identity)
            if device is None:
                return []
            rows = s.execute(
                select(OwnershipLink.account_id, OwnershipLink.linked_at)
                .where(OwnershipLink.device_pk == device.id)
                .order_by(OwnershipLink.linked_at, OwnershipLink.id)
            ).all()
            return [OwnerRecord(account_id=a, linked_at=t) for a, t in rows]

    def owner_count(self, identity: str) -> int:
        with session_scope(self._factory) as s:
            device = find_device(s, identity)
            return 0 if device is None else self._count(s, device.id)

    def rename_device(self, identity: str, name: str) -> DeviceRecord:
        with session_scope(self._factory) as s:
            device = require_device(s, identity)
            device.name = name
            s.flush()
            return DeviceRecord.from_row(device)

    @staticmethod
    def _count(session: Session, device_pk: int) -> int:
        return session.execute(
            select(func.count(OwnershipLink.id)).where(OwnershipLink.device_pk == device_pk)
        ).scalar_one()

    def _drop_if_orphaned(self, identity: str) -> None:
        with session_scope(self._factory) as s:
            device = find_device(s, identity)
            if device is not None and self._count(s, device.id) == 0:
                s.delete(device)


__all__ = ["DEFAULT_MAX_OWNERS", "DeviceRecord", "OwnerRecord", "OwnershipStore"]
