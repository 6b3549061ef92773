from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Device(Base):
    __tablename__ = "devices"
    id = Column(Integer, primary_key=True)
    device_id = Column(String(64), unique=True, nullable=False)
    name = Column(String(100))
    max_users = Column(Integer, nullable=False, default=5)
    registered_at = Column(DateTime, nullable=False, default=utcnow)

    owners = relationship("OwnershipLink", back_populates="device", cascade="all, delete-orphan")
    cats = relationship("Cat", back_populates="device", cascade="all, delete-orphan")
    schedules = relationship("Schedule", back_populates="device", cascade="all, delete-orphan")
    events = relationship("Event", back_populates="device", cascade="all, delete-orphan")


class OwnershipLink(Base):
    __tablename__ = "user_devices"
    id = Column(Integer, primary_key=True)
    account_id = Column(Integer, nullable=False, index=True)
    device_pk = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False)
    linked_at = Column(DateTime, nullable=False, default=utcnow)

    device = relationship("Device", back_populates="owners")
    __table_args__ = (UniqueConstraint("account_id", "device_pk", name="uq_account_device"),)


class Cat(Base):
    __tablename__ = "cats"
    id = Column(Integer, primary_key=True)
    device_pk = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False)
    rfid = Column(String(64), nullable=False)
    name = Column(String(100))
    created_at = Column(DateTime, nullable=False, default=utcnow)

    device = relationship("Device", back_populates="cats")
    __table_args__ = (UniqueConstraint("device_pk", "rfid", name="uq_device_rfid"),)


class Schedule(Base):
    __tablename__ = "schedules"
    id = Column(Integer, primary_key=True)
    device_pk = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False)
    hour = Column(Integer, nullable=False)
    minute = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)

    device = relationship("Device", back_populates="schedules")

    def to_dict(self) -> dict:
        return {"hour": self.hour, "minute": self.minute, "amount": self.amount, "enabled": bool(self.enabled)}


class Event(Base):
    __tablename__ = "events"
    id = Column(Integer, primary_key=True)
    device_pk = Column(Integer, ForeignKey("devices.id", ondelete="CASCADE"), nullable=False)
    type = Column(String(50), nullable=False)
    data = Column(JSON, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
    # Appliance-supplied msg_id, when present; used to drop redeliveries.
    dedup_key = Column(String(64))

    device = relationship("Device", back_populates="events")
    __table_args__ = (
        Index("ix_events_device_time", "device_pk", "timestamp"),
        Index("ix_events_device_dedup", "device_pk", "dedup_key"),
    )
