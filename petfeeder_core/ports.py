"""Protocol definitions for the collaborators the core consumes.

These small Protocols document the minimal methods the surrounding
infrastructure (BLE radio, MQTT client, stores) must provide. The
SQLAlchemy stores and the bleak transport in this package implement them;
tests substitute hand-written fakes.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

# Listener invoked per inbound event: (topic, decoded payload).
EventListener = Callable[[str, dict], None]


@dataclass(frozen=True)
class Advertisement:
    """One BLE advertisement seen during discovery."""

    name: str
    handle: Any
    rssi: int | None = None


@runtime_checkable
class ProvisioningTransport(Protocol):
    """Short-range transport used by the provisioning state machine."""

    def discover(
        self, name_prefix: str, timeout: float, stop: asyncio.Event | None = None
    ) -> AsyncIterator[Advertisement]:
        """Yield advertisements whose name starts with ``name_prefix``.

        The stream ends when ``timeout`` elapses or ``stop`` is set, and
        releases only the radio scan it started.
        """

    async def connect(self, handle: Any, proof_of_possession: str) -> Any:
        """Open a secured session and return an opaque link object."""

    async def send_credentials(self, link: Any, ssid: str, password: str) -> None:
        """Transfer WiFi credentials; return once the appliance acknowledges."""

    async def disconnect(self, link: Any) -> None:
        """Release the session."""


@runtime_checkable
class MqttClient(Protocol):
    """Subset of the paho client API used by the bus client."""

    def subscribe(self, topic: str, qos: int = ...) -> Any: ...

    def unsubscribe(self, topic: str) -> Any: ...

    def publish(
        self, topic: str, payload: str | bytes | None = ..., qos: int = ..., retain: bool = ...
    ) -> Any: ...

    def connect_async(self, host: str, port: int = ..., keepalive: int = ...) -> Any: ...

    def loop_start(self) -> Any: ...

    def loop_stop(self) -> Any: ...

    def disconnect(self) -> Any: ...


@runtime_checkable
class OwnershipLookup(Protocol):
    """Account/ownership facts used to gate commands."""

    def is_linked(self, account_id: int, identity: str) -> bool: ...

    def register_device(self, identity: str, name: str | None = None) -> Any: ...


@runtime_checkable
class TagLookup(Protocol):
    """Enrichment facts: RFID tag to display name per appliance."""

    def lookup_tag_name(self, identity: str, rfid: str) -> str | None: ...


@runtime_checkable
class EventSink(Protocol):
    """Durable event log written by the relay."""

    def insert(
        self,
        identity: str,
        event_type: str,
        payload: dict,
        timestamp: datetime | None = None,
        dedup_key: str | None = None,
    ) -> Any: ...

    def has_dedup_key(self, identity: str, dedup_key: str) -> bool: ...


__all__ = [
    "Advertisement",
    "EventListener",
    "EventSink",
    "MqttClient",
    "OwnershipLookup",
    "ProvisioningTransport",
    "TagLookup",
]
