"""Device connectivity core for networked pet feeders.

BLE provisioning, a resilient MQTT bus client, the backend relay that
enriches and persists appliance events, command dispatch and the event
store.
"""

from .bus_client import BusClient, ConnectionState
from .dispatcher import CommandDispatcher
from .enrichment import TagStore
from .event_store import EventRecord, EventStore, RetentionJob
from .ownership import OwnershipStore
from .provisioning import (
    Candidate,
    ProvisioningChannel,
    ProvisioningSession,
    ProvisioningState,
    derive_identity,
)
from .relay import BusRelay, DedupCache
from .schedules import ScheduleStore

__version__ = "0.3.0"

__all__ = [
    "BusClient",
    "BusRelay",
    "Candidate",
    "CommandDispatcher",
    "ConnectionState",
    "DedupCache",
    "EventRecord",
    "EventStore",
    "OwnershipStore",
    "ProvisioningChannel",
    "ProvisioningSession",
    "ProvisioningState",
    "RetentionJob",
    "ScheduleStore",
    "TagStore",
    "__version__",
    "derive_identity",
]
