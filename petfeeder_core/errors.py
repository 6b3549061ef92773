"""Exception taxonomy for the feeder connectivity core.

Provisioning errors surface synchronously to the caller. Bus and relay
errors are mostly logged and isolated; only the first broker refusal on
``BusClient.connect`` is raised.
"""

from __future__ import annotations


class PetFeederError(Exception):
    """Base exception for all connectivity-core errors."""

    pass


class DiscoveryError(PetFeederError):
    """Raised when the BLE radio is unavailable or scanning is not permitted."""

    pass


class ConnectionError(PetFeederError):
    """Raised when a secure provisioning session cannot be established."""

    pass


class ProvisioningError(PetFeederError):
    """Raised when the appliance rejects or times out on credential transfer."""

    pass


class BusConnectError(PetFeederError):
    """Raised when the broker refuses the very first connection attempt."""

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        self.reason = reason


class DecodeError(PetFeederError):
    """Raised for malformed bus payloads; always recoverable."""

    pass


class PersistenceError(PetFeederError):
    """Raised when a store read or write fails."""

    pass


class ValidationError(PetFeederError):
    """Raised when a command or schedule fails input validation."""

    pass


class DeviceNotFoundError(PersistenceError):
    """Raised when an appliance identity has no stored record."""

    pass


class AlreadyLinkedError(PetFeederError):
    """Raised when an account is already linked to the appliance."""

    pass


class CapacityError(PetFeederError):
    """Raised when linking would exceed the appliance's owner limit."""

    def __init__(self, identity: str, max_owners: int):
        super().__init__(
            f"Device {identity} already has the maximum of {max_owners} owners"
        )
        self.identity = identity
        self.max_owners = max_owners


class AccessDeniedError(PetFeederError):
    """Raised when an account is not linked to the appliance it addresses."""

    pass


__all__ = [
    "AccessDeniedError",
    "AlreadyLinkedError",
    "BusConnectError",
    "CapacityError",
    "ConnectionError",
    "DecodeError",
    "DeviceNotFoundError",
    "DiscoveryError",
    "PersistenceError",
    "PetFeederError",
    "ProvisioningError",
    "ValidationError",
]
