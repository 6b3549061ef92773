"""
Provisioning state machine for handing WiFi credentials to a feeder.

Idle -> Scanning -> Found -> Connecting -> Connected -> Provisioning ->
Provisioned | Failed.

Each step is one awaitable with one success and one failure outcome:
- scan(): async generator of de-duplicated candidates
- connect(): secured session or ConnectionError (back to Scanning)
- provision(): appliance identity or ProvisioningError (Failed, retryable)
- disconnect(): idempotent release

Every transport call is bounded by a per-operation timeout so a silent
appliance surfaces as an error rather than a hang.

The session is protocomm security-1: WiFi credentials are AES-CTR encrypted
under a key agreed by an X25519 exchange. The appliance firmware accepts an
empty proof of possession, so the exchange itself is not authenticated. A
passive listener learns nothing, but a device in radio range can pose as
the feeder and receive the credentials. Physical proximity is the trust
boundary.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import ConnectionError, DiscoveryError, ProvisioningError
from .logging_setup import ble_logger as logger
from .ports import ProvisioningTransport

DEFAULT_NAME_FILTER = "PROV_PETFEEDER_"
IDENTITY_PREFIX = "PROV_"
DEFAULT_TIMEOUT = 30.0
DEFAULT_SCAN_TIMEOUT = 10.0

# Empty proof of possession; see module docstring.
PROOF_OF_POSSESSION = ""


class ProvisioningState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    FOUND = "found"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    FAILED = "failed"


@dataclass(frozen=True)
class Candidate:
    """A nearby appliance in pairing mode."""

    name: str
    handle: Any
    rssi: int | None = None


@dataclass
class ProvisioningSession:
    candidate: Candidate
    link: Any
    open: bool = True


def derive_identity(session_name: str, prefix: str = IDENTITY_PREFIX) -> str:
    """Turn an advertised pairing name into the durable appliance identity.

    ``PROV_PETFEEDER_A1B2C3`` becomes ``PETFEEDER_A1B2C3``. Only a leading
    ``prefix`` is stripped; names without it are returned unchanged.

    Raises:
        ProvisioningError: If nothing is left after stripping.
    """
    name = session_name or ""
    identity = name[len(prefix):] if prefix and name.startswith(prefix) else name
    if not identity:
        raise ProvisioningError(f"Cannot derive identity from name {session_name!r}")
    return identity


class ProvisioningChannel:
    """
    Async provisioning session manager for one appliance at a time.

    Only one session may be open per channel; the caller drives the steps in
    order and may restart from scan() after any failure.
    """

    def __init__(
        self,
        transport: ProvisioningTransport,
        *,
        name_filter: str = DEFAULT_NAME_FILTER,
        identity_prefix: str = IDENTITY_PREFIX,
        timeout: float = DEFAULT_TIMEOUT,
        scan_timeout: float = DEFAULT_SCAN_TIMEOUT,
    ):
        self._transport = transport
        self._name_filter = name_filter
        self._identity_prefix = identity_prefix
        self._timeout = timeout
        self._scan_timeout = scan_timeout

        self._state = ProvisioningState.IDLE
        self._session: ProvisioningSession | None = None
        self._identity: str | None = None
        self._candidate: Candidate | None = None
        self._scan_stop: asyncio.Event | None = None

    @property
    def state(self) -> ProvisioningState:
        return self._state

    @property
    def identity(self) -> str | None:
        """Identity produced by the last successful provision(), if any."""
        return self._identity

    @property
    def candidate(self) -> Candidate | None:
        return self._candidate

    @property
    def session(self) -> ProvisioningSession | None:
        return self._session

    def _transition(self, new_state: ProvisioningState, **extra: Any) -> None:
        old = self._state
        self._state = new_state
        logger.debug(
            {
                "event": "prov_state",
                "from": old.value,
                "to": new_state.value,
                **extra,
            }
        )

    async def scan(
        self, name_filter: str | None = None, timeout: float | None = None
    ) -> AsyncIterator[Candidate]:
        """Yield nearby candidates advertising the name prefix.

        The sequence is lazy and restartable. It ends when the consumer stops
        iterating, when stop_scan() is called, or when the scan window
        elapses. Repeated advertisements for the same handle are suppressed.

        Raises:
            DiscoveryError: If the radio is unavailable or not permitted.
        """
        if self._session is not None:
            raise DiscoveryError("Cannot scan while a provisioning session is open")

        prefix = self._name_filter if name_filter is None else name_filter
        window = self._scan_timeout if timeout is None else timeout
        stop = asyncio.Event()
        self._scan_stop = stop
        seen: set[Any] = set()
        self._transition(ProvisioningState.SCANNING, prefix=prefix)
        logger.info({"event": "prov_scan_start", "prefix": prefix, "timeout": window})

        stream = self._transport.discover(prefix, window, stop)
        try:
            async for adv in stream:
                if stop.is_set():
                    break
                if not adv.name or not adv.name.startswith(prefix):
                    continue
                key = _handle_key(adv.handle)
                if key in seen:
                    continue
                seen.add(key)
                candidate = Candidate(name=adv.name, handle=adv.handle, rssi=adv.rssi)
                self._candidate = candidate
                self._transition(ProvisioningState.FOUND, name=candidate.name)
                logger.info(
                    {"event": "prov_candidate", "name": candidate.name, "rssi": candidate.rssi}
                )
                yield candidate
                if stop.is_set():
                    break
        except DiscoveryError:
            raise
        except Exception as exc:
            logger.error({"event": "prov_scan_error", "error": str(exc)})
            raise DiscoveryError(f"BLE discovery failed: {exc}") from exc
        finally:
            # An abandoned scan may be finalised after a newer one started.
            stop.set()
            if self._scan_stop is stop:
                self._scan_stop = None
            await _aclose(stream)
            logger.info({"event": "prov_scan_stop", "found": len(seen)})

    def stop_scan(self) -> None:
        """Ask the most recent scan() to finish and release its radio scan."""
        if self._scan_stop is not None:
            self._scan_stop.set()

    async def connect(self, candidate: Candidate) -> ProvisioningSession:
        """Open a secured session with ``candidate``.

        Raises:
            ConnectionError: If the appliance is unreachable, rejects the
                handshake or does not answer within the timeout. The channel
                returns to Scanning so the caller can pick again.
        """
        if self._session is not None and self._session.open:
            raise ConnectionError(
                f"A provisioning session with {self._session.candidate.name} is already open"
            )
        self.stop_scan()
        self._candidate = candidate
        self._identity = None
        self._transition(ProvisioningState.CONNECTING, name=candidate.name)
        logger.info(
            {
                "event": "prov_connect_attempt",
                "name": candidate.name,
                "timeout": self._timeout,
                "authenticated": False,
            }
        )
        try:
            link = await asyncio.wait_for(
                self._transport.connect(candidate.handle, PROOF_OF_POSSESSION),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            self._transition(ProvisioningState.SCANNING)
            logger.error({"event": "prov_connect_timeout", "name": candidate.name})
            raise ConnectionError(
                f"Connection to {candidate.name} timed out after {self._timeout}s"
            ) from exc
        except Exception as exc:
            self._transition(ProvisioningState.SCANNING)
            logger.error(
                {"event": "prov_connect_failed", "name": candidate.name, "error": str(exc)}
            )
            if isinstance(exc, ConnectionError):
                raise
            raise ConnectionError(f"Connection to {candidate.name} failed: {exc}") from exc

        self._session = ProvisioningSession(candidate=candidate, link=link)
        self._transition(ProvisioningState.CONNECTED, name=candidate.name)
        logger.info({"event": "prov_connect_success", "name": candidate.name})
        return self._session

    async def provision(self, session: ProvisioningSession, ssid: str, password: str) -> str:
        """Send WiFi credentials and return the appliance identity.

        Raises:
            ProvisioningError: Bad credentials, busy appliance, timeout, or a
                session that is not the open one. No identity is returned on
                failure.
        """
        if session is None or session is not self._session or not session.open:
            raise ProvisioningError("No open provisioning session")
        if self._state is not ProvisioningState.CONNECTED:
            raise ProvisioningError(
                f"Cannot provision from state {self._state.value}"
            )
        if not ssid or not ssid.strip():
            raise ProvisioningError("WiFi SSID is required")

        name = session.candidate.name
        self._transition(ProvisioningState.PROVISIONING, name=name)
        logger.info({"event": "prov_credentials_send", "name": name, "ssid": ssid})
        try:
            await asyncio.wait_for(
                self._transport.send_credentials(session.link, ssid, password or ""),
                timeout=self._timeout,
            )
            identity = derive_identity(name, self._identity_prefix)
        except asyncio.TimeoutError as exc:
            self._transition(ProvisioningState.FAILED, name=name)
            logger.error({"event": "prov_credentials_timeout", "name": name})
            raise ProvisioningError(
                f"{name} did not acknowledge credentials within {self._timeout}s"
            ) from exc
        except Exception as exc:
            self._transition(ProvisioningState.FAILED, name=name)
            logger.error(
                {"event": "prov_credentials_failed", "name": name, "error": str(exc)}
            )
            if isinstance(exc, ProvisioningError):
                raise
            raise ProvisioningError(f"Provisioning {name} failed: {exc}") from exc

        self._identity = identity
        self._transition(ProvisioningState.PROVISIONED, identity=identity)
        logger.info({"event": "prov_success", "name": name, "identity": identity})
        return identity

    async def disconnect(self, session: ProvisioningSession | None = None) -> None:
        """Release the session. Safe to call repeatedly and after failures.

        Raises:
            ConnectionError: If the transport does not release within the
                timeout. The local session is cleared regardless.
        """
        target = session or self._session
        if target is None or not target.open:
            if self._state in (ProvisioningState.SCANNING, ProvisioningState.FOUND):
                self.stop_scan()
            return

        target.open = False
        if target is self._session:
            self._session = None
        if self._state not in (ProvisioningState.PROVISIONED, ProvisioningState.FAILED):
            self._transition(ProvisioningState.IDLE)

        try:
            await asyncio.wait_for(
                self._transport.disconnect(target.link), timeout=self._timeout
            )
        except asyncio.TimeoutError as exc:
            logger.warning({"event": "prov_disconnect_timeout", "name": target.candidate.name})
            raise ConnectionError(
                f"Disconnect from {target.candidate.name} timed out"
            ) from exc
        except Exception as exc:  # noqa: BLE001
            # Already released locally; provisioning outcome stands.
            logger.warning(
                {
                    "event": "prov_disconnect_error",
                    "name": target.candidate.name,
                    "error": str(exc),
                }
            )
            return
        logger.info({"event": "prov_disconnected", "name": target.candidate.name})

    def reset(self) -> None:
        """Return an idle channel (no open session) to the Idle state."""
        if self._session is not None and self._session.open:
            raise ProvisioningError("Disconnect the open session before reset")
        self._candidate = None
        self._identity = None
        self._transition(ProvisioningState.IDLE)


def _handle_key(handle: Any) -> Any:
    address = getattr(handle, "address", None)
    if address:
        return str(address).upper()
    try:
        hash(handle)
    except TypeError:
        return id(handle)
    return handle


async def _aclose(stream: Any) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


__all__ = [
    "Candidate",
    "DEFAULT_NAME_FILTER",
    "IDENTITY_PREFIX",
    "PROOF_OF_POSSESSION",
    "ProvisioningChannel",
    "ProvisioningSession",
    "ProvisioningState",
    "derive_identity",
]
