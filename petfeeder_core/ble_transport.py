"""
BLE provisioning transport built on bleak.

Discovery uses a BleakScanner detection callback filtered by name prefix;
each discover() call owns its scanner and stops only that one.

A session is a BleakClient connection plus a protocomm security-1 handshake
on the ``prov-session`` endpoint (see :mod:`petfeeder_core.protocomm`).
Credentials go to ``prov-config`` encrypted with the session keystream:
set config, apply config, then poll the station state until the appliance
reports it joined the network or gave up. Every exchange is a write with
response followed by a read of the same characteristic.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from .config import ProvisioningSettings
from .errors import ConnectionError, DiscoveryError, ProvisioningError
from .logging_setup import ble_logger as logger
from .ports import Advertisement
from .protocomm import (
    STATUS_SUCCESS,
    Security1,
    apply_config_request,
    get_status_request,
    parse_apply_config_response,
    parse_set_config_response,
    parse_status_response,
    set_config_request,
    status_name,
)

STATUS_POLL_INTERVAL = 1.0


@dataclass
class BleLink:
    """Open BLE session: the client and its established security context."""

    client: BleakClient
    name: str
    security: Security1


class BleakProvisioningTransport:
    """ProvisioningTransport over a local BLE adapter."""

    def __init__(
        self,
        settings: ProvisioningSettings | None = None,
        *,
        status_poll: float = STATUS_POLL_INTERVAL,
    ):
        self._settings = settings or ProvisioningSettings()
        self._status_poll = status_poll

    async def discover(
        self, name_prefix: str, timeout: float, stop: asyncio.Event | None = None
    ) -> AsyncIterator[Advertisement]:
        queue: asyncio.Queue[Advertisement] = asyncio.Queue()

        def _on_detect(device, advertisement_data) -> None:
            name = advertisement_data.local_name or device.name or ""
            if name.startswith(name_prefix):
                queue.put_nowait(
                    Advertisement(name=name, handle=device, rssi=advertisement_data.rssi)
                )

        scanner = BleakScanner(detection_callback=_on_detect, adapter=self._settings.adapter)
        try:
            await scanner.start()
        except (BleakError, OSError) as exc:
            logger.error({"event": "ble_scan_unavailable", "error": str(exc)})
            raise DiscoveryError(f"Bluetooth scan unavailable: {exc}") from exc
        logger.info(
            {"event": "ble_scan_start", "prefix": name_prefix, "adapter": self._settings.adapter}
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            while stop is None or not stop.is_set():
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    adv = await asyncio.wait_for(queue.get(), timeout=min(remaining, 0.5))
                except asyncio.TimeoutError:
                    continue
                yield adv
        finally:
            try:
                await scanner.stop()
            except (BleakError, OSError) as exc:
                logger.warning({"event": "ble_scan_stop_error", "error": str(exc)})
            logger.info({"event": "ble_scan_stop"})

    async def connect(self, handle: Any, proof_of_possession: str) -> BleLink:
        name = getattr(handle, "name", None) or str(handle)
        client = BleakClient(handle, timeout=self._settings.timeout)
        security = Security1(proof_of_possession)
        endpoint = self._settings.session_char_uuid
        try:
            await client.connect()
            if self._settings.pair:
                await client.pair()
            setup1 = security.setup0_response(
                await _request(client, endpoint, security.setup0_request())
            )
            security.setup1_response(await _request(client, endpoint, setup1))
        except (BleakError, OSError) as exc:
            await _quiet_disconnect(client)
            raise ConnectionError(f"BLE connect to {name} failed: {exc}") from exc
        except ConnectionError as exc:
            await _quiet_disconnect(client)
            raise ConnectionError(f"{name}: {exc}") from exc
        if not proof_of_possession:
            logger.warning(
                {
                    "event": "ble_session_unauthenticated",
                    "name": name,
                    "detail": "empty proof of possession; proximity is the only trust boundary",
                }
            )
        logger.info({"event": "ble_session_open", "name": name, "security": 1})
        return BleLink(client=client, name=name, security=security)

    async def send_credentials(self, link: BleLink, ssid: str, password: str) -> None:
        if not link.client.is_connected:
            raise ProvisioningError(f"{link.name} is no longer connected")
        try:
            status = parse_set_config_response(
                await self._config(link, set_config_request(ssid, password))
            )
            if status != STATUS_SUCCESS:
                raise ProvisioningError(
                    f"{link.name} rejected the WiFi configuration: {status_name(status)}"
                )
            status = parse_apply_config_response(await self._config(link, apply_config_request()))
            if status != STATUS_SUCCESS:
                raise ProvisioningError(
                    f"{link.name} could not apply the WiFi configuration: {status_name(status)}"
                )
            while True:
                wifi = parse_status_response(await self._config(link, get_status_request()))
                if wifi.connected:
                    logger.info(
                        {"event": "ble_wifi_joined", "name": link.name, "ip": wifi.ip4_addr}
                    )
                    return
                if wifi.failed:
                    raise ProvisioningError(
                        f"{link.name} could not join {ssid!r}: {wifi.fail_reason}"
                    )
                await asyncio.sleep(self._status_poll)
        except (BleakError, OSError) as exc:
            raise ProvisioningError(f"Credential transfer to {link.name} failed: {exc}") from exc

    async def disconnect(self, link: BleLink) -> None:
        await link.client.disconnect()

    async def _config(self, link: BleLink, payload: bytes) -> bytes:
        reply = await _request(
            link.client, self._settings.config_char_uuid, link.security.encrypt(payload)
        )
        return link.security.decrypt(reply)


async def _request(client: BleakClient, char_uuid: str, data: bytes) -> bytes:
    await client.write_gatt_char(char_uuid, data, response=True)
    return bytes(await client.read_gatt_char(char_uuid))


async def _quiet_disconnect(client: BleakClient) -> None:
    try:
        await client.disconnect()
    except (BleakError, OSError) as exc:
        logger.debug({"event": "ble_disconnect_after_error", "error": str(exc)})


__all__ = ["BleLink", "BleakProvisioningTransport", "STATUS_POLL_INTERVAL"]
