import asyncio
import os

from bleak.exc import BleakError
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from petfeeder_core.config import ProvisioningSettings
from petfeeder_core.ports import Advertisement
from petfeeder_core.protocomm import (
    SEC_SCHEME_1,
    SESSION_COMMAND0,
    SESSION_RESPONSE0,
    SESSION_RESPONSE1,
    STATUS_CRYPTO_ERROR,
    STATUS_SUCCESS,
    TYPE_CMD_APPLY_CONFIG,
    TYPE_CMD_GET_STATUS,
    TYPE_CMD_SET_CONFIG,
    TYPE_RESP_APPLY_CONFIG,
    TYPE_RESP_GET_STATUS,
    TYPE_RESP_SET_CONFIG,
    WIFI_CONNECTED,
    WIFI_CONNECTING,
    WIFI_CONNECTION_FAILED,
    SessionData,
    WiFiConfigPayload,
    keystream,
    session_key,
)


class FakeBLEDevice:
    def __init__(self, address, name, rssi=-60):
        self.address = address
        self.name = name
        self.rssi = rssi

    def advertisement(self):
        return Advertisement(name=self.name, handle=self, rssi=self.rssi)


class FakeLink:
    def __init__(self, device):
        self.device = device
        self.open = True


class FakeProvisioningTransport:
    """Scripted transport; records every call.

    ``advertisements`` are yielded in order (duplicates included). Failures
    are injected with the ``fail_*`` attributes or by setting ``*_delay``
    longer than the channel timeout.
    """

    def __init__(self, advertisements=None):
        self.advertisements = list(advertisements or [])
        self.discover_calls = []
        self.stop_calls = 0
        self.connect_calls = []
        self.credentials = []
        self.disconnects = []
        self.fail_discover = None
        self.fail_connect = None
        self.fail_credentials = None
        self.fail_disconnect = None
        self.connect_delay = 0.0
        self.credentials_delay = 0.0

    async def discover(self, name_prefix, timeout, stop=None):
        self.discover_calls.append((name_prefix, timeout))
        try:
            if self.fail_discover is not None:
                raise self.fail_discover
            for adv in self.advertisements:
                await asyncio.sleep(0)
                if stop is not None and stop.is_set():
                    return
                yield adv
        finally:
            self.stop_calls += 1

    async def connect(self, handle, proof_of_possession):
        self.connect_calls.append((handle, proof_of_possession))
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.fail_connect is not None:
            raise self.fail_connect
        return FakeLink(handle)

    async def send_credentials(self, link, ssid, password):
        if self.credentials_delay:
            await asyncio.sleep(self.credentials_delay)
        if self.fail_credentials is not None:
            raise self.fail_credentials
        self.credentials.append((link, ssid, password))

    async def disconnect(self, link):
        self.disconnects.append(link)
        if self.fail_disconnect is not None:
            raise self.fail_disconnect
        link.open = False


class FakeFeederFirmware:
    """Appliance side of the protocomm security-1 provisioning endpoints.

    ``handle(char, data)`` consumes one write and returns the bytes a read of
    the same characteristic would produce. Everything written is kept raw in
    ``air`` for inspection.
    """

    def __init__(self, pop="", settings=None):
        settings = settings or ProvisioningSettings()
        self.session_char = settings.session_char_uuid
        self.config_char = settings.config_char_uuid
        self.pop = pop.encode()
        self._private = X25519PrivateKey.generate()
        self.pubkey = self._private.public_key().public_bytes_raw()
        self.random = os.urandom(16)
        self._cipher = None
        self.client_pubkey = None
        self.established = False
        self.air = []
        self.config = None
        self.applied = False
        # Scripted behaviour
        self.session_status = STATUS_SUCCESS
        self.forge_verify = False
        self.set_config_status = STATUS_SUCCESS
        self.station_states = [WIFI_CONNECTING, WIFI_CONNECTED]
        self.fail_reason = 0
        self.fail_write = None

    def handle(self, char, data):
        self.air.append((char, bytes(data)))
        if self.fail_write is not None:
            raise self.fail_write
        if char == self.session_char:
            return self._session(bytes(data))
        if char == self.config_char:
            return self._config(bytes(data))
        raise BleakError(f"Characteristic {char} not found")

    def _session(self, data):
        req = SessionData.FromString(data)
        resp = SessionData()
        resp.sec_ver = SEC_SCHEME_1
        if req.sec1.msg == SESSION_COMMAND0:
            self.client_pubkey = req.sec1.sc0.client_pubkey
            resp.sec1.msg = SESSION_RESPONSE0
            resp.sec1.sr0.SetInParent()
            resp.sec1.sr0.status = self.session_status
            if self.session_status == STATUS_SUCCESS:
                key = session_key(self._private, self.client_pubkey, self.pop)
                self._cipher = keystream(key, self.random)
                resp.sec1.sr0.device_pubkey = self.pubkey
                resp.sec1.sr0.device_random = self.random
            return resp.SerializeToString()

        resp.sec1.msg = SESSION_RESPONSE1
        resp.sec1.sr1.SetInParent()
        if self._cipher.update(req.sec1.sc1.client_verify_data) != self.pubkey:
            resp.sec1.sr1.status = STATUS_CRYPTO_ERROR
            return resp.SerializeToString()
        verify = self._cipher.update(self.client_pubkey)
        resp.sec1.sr1.device_verify_data = bytes(32) if self.forge_verify else verify
        self.established = True
        return resp.SerializeToString()

    def _config(self, data):
        req = WiFiConfigPayload.FromString(self._cipher.update(data))
        resp = WiFiConfigPayload()
        if req.msg == TYPE_CMD_SET_CONFIG:
            self.config = (
                req.cmd_set_config.ssid.decode(),
                req.cmd_set_config.passphrase.decode(),
            )
            resp.msg = TYPE_RESP_SET_CONFIG
            resp.resp_set_config.SetInParent()
            resp.resp_set_config.status = self.set_config_status
        elif req.msg == TYPE_CMD_APPLY_CONFIG:
            self.applied = True
            resp.msg = TYPE_RESP_APPLY_CONFIG
            resp.resp_apply_config.SetInParent()
        elif req.msg == TYPE_CMD_GET_STATUS:
            state = self.station_states.pop(0) if len(self.station_states) > 1 else self.station_states[0]
            resp.msg = TYPE_RESP_GET_STATUS
            resp.resp_get_status.SetInParent()
            resp.resp_get_status.sta_state = state
            if state == WIFI_CONNECTION_FAILED:
                resp.resp_get_status.fail_reason = self.fail_reason
            elif state == WIFI_CONNECTED:
                resp.resp_get_status.connected.ip4_addr = "192.168.1.50"
        return self._cipher.update(resp.SerializeToString())


class FakeBleakClient:
    """bleak client double wired to a FakeFeederFirmware."""

    firmware = None
    instances = []

    def __init__(self, handle, timeout=None):
        self.handle = handle
        self.timeout = timeout
        self.is_connected = False
        self.paired = False
        self._replies = {}
        FakeBleakClient.instances.append(self)

    async def connect(self):
        self.is_connected = True

    async def pair(self):
        self.paired = True
        return True

    async def write_gatt_char(self, char, data, response=False):
        assert response
        self._replies[char] = self.firmware.handle(char, data)

    async def read_gatt_char(self, char):
        return bytearray(self._replies.pop(char))

    async def disconnect(self):
        self.is_connected = False
        return True
