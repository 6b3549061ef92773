"""
ESP-IDF protocomm frames and the security-1 session spoken by the feeder's
provisioning firmware.

Frames are protobuf messages written to the ``prov-session`` and
``prov-config`` GATT endpoints; the reply is read back from the same
endpoint. Session setup is an X25519 key exchange confirmed in both
directions. Everything after it is AES-256-CTR over a single keystream
shared by requests and replies, with the appliance's random as nonce.

The firmware accepts an empty proof of possession. The session key is then
derived from the key exchange alone: traffic is private against passive
listeners, but nothing authenticates the appliance, so a device in radio
range can impersonate it.

The message layout mirrors ``session.proto``, ``sec1.proto``,
``constants.proto`` and ``wifi_config.proto`` from ESP-IDF; only the
fields used here are declared.
"""

from __future__ import annotations

from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

from .errors import ConnectionError, ProvisioningError

_PACKAGE = "espressif"
_F = descriptor_pb2.FieldDescriptorProto

STATUS_SUCCESS = 0
STATUS_CRYPTO_ERROR = 6

SEC_SCHEME_1 = 1

SESSION_COMMAND0, SESSION_RESPONSE0, SESSION_COMMAND1, SESSION_RESPONSE1 = range(4)

(
    TYPE_CMD_GET_STATUS,
    TYPE_RESP_GET_STATUS,
    TYPE_CMD_SET_CONFIG,
    TYPE_RESP_SET_CONFIG,
    TYPE_CMD_APPLY_CONFIG,
    TYPE_RESP_APPLY_CONFIG,
) = range(6)

WIFI_CONNECTED, WIFI_CONNECTING, WIFI_DISCONNECTED, WIFI_CONNECTION_FAILED = range(4)

FAIL_REASONS = {0: "authentication failed", 1: "network not found"}

KEY_SIZE = 32
NONCE_SIZE = 16


def _field(name, number, kind, ref=None, *, oneof=False):
    return name, number, kind, ref, oneof


def _enum(fdp, name, *values):
    enum = fdp.enum_type.add(name=name)
    for number, value in enumerate(values):
        enum.value.add(name=value, number=number)


def _message(fdp, name, fields=(), oneof=None):
    msg = fdp.message_type.add(name=name)
    if oneof is not None:
        msg.oneof_decl.add(name=oneof)
    for field_name, number, kind, ref, in_oneof in fields:
        field = msg.field.add(
            name=field_name, number=number, type=kind, label=_F.LABEL_OPTIONAL
        )
        if ref:
            field.type_name = f".{_PACKAGE}.{ref}"
        if in_oneof:
            field.oneof_index = 0


def _build_pool() -> descriptor_pool.DescriptorPool:
    fdp = descriptor_pb2.FileDescriptorProto(
        name="petfeeder_protocomm.proto", package=_PACKAGE, syntax="proto3"
    )
    _enum(
        fdp,
        "Status",
        "Success",
        "InvalidSecScheme",
        "InvalidProto",
        "TooManySessions",
        "InvalidArgument",
        "InternalError",
        "CryptoError",
        "InvalidSession",
    )
    _enum(fdp, "SecSchemeVersion", "SecScheme0", "SecScheme1", "SecScheme2")
    _enum(
        fdp,
        "Sec1MsgType",
        "Session_Command0",
        "Session_Response0",
        "Session_Command1",
        "Session_Response1",
    )
    _enum(
        fdp,
        "WiFiConfigMsgType",
        "TypeCmdGetStatus",
        "TypeRespGetStatus",
        "TypeCmdSetConfig",
        "TypeRespSetConfig",
        "TypeCmdApplyConfig",
        "TypeRespApplyConfig",
    )
    _enum(fdp, "WifiStationState", "Connected", "Connecting", "Disconnected", "ConnectionFailed")
    _enum(fdp, "WifiConnectFailedReason", "AuthError", "NetworkNotFound")

    _message(fdp, "SessionCmd0", [_field("client_pubkey", 1, _F.TYPE_BYTES)])
    _message(
        fdp,
        "SessionResp0",
        [
            _field("status", 1, _F.TYPE_ENUM, "Status"),
            _field("device_pubkey", 2, _F.TYPE_BYTES),
            _field("device_random", 3, _F.TYPE_BYTES),
        ],
    )
    _message(fdp, "SessionCmd1", [_field("client_verify_data", 2, _F.TYPE_BYTES)])
    _message(
        fdp,
        "SessionResp1",
        [
            _field("status", 1, _F.TYPE_ENUM, "Status"),
            _field("device_verify_data", 3, _F.TYPE_BYTES),
        ],
    )
    _message(
        fdp,
        "Sec1Payload",
        [
            _field("msg", 1, _F.TYPE_ENUM, "Sec1MsgType"),
            _field("sc0", 20, _F.TYPE_MESSAGE, "SessionCmd0", oneof=True),
            _field("sr0", 21, _F.TYPE_MESSAGE, "SessionResp0", oneof=True),
            _field("sc1", 22, _F.TYPE_MESSAGE, "SessionCmd1", oneof=True),
            _field("sr1", 23, _F.TYPE_MESSAGE, "SessionResp1", oneof=True),
        ],
        oneof="payload",
    )
    _message(
        fdp,
        "SessionData",
        [
            _field("sec_ver", 2, _F.TYPE_ENUM, "SecSchemeVersion"),
            _field("sec1", 11, _F.TYPE_MESSAGE, "Sec1Payload", oneof=True),
        ],
        oneof="proto",
    )

    _message(fdp, "CmdGetStatus")
    _message(
        fdp,
        "WifiConnectedState",
        [_field("ip4_addr", 1, _F.TYPE_STRING), _field("ssid", 3, _F.TYPE_BYTES)],
    )
    _message(
        fdp,
        "RespGetStatus",
        [
            _field("status", 1, _F.TYPE_ENUM, "Status"),
            _field("sta_state", 2, _F.TYPE_ENUM, "WifiStationState"),
            _field("fail_reason", 10, _F.TYPE_ENUM, "WifiConnectFailedReason", oneof=True),
            _field("connected", 11, _F.TYPE_MESSAGE, "WifiConnectedState", oneof=True),
        ],
        oneof="state",
    )
    _message(
        fdp,
        "CmdSetConfig",
        [
            _field("ssid", 1, _F.TYPE_BYTES),
            _field("passphrase", 2, _F.TYPE_BYTES),
            _field("bssid", 3, _F.TYPE_BYTES),
            _field("channel", 4, _F.TYPE_INT32),
        ],
    )
    _message(fdp, "RespSetConfig", [_field("status", 1, _F.TYPE_ENUM, "Status")])
    _message(fdp, "CmdApplyConfig")
    _message(fdp, "RespApplyConfig", [_field("status", 1, _F.TYPE_ENUM, "Status")])
    _message(
        fdp,
        "WiFiConfigPayload",
        [
            _field("msg", 1, _F.TYPE_ENUM, "WiFiConfigMsgType"),
            _field("cmd_get_status", 10, _F.TYPE_MESSAGE, "CmdGetStatus", oneof=True),
            _field("resp_get_status", 11, _F.TYPE_MESSAGE, "RespGetStatus", oneof=True),
            _field("cmd_set_config", 12, _F.TYPE_MESSAGE, "CmdSetConfig", oneof=True),
            _field("resp_set_config", 13, _F.TYPE_MESSAGE, "RespSetConfig", oneof=True),
            _field("cmd_apply_config", 14, _F.TYPE_MESSAGE, "CmdApplyConfig", oneof=True),
            _field("resp_apply_config", 15, _F.TYPE_MESSAGE, "RespApplyConfig", oneof=True),
        ],
        oneof="payload",
    )

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(fdp.SerializeToString())
    return pool


_POOL = _build_pool()


def _message_class(name: str):
    return message_factory.GetMessageClass(_POOL.FindMessageTypeByName(f"{_PACKAGE}.{name}"))


SessionData = _message_class("SessionData")
WiFiConfigPayload = _message_class("WiFiConfigPayload")

_STATUS = _POOL.FindEnumTypeByName(f"{_PACKAGE}.Status")


def status_name(status: int) -> str:
    value = _STATUS.values_by_number.get(status)
    return value.name if value is not None else f"Status({status})"


def _raw_public(private: X25519PrivateKey) -> bytes:
    return private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


def session_key(
    private: X25519PrivateKey, peer_public: bytes, proof_of_possession: bytes = b""
) -> bytes:
    """Shared AES key; a non-empty proof of possession is folded in by XOR."""
    shared = private.exchange(X25519PublicKey.from_public_bytes(peer_public))
    if proof_of_possession:
        digest = hashes.Hash(hashes.SHA256())
        digest.update(proof_of_possession)
        shared = bytes(a ^ b for a, b in zip(shared, digest.finalize()))
    return shared


def keystream(key: bytes, nonce: bytes):
    return Cipher(algorithms.AES(key), modes.CTR(nonce)).encryptor()


class Security1:
    """Client side of a protocomm security-1 session.

    Drive it with the replies read from the session endpoint:
    ``setup0_request()`` -> ``setup0_response(reply)`` -> write the returned
    frame -> ``setup1_response(reply)``. After that ``encrypt``/``decrypt``
    advance the shared keystream, so calls must follow the wire order.
    """

    def __init__(self, proof_of_possession: str = ""):
        self._pop = (proof_of_possession or "").encode("utf-8")
        self._private = X25519PrivateKey.generate()
        self._client_pubkey = _raw_public(self._private)
        self._cipher = None
        self._established = False

    @property
    def established(self) -> bool:
        return self._established

    @property
    def client_pubkey(self) -> bytes:
        return self._client_pubkey

    def setup0_request(self) -> bytes:
        msg = SessionData()
        msg.sec_ver = SEC_SCHEME_1
        msg.sec1.msg = SESSION_COMMAND0
        msg.sec1.sc0.client_pubkey = self._client_pubkey
        return msg.SerializeToString()

    def setup0_response(self, data: bytes) -> bytes:
        """Derive the session key from the appliance's share; return setup1."""
        sr0 = _session_reply(data, SESSION_RESPONSE0).sr0
        if sr0.status != STATUS_SUCCESS:
            raise ConnectionError(f"Appliance refused the session: {status_name(sr0.status)}")
        if len(sr0.device_pubkey) != KEY_SIZE or len(sr0.device_random) != NONCE_SIZE:
            raise ConnectionError("Appliance sent a malformed key share")
        try:
            key = session_key(self._private, sr0.device_pubkey, self._pop)
        except ValueError as exc:
            raise ConnectionError(f"Key exchange failed: {exc}") from exc
        self._cipher = keystream(key, sr0.device_random)

        msg = SessionData()
        msg.sec_ver = SEC_SCHEME_1
        msg.sec1.msg = SESSION_COMMAND1
        msg.sec1.sc1.client_verify_data = self._cipher.update(sr0.device_pubkey)
        return msg.SerializeToString()

    def setup1_response(self, data: bytes) -> None:
        """Check that the appliance derived the same key."""
        if self._cipher is None:
            raise ConnectionError("Session setup out of order")
        sr1 = _session_reply(data, SESSION_RESPONSE1).sr1
        if sr1.status != STATUS_SUCCESS:
            raise ConnectionError(f"Appliance rejected session verification: {status_name(sr1.status)}")
        if self._cipher.update(sr1.device_verify_data) != self._client_pubkey:
            self._cipher = None
            raise ConnectionError("Appliance failed session verification")
        self._established = True

    def encrypt(self, data: bytes) -> bytes:
        if not self._established:
            raise ConnectionError("Secure session is not established")
        return self._cipher.update(bytes(data))

    decrypt = encrypt


def _session_reply(data: bytes, expected: int):
    try:
        msg = SessionData.FromString(bytes(data))
    except DecodeError as exc:
        raise ConnectionError(f"Malformed session frame: {exc}") from exc
    if msg.sec_ver != SEC_SCHEME_1:
        raise ConnectionError(f"Appliance answered with security scheme {msg.sec_ver}")
    if msg.sec1.msg != expected:
        raise ConnectionError(f"Unexpected session message {msg.sec1.msg}")
    return msg.sec1


@dataclass(frozen=True)
class WifiStatus:
    state: int
    fail_reason: str | None = None
    ip4_addr: str | None = None

    @property
    def connected(self) -> bool:
        return self.state == WIFI_CONNECTED

    @property
    def failed(self) -> bool:
        return self.state == WIFI_CONNECTION_FAILED


def set_config_request(ssid: str, passphrase: str) -> bytes:
    msg = WiFiConfigPayload()
    msg.msg = TYPE_CMD_SET_CONFIG
    msg.cmd_set_config.ssid = ssid.encode("utf-8")
    msg.cmd_set_config.passphrase = (passphrase or "").encode("utf-8")
    return msg.SerializeToString()


def apply_config_request() -> bytes:
    msg = WiFiConfigPayload()
    msg.msg = TYPE_CMD_APPLY_CONFIG
    msg.cmd_apply_config.SetInParent()
    return msg.SerializeToString()


def get_status_request() -> bytes:
    msg = WiFiConfigPayload()
    msg.msg = TYPE_CMD_GET_STATUS
    msg.cmd_get_status.SetInParent()
    return msg.SerializeToString()


def _config_reply(data: bytes, expected: int):
    try:
        msg = WiFiConfigPayload.FromString(bytes(data))
    except DecodeError as exc:
        raise ProvisioningError(f"Malformed config reply: {exc}") from exc
    if msg.msg != expected:
        raise ProvisioningError(f"Unexpected config reply type {msg.msg}")
    return msg


def parse_set_config_response(data: bytes) -> int:
    return _config_reply(data, TYPE_RESP_SET_CONFIG).resp_set_config.status


def parse_apply_config_response(data: bytes) -> int:
    return _config_reply(data, TYPE_RESP_APPLY_CONFIG).resp_apply_config.status


def parse_status_response(data: bytes) -> WifiStatus:
    resp = _config_reply(data, TYPE_RESP_GET_STATUS).resp_get_status
    if resp.status != STATUS_SUCCESS:
        raise ProvisioningError(f"Status query failed: {status_name(resp.status)}")
    if resp.sta_state == WIFI_CONNECTION_FAILED:
        reason = FAIL_REASONS.get(resp.fail_reason, f"reason {resp.fail_reason}")
        return WifiStatus(resp.sta_state, fail_reason=reason)
    if resp.sta_state == WIFI_CONNECTED:
        return WifiStatus(resp.sta_state, ip4_addr=resp.connected.ip4_addr or None)
    return WifiStatus(resp.sta_state)


__all__ = [
    "SessionData",
    "Security1",
    "WiFiConfigPayload",
    "WifiStatus",
    "apply_config_request",
    "get_status_request",
    "parse_apply_config_response",
    "parse_set_config_response",
    "parse_status_response",
    "set_config_request",
    "status_name",
]
