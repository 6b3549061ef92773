"""
bus_client.py

One resilient MQTT connection per process, multiplexing per-appliance
subscriptions. The subscription table survives reconnects: every
reconnect replays the full set, so listeners never see an
unsubscribe/resubscribe cycle.

- Fixed-interval reconnect (paho reconnect_delay_set with min == max)
- First connect blocks; only a broker refusal on that attempt is raised
- Inbound payloads are decoded once; malformed ones are logged and dropped
- Commands are fire-and-forget
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from enum import Enum
from typing import Any

import paho.mqtt.client as mqtt
from paho.mqtt.enums import CallbackAPIVersion

from .codec import decode_payload, encode_command
from .config import BusSettings
from .errors import BusConnectError, DecodeError
from .logging_setup import bus_logger as logger
from .ports import EventListener, MqttClient
from .topics import command_topic, event_topic

REASONS = {
    0: "success",
    1: "unacceptable_protocol_version",
    2: "identifier_rejected",
    3: "server_unavailable",
    4: "bad_username_or_password",
    5: "not_authorized",
}


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


ClientFactory = Callable[[BusSettings], MqttClient]


def _default_client_factory(settings: BusSettings) -> mqtt.Client:
    client = mqtt.Client(
        callback_api_version=CallbackAPIVersion.VERSION2,
        client_id=settings.client_id,
        protocol=mqtt.MQTTv311,
        clean_session=True,
        transport=settings.transport,
    )
    if settings.transport == "websockets":
        client.ws_set_options(path=settings.ws_path)
    return client


def _reason_text(reason_code: Any) -> str:
    if isinstance(reason_code, int):
        return REASONS.get(reason_code, f"unknown_{reason_code}")
    return str(reason_code)


def _is_failure(reason_code: Any) -> bool:
    failure = getattr(reason_code, "is_failure", None)
    if failure is not None:
        return bool(failure)
    return reason_code != 0


class BusClient:
    """Owned connectivity object; the application manages its lifecycle."""

    def __init__(
        self,
        settings: BusSettings | None = None,
        *,
        client_factory: ClientFactory | None = None,
    ):
        self._settings = settings or BusSettings()
        self._client_factory = client_factory or _default_client_factory
        self._client: MqttClient | None = None

        # Guards _state and _subscriptions; paho callbacks run on its network
        # thread while callers register from their own threads.
        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._subscriptions: dict[str, list[EventListener]] = {}
        self._first_result = threading.Event()
        self._first_error: BusConnectError | None = None
        self._ever_connected = False
        self._closing = False

    @property
    def settings(self) -> BusSettings:
        return self._settings

    @property
    def namespace(self) -> str:
        return self._settings.namespace

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def active_topics(self) -> list[str]:
        with self._lock:
            return list(self._subscriptions)

    # ---- lifecycle ----

    def connect(self, timeout: float | None = None) -> bool:
        """Open the transport and wait for the first CONNACK.

        Returns True once connected, False if the wait elapsed while the
        transport keeps retrying in the background.

        Raises:
            BusConnectError: If the broker refuses the first attempt
                (credentials, authorization, identifier, protocol).
        """
        wait = self._settings.connect_timeout if timeout is None else timeout
        with self._lock:
            if self._state is ConnectionState.CONNECTED:
                return True
            if self._client is None:
                self._closing = False
                self._first_error = None
                self._first_result.clear()
                self._state = ConnectionState.CONNECTING
                self._client = self._build_client()
                start = True
            else:
                start = False

        if start:
            s = self._settings
            logger.info(
                {
                    "event": "bus_connect_attempt",
                    "host": s.host,
                    "port": s.port,
                    "client_id": s.client_id,
                    "user": bool(s.username),
                    "tls": s.tls,
                    "transport": s.transport,
                }
            )
            self._client.connect_async(s.host, s.port, s.keepalive)
            self._client.loop_start()

        if not self._first_result.wait(wait):
            with self._lock:
                if self._state is ConnectionState.CONNECTING:
                    self._state = ConnectionState.RECONNECTING
            logger.warning({"event": "bus_connect_pending", "waited": wait})
            return False

        if self._first_error is not None:
            error = self._first_error
            self._teardown(forget_subscriptions=False)
            raise error
        return self.is_connected()

    def close(self) -> None:
        """Tear down the connection and forget all subscriptions."""
        self._teardown(forget_subscriptions=True)
        logger.info({"event": "bus_closed"})

    def _teardown(self, forget_subscriptions: bool) -> None:
        with self._lock:
            client = self._client
            self._client = None
            self._closing = True
            self._state = ConnectionState.DISCONNECTED
            if forget_subscriptions:
                self._subscriptions.clear()
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()

    def _build_client(self) -> MqttClient:
        s = self._settings
        client = self._client_factory(s)
        if s.username is not None:
            client.username_pw_set(username=s.username, password=(s.password or ""))
        if s.tls:
            client.tls_set()
        # Fixed retry interval, no upper bound on attempts.
        client.reconnect_delay_set(min_delay=s.reconnect_interval, max_delay=s.reconnect_interval)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    # ---- subscriptions ----

    def subscribe(self, topic_filter: str, listener: EventListener) -> None:
        """Register ``listener`` for ``topic_filter`` (MQTT wildcards allowed).

        The first listener for a filter issues the network subscribe; later
        ones reuse it. Registering the same listener twice is a no-op.
        """
        with self._lock:
            listeners = self._subscriptions.get(topic_filter)
            first = listeners is None
            if first:
                listeners = self._subscriptions[topic_filter] = []
            if listener in listeners:
                return
            listeners.append(listener)
            client = self._client if self._state is ConnectionState.CONNECTED else None
        if first and client is not None:
            client.subscribe(topic_filter, qos=self._settings.qos)
            logger.info({"event": "bus_subscribed", "topic": topic_filter})

    def unsubscribe(self, topic_filter: str) -> None:
        """Drop every listener for ``topic_filter``; no-op if none."""
        with self._lock:
            if self._subscriptions.pop(topic_filter, None) is None:
                return
            client = self._client if self._state is ConnectionState.CONNECTED else None
        if client is not None:
            client.unsubscribe(topic_filter)
        logger.info({"event": "bus_unsubscribed", "topic": topic_filter})

    def subscribe_to_device(self, identity: str, listener: EventListener) -> None:
        self.subscribe(event_topic(identity, self.namespace), listener)

    def unsubscribe_from_device(self, identity: str) -> None:
        self.unsubscribe(event_topic(identity, self.namespace))

    def _listeners_for(self, topic: str) -> list[EventListener]:
        with self._lock:
            matched: list[EventListener] = []
            for topic_filter, listeners in self._subscriptions.items():
                if mqtt.topic_matches_sub(topic_filter, topic):
                    matched.extend(l for l in listeners if l not in matched)
            return matched

    # ---- publishing ----

    def publish_command(self, identity: str, command: dict[str, Any]) -> bool:
        """Publish ``command`` to the appliance's command topic.

        Fire-and-forget: returns whether the message was handed to the
        transport. Nothing is queued or retried while disconnected.
        """
        topic = command_topic(identity, self.namespace)
        body = encode_command(command)
        with self._lock:
            client = self._client if self._state is ConnectionState.CONNECTED else None
        if client is None:
            logger.error({"event": "bus_publish_skipped", "topic": topic, "reason": "not_connected"})
            return False
        info = client.publish(topic, body, qos=self._settings.qos, retain=False)
        rc = getattr(info, "rc", mqtt.MQTT_ERR_SUCCESS)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error({"event": "bus_publish_failed", "topic": topic, "rc": rc})
            return False
        logger.info({"event": "bus_command_published", "topic": topic, "action": command.get("action")})
        return True

    # ---- paho callbacks ----

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        reason = _reason_text(reason_code)
        if _is_failure(reason_code):
            logger.error({"event": "bus_connect_failed", "reason": reason})
            with self._lock:
                first = not self._ever_connected and not self._first_result.is_set()
                self._state = ConnectionState.RECONNECTING
            if first:
                self._first_error = BusConnectError(
                    f"Broker refused connection: {reason}", reason=reason
                )
                self._first_result.set()
            return

        with self._lock:
            self._state = ConnectionState.CONNECTED
            self._ever_connected = True
            topics = list(self._subscriptions)
        for topic_filter in topics:
            client.subscribe(topic_filter, qos=self._settings.qos)
        logger.info({"event": "bus_connected", "reason": reason, "replayed": topics})
        self._first_result.set()

    def _on_disconnect(self, client, userdata, flags=None, reason_code=None, properties=None):
        with self._lock:
            if self._closing:
                self._state = ConnectionState.DISCONNECTED
            else:
                self._state = ConnectionState.RECONNECTING
            state = self._state
        logger.warning(
            {"event": "bus_disconnected", "reason": _reason_text(reason_code), "state": state.value}
        )

    def _on_message(self, client, userdata, msg):
        try:
            payload = decode_payload(msg.payload)
        except DecodeError as exc:
            logger.warning({"event": "bus_payload_dropped", "topic": msg.topic, "error": str(exc)})
            return
        for listener in self._listeners_for(msg.topic):
            try:
                listener(msg.topic, dict(payload))
            except Exception:
                logger.exception({"event": "bus_listener_error", "topic": msg.topic})


__all__ = ["BusClient", "ConnectionState", "REASONS"]
