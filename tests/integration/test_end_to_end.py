"""
End-to-end flows through the real bus client, relay and stores.

The paho client is replaced by FakeMQTT; everything else is the production
wiring from petfeeder_core.main.build_backend on in-memory SQLite.
"""

import json
import threading
from datetime import datetime, timezone

import pytest

from petfeeder_core.config import get_settings
from petfeeder_core.main import build_backend, run
from tests.helpers.fakes import FakeClientFactory


def _now():
    return datetime.now(timezone.utc).replace(tzinfo=None)


@pytest.fixture
def backend():
    factory = FakeClientFactory()
    settings = get_settings({"db_url": "sqlite:///:memory:", "mqtt_connect_timeout": 0.5})
    b = build_backend(settings, client_factory=factory)
    b.factory = factory
    b.ownership.register_and_link(1, "DEV1")
    assert b.start() is True
    yield b
    b.stop()


def test_tank_level_event_is_persisted(backend):
    fake = backend.factory.last
    assert ("petfeeder/+/event", 0) in fake.subscribed

    started = _now()
    fake.trigger("petfeeder/DEV1/event", b'{"type":"tank_level","level":42}')
    finished = _now()

    (record,) = backend.events.query("DEV1")
    assert record.type == "tank_level"
    assert record.data["level"] == 42
    assert started <= record.timestamp <= finished


def test_cat_identified_enriched_end_to_end(backend):
    backend.tags.add_tag("DEV1", "900123", "Miso")
    fake = backend.factory.last
    fake.trigger("petfeeder/DEV1/event", {"type": "cat_identified", "rfid": "900123"})
    fake.trigger("petfeeder/DEV1/event", {"type": "cat_identified", "rfid": "555"})
    names = [e.data["cat_name"] for e in backend.events.events_by_type("DEV1", "cat_identified")]
    assert names == ["Unknown cat", "Miso"]


def test_malformed_and_unknown_device_do_not_stop_relay(backend):
    fake = backend.factory.last
    fake.trigger("petfeeder/DEV1/event", b"\x00garbage")
    fake.trigger("petfeeder/GHOST/event", {"type": "cat_came"})
    fake.trigger("petfeeder/DEV1/event", {"type": "cat_came"})
    assert [e.type for e in backend.events.query("DEV1")] == ["cat_came"]


def test_relay_survives_reconnect(backend):
    fake = backend.factory.last
    fake.fire_disconnect()
    fake.subscribed.clear()
    fake.fire_connect()
    assert fake.subscribed_topics() == ["petfeeder/+/event"]
    fake.trigger("petfeeder/DEV1/event", {"type": "dispense", "amount": 2})
    assert len(backend.events.query("DEV1")) == 1


def test_trigger_feed_publishes_once(backend):
    backend.dispatcher.trigger_feed("DEV1", 2, account_id=1)
    published = backend.factory.last.published
    assert len(published) == 1
    topic, body, _, _ = published[0]
    assert topic == "petfeeder/DEV1/command"
    assert json.loads(body) == {"action": "feed", "amount": 2}


def test_run_returns_after_stop_signal():
    factory = FakeClientFactory()
    settings = get_settings({"db_url": "sqlite:///:memory:", "mqtt_connect_timeout": 0.5})
    b = build_backend(settings, client_factory=factory)
    stop = threading.Event()
    stop.set()
    assert run(b, stop) == 0
    assert factory.last.loop_stopped


def test_run_exits_nonzero_on_broker_refusal():
    from tests.helpers.fakes import NOT_AUTHORIZED

    factory = FakeClientFactory(auto_connack=NOT_AUTHORIZED)
    settings = get_settings({"db_url": "sqlite:///:memory:", "mqtt_connect_timeout": 0.5})
    b = build_backend(settings, client_factory=factory)
    assert run(b, threading.Event()) == 2
