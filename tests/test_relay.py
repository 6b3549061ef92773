import logging
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from petfeeder_core.codec import UNKNOWN_CAT
from petfeeder_core.errors import PersistenceError
from petfeeder_core.relay import BusRelay, DedupCache
from tests.helpers.fakes import RecordingBus


def _now():
    return datetime.now(timezone.utc).replace(tzinfo=None)


@pytest.fixture
def registered(ownership):
    ownership.register_device("DEV1")
    ownership.register_device("DEV2")
    return ownership


@pytest.fixture
def relay(registered, tags, events):
    return BusRelay(RecordingBus(), tags, events, dedup=DedupCache(ttl_seconds=60))


def test_start_subscribes_once_to_wildcard(relay):
    relay.start()
    assert list(relay._bus.subscriptions) == ["petfeeder/+/event"]
    relay.stop()
    assert relay._bus.subscriptions == {}


def test_event_persisted_with_server_timestamp(relay, events):
    before = _now()
    record = relay.handle_event("petfeeder/DEV1/event", {"type": "tank_level", "level": 42})
    after = _now()
    assert record is not None
    (stored,) = events.query("DEV1")
    assert stored.type == "tank_level"
    assert stored.data == {"type": "tank_level", "level": 42}
    assert before <= stored.timestamp <= after


def test_appliance_timestamp_is_not_trusted(registered, tags, events):
    fixed = datetime(2030, 1, 1, 12, 0, 0)
    relay = BusRelay(RecordingBus(), tags, events, clock=lambda: fixed)
    relay.handle_event("petfeeder/DEV1/event", {"type": "cat_came", "timestamp": "1999-01-01"})
    assert events.query("DEV1")[0].timestamp == fixed


def test_multi_segment_namespace_routes_events(registered, tags, events):
    relay = BusRelay(RecordingBus(namespace="site1/petfeeder"), tags, events)
    relay.start()
    assert list(relay._bus.subscriptions) == ["site1/petfeeder/+/event"]
    relay.handle_event("site1/petfeeder/DEV1/event", {"type": "tank_level", "level": 42})
    (stored,) = events.query("DEV1")
    assert stored.data["level"] == 42
    assert relay.stats.dropped == 0


def test_topic_outside_namespace_dropped(relay, events):
    assert relay.handle_event("otherfeeder/DEV1/event", {"type": "tank_level", "level": 1}) is None
    assert events.query("DEV1") == []
    assert relay.stats.dropped == 1


class TestEnrichment:
    def test_known_tag_gets_cat_name(self, relay, tags, events):
        tags.add_tag("DEV1", "900123", "Miso")
        relay.handle_event("petfeeder/DEV1/event", {"type": "cat_identified", "rfid": "900123"})
        assert events.query("DEV1")[0].data == {
            "type": "cat_identified",
            "rfid": "900123",
            "cat_name": "Miso",
        }
        assert relay.stats.enriched == 1

    def test_unknown_tag_gets_sentinel(self, relay, events):
        relay.handle_event("petfeeder/DEV1/event", {"type": "cat_identified", "rfid": "X"})
        (record,) = events.query("DEV1")
        assert record.data["cat_name"] == UNKNOWN_CAT == "Unknown cat"

    def test_tags_are_scoped_per_appliance(self, relay, tags, events):
        tags.add_tag("DEV2", "X", "Pepper")
        relay.handle_event("petfeeder/DEV1/event", {"type": "cat_identified", "rfid": "X"})
        assert events.query("DEV1")[0].data["cat_name"] == UNKNOWN_CAT

    def test_lookup_failure_degrades_to_sentinel(self, registered, events):
        broken_tags = MagicMock()
        broken_tags.lookup_tag_name.side_effect = PersistenceError("db locked")
        relay = BusRelay(RecordingBus(), broken_tags, events)
        relay.handle_event("petfeeder/DEV1/event", {"type": "cat_identified", "rfid": "X"})
        assert events.query("DEV1")[0].data["cat_name"] == UNKNOWN_CAT

    def test_other_types_not_enriched(self, relay, events):
        relay.handle_event("petfeeder/DEV1/event", {"type": "dispense", "amount": 2})
        assert "cat_name" not in events.query("DEV1")[0].data

    def test_caller_payload_not_mutated(self, relay):
        payload = {"type": "cat_identified", "rfid": "X"}
        relay.handle_event("petfeeder/DEV1/event", payload)
        assert payload == {"type": "cat_identified", "rfid": "X"}


class TestIsolation:
    def test_bad_messages_dropped_and_relay_continues(self, relay, events, caplog):
        with caplog.at_level(logging.WARNING):
            assert relay.handle_event("petfeeder/DEV1/event", {"level": 3}) is None
            assert relay.handle_event("garbage", {"type": "cat_came"}) is None
            assert relay.handle_event("petfeeder/UNKNOWN/event", {"type": "cat_came"}) is None
        relay.handle_event("petfeeder/DEV1/event", {"type": "cat_came"})
        assert len(events.query("DEV1")) == 1
        assert relay.stats.dropped == 3
        assert relay.stats.persisted == 1

    def test_unexpected_sink_error_isolated(self, registered, tags):
        sink = MagicMock()
        sink.insert.side_effect = [RuntimeError("disk full"), "ok"]
        relay = BusRelay(RecordingBus(), tags, sink)
        assert relay.handle_event("petfeeder/DEV1/event", {"type": "cat_came"}) is None
        assert relay.handle_event("petfeeder/DEV1/event", {"type": "cat_came"}) == "ok"

    def test_missing_required_fields_still_persisted(self, relay, events, caplog):
        with caplog.at_level(logging.WARNING):
            relay.handle_event("petfeeder/DEV1/event", {"type": "tank_level"})
        assert len(events.query("DEV1")) == 1
        assert any(
            isinstance(r.msg, dict) and r.msg.get("event") == "relay_missing_fields"
            for r in caplog.records
        )


class TestDedup:
    def test_redelivery_with_msg_id_dropped(self, relay, events):
        payload = {"type": "dispense", "amount": 1, "msg_id": "m-1"}
        relay.handle_event("petfeeder/DEV1/event", payload)
        relay.handle_event("petfeeder/DEV1/event", payload)
        assert len(events.query("DEV1")) == 1
        assert relay.stats.duplicates == 1

    def test_same_msg_id_on_other_appliance_kept(self, relay, events):
        relay.handle_event("petfeeder/DEV1/event", {"type": "cat_came", "msg_id": "m-1"})
        relay.handle_event("petfeeder/DEV2/event", {"type": "cat_came", "msg_id": "m-1"})
        assert len(events.query("DEV1")) == len(events.query("DEV2")) == 1

    def test_without_msg_id_never_deduplicated(self, relay, events):
        relay.handle_event("petfeeder/DEV1/event", {"type": "cat_came"})
        relay.handle_event("petfeeder/DEV1/event", {"type": "cat_came"})
        assert len(events.query("DEV1")) == 2

    def test_stored_dedup_key_survives_restart(self, registered, tags, events):
        BusRelay(RecordingBus(), tags, events).handle_event(
            "petfeeder/DEV1/event", {"type": "cat_came", "msg_id": "m-9"}
        )
        fresh = BusRelay(RecordingBus(), tags, events, dedup=DedupCache())
        fresh.handle_event("petfeeder/DEV1/event", {"type": "cat_came", "msg_id": "m-9"})
        assert len(events.query("DEV1")) == 1


def test_dedup_cache_ttl():
    cache = DedupCache(ttl_seconds=10, max_size=4)
    assert cache.check_and_mark("a", now=0.0) is False
    assert cache.check_and_mark("a", now=5.0) is True
    assert cache.check_and_mark("a", now=20.0) is False
    cache.check_and_mark("b", now=21.0)
    cache.check_and_mark("c", now=22.0)
    cache.check_and_mark("d", now=100.0)
    assert "a" not in cache._seen and "b" not in cache._seen
