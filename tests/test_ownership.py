import threading

import pytest

from petfeeder_core import ownership as ownership_mod
from petfeeder_core.db import build_engine, init_database, make_session_factory
from petfeeder_core.errors import (
    AccessDeniedError,
    AlreadyLinkedError,
    CapacityError,
    DeviceNotFoundError,
)
from petfeeder_core.ownership import OwnershipStore


def test_register_device_is_get_or_create(ownership):
    first = ownership.register_device("DEV1", "Kitchen")
    again = ownership.register_device("DEV1", "Hallway")
    assert first.identity == again.identity == "DEV1"
    assert again.name == "Kitchen"
    assert again.max_users == 2


def test_link_requires_existing_device(ownership):
    with pytest.raises(DeviceNotFoundError):
        ownership.link(1, "NOPE")


def test_link_twice_rejected(ownership):
    ownership.register_device("DEV1")
    ownership.link(1, "DEV1")
    with pytest.raises(AlreadyLinkedError):
        ownership.link(1, "DEV1")
    assert ownership.owner_count("DEV1") == 1


def test_capacity_error_creates_no_link(ownership):
    ownership.register_device("DEV1")
    ownership.link(1, "DEV1")
    ownership.link(2, "DEV1")
    with pytest.raises(CapacityError) as excinfo:
        ownership.link(3, "DEV1")
    assert excinfo.value.max_owners == 2
    assert ownership.owner_count("DEV1") == 2
    assert not ownership.is_linked(3, "DEV1")
    assert [o.account_id for o in ownership.owners_of("DEV1")] == [1, 2]


def test_register_and_link(ownership):
    record = ownership.register_and_link(5, "DEV1")
    assert record.identity == "DEV1"
    assert record.linked_at is not None
    assert ownership.is_linked(5, "DEV1")
    assert [d.identity for d in ownership.devices_for_account(5)] == ["DEV1"]


def test_register_and_link_failure_leaves_no_orphan(ownership):
    ownership.register_and_link(1, "DEV1")
    with pytest.raises(AlreadyLinkedError):
        ownership.register_and_link(1, "DEV1")
    assert ownership.get_device("DEV1") is not None


def test_last_unlink_deletes_device_and_history(ownership, tags, schedules, events):
    ownership.register_and_link(1, "DEV1")
    ownership.link(2, "DEV1")
    tags.add_tag("DEV1", "X", "Miso")
    schedules.set_schedules("DEV1", [{"hour": 7, "minute": 0, "amount": 1}])
    events.insert("DEV1", "cat_came", {"type": "cat_came"})

    assert ownership.unlink(1, "DEV1") is False
    assert ownership.get_device("DEV1") is not None

    assert ownership.unlink(2, "DEV1") is True
    assert ownership.get_device("DEV1") is None
    assert events.query("DEV1") == []
    assert tags.tags_for_device("DEV1") == []
    assert schedules.get_schedules("DEV1") == []

    # A re-registered appliance starts with a clean history.
    ownership.register_device("DEV1")
    assert events.query("DEV1") == []


def test_unlink_unknown_is_noop(ownership):
    assert ownership.unlink(1, "NOPE") is False


def test_require_link(ownership):
    ownership.register_and_link(1, "DEV1")
    ownership.require_link(1, "DEV1")
    with pytest.raises(AccessDeniedError):
        ownership.require_link(2, "DEV1")


def test_rename_device(ownership):
    ownership.register_device("DEV1")
    assert ownership.rename_device("DEV1", "Porch").name == "Porch"
    with pytest.raises(DeviceNotFoundError):
        ownership.rename_device("NOPE", "x")


def test_concurrent_links_never_exceed_capacity(tmp_path, monkeypatch):
    engine = build_engine(f"sqlite:///{tmp_path / 'owners.db'}")
    init_database(engine)
    store = OwnershipStore(make_session_factory(engine), max_owners=2)
    store.register_device("DEV1")

    accounts = [11, 12, 13, 14]
    # Every thread passes the appliance lookup before any of them inserts.
    barrier = threading.Barrier(len(accounts))
    original = ownership_mod.require_device

    def _lookup_then_wait(session, identity, **kw):
        device = original(session, identity, **kw)
        barrier.wait(timeout=5)
        return device

    monkeypatch.setattr(ownership_mod, "require_device", _lookup_then_wait)

    linked, refused, failures = [], [], []

    def _claim(account_id):
        try:
            store.link(account_id, "DEV1")
            linked.append(account_id)
        except CapacityError:
            refused.append(account_id)
        except Exception as exc:  # noqa: BLE001
            failures.append(exc)

    threads = [threading.Thread(target=_claim, args=(a,)) for a in accounts]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    try:
        assert failures == []
        assert len(linked) == 2
        assert len(refused) == 2
        assert store.owner_count("DEV1") == 2
        assert sorted(o.account_id for o in store.owners_of("DEV1")) == sorted(linked)
    finally:
        engine.dispose()
