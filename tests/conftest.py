"""
Pytest configuration for petfeeder_core tests.

- Ensures the repository root is on sys.path so `tests.helpers.*` and
  `petfeeder_core.*` resolve without an install.
- Provides in-memory SQLite stores and a connected fake bus.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = str(Path(__file__).resolve().parent.parent)
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)


_ensure_repo_root_on_syspath()


def pytest_configure(config):  # noqa: D401
    """Keep tests away from real brokers, radios and config files."""
    os.environ.setdefault("MQTT_HOST", "127.0.0.1")
    os.environ.setdefault("OPTIONS_PATH", "/nonexistent/options.json")


from petfeeder_core.bus_client import BusClient  # noqa: E402
from petfeeder_core.config import BusSettings  # noqa: E402
from petfeeder_core.db import build_engine, init_database, make_session_factory  # noqa: E402
from petfeeder_core.enrichment import TagStore  # noqa: E402
from petfeeder_core.event_store import EventStore  # noqa: E402
from petfeeder_core.logging_setup import logger as service_logger  # noqa: E402
from petfeeder_core.ownership import OwnershipStore  # noqa: E402
from petfeeder_core.schedules import ScheduleStore  # noqa: E402
from tests.helpers.fakes import FakeClientFactory  # noqa: E402


@pytest.fixture
def engine():
    eng = build_engine("sqlite:///:memory:")
    init_database(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def ownership(session_factory):
    return OwnershipStore(session_factory, max_owners=2)


@pytest.fixture
def tags(session_factory):
    return TagStore(session_factory)


@pytest.fixture
def schedules(session_factory):
    return ScheduleStore(session_factory)


@pytest.fixture
def events(session_factory):
    return EventStore(session_factory)


@pytest.fixture
def client_factory():
    return FakeClientFactory()


@pytest.fixture
def bus(client_factory):
    client = BusClient(BusSettings(connect_timeout=0.5), client_factory=client_factory)
    assert client.connect() is True
    yield client
    client.close()


@pytest.fixture
def caplog(caplog):
    """Capture service log records; the service logger does not reach root."""
    service_logger.addHandler(caplog.handler)
    yield caplog
    service_logger.removeHandler(caplog.handler)
