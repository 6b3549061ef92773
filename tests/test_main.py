import signal
from unittest.mock import MagicMock, patch

import pytest

from petfeeder_core import main as main_mod
from petfeeder_core.config import get_settings
from petfeeder_core.logging_setup import setup_logging
from petfeeder_core.main import Heartbeat, build_backend


@pytest.fixture(autouse=True)
def _restore_log_level():
    yield
    setup_logging("INFO")


def test_heartbeat_writes_atomically(tmp_path):
    path = tmp_path / "hb"
    hb = Heartbeat(str(path), interval=0)
    assert hb.interval == 2
    hb.beat()
    first = float(path.read_text())
    assert first > 0
    assert not (tmp_path / "hb.tmp").exists()


def test_heartbeat_thread_start_stop(tmp_path):
    path = tmp_path / "hb"
    hb = Heartbeat(str(path), interval=5)
    hb.start()
    hb.stop()
    assert path.exists()


def test_heartbeat_write_failure_is_logged_not_raised(tmp_path):
    Heartbeat(str(tmp_path / "missing" / "hb"), interval=5).beat()


def test_build_backend_wires_heartbeat(tmp_path):
    settings = get_settings(
        {"db_url": "sqlite:///:memory:", "heartbeat_path": str(tmp_path / "hb"), "max_owners": 3}
    )
    backend = build_backend(settings, client_factory=MagicMock())
    try:
        assert backend.heartbeat is not None
        assert backend.ownership.max_owners == 3
        assert backend.relay.topic == "petfeeder/+/event"
    finally:
        backend.engine.dispose()


def test_main_installs_signal_handlers_and_runs(monkeypatch):
    handlers = {}
    monkeypatch.setattr(signal, "signal", lambda sig, fn: handlers.setdefault(sig, fn))
    fake_backend = MagicMock()

    def _fake_run(backend, stop_evt):
        assert backend is fake_backend
        handlers[signal.SIGTERM](signal.SIGTERM, None)
        assert stop_evt.is_set()
        return 0

    with patch.object(main_mod, "build_backend", return_value=fake_backend), patch.object(
        main_mod, "run", side_effect=_fake_run
    ):
        assert main_mod.main(["--log-level", "WARNING"]) == 0
    assert set(handlers) == {signal.SIGTERM, signal.SIGINT}


def test_main_reports_store_failure(monkeypatch):
    from petfeeder_core.errors import PersistenceError

    monkeypatch.setattr(signal, "signal", lambda *a: None)
    with patch.object(main_mod, "build_backend", side_effect=PersistenceError("no db")):
        assert main_mod.main([]) == 1
