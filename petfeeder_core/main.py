"""
petfeeder-relay: backend service process.

Loads config, opens the store, connects the bus, starts the relay and the
retention job, then idles until SIGINT/SIGTERM. Teardown runs in reverse.
"""

from __future__ import annotations

import argparse
import contextlib
import os
import signal
import sys
import threading
import time
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from .bus_client import BusClient
from .config import Settings, get_settings, load_config
from .db import build_engine, init_database, make_session_factory
from .dispatcher import CommandDispatcher
from .enrichment import TagStore
from .errors import BusConnectError, PersistenceError
from .event_store import EventStore, RetentionJob
from .logging_setup import flush_all_log_handlers, logger, setup_logging
from .ownership import OwnershipStore
from .relay import BusRelay, DedupCache
from .schedules import ScheduleStore


def _write_atomic(path: str, content: str) -> None:
    tmp = f"{path}.tmp"
    with open(tmp, "w") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class Heartbeat:
    """Liveness file rewritten every ``interval`` seconds (minimum 2)."""

    def __init__(self, path: str, interval: int):
        self.path = path
        self.interval = 2 if interval < 2 else interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def beat(self) -> None:
        try:
            _write_atomic(self.path, f"{time.time()}\n")
        except OSError as e:
            logger.debug({"event": "heartbeat_write_failed", "path": self.path, "error": str(e)})

    def start(self) -> None:
        def _hb():
            while not self._stop.is_set():
                self.beat()
                self._stop.wait(self.interval)

        self._thread = threading.Thread(target=_hb, name="heartbeat", daemon=True)
        self._thread.start()
        logger.info({"event": "heartbeat_started", "path": self.path, "interval": self.interval})

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None
        self.beat()


@dataclass
class Backend:
    settings: Settings
    engine: Engine
    bus: BusClient
    ownership: OwnershipStore
    tags: TagStore
    schedules: ScheduleStore
    events: EventStore
    relay: BusRelay
    retention: RetentionJob
    dispatcher: CommandDispatcher
    heartbeat: Heartbeat | None = None

    def start(self, connect_timeout: float | None = None) -> bool:
        """Connect the bus and start background work; True once connected."""
        self.retention.run_once()
        self.relay.start()
        connected = self.bus.connect(timeout=connect_timeout)
        self.retention.start()
        if self.heartbeat is not None:
            self.heartbeat.start()
        logger.info({"event": "backend_started", "connected": connected})
        return connected

    def stop(self) -> None:
        if self.heartbeat is not None:
            self.heartbeat.stop()
        self.retention.stop()
        self.relay.stop()
        self.bus.close()
        self.engine.dispose()
        logger.info({"event": "backend_stopped"})


def build_backend(settings: Settings, *, client_factory=None) -> Backend:
    """Wire stores, bus, relay and dispatcher from ``settings``."""
    engine = build_engine(settings.store.db_url)
    init_database(engine)
    factory = make_session_factory(engine)

    ownership = OwnershipStore(factory, max_owners=settings.store.max_owners)
    tags = TagStore(factory)
    schedules = ScheduleStore(factory)
    events = EventStore(factory)

    bus = BusClient(settings.bus, client_factory=client_factory)
    dedup = DedupCache(ttl_seconds=settings.store.dedup_ttl_seconds)
    relay = BusRelay(bus, tags, events, dedup=dedup)
    retention = RetentionJob(
        events,
        retention_days=settings.store.retention_days,
        interval_hours=settings.store.prune_interval_hours,
    )
    dispatcher = CommandDispatcher(bus, schedules=schedules, ownership=ownership)
    heartbeat = (
        Heartbeat(settings.heartbeat_path, settings.heartbeat_interval)
        if settings.heartbeat_path
        else None
    )
    return Backend(
        settings=settings,
        engine=engine,
        bus=bus,
        ownership=ownership,
        tags=tags,
        schedules=schedules,
        events=events,
        relay=relay,
        retention=retention,
        dispatcher=dispatcher,
        heartbeat=heartbeat,
    )


def run(backend: Backend, stop_evt: threading.Event) -> int:
    """Start ``backend`` and block until ``stop_evt`` is set."""
    try:
        backend.start()
    except BusConnectError as e:
        logger.error({"event": "bus_refused", "reason": e.reason, "error": str(e)})
        backend.stop()
        return 2

    counter = 0
    while not stop_evt.wait(5):
        counter += 1
        if counter % 12 == 0:
            logger.info(
                {
                    "event": "relay_alive",
                    "connected": backend.bus.is_connected(),
                    **backend.relay.stats.to_dict(),
                }
            )
    backend.stop()
    return 0


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="petfeeder-relay", description="Feeder event relay service")
    p.add_argument("--config", help="Path to a YAML config file")
    p.add_argument("--log-level", help="Override LOG_LEVEL")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    if args.config:
        os.environ["CONFIG_PATH"] = args.config
    cfg, source = load_config(force=bool(args.config))
    settings = get_settings(cfg)
    setup_logging(args.log_level or settings.log_level, settings.log_path)
    logger.info({"event": "relay_boot", "pid": os.getpid(), "config_source": str(source)})

    stop_evt = threading.Event()

    def _on_signal(signum, frame):
        logger.info({"event": "signal_received", "signal": signum})
        stop_evt.set()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    try:
        backend = build_backend(settings)
        return run(backend, stop_evt)
    except PersistenceError as e:
        logger.error({"event": "store_unavailable", "error": str(e)})
        return 1
    except Exception as e:
        logger.exception({"event": "relay_fatal", "error": str(e)})
        return 1
    finally:
        with contextlib.suppress(Exception):
            flush_all_log_handlers()


if __name__ == "__main__":
    sys.exit(main())
