from __future__ import annotations

import json
import logging
import os
import pathlib
import re
import sys
from typing import Any

# Expanded redaction pattern
REDACT = re.compile(
    r"(?i)[\"']?\b(pass(word)?|token|apikey|api_key|secret|bearer)\b[\"']?\s*[:=]\s*[\"']?([^\"',\s}]+)[\"']?"
)

SECRET_KEYS = frozenset({"password", "mqtt_password", "token", "secret", "pop"})


def redact(s: str) -> str:
    return REDACT.sub(lambda m: f"{m.group(1)}=***REDACTED***", s)


def scrub(payload: dict[str, Any]) -> dict[str, Any]:
    """Drop secret-bearing keys from a payload before it is logged."""
    return {k: v for k, v in payload.items() if str(k).lower() not in SECRET_KEYS}


class JsonRedactingHandler(logging.StreamHandler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = record.msg
            if isinstance(msg, dict):
                line = json.dumps(scrub(msg), default=str)
            else:
                line = record.getMessage()
            if record.exc_info:
                line = f"{line}\n{self.formatException(record.exc_info)}"
            line = redact(line)
            stream = self.stream if hasattr(self, "stream") else sys.stdout
            stream.write(line + "\n")
            self.flush()
        except Exception:
            self.handleError(record)

    def formatException(self, exc_info) -> str:
        return logging.Formatter().formatException(exc_info)


LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Module qualified names so caplog filters can target a single subsystem.
logger = logging.getLogger(__name__)
bus_logger = logging.getLogger(f"{__name__}.bus")
ble_logger = logging.getLogger(f"{__name__}.ble")
relay_logger = logging.getLogger(f"{__name__}.relay")
store_logger = logging.getLogger(f"{__name__}.store")

_ALL_LOGGERS = (logger, bus_logger, ble_logger, relay_logger, store_logger)


def get_log_level(override: str | None = None) -> int:
    """Resolve a numeric log level.

    Checks, in order: the explicit override, LOG_LEVEL, PETFEEDER_LOG_LEVEL.
    Invalid or missing values fall back to logging.INFO.
    """
    lvl = override or os.environ.get("LOG_LEVEL") or os.environ.get(
        "PETFEEDER_LOG_LEVEL"
    )
    if not lvl:
        return logging.INFO
    return LOG_LEVEL_MAP.get(str(lvl).upper(), logging.INFO)


def _writable(path: str) -> bool:
    try:
        p = pathlib.Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with open(p, "a"):
            pass
        return True
    except OSError:
        return False


def init_file_handler(path: str) -> logging.Handler | None:
    """Return a redacting file handler for ``path``, or None if unwritable."""
    if not _writable(path):
        logger.warning({"event": "log_path_fallback", "target": "stderr", "path": path})
        return None
    handler = JsonRedactingHandler(open(path, "a", encoding="utf-8"))  # noqa: SIM115
    handler.set_name("petfeeder_file")
    return handler


def setup_logging(level: str | int | None = None, log_path: str | None = None) -> int:
    """(Re)initialise the handler and level on every subsystem logger.

    Only the service logger carries handlers, and nothing propagates past
    it to the root logger; subsystem loggers propagate to it. Handlers are
    deduplicated so repeated calls (service restarts, tests) do not
    multiply output.
    """
    numeric_level = level if isinstance(level, int) else get_log_level(level)
    for log in _ALL_LOGGERS:
        log.setLevel(numeric_level)
    logger.handlers = [
        h for h in logger.handlers if not isinstance(h, JsonRedactingHandler)
    ]
    logger.addHandler(_stream_handler)
    logger.propagate = False
    if log_path:
        file_handler = init_file_handler(log_path)
        if file_handler is not None:
            logger.addHandler(file_handler)
    return numeric_level


def flush_all_log_handlers() -> None:
    for h in logger.handlers:
        stream = getattr(h, "stream", None)
        if stream is not None and getattr(stream, "closed", False) is True:
            continue
        try:
            h.flush()
        except (OSError, ValueError):
            continue


_stream_handler = JsonRedactingHandler(sys.stdout)
for _log in _ALL_LOGGERS:
    _log.setLevel(get_log_level())
logger.handlers.clear()  # Deduplicate handlers on re-import
logger.addHandler(_stream_handler)
logger.propagate = False


__all__ = [
    "LOG_LEVEL_MAP",
    "JsonRedactingHandler",
    "ble_logger",
    "bus_logger",
    "flush_all_log_handlers",
    "get_log_level",
    "init_file_handler",
    "logger",
    "redact",
    "relay_logger",
    "scrub",
    "setup_logging",
    "store_logger",
]
