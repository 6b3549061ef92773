from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULTS: dict[str, Any] = {
    "MQTT_HOST": "localhost",
    "MQTT_PORT": 1883,
    "MQTT_USERNAME": None,
    "MQTT_PASSWORD": None,
    "MQTT_CLIENT_ID": "petfeeder-core",
    "MQTT_NAMESPACE": "petfeeder",
    "MQTT_QOS": 0,
    "MQTT_KEEPALIVE": 60,
    "MQTT_RECONNECT_SECONDS": 5,
    "MQTT_CONNECT_TIMEOUT": 30,
    "MQTT_TLS": False,
    "MQTT_TRANSPORT": "tcp",
    "MQTT_WS_PATH": "/mqtt",
    "PROV_NAME_FILTER": "PROV_PETFEEDER_",
    "PROV_IDENTITY_PREFIX": "PROV_",
    "PROV_TIMEOUT": 30,
    "PROV_SCAN_TIMEOUT": 10,
    "BLE_ADAPTER": "hci0",
    "BLE_PAIR": False,
    # ESP-IDF provisioning service and its session/config endpoints
    "PROV_SERVICE_UUID": "021a9004-0382-4aea-bff4-6b3f1c5adfb4",
    "PROV_SESSION_CHAR_UUID": "021aff51-0382-4aea-bff4-6b3f1c5adfb4",
    "PROV_CONFIG_CHAR_UUID": "021aff52-0382-4aea-bff4-6b3f1c5adfb4",
    "DB_URL": "sqlite:///petfeeder.db",
    "EVENT_RETENTION_DAYS": 15,
    "PRUNE_INTERVAL_HOURS": 24,
    "MAX_OWNERS": 5,
    "DEDUP_TTL_SECONDS": 300,
    "LOG_LEVEL": "INFO",
    "LOG_PATH": None,
    "HEARTBEAT_PATH": None,
    "HEARTBEAT_INTERVAL_SEC": 5,
}

_TRUTHY = {"1", "true", "yes", "on"}

# Public module-level handles; populated by init_config()
CONFIG: dict[str, Any] = {}
CONFIG_SOURCE: Path | None = None


def _candidate_paths() -> list[Path]:
    """Ordered YAML config locations (explicit env first, then service, then local)."""
    env_path = os.environ.get("CONFIG_PATH")
    paths: list[Path] = []
    if env_path:
        paths.append(Path(env_path))
    paths.extend(
        [
            Path("/data/config.yaml"),
            Path("/config/config.yaml"),
            Path.cwd() / "config.yaml",
        ]
    )
    return paths


def _normalise(data: dict[str, Any]) -> dict[str, Any]:
    return {str(k).upper(): v for k, v in data.items()}


def _load_options_json(
    path: Path | None = None,
) -> tuple[dict[str, Any], Path | None]:
    """Load JSON options. Returns (data, source_path)."""
    path = path or Path(os.environ.get("OPTIONS_PATH", "/data/options.json"))
    if not path.exists():
        logger.debug("[CONFIG] options.json not found: %s", path)
        return {}, None
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        logger.warning("[CONFIG] Failed to parse options.json %s: %s", path, exc)
        return {}, None
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("[CONFIG] Failed to read options.json %s: %s", path, exc)
        return {}, None
    if not isinstance(data, dict):
        logger.warning("[CONFIG] options.json root not a mapping: %s", path)
        return {}, None
    logger.info("[CONFIG] Loaded options from: %s", path)
    return _normalise(data), path


def _load_yaml_cfg(
    paths: list[Path] | None = None,
) -> tuple[dict[str, Any], Path | None]:
    """Load YAML config from the first valid candidate path."""
    for pth in paths or _candidate_paths():
        if not pth.exists():
            logger.debug("[CONFIG] Path not found: %s", pth)
            continue
        try:
            with pth.open("r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            logger.warning("[CONFIG] Failed to parse YAML %s: %s", pth, exc)
            continue
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("[CONFIG] Failed to read YAML %s: %s", pth, exc)
            continue
        if not isinstance(data, dict):
            logger.warning("[CONFIG] YAML root not a mapping: %s", pth)
            continue
        logger.info("[CONFIG] Loaded YAML config from: %s", pth)
        return _normalise(data), pth
    return {}, None


def _env_overrides() -> dict[str, Any]:
    return {key: os.environ[key] for key in DEFAULTS if key in os.environ}


def init_config() -> tuple[dict[str, Any], Path | None]:
    """Populate module-level CONFIG & CONFIG_SOURCE and return them.

    Precedence, lowest first: DEFAULTS, YAML, options.json, environment.
    CONFIG keeps its identity so modules holding a reference see updates.
    """
    global CONFIG_SOURCE
    yml, yml_src = _load_yaml_cfg()
    opts, opts_src = _load_options_json()

    merged: dict[str, Any] = dict(DEFAULTS)
    merged.update(yml)
    merged.update(opts)
    merged.update(_env_overrides())

    CONFIG.clear()
    CONFIG.update(merged)
    CONFIG_SOURCE = opts_src or yml_src
    logger.debug("[CONFIG] Active source: %s", CONFIG_SOURCE)
    return CONFIG, CONFIG_SOURCE


def load_config(force: bool = False) -> tuple[dict[str, Any], Path | None]:
    """Return the effective configuration, loading it on first use."""
    if CONFIG and not force:
        return CONFIG, CONFIG_SOURCE
    return init_config()


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


def _as_int(cfg: dict[str, Any], key: str) -> int:
    value = cfg.get(key, DEFAULTS[key])
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(
            "[CONFIG] Invalid integer for %s=%r; using default %s",
            key,
            value,
            DEFAULTS[key],
        )
        return int(DEFAULTS[key])


def _as_float(cfg: dict[str, Any], key: str) -> float:
    value = cfg.get(key, DEFAULTS[key])
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(
            "[CONFIG] Invalid number for %s=%r; using default %s",
            key,
            value,
            DEFAULTS[key],
        )
        return float(DEFAULTS[key])


def _as_namespace(cfg: dict[str, Any]) -> str:
    value = str(cfg.get("MQTT_NAMESPACE") or DEFAULTS["MQTT_NAMESPACE"]).strip("/")
    segments = value.split("/")
    if not all(segments) or any(w in value for w in ("+", "#")):
        logger.warning(
            "[CONFIG] Invalid MQTT_NAMESPACE=%r; using default %s",
            value,
            DEFAULTS["MQTT_NAMESPACE"],
        )
        return DEFAULTS["MQTT_NAMESPACE"]
    return value


@dataclass(frozen=True)
class BusSettings:
    host: str = "localhost"
    port: int = 1883
    username: str | None = None
    password: str | None = None
    client_id: str = "petfeeder-core"
    namespace: str = "petfeeder"
    qos: int = 0
    keepalive: int = 60
    reconnect_interval: int = 5
    connect_timeout: float = 30.0
    tls: bool = False
    transport: str = "tcp"
    ws_path: str = "/mqtt"


@dataclass(frozen=True)
class ProvisioningSettings:
    name_filter: str = "PROV_PETFEEDER_"
    identity_prefix: str = "PROV_"
    timeout: float = 30.0
    scan_timeout: float = 10.0
    adapter: str = "hci0"
    pair: bool = False
    service_uuid: str = DEFAULTS["PROV_SERVICE_UUID"]
    session_char_uuid: str = DEFAULTS["PROV_SESSION_CHAR_UUID"]
    config_char_uuid: str = DEFAULTS["PROV_CONFIG_CHAR_UUID"]


@dataclass(frozen=True)
class StoreSettings:
    db_url: str = "sqlite:///petfeeder.db"
    retention_days: int = 15
    prune_interval_hours: float = 24.0
    max_owners: int = 5
    dedup_ttl_seconds: int = 300


@dataclass(frozen=True)
class Settings:
    bus: BusSettings
    provisioning: ProvisioningSettings
    store: StoreSettings
    log_level: str = "INFO"
    log_path: str | None = None
    heartbeat_path: str | None = None
    heartbeat_interval: int = 5


def get_settings(cfg: dict[str, Any] | None = None) -> Settings:
    """Build typed settings from a raw config mapping (loaded if omitted)."""
    if cfg is None:
        cfg, _ = load_config()
    else:
        cfg = {**DEFAULTS, **_normalise(cfg)}

    transport = str(cfg.get("MQTT_TRANSPORT") or "tcp").lower()
    if transport not in ("tcp", "websockets"):
        logger.warning("[CONFIG] Unknown MQTT_TRANSPORT=%r; using tcp", transport)
        transport = "tcp"

    bus = BusSettings(
        host=str(cfg.get("MQTT_HOST") or DEFAULTS["MQTT_HOST"]),
        port=_as_int(cfg, "MQTT_PORT"),
        username=cfg.get("MQTT_USERNAME") or None,
        password=cfg.get("MQTT_PASSWORD") or None,
        client_id=str(cfg.get("MQTT_CLIENT_ID") or DEFAULTS["MQTT_CLIENT_ID"]),
        namespace=_as_namespace(cfg),
        qos=max(0, min(2, _as_int(cfg, "MQTT_QOS"))),
        keepalive=_as_int(cfg, "MQTT_KEEPALIVE"),
        reconnect_interval=max(1, _as_int(cfg, "MQTT_RECONNECT_SECONDS")),
        connect_timeout=_as_float(cfg, "MQTT_CONNECT_TIMEOUT"),
        tls=_as_bool(cfg.get("MQTT_TLS", False)),
        transport=transport,
        ws_path=str(cfg.get("MQTT_WS_PATH") or DEFAULTS["MQTT_WS_PATH"]),
    )
    provisioning = ProvisioningSettings(
        name_filter=str(cfg.get("PROV_NAME_FILTER") or DEFAULTS["PROV_NAME_FILTER"]),
        identity_prefix=str(
            cfg.get("PROV_IDENTITY_PREFIX") or DEFAULTS["PROV_IDENTITY_PREFIX"]
        ),
        timeout=_as_float(cfg, "PROV_TIMEOUT"),
        scan_timeout=_as_float(cfg, "PROV_SCAN_TIMEOUT"),
        adapter=str(cfg.get("BLE_ADAPTER") or DEFAULTS["BLE_ADAPTER"]),
        pair=_as_bool(cfg.get("BLE_PAIR", False)),
        service_uuid=str(cfg.get("PROV_SERVICE_UUID") or DEFAULTS["PROV_SERVICE_UUID"]),
        session_char_uuid=str(
            cfg.get("PROV_SESSION_CHAR_UUID") or DEFAULTS["PROV_SESSION_CHAR_UUID"]
        ),
        config_char_uuid=str(
            cfg.get("PROV_CONFIG_CHAR_UUID") or DEFAULTS["PROV_CONFIG_CHAR_UUID"]
        ),
    )
    store = StoreSettings(
        db_url=str(cfg.get("DB_URL") or DEFAULTS["DB_URL"]),
        retention_days=_as_int(cfg, "EVENT_RETENTION_DAYS"),
        prune_interval_hours=_as_float(cfg, "PRUNE_INTERVAL_HOURS"),
        max_owners=max(1, _as_int(cfg, "MAX_OWNERS")),
        dedup_ttl_seconds=_as_int(cfg, "DEDUP_TTL_SECONDS"),
    )
    return Settings(
        bus=bus,
        provisioning=provisioning,
        store=store,
        log_level=str(cfg.get("LOG_LEVEL") or "INFO").upper(),
        log_path=cfg.get("LOG_PATH") or None,
        heartbeat_path=cfg.get("HEARTBEAT_PATH") or None,
        heartbeat_interval=_as_int(cfg, "HEARTBEAT_INTERVAL_SEC"),
    )


__all__ = [
    "CONFIG",
    "CONFIG_SOURCE",
    "DEFAULTS",
    "BusSettings",
    "ProvisioningSettings",
    "Settings",
    "StoreSettings",
    "get_settings",
    "init_config",
    "load_config",
]
