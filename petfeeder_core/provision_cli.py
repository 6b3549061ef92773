"""
petfeeder-provision: hand WiFi credentials to a feeder in pairing mode.

    petfeeder-provision scan [--json]
    petfeeder-provision provision --name PROV_PETFEEDER_A1B2C3 --ssid HomeNet --password ... [--account 7]

``--account`` registers the resulting identity and links it to the account
in the configured store.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Callable

from .ble_transport import BleakProvisioningTransport
from .config import ProvisioningSettings, Settings, get_settings
from .db import build_engine, init_database, make_session_factory
from .errors import PetFeederError
from .logging_setup import logger, setup_logging
from .ownership import OwnershipStore
from .ports import ProvisioningTransport
from .provisioning import Candidate, ProvisioningChannel

TransportFactory = Callable[[ProvisioningSettings], ProvisioningTransport]


def _channel(settings: Settings, transport_factory: TransportFactory) -> ProvisioningChannel:
    p = settings.provisioning
    return ProvisioningChannel(
        transport_factory(p),
        name_filter=p.name_filter,
        identity_prefix=p.identity_prefix,
        timeout=p.timeout,
        scan_timeout=p.scan_timeout,
    )


async def scan_candidates(channel: ProvisioningChannel, timeout: float | None = None) -> list[Candidate]:
    found: list[Candidate] = []
    async for candidate in channel.scan(timeout=timeout):
        found.append(candidate)
    return found


async def provision_by_name(
    channel: ProvisioningChannel, name: str, ssid: str, password: str, timeout: float | None = None
) -> str:
    """Scan for ``name``, connect, send credentials, always disconnect."""
    target: Candidate | None = None
    scan = channel.scan(timeout=timeout)
    try:
        async for candidate in scan:
            if candidate.name == name:
                target = candidate
                break
    finally:
        await scan.aclose()
    if target is None:
        raise PetFeederError(f"No feeder named {name} found nearby")

    session = await channel.connect(target)
    try:
        return await channel.provision(session, ssid, password)
    finally:
        await channel.disconnect(session)


def _link(settings: Settings, account_id: int, identity: str) -> None:
    engine = build_engine(settings.store.db_url)
    try:
        init_database(engine)
        store = OwnershipStore(make_session_factory(engine), max_owners=settings.store.max_owners)
        store.register_and_link(account_id, identity)
    finally:
        engine.dispose()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="petfeeder-provision", description="Provision a feeder over BLE")
    p.add_argument("--log-level", help="Override LOG_LEVEL")
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("scan", help="List feeders in pairing mode")
    s.add_argument("--timeout", type=float, help="Scan window in seconds")
    s.add_argument("--json", action="store_true", help="Print candidates as JSON")

    pr = sub.add_parser("provision", help="Send WiFi credentials to one feeder")
    pr.add_argument("--name", required=True, help="Advertised pairing name")
    pr.add_argument("--ssid", required=True)
    pr.add_argument("--password", default="")
    pr.add_argument("--account", type=int, help="Link the new identity to this account id")
    pr.add_argument("--timeout", type=float, help="Scan window in seconds")
    return p


def main(
    argv: list[str] | None = None,
    *,
    settings: Settings | None = None,
    transport_factory: TransportFactory = BleakProvisioningTransport,
) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or get_settings()
    setup_logging(args.log_level or settings.log_level, settings.log_path)
    channel = _channel(settings, transport_factory)

    try:
        if args.command == "scan":
            found = asyncio.run(scan_candidates(channel, args.timeout))
            if args.json:
                print(json.dumps([{"name": c.name, "rssi": c.rssi} for c in found]))
            else:
                for c in found:
                    print(f"{c.name}\t{c.rssi if c.rssi is not None else '-'}")
                if not found:
                    print("No feeders in pairing mode found.", file=sys.stderr)
            return 0

        identity = asyncio.run(
            provision_by_name(channel, args.name, args.ssid, args.password, args.timeout)
        )
        print(identity)
        if args.account is not None:
            _link(settings, args.account, identity)
            logger.info({"event": "provision_linked", "identity": identity, "account_id": args.account})
        return 0
    except PetFeederError as e:
        print(f"error: {e}", file=sys.stderr)
        logger.error({"event": "provision_cli_failed", "command": args.command, "error": str(e)})
        return 1


if __name__ == "__main__":
    sys.exit(main())
