from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

from hue_session.discovery import BridgeDiscovery, InvalidAddressError, manual_candidate
from hue_session.models import BridgeCandidate
from hue_session.store import Store


def _print_bridges(bridges: list[BridgeCandidate], *, json_out: bool) -> None:
    if json_out:
        print(json.dumps([b.model_dump() for b in bridges], indent=2))
        return

    if not bridges:
        print("No Hue bridges discovered.")
        return

    for i, b in enumerate(bridges, start=1):
        label = b.name or "Hue Bridge"
        print(f"{i}) {b.address} - {label} (id {b.id})")


async def _run(args: argparse.Namespace) -> tuple[list[BridgeCandidate], str | None]:
    store: Store | None = None
    if not args.no_cache:
        store = Store(args.db_path)
        await store.connect()
    try:
        discovery = BridgeDiscovery(
            store,
            cache_seconds=args.cache_seconds,
            mdns_enabled=args.mdns,
            mdns_timeout=args.timeout_seconds,
        )
        bridges = await discovery.discover()
        return bridges, discovery.last_error
    finally:
        if store is not None:
            await store.close()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="hue-session-discover")
    parser.add_argument("--json", action="store_true")
    parser.add_argument("--mdns", action="store_true", help="Browse _hue._tcp before asking the cloud endpoint")
    parser.add_argument("--timeout-seconds", type=float, default=10.0, help="mDNS hard timeout")
    parser.add_argument("--manual", metavar="IP", help="Skip discovery and validate a typed bridge address")
    parser.add_argument("--db-path", default=os.getenv("DB_PATH", os.path.join(os.getcwd(), ".data", "hue-session.db")))
    parser.add_argument("--no-cache", action="store_true", help="Do not read or write the discovery cache")
    parser.add_argument("--cache-seconds", type=float, default=float(os.getenv("DISCOVERY_CACHE_SECONDS", "900")))
    args = parser.parse_args(argv)

    if args.manual:
        try:
            bridges = [manual_candidate(args.manual)]
        except InvalidAddressError as exc:
            print(str(exc), file=sys.stderr)
            raise SystemExit(2)
        _print_bridges(bridges, json_out=args.json)
        return

    bridges, error = asyncio.run(_run(args))
    _print_bridges(bridges, json_out=args.json)
    if error:
        print(f"Discovery failed: {error}", file=sys.stderr)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
