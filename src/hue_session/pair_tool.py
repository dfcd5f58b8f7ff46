from __future__ import annotations

import argparse
import asyncio
import os
import sys
import time

from hue_session.discovery import InvalidAddressError, manual_candidate
from hue_session.hue_client import HueHTTPError, HueTransportError, LinkButtonNotPressed
from hue_session.models import BridgeCandidate, BridgeConnection
from hue_session.pairing import BridgePairing, BridgeRejected
from hue_session.store import Store
from hue_session.validator import ConnectionValidator


async def pair_until_deadline(
    pairing: BridgePairing,
    candidate: BridgeCandidate,
    *,
    timeout_seconds: float,
    interval_seconds: float,
    on_waiting=None,
) -> BridgeConnection | None:
    """Repeat the identical registration request while the bridge reports the link button unpressed."""
    deadline = time.monotonic() + timeout_seconds
    attempt = 0
    while time.monotonic() < deadline:
        attempt += 1
        try:
            return await pairing.register(candidate)
        except LinkButtonNotPressed:
            if on_waiting is not None:
                on_waiting(attempt, max(0, int(deadline - time.monotonic())))
            await asyncio.sleep(max(0.1, interval_seconds))
    return None


async def _run(args: argparse.Namespace, candidate: BridgeCandidate) -> int:
    pairing = BridgePairing(app_id=args.app_id)

    def _waiting(attempt: int, remaining: int) -> None:
        print(f"[{attempt}] Button not pressed yet. Retrying… ({remaining}s left)")

    print("Pairing requires the physical Hue Bridge button.")
    print("Press the bridge button now. Pairing attempts will run until success or timeout.")
    try:
        connection = await pair_until_deadline(
            pairing,
            candidate,
            timeout_seconds=args.timeout_seconds,
            interval_seconds=args.interval_ms / 1000.0,
            on_waiting=_waiting,
        )
    except (BridgeRejected, HueHTTPError, HueTransportError) as exc:
        print(f"Pairing failed: {exc}", file=sys.stderr)
        return 1
    if connection is None:
        print("Timed out waiting for the link button.", file=sys.stderr)
        return 1

    store = Store(args.db_path)
    await store.connect()
    try:
        await store.save_connection(connection)
    finally:
        await store.close()

    key = connection.application_key
    print(f"Paired successfully with {connection.bridge_id}. Connection stored in {args.db_path}.")
    if args.print_key:
        print(f"Application key: {key}")
    else:
        print(f"Application key (masked): {key[:6]}…{key[-4:]}")

    if args.verify:
        result = await ConnectionValidator().validate(connection)
        print(f"Verify: {'ok' if result.ok else f'{result.reason} ({result.message})'}")
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="hue-session-pair")
    parser.add_argument("--bridge-host", default=os.getenv("HUE_BRIDGE_HOST"), help="Bridge IPv4 address")
    parser.add_argument("--bridge-id", help="Bridge id from discovery (defaults to a manual id)")
    parser.add_argument("--app-id", default=os.getenv("HUE_APP_ID", "hue_session"))
    parser.add_argument("--db-path", default=os.getenv("DB_PATH", os.path.join(os.getcwd(), ".data", "hue-session.db")))
    parser.add_argument("--timeout-seconds", type=int, default=60)
    parser.add_argument("--interval-ms", type=int, default=1500)
    parser.add_argument("--print-key", action="store_true", help="Print the application key (sensitive).")
    parser.add_argument("--verify", action="store_true", help="Verify by calling the CLIP v2 resource root.")
    args = parser.parse_args(argv)

    if not args.bridge_host:
        print("Missing bridge address. Provide --bridge-host (or set HUE_BRIDGE_HOST).", file=sys.stderr)
        raise SystemExit(2)
    try:
        candidate = manual_candidate(args.bridge_host)
    except InvalidAddressError as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(2)
    if args.bridge_id:
        candidate = candidate.model_copy(update={"id": args.bridge_id.lower()})

    raise SystemExit(asyncio.run(_run(args, candidate)))


if __name__ == "__main__":
    main()
