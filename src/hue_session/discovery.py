from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Callable

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError
from zeroconf import IPVersion, ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from hue_session.models import BridgeCandidate
from hue_session.store import DISCOVERY_CACHE_KEY, Store
from hue_session.transport import bridge_base_url, make_client


logger = logging.getLogger(__name__)

CLOUD_DISCOVERY_URL = "https://discovery.meethue.com"
MDNS_SERVICE_TYPE = "_hue._tcp.local."

_DOTTED_QUAD = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")


class DiscoveryError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InvalidAddressError(ValueError):
    pass


class CloudBridge(BaseModel):
    id: str
    internalipaddress: str
    port: int = 443

    def to_candidate(self) -> BridgeCandidate:
        return BridgeCandidate(id=self.id.lower(), address=self.internalipaddress, port=self.port)


_CLOUD_LIST = TypeAdapter(list[CloudBridge])


def manual_candidate(address: str, name: str | None = None) -> BridgeCandidate:
    """
    Build a candidate from a user-typed IPv4 address.

    The id is derived from the address alone, so entering the same address
    twice yields equal candidates.
    """
    address = (address or "").strip()
    if not _DOTTED_QUAD.match(address):
        raise InvalidAddressError(f"not an IPv4 address: {address!r}")
    if any(int(octet) > 255 for octet in address.split(".")):
        raise InvalidAddressError(f"octet out of range: {address!r}")
    return BridgeCandidate(
        id="manual_" + address.replace(".", "_"),
        address=address,
        port=443,
        name=name,
    )


class BridgeDiscovery:
    def __init__(
        self,
        store: Store | None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
        cache_seconds: float = 900,
        timeout: float = 10.0,
        mdns_enabled: bool = False,
        mdns_timeout: float = 10.0,
        mdns_debounce: float = 1.0,
    ) -> None:
        self._store = store
        self._transport = transport
        self._clock = clock
        self._cache_seconds = cache_seconds
        self._timeout = timeout
        self._mdns_enabled = mdns_enabled
        self._mdns_timeout = mdns_timeout
        self._mdns_debounce = mdns_debounce

        self._cancel_requested = False
        self._cloud_task: asyncio.Future[list[BridgeCandidate]] | None = None
        self._wake: asyncio.Event | None = None
        self.last_error: str | None = None

    async def discover(self) -> list[BridgeCandidate]:
        """Never raises: failures are logged, kept in `last_error`, and yield an empty list."""
        self.last_error = None
        if self._mdns_enabled:
            try:
                found = await self.browse_mdns()
            except Exception as exc:
                logger.warning("mDNS browse failed, falling back to cloud discovery: %s", exc)
                found = []
            if found:
                return found
        try:
            return await self.fetch_cloud()
        except DiscoveryError as exc:
            logger.warning("cloud discovery failed: %s", exc)
            self.last_error = str(exc)
            return []

    def cancel(self) -> None:
        self._cancel_requested = True
        if self._cloud_task is not None and not self._cloud_task.done():
            self._cloud_task.cancel()
        if self._wake is not None:
            self._wake.set()

    # Cloud endpoint

    async def _cached(self) -> list[BridgeCandidate] | None:
        if self._store is None:
            return None
        row = await self._store.get_blob(DISCOVERY_CACHE_KEY)
        if row is None:
            return None
        body, stored_at = row
        if self._clock() - stored_at >= self._cache_seconds:
            return None
        try:
            bridges = _CLOUD_LIST.validate_json(body)
        except (ValueError, ValidationError):
            logger.warning("discarding corrupt discovery cache")
            await self._store.delete_blob(DISCOVERY_CACHE_KEY)
            return None
        return [b.to_candidate() for b in bridges]

    async def _fetch_remote(self) -> list[BridgeCandidate]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                resp = await client.get(CLOUD_DISCOVERY_URL)
            except httpx.TransportError as exc:
                raise DiscoveryError(f"discovery endpoint unreachable: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise DiscoveryError(f"discovery endpoint returned HTTP {resp.status_code}", status_code=resp.status_code)
        try:
            bridges = _CLOUD_LIST.validate_json(resp.content)
        except (ValueError, ValidationError) as exc:
            logger.warning("undecodable discovery response: %s", resp.text)
            raise DiscoveryError("discovery endpoint returned an unexpected body") from exc

        if self._store is not None:
            await self._store.set_blob(DISCOVERY_CACHE_KEY, resp.text, updated_at=self._clock())
        return [b.to_candidate() for b in bridges]

    async def fetch_cloud(self) -> list[BridgeCandidate]:
        cached = await self._cached()
        if cached is not None:
            logger.debug("using cached discovery result (%d bridges)", len(cached))
            return cached

        self._cancel_requested = False
        task = asyncio.ensure_future(self._fetch_remote())
        self._cloud_task = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancel_requested:
                logger.info("cloud discovery cancelled")
                return []
            raise
        finally:
            self._cloud_task = None

    # Local network

    async def probe_bridge_id(self, address: str, port: int = 443) -> str | None:
        """Ask the bridge for its id; /api/config answers without an application key."""
        client = make_client(bridge_base_url(address, port), timeout=3.0, transport=self._transport)
        try:
            resp = await client.get("/api/config")
            if resp.status_code != 200:
                return None
            body: Any = resp.json()
        except (httpx.TransportError, ValueError) as exc:
            logger.debug("bridge id lookup failed for %s: %s", address, exc)
            return None
        finally:
            await client.aclose()
        bridge_id = body.get("bridgeid") if isinstance(body, dict) else None
        return str(bridge_id).lower() if bridge_id else None

    async def _resolve(
        self,
        zc: Zeroconf,
        service_type: str,
        name: str,
        found: dict[str, BridgeCandidate],
        mark_found: Callable[[], None],
    ) -> None:
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(zc, 3000):
            logger.debug("mDNS service %s did not resolve", name)
            return
        addresses = info.parsed_addresses(IPVersion.V4Only)
        if not addresses:
            return
        address = addresses[0]

        raw_id = (info.properties or {}).get(b"bridgeid")
        bridge_id = raw_id.decode("utf-8", "ignore").lower() if raw_id else None
        if not bridge_id:
            bridge_id = await self.probe_bridge_id(address)
        if not bridge_id:
            logger.info("skipping mDNS service %s at %s: bridge id unknown", name, address)
            return
        if bridge_id in found:
            return

        label = name.split(".")[0] if name else None
        found[bridge_id] = BridgeCandidate(id=bridge_id, address=address, port=443, name=label)
        logger.info("mDNS found bridge %s at %s", bridge_id, address)
        mark_found()

    async def browse_mdns(self) -> list[BridgeCandidate]:
        """
        Browse `_hue._tcp` until no new bridge has appeared for the debounce
        interval, or the hard timeout passes, or `cancel()` is called.
        """
        loop = asyncio.get_running_loop()
        self._cancel_requested = False
        self._wake = asyncio.Event()
        found: dict[str, BridgeCandidate] = {}
        pending: set[asyncio.Task[None]] = set()
        last_found_at: list[float] = []

        def mark_found() -> None:
            last_found_at[:] = [loop.time()]
            if self._wake is not None:
                self._wake.set()

        aiozc = AsyncZeroconf(ip_version=IPVersion.V4Only)

        def on_service_state_change(
            zeroconf: Zeroconf,
            service_type: str,
            name: str,
            state_change: ServiceStateChange,
        ) -> None:
            if state_change is not ServiceStateChange.Added:
                return

            def _spawn() -> None:
                task = loop.create_task(self._resolve(zeroconf, service_type, name, found, mark_found))
                pending.add(task)
                task.add_done_callback(pending.discard)

            loop.call_soon_threadsafe(_spawn)

        browser = AsyncServiceBrowser(aiozc.zeroconf, MDNS_SERVICE_TYPE, handlers=[on_service_state_change])
        deadline = loop.time() + self._mdns_timeout
        try:
            while not self._cancel_requested:
                now = loop.time()
                remaining = deadline - now
                if remaining <= 0:
                    break
                if last_found_at:
                    quiet_left = last_found_at[0] + self._mdns_debounce - now
                    if quiet_left <= 0:
                        break
                    remaining = min(remaining, quiet_left)
                self._wake.clear()
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
        finally:
            for task in list(pending):
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            await browser.async_cancel()
            await aiozc.async_close()
            self._wake = None

        return list(found.values())
