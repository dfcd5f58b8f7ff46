from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from hue_session.cache import StateCache
from hue_session.config import AppConfig
from hue_session.demo import demo_inventory
from hue_session.discovery import manual_candidate
from hue_session.event_hub import EventHub
from hue_session.event_stream import EventStreamClient
from hue_session.hue_client import (
    BridgeApplicationError,
    BridgeClient,
    HueDecodeError,
    HueHTTPError,
    HueTransportError,
)
from hue_session.models import (
    BridgeConnection,
    Grouping,
    GroupingKind,
    GroupedLightState,
    Light,
    StreamState,
    StreamStatus,
    XYColor,
)
from hue_session.rate_limit import CommandThrottle
from hue_session.store import Store
from hue_session.validator import ConnectionValidator, ValidationResult


logger = logging.getLogger(__name__)

BRIDGE_ERRORS = (HueTransportError, HueHTTPError, HueDecodeError, BridgeApplicationError)

# Throttled command field -> the overlay field it optimistically sets.
_OVERLAY_FOR = {
    "brightness": "brightness",
    "brightness_delta": "brightness",
    "color_xy": "color_xy",
    "color_temp_mirek": "color_temp_mirek",
}


class NotConnectedError(RuntimeError):
    def __init__(self) -> None:
        super().__init__("no bridge connection configured")


def _clamp_brightness(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def _merge_pending(pending: dict[str, Any], **fields: Any) -> None:
    """
    Fold one command into the fields still waiting for the trailing send.

    An absolute brightness replaces any pending delta, and a delta on top of a
    pending absolute brightness is applied to it. Deltas are summed. xy and
    colour temperature replace each other.
    """
    if "brightness" in fields:
        pending.pop("brightness_delta", None)
    if "brightness_delta" in fields:
        delta = fields.pop("brightness_delta")
        if "brightness" in pending:
            pending["brightness"] = _clamp_brightness(pending["brightness"] + delta)
        else:
            total = pending.get("brightness_delta", 0.0) + delta
            if total:
                pending["brightness_delta"] = total
            else:
                pending.pop("brightness_delta", None)
    if "color_xy" in fields:
        pending.pop("color_temp_mirek", None)
    if "color_temp_mirek" in fields:
        pending.pop("color_xy", None)
    pending.update(fields)


class BridgeSession:
    """
    Owns the one active bridge connection and everything hanging off it:
    REST client, event stream, state cache and command throttle.

    Brightness and colour commands share one throttle slot per grouped light,
    so a grouped light gets at most one such PUT per window; the trailing PUT
    carries the merged latest value of every field queued meanwhile.

    In demo mode nothing reaches the network: refreshes are skipped and
    controls only move the optimistic overlay of the cached state.
    """

    def __init__(
        self,
        store: Store,
        *,
        config: AppConfig,
        transport: httpx.AsyncBaseTransport | None = None,
        hub: EventHub | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._transport = transport
        self.hub = hub or EventHub()
        self.cache = StateCache(self.hub)
        self.throttle = CommandThrottle(interval_seconds=config.control_throttle_seconds)
        self.validator = ConnectionValidator(transport=transport, timeout=config.rest_timeout_seconds)
        self.connection: BridgeConnection | None = None
        self.client: BridgeClient | None = None
        self.stream: EventStreamClient | None = None
        self.demo_mode = config.demo_mode
        self.last_refresh_at: datetime | None = None
        self._pending: dict[str, dict[str, Any]] = {}
        self._refreshing: set[GroupingKind] = set()
        self._last_refresh: dict[GroupingKind, float] = {}
        self._periodic: asyncio.Task[None] | None = None

    @property
    def is_connected(self) -> bool:
        return self.connection is not None

    @property
    def stream_status(self) -> StreamStatus:
        if self.stream is None:
            return StreamStatus(StreamState.IDLE)
        return self.stream.status

    def _require_client(self) -> BridgeClient:
        if self.client is None:
            raise NotConnectedError()
        return self.client

    async def _save(self) -> None:
        # demo edits never overwrite the persisted bridge state
        if not self.demo_mode:
            await self.cache.save(self._store)

    async def load(self) -> BridgeConnection | None:
        """Restore the persisted connection and cache; fall back to HUE_BRIDGE_HOST/HUE_APPLICATION_KEY."""
        self.demo_mode = self._config.demo_mode or await self._store.load_demo_mode()
        connection = await self._store.load_connection()
        if connection is None and self._config.bridge_host and self._config.application_key:
            candidate = manual_candidate(self._config.bridge_host)
            connection = BridgeConnection(
                bridge_id=candidate.id,
                address=candidate.address,
                application_key=self._config.application_key,
                paired_at=datetime.now(timezone.utc),
            )
            await self._store.save_connection(connection)
        if connection is not None:
            await self.cache.load(self._store)
            await self._attach(connection)
        if self.demo_mode:
            await self._seed_demo()
        return connection

    async def _detach(self) -> None:
        await self.throttle.close()
        self._pending.clear()
        self._last_refresh.clear()
        if self.stream is not None:
            await self.stream.stop()
            self.stream = None
        if self.client is not None:
            await self.client.close()
            self.client = None

    async def _attach(self, connection: BridgeConnection) -> None:
        await self._detach()
        self.connection = connection
        self.client = BridgeClient.for_connection(
            connection, transport=self._transport, timeout=self._config.rest_timeout_seconds
        )
        self.stream = EventStreamClient(self.client)
        self.stream.add_listener(self.cache.apply_events)
        logger.info("attached to bridge %s at %s", connection.bridge_id, connection.address)

    async def connect(self, connection: BridgeConnection) -> None:
        if self.connection is not None and self.connection.bridge_id != connection.bridge_id:
            self.cache.clear()
            await self.cache.save(self._store)
        await self._store.save_connection(connection)
        await self._attach(connection)

    async def disconnect(self) -> None:
        await self._detach()
        self.connection = None
        self.cache.clear()
        await self._store.clear_connection()
        await self.cache.save(self._store)
        logger.info("bridge connection cleared")

    # Demo mode

    async def _seed_demo(self) -> None:
        if self.cache.rooms() or self.cache.zones():
            return
        rooms, zones, grouped_lights = demo_inventory()
        await self.cache.replace_groupings(GroupingKind.ROOM, rooms)
        await self.cache.replace_groupings(GroupingKind.ZONE, zones)
        await self.cache.replace_grouped_lights(grouped_lights)

    async def enable_demo_mode(self) -> None:
        """Serve the cached state (or a built-in house when nothing is cached) without touching the bridge."""
        self.demo_mode = True
        await self._store.save_demo_mode(True)
        await self.throttle.close()
        self._pending.clear()
        if self.stream is not None:
            await self.stream.stop()
        await self._seed_demo()
        logger.info("demo mode enabled")

    async def disable_demo_mode(self) -> None:
        self.demo_mode = False
        await self._store.save_demo_mode(False)
        self.cache.clear()
        if self.connection is not None:
            await self.cache.load(self._store)
        logger.info("demo mode disabled")

    # Refresh

    async def _refresh_groupings(self, kind: GroupingKind, *, force: bool) -> bool:
        if self.demo_mode:
            return False
        client = self._require_client()
        if kind in self._refreshing:
            logger.debug("%s refresh already running, skipping", kind.value)
            return False
        last = self._last_refresh.get(kind)
        if not force and last is not None:
            age = time.monotonic() - last
            if age < self._config.refresh_debounce_seconds:
                logger.debug("%s refreshed %.0fs ago, skipping", kind.value, age)
                return False
        self._refreshing.add(kind)
        try:
            groupings = await client.fetch_groupings(kind)
            await self.cache.replace_groupings(kind, groupings)
            await self._save()
            self._last_refresh[kind] = time.monotonic()
        finally:
            self._refreshing.discard(kind)
        return True

    async def refresh_rooms(self, *, force: bool = False) -> bool:
        """Returns False when skipped: debounced, already running, or in demo mode."""
        return await self._refresh_groupings(GroupingKind.ROOM, force=force)

    async def refresh_zones(self, *, force: bool = False) -> bool:
        return await self._refresh_groupings(GroupingKind.ZONE, force=force)

    async def refresh_grouped_lights(self) -> None:
        if self.demo_mode:
            return
        states = await self._require_client().fetch_grouped_lights()
        await self.cache.replace_grouped_lights(states)
        await self._save()

    async def refresh_scenes(self) -> None:
        if self.demo_mode:
            return
        scenes = await self._require_client().fetch_scenes()
        await self.cache.replace_scenes(scenes)
        await self._save()

    async def refresh_all(self, *, force: bool = False) -> None:
        if self.demo_mode:
            return
        await asyncio.gather(
            self.refresh_rooms(force=force),
            self.refresh_zones(force=force),
            self.refresh_grouped_lights(),
            self.refresh_scenes(),
        )
        self.last_refresh_at = datetime.now(timezone.utc)

    async def refresh_grouping(self, kind: GroupingKind, grouping_id: str) -> Grouping | None:
        """Re-read one room or zone and its grouped light. A grouping the bridge no longer has is removed."""
        if self.demo_mode:
            return self.cache.grouping(grouping_id)
        client = self._require_client()
        try:
            grouping = await client.fetch_grouping(kind, grouping_id)
        except HueHTTPError as exc:
            if exc.status_code != 404:
                raise
            grouping = None
        if grouping is None:
            await self.cache.remove(kind.value, grouping_id)
        else:
            await self.cache.upsert_grouping(grouping)
            if grouping.grouped_light_id is not None:
                state = await client.fetch_grouped_light(grouping.grouped_light_id)
                if state is not None:
                    await self.cache.upsert_grouped_light(state)
        await self._save()
        return self.cache.grouping(grouping_id)

    async def refresh_room(self, room_id: str) -> Grouping | None:
        return await self.refresh_grouping(GroupingKind.ROOM, room_id)

    async def refresh_zone(self, zone_id: str) -> Grouping | None:
        return await self.refresh_grouping(GroupingKind.ZONE, zone_id)

    def start_periodic_refresh(self, interval_seconds: float | None = None) -> bool:
        """Refresh now and then every interval. Returns False when already running or disabled."""
        if self._periodic is not None and not self._periodic.done():
            return False
        interval = self._config.refresh_interval_seconds if interval_seconds is None else interval_seconds
        if interval <= 0:
            return False
        self._periodic = asyncio.create_task(self._refresh_periodically(interval))
        return True

    async def stop_periodic_refresh(self) -> None:
        task, self._periodic = self._periodic, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _refresh_periodically(self, interval: float) -> None:
        while True:
            if self.is_connected and not self.demo_mode:
                try:
                    await self.refresh_all()
                except BRIDGE_ERRORS as exc:
                    logger.warning("periodic refresh failed: %s", exc)
            await asyncio.sleep(interval)

    async def enrich(self, grouping_id: str) -> list[Light]:
        grouping = self.cache.grouping(grouping_id)
        if grouping is None:
            raise KeyError(grouping_id)
        if self.demo_mode:
            return self.cache.lights_for(grouping_id)
        lights = await self._require_client().fetch_grouping_lights(grouping)
        await self.cache.upsert_lights(lights)
        await self.cache.set_light_ids(grouping_id, [light.id for light in lights])
        await self._save()
        return lights

    # Lifecycle

    async def resume(self) -> None:
        """Foreground: reopen the event stream, then catch up on anything missed."""
        if self.demo_mode:
            return
        if self.stream is None:
            raise NotConnectedError()
        await self.stream.start()
        await self.refresh_all(force=True)

    async def suspend(self) -> None:
        if self.stream is not None:
            await self.stream.stop()
        await self._save()

    # Controls

    async def _throttled(self, client: BridgeClient, grouped_light_id: str, **fields: Any) -> None:
        _merge_pending(self._pending.setdefault(grouped_light_id, {}), **fields)

        async def send() -> None:
            body = self._pending.pop(grouped_light_id, None)
            if not body:
                return
            try:
                await client.update_grouped_light(grouped_light_id, **body)
            except Exception:
                self.cache.discard_optimistic(grouped_light_id, *{_OVERLAY_FOR[f] for f in body})
                raise

        await self.throttle.submit(grouped_light_id, send)

    async def set_power(self, grouped_light_id: str, on: bool) -> GroupedLightState:
        if self.demo_mode:
            return await self.cache.apply_optimistic(grouped_light_id, on=on)
        client = self._require_client()
        view = await self.cache.apply_optimistic(grouped_light_id, on=on)
        try:
            await client.set_power(grouped_light_id, on)
        except Exception:
            self.cache.discard_optimistic(grouped_light_id, "on")
            raise
        return view

    async def set_power_and_brightness(self, grouped_light_id: str, on: bool, brightness: float) -> GroupedLightState:
        """One unthrottled PUT with both fields; a brightness still waiting in the throttle is dropped."""
        level = _clamp_brightness(brightness)
        if self.demo_mode:
            return await self.cache.apply_optimistic(grouped_light_id, on=on, brightness=level)
        client = self._require_client()
        view = await self.cache.apply_optimistic(grouped_light_id, on=on, brightness=level)
        pending = self._pending.get(grouped_light_id)
        if pending:
            pending.pop("brightness", None)
            pending.pop("brightness_delta", None)
        try:
            await client.update_grouped_light(grouped_light_id, on=on, brightness=level)
        except Exception:
            self.cache.discard_optimistic(grouped_light_id, "on", "brightness")
            raise
        return view

    async def set_brightness(self, grouped_light_id: str, brightness: float) -> GroupedLightState:
        level = _clamp_brightness(brightness)
        if self.demo_mode:
            return await self.cache.apply_optimistic(grouped_light_id, brightness=level)
        client = self._require_client()
        view = await self.cache.apply_optimistic(grouped_light_id, brightness=level)
        await self._throttled(client, grouped_light_id, brightness=level)
        return view

    async def adjust_brightness(self, grouped_light_id: str, delta: float) -> GroupedLightState | None:
        client = None if self.demo_mode else self._require_client()
        current = self.cache.grouped_light(grouped_light_id)
        view = current
        if current is not None and current.brightness is not None:
            view = await self.cache.apply_optimistic(
                grouped_light_id, brightness=_clamp_brightness(current.brightness + delta)
            )
        if client is not None:
            await self._throttled(client, grouped_light_id, brightness_delta=delta)
        return view

    async def set_color_xy(self, grouped_light_id: str, xy: XYColor) -> GroupedLightState:
        if self.demo_mode:
            return await self.cache.apply_optimistic(grouped_light_id, color_xy=xy)
        client = self._require_client()
        view = await self.cache.apply_optimistic(grouped_light_id, color_xy=xy)
        await self._throttled(client, grouped_light_id, color_xy=xy)
        return view

    async def set_color_temperature(self, grouped_light_id: str, mirek: int) -> GroupedLightState:
        if self.demo_mode:
            return await self.cache.apply_optimistic(grouped_light_id, color_temp_mirek=mirek)
        client = self._require_client()
        view = await self.cache.apply_optimistic(grouped_light_id, color_temp_mirek=mirek)
        await self._throttled(client, grouped_light_id, color_temp_mirek=mirek)
        return view

    async def activate_scene(self, scene_id: str) -> None:
        if self.demo_mode:
            await self.cache.mark_scene_active(scene_id)
            return
        client = self._require_client()
        await client.activate_scene(scene_id)
        await self.cache.mark_scene_active(scene_id)
        if self.stream is None or not self.stream.is_connected:
            # No event stream to report the new light state.
            await self.refresh_grouped_lights()

    async def turn_off_all(self) -> int:
        client = None if self.demo_mode else self._require_client()
        ids = [state.id for state in self.cache.grouped_lights()]
        for rid in ids:
            await self.cache.apply_optimistic(rid, on=False)
        if client is None:
            return len(ids)
        results = await asyncio.gather(*(client.set_power(rid, False) for rid in ids), return_exceptions=True)
        failed = [(rid, r) for rid, r in zip(ids, results) if isinstance(r, BaseException)]
        for rid, _ in failed:
            self.cache.discard_optimistic(rid, "on")
        if failed:
            logger.warning("turning off %d of %d grouped lights failed", len(failed), len(ids))
            raise failed[0][1]
        return len(ids)

    async def validate(self) -> ValidationResult:
        if self.demo_mode:
            return ValidationResult(ok=True)
        if self.connection is None:
            raise NotConnectedError()
        return await self.validator.validate(self.connection)

    def describe(self) -> dict[str, Any]:
        status = self.stream_status
        return {
            "connected": self.is_connected,
            "bridgeId": self.connection.bridge_id if self.connection else None,
            "address": self.connection.address if self.connection else None,
            "stream": {"state": status.state.value, "detail": status.detail},
            "lastKnownGood": self.validator.last_known_good,
            "lastRefresh": self.last_refresh_at.isoformat() if self.last_refresh_at else None,
            "demoMode": self.demo_mode,
        }

    async def close(self) -> None:
        await self.stop_periodic_refresh()
        await self._detach()
        if self.connection is not None:
            await self._save()
