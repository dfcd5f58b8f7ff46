from __future__ import annotations

import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated, Callable

import httpx
from fastapi import FastAPI, Query, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse

from hue_session import color
from hue_session.config import AppConfig
from hue_session.discovery import BridgeDiscovery, InvalidAddressError, manual_candidate
from hue_session.hue_client import (
    BridgeApplicationError,
    HueDecodeError,
    HueHTTPError,
    HueTransportError,
    LinkButtonNotPressed,
)
from hue_session.models import BridgeCandidate, GroupingKind, XYColor
from hue_session.pairing import BridgePairing, BridgeRejected
from hue_session.schemas import (
    BridgeCandidateBody,
    DiscoverResponse,
    GroupedLightCommand,
    GroupingDetail,
    HealthResponse,
    ManualBridgeRequest,
    PairRequest,
    PairResponse,
    ReadinessResponse,
    ValidationResponse,
)
from hue_session.session import BRIDGE_ERRORS, BridgeSession, NotConnectedError
from hue_session.store import Store


@dataclass
class AppState:
    config: AppConfig
    store: Store
    session: BridgeSession
    discovery: BridgeDiscovery
    pairing: BridgePairing
    tasks: list[asyncio.Task]


def _default_db_path() -> str:
    env = os.getenv("DB_PATH")
    if env:
        return env

    preferred_dir = "/data"
    try:
        if os.path.isdir(preferred_dir) and os.access(preferred_dir, os.W_OK):
            return os.path.join(preferred_dir, "hue-session.db")
    except OSError:
        pass

    return os.path.join(os.getcwd(), ".data", "hue-session.db")


async def _stream_supervisor(session: BridgeSession, seconds: float) -> None:
    """The event stream never reconnects itself; reopen it here once it has ended."""
    while True:
        await asyncio.sleep(seconds)
        if not session.is_connected or not session.stream_status.is_terminal:
            continue
        try:
            await session.resume()
        except BRIDGE_ERRORS as exc:
            logger.warning("event stream restart failed: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = AppConfig.from_env()
    # Tests swap in an httpx.MockTransport standing in for the bridge.
    transport: httpx.AsyncBaseTransport | None = getattr(app.state, "bridge_transport", None)

    store = Store(config.db_path or _default_db_path())
    await store.connect()

    session = BridgeSession(store, config=config, transport=transport)
    discovery = BridgeDiscovery(
        store,
        transport=transport,
        cache_seconds=config.discovery_cache_seconds,
        timeout=config.rest_timeout_seconds,
        mdns_enabled=config.mdns_enabled,
        mdns_timeout=config.mdns_timeout_seconds,
        mdns_debounce=config.mdns_debounce_seconds,
    )
    pairing = BridgePairing(app_id=config.app_id, transport=transport, timeout=config.rest_timeout_seconds)

    tasks: list[asyncio.Task] = []
    app.state.state = AppState(
        config=config,
        store=store,
        session=session,
        discovery=discovery,
        pairing=pairing,
        tasks=tasks,
    )

    if await session.load() is not None:
        try:
            await session.resume()
        except BRIDGE_ERRORS as exc:
            logger.warning("bridge not reachable at startup, serving cached state: %s", exc)

    if config.stream_retry_seconds > 0:
        tasks.append(asyncio.create_task(_stream_supervisor(session, config.stream_retry_seconds)))
    session.start_periodic_refresh()
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except BaseException:
                pass
        discovery.cancel()
        await session.close()
        await store.close()


app = FastAPI(
    title="Hue Session",
    version="0.1.0",
    description=(
        "# Hue Session API\n\n"
        "Local control surface over a single paired Hue Bridge.\n\n"
        "## Flow\n"
        "1. `GET /v1/bridges/discover` (or `POST /v1/bridges/manual`) to find a bridge.\n"
        "2. Press the bridge link button, then `POST /v1/bridges/pair`.\n"
        "   Until the button is pressed the call answers **409** `link_button_not_pressed`; retry it.\n"
        "3. Read `GET /v1/state`, control grouped lights and scenes, follow `GET /v1/events/stream`.\n\n"
        "## Common errors\n"
        "- **400** invalid address or arguments\n"
        "- **409** link button not pressed, or no bridge paired yet\n"
        "- **424** bridge unreachable (network/connectivity)\n"
        "- **502** bridge returned a non-2xx status, an error envelope, or an undecodable body\n"
    ),
    lifespan=lifespan,
)

logger = logging.getLogger("hue_session")


def _error(status_code: int, code: str, message: str, details=None) -> JSONResponse:
    return JSONResponse(
        {"ok": False, "error": {"code": code, "message": message, "details": details}},
        status_code=status_code,
    )


@app.exception_handler(NotConnectedError)
async def _not_connected(_: Request, exc: NotConnectedError):
    return _error(status.HTTP_409_CONFLICT, "not_paired", str(exc))


@app.exception_handler(InvalidAddressError)
async def _invalid_address(_: Request, exc: InvalidAddressError):
    return _error(status.HTTP_400_BAD_REQUEST, "invalid_address", str(exc))


@app.exception_handler(HueTransportError)
async def _bridge_unreachable(_: Request, exc: HueTransportError):
    return _error(status.HTTP_424_FAILED_DEPENDENCY, "bridge_unreachable", str(exc))


@app.exception_handler(HueHTTPError)
async def _bridge_http_error(_: Request, exc: HueHTTPError):
    return _error(status.HTTP_502_BAD_GATEWAY, "bridge_error", str(exc), {"status": exc.status_code, "body": exc.body})


@app.exception_handler(HueDecodeError)
async def _bridge_decode_error(_: Request, exc: HueDecodeError):
    return _error(status.HTTP_502_BAD_GATEWAY, "bridge_decode_error", str(exc))


@app.exception_handler(BridgeApplicationError)
async def _bridge_application_error(_: Request, exc: BridgeApplicationError):
    if isinstance(exc, LinkButtonNotPressed):
        return _error(status.HTTP_409_CONFLICT, "link_button_not_pressed", "Press the Hue Bridge button and retry")
    return _error(status.HTTP_502_BAD_GATEWAY, "bridge_error", str(exc), {"errors": exc.descriptions})


@app.exception_handler(BridgeRejected)
async def _bridge_rejected(_: Request, exc: BridgeRejected):
    return _error(
        status.HTTP_502_BAD_GATEWAY,
        "bridge_pairing_failed",
        exc.description,
        {"type": exc.error_type},
    )


@app.middleware("http")
async def access_log(request: Request, call_next: Callable[[Request], Response]):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s -> %s (%.1fms)",
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


def _state() -> AppState:
    return app.state.state


def _candidate_body(candidate: BridgeCandidate) -> BridgeCandidateBody:
    return BridgeCandidateBody(**candidate.model_dump())


@app.get("/healthz", response_model=HealthResponse, tags=["meta"])
async def healthz() -> HealthResponse:
    return {"ok": True}


@app.get(
    "/readyz",
    summary="Readiness check",
    description="Validates the stored connection against the bridge's resource root.",
    response_model=ReadinessResponse,
    tags=["meta"],
)
async def readyz() -> ReadinessResponse:
    session = _state().session
    if not session.is_connected:
        return JSONResponse({"ready": False, "reason": "not_paired"}, status_code=503)
    result = await session.validate()
    if not result.ok:
        return JSONResponse(
            {"ready": False, "reason": result.reason, "details": result.message},
            status_code=503,
        )
    return {"ready": True}


@app.get("/v1/bridges/discover", response_model=DiscoverResponse, tags=["bridges"])
async def discover_bridges() -> DiscoverResponse:
    discovery = _state().discovery
    bridges = await discovery.discover()
    return DiscoverResponse(bridges=[_candidate_body(b) for b in bridges], error=discovery.last_error)


@app.post("/v1/bridges/manual", response_model=BridgeCandidateBody, tags=["bridges"])
async def manual_bridge(payload: ManualBridgeRequest) -> BridgeCandidateBody:
    return _candidate_body(manual_candidate(payload.address, payload.name))


@app.post(
    "/v1/bridges/pair",
    response_model=PairResponse,
    tags=["bridges"],
    responses={409: {"description": "Link button not pressed; retry the same request."}},
)
async def pair_bridge(payload: PairRequest) -> PairResponse:
    state = _state()
    candidate = BridgeCandidate(id=payload.id, address=payload.address, port=payload.port, name=payload.name)
    connection = await state.pairing.register(candidate)
    await state.session.connect(connection)
    try:
        await state.session.resume()
    except BRIDGE_ERRORS as exc:
        logger.warning("paired, but initial refresh failed: %s", exc)
    return PairResponse(
        bridgeId=connection.bridge_id,
        address=connection.address,
        pairedAt=connection.paired_at.isoformat(),
        applicationKey=connection.application_key if payload.revealKey else None,
    )


@app.delete("/v1/bridge", tags=["bridges"])
async def forget_bridge():
    await _state().session.disconnect()
    return {"ok": True}


@app.get("/v1/bridge/validate", response_model=ValidationResponse, tags=["bridges"])
async def validate_bridge() -> ValidationResponse:
    result = await _state().session.validate()
    return ValidationResponse(ok=result.ok, reason=result.reason, message=result.message)


@app.get("/v1/state", tags=["state"])
async def get_state():
    session = _state().session
    return {**session.describe(), **session.cache.snapshot()}


@app.post("/v1/refresh", tags=["state"])
async def refresh():
    await _state().session.refresh_all(force=True)
    return {"ok": True}


@app.post("/v1/demo", tags=["state"])
async def enable_demo():
    await _state().session.enable_demo_mode()
    return {"ok": True, "demoMode": True}


@app.delete("/v1/demo", tags=["state"])
async def disable_demo():
    session = _state().session
    await session.disable_demo_mode()
    if session.is_connected:
        try:
            await session.resume()
        except BRIDGE_ERRORS as exc:
            logger.warning("demo mode off, but the bridge is not reachable: %s", exc)
    return {"ok": True, "demoMode": False}


def _grouping_detail(grouping_id: str) -> GroupingDetail | None:
    cache = _state().session.cache
    grouping = cache.grouping(grouping_id)
    if grouping is None:
        return None
    grouped = cache.grouped_light_for(grouping_id)
    active = cache.active_scene_for(grouping_id)
    return GroupingDetail(
        grouping=grouping.model_dump(mode="json"),
        groupedLight=grouped.model_dump(mode="json") if grouped else None,
        scenes=[s.model_dump(mode="json") for s in cache.scenes_for(grouping_id)],
        activeSceneId=active.id if active else None,
        averageBrightness=cache.average_brightness(grouping_id),
        colors=[color.rgb_to_hex(rgb) for rgb in cache.representative_colors(grouping_id)],
    )


@app.get("/v1/groupings/{grouping_id}", response_model=GroupingDetail, tags=["state"])
async def get_grouping(grouping_id: str):
    detail = _grouping_detail(grouping_id)
    if detail is None:
        return _error(status.HTTP_404_NOT_FOUND, "unknown_grouping", f"No room or zone {grouping_id}")
    return detail


@app.post("/v1/groupings/{grouping_id}/enrich", response_model=GroupingDetail, tags=["state"])
async def enrich_grouping(grouping_id: str):
    if _state().session.cache.grouping(grouping_id) is None:
        return _error(status.HTTP_404_NOT_FOUND, "unknown_grouping", f"No room or zone {grouping_id}")
    await _state().session.enrich(grouping_id)
    return _grouping_detail(grouping_id)


async def _refresh_one(kind: GroupingKind, grouping_id: str):
    if await _state().session.refresh_grouping(kind, grouping_id) is None:
        return _error(status.HTTP_404_NOT_FOUND, "unknown_grouping", f"No {kind.value} {grouping_id}")
    return _grouping_detail(grouping_id)


@app.post("/v1/rooms/{room_id}/refresh", response_model=GroupingDetail, tags=["state"])
async def refresh_room(room_id: str):
    return await _refresh_one(GroupingKind.ROOM, room_id)


@app.post("/v1/zones/{zone_id}/refresh", response_model=GroupingDetail, tags=["state"])
async def refresh_zone(zone_id: str):
    return await _refresh_one(GroupingKind.ZONE, zone_id)


@app.put("/v1/grouped_lights/{grouped_light_id}", tags=["control"])
async def control_grouped_light(grouped_light_id: str, payload: GroupedLightCommand):
    session = _state().session
    if payload.on is not None and payload.brightness is not None:
        await session.set_power_and_brightness(grouped_light_id, payload.on, payload.brightness)
    elif payload.on is not None:
        await session.set_power(grouped_light_id, payload.on)
    elif payload.brightness is not None:
        await session.set_brightness(grouped_light_id, payload.brightness)
    if payload.brightnessDelta is not None:
        await session.adjust_brightness(grouped_light_id, payload.brightnessDelta)
    if payload.xy is not None:
        await session.set_color_xy(grouped_light_id, XYColor(x=payload.xy.x, y=payload.xy.y))
    if payload.mirek is not None:
        await session.set_color_temperature(grouped_light_id, payload.mirek)
    view = session.cache.grouped_light(grouped_light_id)
    return {"ok": True, "groupedLight": view.model_dump(mode="json") if view else None}


@app.post("/v1/scenes/{scene_id}/activate", tags=["control"])
async def activate_scene(scene_id: str):
    await _state().session.activate_scene(scene_id)
    return {"ok": True}


@app.post("/v1/lights/off", tags=["control"])
async def all_off():
    count = await _state().session.turn_off_all()
    return {"ok": True, "groupedLights": count}


@app.get(
    "/v1/events/stream",
    summary="Cache change notifications (SSE)",
    description=(
        "Each change to the cached state is sent as a single `data: <json>` frame.\n"
        "`: keepalive` comment frames are sent when idle. Repeat `rtype` to only receive changes "
        "to those resource types (`room`, `zone`, `grouped_light`, `scene`)."
    ),
    tags=["events"],
    responses={
        200: {
            "description": "SSE stream (text/event-stream).",
            "content": {"text/event-stream": {"schema": {"type": "string"}}},
        },
    },
)
async def events_stream(rtype: Annotated[list[str] | None, Query()] = None):
    subscription = _state().session.hub.subscribe(rtypes=rtype)

    async def _gen():
        with subscription:
            while True:
                change = await subscription.next(timeout=15.0)
                if change is None:
                    yield ": keepalive\n\n"
                else:
                    yield f"data: {change.model_dump_json()}\n\n"

    return StreamingResponse(_gen(), media_type="text/event-stream")
