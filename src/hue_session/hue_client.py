from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, TypeVar

import httpx
from pydantic import TypeAdapter, ValidationError

from hue_session.models import (
    BridgeConnection,
    Device,
    Grouping,
    GroupingKind,
    GroupedLightState,
    Light,
    Scene,
    XYColor,
)
from hue_session.resources import (
    DeviceResource,
    GroupResource,
    GroupedLightResource,
    LightResource,
    ResourceEnvelope,
    SceneResource,
)
from hue_session.transport import STREAM_TIMEOUT, bridge_base_url, make_client


logger = logging.getLogger(__name__)

T = TypeVar("T")

RESOURCE_ROOT = "/clip/v2/resource"
EVENTSTREAM_PATH = "/eventstream/clip/v2"

_NETWORK_ERRORS = (httpx.TransportError,)


class HueTransportError(Exception):
    pass


class HueHTTPError(Exception):
    def __init__(self, *, status_code: int, body: Any) -> None:
        super().__init__(f"Hue bridge HTTP error: {status_code}")
        self.status_code = status_code
        self.body = body


class HueDecodeError(Exception):
    def __init__(self, message: str, *, raw_body: str) -> None:
        super().__init__(message)
        self.raw_body = raw_body


class BridgeApplicationError(Exception):
    """The bridge answered, but reported errors of its own."""

    def __init__(self, descriptions: list[str]) -> None:
        super().__init__("; ".join(descriptions) or "bridge reported an error")
        self.descriptions = descriptions


class LinkButtonNotPressed(BridgeApplicationError):
    pass


def _body_for_error(resp: httpx.Response) -> Any:
    content_type = resp.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return resp.json()
        except ValueError:
            return resp.text
    return resp.text


class BridgeClient:
    def __init__(
        self,
        *,
        address: str,
        application_key: str | None,
        port: int = 443,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._address = address
        self._port = port
        self._application_key = application_key
        self._transport = transport
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def for_connection(
        cls,
        connection: BridgeConnection,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ) -> "BridgeClient":
        return cls(
            address=connection.address,
            application_key=connection.application_key,
            port=connection.port,
            transport=transport,
            timeout=timeout,
        )

    @property
    def address(self) -> str:
        return self._address

    @property
    def base_url(self) -> str:
        return bridge_base_url(self._address, self._port)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = make_client(
                self.base_url,
                application_key=self._application_key,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any | None = None,
        model: Any = None,
    ) -> Any:
        """
        Send one request and decode the body.

        With `model` set the JSON body is validated into that type; otherwise
        the parsed JSON is returned as-is. No retries are attempted.
        """
        client = self._get_client()
        try:
            resp = await client.request(method, path, json=json_body)
        except _NETWORK_ERRORS as exc:
            raise HueTransportError(str(exc) or type(exc).__name__) from exc

        if not 200 <= resp.status_code < 300:
            raise HueHTTPError(status_code=resp.status_code, body=_body_for_error(resp))

        raw = resp.text
        try:
            if model is None:
                return resp.json()
            return TypeAdapter(model).validate_json(resp.content)
        except (ValueError, ValidationError) as exc:
            logger.warning("undecodable response from %s %s: %s", method, path, raw)
            raise HueDecodeError(f"could not decode response for {method} {path}", raw_body=raw) from exc

    async def _fetch(self, path: str, item: type[T]) -> list[T]:
        envelope = await self.request("GET", path, model=ResourceEnvelope[item])
        if envelope.errors:
            raise BridgeApplicationError(envelope.error_descriptions())
        return envelope.data

    async def _fetch_one(self, path: str, item: type[T]) -> T | None:
        data = await self._fetch(path, item)
        return data[0] if data else None

    async def fetch_groupings(self, kind: GroupingKind) -> list[Grouping]:
        data = await self._fetch(f"{RESOURCE_ROOT}/{kind.value}", GroupResource)
        return [Grouping.from_resource(kind, r) for r in data]

    async def fetch_grouping(self, kind: GroupingKind, grouping_id: str) -> Grouping | None:
        r = await self._fetch_one(f"{RESOURCE_ROOT}/{kind.value}/{grouping_id}", GroupResource)
        return Grouping.from_resource(kind, r) if r else None

    async def fetch_rooms(self) -> list[Grouping]:
        return await self.fetch_groupings(GroupingKind.ROOM)

    async def fetch_zones(self) -> list[Grouping]:
        return await self.fetch_groupings(GroupingKind.ZONE)

    async def fetch_grouped_lights(self) -> list[GroupedLightState]:
        data = await self._fetch(f"{RESOURCE_ROOT}/grouped_light", GroupedLightResource)
        return [GroupedLightState.from_resource(r) for r in data]

    async def fetch_grouped_light(self, grouped_light_id: str) -> GroupedLightState | None:
        r = await self._fetch_one(f"{RESOURCE_ROOT}/grouped_light/{grouped_light_id}", GroupedLightResource)
        return GroupedLightState.from_resource(r) if r else None

    async def fetch_scenes(self) -> list[Scene]:
        data = await self._fetch(f"{RESOURCE_ROOT}/scene", SceneResource)
        return [Scene.from_resource(r) for r in data]

    async def fetch_light(self, light_id: str) -> Light | None:
        r = await self._fetch_one(f"{RESOURCE_ROOT}/light/{light_id}", LightResource)
        return Light.from_resource(r) if r else None

    async def fetch_device(self, device_id: str) -> Device | None:
        r = await self._fetch_one(f"{RESOURCE_ROOT}/device/{device_id}", DeviceResource)
        return Device.from_resource(r) if r else None

    async def resolve_light_ids(self, grouping: Grouping) -> list[str]:
        """Walk grouping -> device -> light services. Direct light children are kept as-is."""
        light_ids: list[str] = []
        device_ids: list[str] = []
        for child in grouping.children:
            if child.rtype == "light":
                light_ids.append(child.rid)
            elif child.rtype == "device":
                device_ids.append(child.rid)

        devices = await asyncio.gather(*(self.fetch_device(d) for d in device_ids))
        for device in devices:
            if device is not None:
                light_ids.extend(device.light_ids())

        return list(dict.fromkeys(light_ids))

    async def fetch_grouping_lights(self, grouping: Grouping) -> list[Light]:
        light_ids = await self.resolve_light_ids(grouping)
        lights = await asyncio.gather(*(self.fetch_light(i) for i in light_ids))
        return [light for light in lights if light is not None]

    async def _put(self, path: str, body: dict[str, Any]) -> None:
        envelope = await self.request("PUT", path, json_body=body, model=ResourceEnvelope[dict])
        if envelope.errors:
            raise BridgeApplicationError(envelope.error_descriptions())

    async def set_power(self, grouped_light_id: str, on: bool) -> None:
        await self.update_grouped_light(grouped_light_id, on=on)

    async def update_grouped_light(
        self,
        grouped_light_id: str,
        *,
        on: bool | None = None,
        brightness: float | None = None,
        brightness_delta: float | None = None,
        color_xy: XYColor | None = None,
        color_temp_mirek: int | None = None,
    ) -> None:
        """One PUT carrying only the given fields. A signed `brightness_delta` becomes `dimming_delta`."""
        body: dict[str, Any] = {}
        if on is not None:
            body["on"] = {"on": on}
        if brightness is not None:
            body["dimming"] = {"brightness": brightness}
        elif brightness_delta:
            body["dimming_delta"] = {
                "action": "up" if brightness_delta >= 0 else "down",
                "brightness_delta": abs(brightness_delta),
            }
        if color_xy is not None:
            body["color"] = {"xy": {"x": color_xy.x, "y": color_xy.y}}
        elif color_temp_mirek is not None:
            body["color_temperature"] = {"mirek": color_temp_mirek}
        if not body:
            raise ValueError("empty grouped_light update")
        await self._put(f"{RESOURCE_ROOT}/grouped_light/{grouped_light_id}", body)

    async def activate_scene(self, scene_id: str) -> None:
        await self._put(f"{RESOURCE_ROOT}/scene/{scene_id}", {"recall": {"action": "active"}})

    async def stream_lines(
        self,
        path: str = EVENTSTREAM_PATH,
        *,
        on_open: Callable[[], None] | None = None,
    ) -> AsyncIterator[str]:
        client = self._get_client()
        headers = {"Accept": "text/event-stream"}
        try:
            async with client.stream("GET", path, headers=headers, timeout=STREAM_TIMEOUT) as resp:
                if not 200 <= resp.status_code < 300:
                    body = await resp.aread()
                    raise HueHTTPError(status_code=resp.status_code, body=body.decode("utf-8", "ignore"))
                if on_open is not None:
                    on_open()
                async for line in resp.aiter_lines():
                    yield line
        except (httpx.HTTPError, httpx.StreamError) as exc:
            # decode failures and closed bodies end the stream too
            raise HueTransportError(str(exc) or type(exc).__name__) from exc
