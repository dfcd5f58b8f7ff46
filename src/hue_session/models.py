from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from hue_session.resources import (
    ColorState,
    ColorTemperatureState,
    DeviceResource,
    DimmingState,
    GroupResource,
    GroupedLightResource,
    LightActionState,
    LightResource,
    OnState,
    ResourceRef,
    SceneResource,
)
from hue_session.transport import bridge_base_url


class XYColor(BaseModel):
    x: float
    y: float


def _on(state: OnState | None) -> bool | None:
    return state.on if state is not None else None


def _brightness(state: DimmingState | None) -> float | None:
    return state.brightness if state is not None else None


def _xy(state: ColorState | None) -> XYColor | None:
    if state is None or state.xy is None:
        return None
    return XYColor(x=state.xy.x, y=state.xy.y)


def _mirek(state: ColorTemperatureState | None) -> int | None:
    return state.mirek if state is not None else None


class BridgeCandidate(BaseModel):
    id: str
    address: str
    port: int = 443
    name: str | None = None

    @property
    def base_url(self) -> str:
        return bridge_base_url(self.address, self.port)


class BridgeConnection(BaseModel):
    bridge_id: str
    address: str
    port: int = 443
    application_key: str
    client_key: str | None = None
    paired_at: datetime

    @property
    def base_url(self) -> str:
        return bridge_base_url(self.address, self.port)


class GroupingKind(str, Enum):
    ROOM = "room"
    ZONE = "zone"


class Grouping(BaseModel):
    """A room or zone. `light_ids` stays None until the grouping is enriched."""

    id: str
    kind: GroupingKind
    name: str = ""
    archetype: str = "other"
    children: list[ResourceRef] = Field(default_factory=list)
    services: list[ResourceRef] = Field(default_factory=list)
    grouped_light_id: str | None = None
    light_ids: list[str] | None = None

    @classmethod
    def from_resource(cls, kind: GroupingKind, resource: GroupResource) -> "Grouping":
        services = list(resource.services or [])
        return cls(
            id=resource.id,
            kind=kind,
            name=resource.metadata.name or "",
            archetype=resource.metadata.archetype or "other",
            children=list(resource.children or []),
            services=services,
            grouped_light_id=grouped_light_service(services),
        )

    def projection(self) -> tuple[Any, ...]:
        return (self.id, self.name)


def grouped_light_service(services: list[ResourceRef]) -> str | None:
    for ref in services:
        if ref.rtype == "grouped_light":
            return ref.rid
    return None


class GroupedLightState(BaseModel):
    id: str
    on: bool | None = None
    brightness: float | None = Field(default=None, ge=0.0, le=100.0)
    color_xy: XYColor | None = None
    color_temp_mirek: int | None = None

    @classmethod
    def from_resource(cls, resource: GroupedLightResource) -> "GroupedLightState":
        return cls(
            id=resource.id,
            on=_on(resource.on),
            brightness=_brightness(resource.dimming),
            color_xy=_xy(resource.color),
            color_temp_mirek=_mirek(resource.color_temperature),
        )

    def projection(self) -> tuple[Any, ...]:
        xy = self.color_xy
        return (
            self.id,
            self.on,
            self.brightness,
            xy.x if xy else None,
            xy.y if xy else None,
            self.color_temp_mirek,
        )


class Light(BaseModel):
    id: str
    name: str | None = None
    archetype: str | None = None
    owner_id: str | None = None
    on: bool | None = None
    brightness: float | None = None
    color_xy: XYColor | None = None
    color_temp_mirek: int | None = None

    @classmethod
    def from_resource(cls, resource: LightResource) -> "Light":
        metadata = resource.metadata
        return cls(
            id=resource.id,
            name=metadata.name if metadata else None,
            archetype=metadata.archetype if metadata else None,
            owner_id=resource.owner.rid if resource.owner else None,
            on=_on(resource.on),
            brightness=_brightness(resource.dimming),
            color_xy=_xy(resource.color),
            color_temp_mirek=_mirek(resource.color_temperature),
        )


class Device(BaseModel):
    id: str
    name: str | None = None
    services: list[ResourceRef] = Field(default_factory=list)

    @classmethod
    def from_resource(cls, resource: DeviceResource) -> "Device":
        return cls(
            id=resource.id,
            name=resource.metadata.name if resource.metadata else None,
            services=list(resource.services or []),
        )

    def light_ids(self) -> list[str]:
        return [ref.rid for ref in self.services if ref.rtype == "light"]


class SceneAction(BaseModel):
    target: ResourceRef | None = None
    on: bool | None = None
    brightness: float | None = None
    color_xy: XYColor | None = None
    color_temp_mirek: int | None = None

    @classmethod
    def from_state(cls, state: LightActionState, target: ResourceRef | None = None) -> "SceneAction":
        return cls(
            target=target,
            on=_on(state.on),
            brightness=_brightness(state.dimming),
            color_xy=_xy(state.color),
            color_temp_mirek=_mirek(state.color_temperature),
        )


ACTIVE_SCENE_STATUSES = {"active", "dynamic_palette"}


class Scene(BaseModel):
    id: str
    name: str = ""
    group: ResourceRef
    actions: list[SceneAction] = Field(default_factory=list)
    palette: list[SceneAction] = Field(default_factory=list)
    status: str = "inactive"

    @classmethod
    def from_resource(cls, resource: SceneResource) -> "Scene":
        actions = [SceneAction.from_state(a.action, target=a.target) for a in resource.actions or []]
        palette: list[SceneAction] = []
        if resource.palette is not None:
            for entry in resource.palette.color or []:
                palette.append(
                    SceneAction(color_xy=_xy(entry.color), brightness=_brightness(entry.dimming))
                )
            for entry in resource.palette.color_temperature or []:
                palette.append(
                    SceneAction(
                        color_temp_mirek=_mirek(entry.color_temperature),
                        brightness=_brightness(entry.dimming),
                    )
                )
        status = resource.status.active if resource.status and resource.status.active else "inactive"
        return cls(
            id=resource.id,
            name=resource.metadata.name or "",
            group=resource.group,
            actions=actions,
            palette=palette,
            status=status,
        )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SCENE_STATUSES


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass(frozen=True)
class StreamStatus:
    state: StreamState
    detail: str | None = None  # disconnected: "eof" | "cancelled"; error: message

    @property
    def is_terminal(self) -> bool:
        return self.state in {StreamState.DISCONNECTED, StreamState.ERROR}


class CacheChange(BaseModel):
    """A visible change to the cached state, as fanned out to subscribers."""

    ts: str
    source: str = "bridge"  # "bridge" or "local"
    type: str  # "<rtype>.added", ".updated", ".removed" or ".enriched"
    resource: ResourceRef

    @classmethod
    def now(cls, kind: str, rid: str, rtype: str, *, source: str = "bridge") -> "CacheChange":
        return cls(
            ts=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            source=source,
            type=kind,
            resource=ResourceRef(rid=rid, rtype=rtype),
        )
