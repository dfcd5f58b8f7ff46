from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, Field


T = TypeVar("T")


class ResourceRef(BaseModel):
    rid: str
    rtype: str


class BridgeErrorItem(BaseModel):
    description: str = ""


class ResourceEnvelope(BaseModel, Generic[T]):
    errors: list[BridgeErrorItem] = Field(default_factory=list)
    data: list[T] = Field(default_factory=list)

    def error_descriptions(self) -> list[str]:
        return [err.description for err in self.errors]


class OnState(BaseModel):
    on: bool


class DimmingState(BaseModel):
    brightness: float


class XYValue(BaseModel):
    x: float
    y: float


class ColorState(BaseModel):
    xy: XYValue | None = None


class ColorTemperatureState(BaseModel):
    mirek: int | None = None
    mirek_valid: bool | None = None


class MetadataState(BaseModel):
    name: str | None = None
    archetype: str | None = None


class GroupResource(BaseModel):
    """Room or zone as returned by /clip/v2/resource/{room,zone}."""

    id: str
    type: str = "room"
    metadata: MetadataState = Field(default_factory=MetadataState)
    children: list[ResourceRef] | None = None
    services: list[ResourceRef] | None = None


class GroupedLightResource(BaseModel):
    id: str
    type: str = "grouped_light"
    on: OnState | None = None
    dimming: DimmingState | None = None
    color_temperature: ColorTemperatureState | None = None
    color: ColorState | None = None


class LightResource(BaseModel):
    id: str
    type: str = "light"
    metadata: MetadataState | None = None
    owner: ResourceRef | None = None
    on: OnState | None = None
    dimming: DimmingState | None = None
    color_temperature: ColorTemperatureState | None = None
    color: ColorState | None = None


class DeviceResource(BaseModel):
    id: str
    type: str = "device"
    metadata: MetadataState | None = None
    services: list[ResourceRef] | None = None


class LightActionState(BaseModel):
    on: OnState | None = None
    dimming: DimmingState | None = None
    color: ColorState | None = None
    color_temperature: ColorTemperatureState | None = None


class SceneActionResource(BaseModel):
    target: ResourceRef
    action: LightActionState


class PaletteColorEntry(BaseModel):
    color: ColorState | None = None
    dimming: DimmingState | None = None


class PaletteColorTemperatureEntry(BaseModel):
    color_temperature: ColorTemperatureState | None = None
    dimming: DimmingState | None = None


class ScenePalette(BaseModel):
    color: list[PaletteColorEntry] | None = None
    dimming: list[DimmingState] | None = None
    color_temperature: list[PaletteColorTemperatureEntry] | None = None


class SceneStatusState(BaseModel):
    active: str | None = None


class SceneResource(BaseModel):
    id: str
    type: str = "scene"
    metadata: MetadataState = Field(default_factory=MetadataState)
    group: ResourceRef
    actions: list[SceneActionResource] | None = None
    palette: ScenePalette | None = None
    speed: float | None = None
    auto_dynamic: bool | None = None
    status: SceneStatusState | None = None


class EventData(BaseModel):
    """
    One resource delta inside an SSE event.

    Only the fields a delta actually carries are set; `event_type` is copied
    from the enclosing event ("update", "add", "delete").
    """

    id: str
    type: str
    on: OnState | None = None
    dimming: DimmingState | None = None
    color_temperature: ColorTemperatureState | None = None
    color: ColorState | None = None
    metadata: MetadataState | None = None
    children: list[ResourceRef] | None = None
    services: list[ResourceRef] | None = None
    group: ResourceRef | None = None
    status: SceneStatusState | None = None
    event_type: str = "update"


class BridgeEvent(BaseModel):
    creationtime: str | None = None
    id: str | None = None
    type: str = "update"
    data: list[EventData] = Field(default_factory=list)
