from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    ok: bool = Field(..., description="Process is alive.")


class ReadinessResponse(BaseModel):
    ready: bool = Field(..., description="True when a paired bridge answers the resource root without errors.")
    reason: str | None = Field(
        default=None,
        description="When not ready, a short machine-readable reason (e.g. not_paired, network, bridge_error).",
    )
    details: Any | None = Field(
        default=None,
        description="Optional extra details for debugging; do not rely on this shape.",
    )


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Any | None = None


class ErrorResponse(BaseModel):
    ok: bool = False
    error: ErrorBody


class BridgeCandidateBody(BaseModel):
    id: str = Field(..., description="Bridge id from discovery, or manual_<a>_<b>_<c>_<d>.")
    address: str = Field(..., examples=["192.168.1.29"])
    port: int = 443
    name: str | None = None


class DiscoverResponse(BaseModel):
    bridges: list[BridgeCandidateBody]
    error: str | None = Field(default=None, description="Set when discovery failed and the list is empty.")


class ManualBridgeRequest(BaseModel):
    address: str = Field(..., description="Dotted-quad IPv4 address of the bridge.", examples=["192.168.1.29"])
    name: str | None = None


class PairResponse(BaseModel):
    bridgeId: str
    address: str
    pairedAt: str
    applicationKey: str | None = Field(
        default=None,
        description="Only returned when the request asked for it; treat as a secret.",
    )


class PairRequest(BridgeCandidateBody):
    revealKey: bool = Field(default=False, description="Include the issued application key in the response.")


class XYBody(BaseModel):
    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)


class GroupedLightCommand(BaseModel):
    on: bool | None = None
    brightness: float | None = Field(default=None, ge=0.0, le=100.0)
    brightnessDelta: float | None = Field(default=None, ge=-100.0, le=100.0)
    xy: XYBody | None = None
    mirek: int | None = Field(default=None, ge=153, le=500)


class GroupingDetail(BaseModel):
    grouping: dict[str, Any]
    groupedLight: dict[str, Any] | None = None
    scenes: list[dict[str, Any]] = Field(default_factory=list)
    activeSceneId: str | None = None
    averageBrightness: float | None = None
    colors: list[str] = Field(default_factory=list, description="Representative colours as #RRGGBB.")


class ValidationResponse(BaseModel):
    ok: bool
    reason: str | None = None
    message: str | None = None
