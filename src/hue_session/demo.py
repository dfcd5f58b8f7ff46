from __future__ import annotations

from hue_session.models import Grouping, GroupingKind, GroupedLightState, XYColor
from hue_session.resources import ResourceRef


def _grouping(kind: GroupingKind, gid: str, name: str, archetype: str, grouped_light_id: str) -> Grouping:
    return Grouping(
        id=gid,
        kind=kind,
        name=name,
        archetype=archetype,
        services=[ResourceRef(rid=grouped_light_id, rtype="grouped_light")],
        grouped_light_id=grouped_light_id,
    )


def demo_inventory() -> tuple[list[Grouping], list[Grouping], list[GroupedLightState]]:
    """Rooms, zones and grouped lights shown in demo mode when nothing is cached."""
    rooms = [
        _grouping(GroupingKind.ROOM, "demo-room-1", "Living Room", "living_room", "demo-grouped-light-1"),
        _grouping(GroupingKind.ROOM, "demo-room-2", "Bedroom", "bedroom", "demo-grouped-light-2"),
        _grouping(GroupingKind.ROOM, "demo-room-3", "Kitchen", "kitchen", "demo-grouped-light-3"),
    ]
    zones = [
        _grouping(GroupingKind.ZONE, "demo-zone-1", "Downstairs", "home", "demo-zone-light-1"),
    ]
    grouped_lights = [
        GroupedLightState(
            id="demo-grouped-light-1", on=True, brightness=75.0, color_xy=XYColor(x=0.4573, y=0.41)
        ),
        GroupedLightState(id="demo-grouped-light-2", on=False, brightness=50.0, color_temp_mirek=366),
        GroupedLightState(id="demo-grouped-light-3", on=True, brightness=100.0, color_temp_mirek=250),
        GroupedLightState(id="demo-zone-light-1", on=True, brightness=80.0),
    ]
    return rooms, zones, grouped_lights
