from __future__ import annotations

import logging
from typing import Any

from pydantic import TypeAdapter

from hue_session import color
from hue_session.event_hub import EventHub
from hue_session.models import (
    CacheChange,
    Grouping,
    GroupingKind,
    GroupedLightState,
    Light,
    Scene,
    XYColor,
    grouped_light_service,
)
from hue_session.resources import EventData
from hue_session.store import (
    GROUPED_LIGHTS_KEY,
    LIGHTS_KEY,
    ROOMS_KEY,
    SCENES_KEY,
    ZONES_KEY,
    Store,
)


logger = logging.getLogger(__name__)

_GROUPINGS = TypeAdapter(list[Grouping])
_GROUPED_LIGHTS = TypeAdapter(list[GroupedLightState])
_SCENES = TypeAdapter(list[Scene])
_LIGHTS = TypeAdapter(list[Light])

_OVERLAY_FIELDS = ("on", "brightness", "color_xy", "color_temp_mirek")

_change = CacheChange.now


def _scene_projection(scene: Scene | None) -> tuple[Any, ...] | None:
    return (scene.id, scene.name, scene.status) if scene else None


class StateCache:
    """
    In-memory view of rooms, zones, grouped lights, scenes and lights.

    REST snapshots replace whole collections, SSE deltas patch single
    resources, and optimistic writes sit in an overlay on top of the
    confirmed grouped-light state until the bridge reports the same field.
    Only changes to the visible projection are published.
    """

    def __init__(self, hub: EventHub | None = None) -> None:
        self._hub = hub
        self._groupings: dict[GroupingKind, dict[str, Grouping]] = {
            GroupingKind.ROOM: {},
            GroupingKind.ZONE: {},
        }
        self._grouped_lights: dict[str, GroupedLightState] = {}
        self._overlay: dict[str, dict[str, Any]] = {}
        self._scenes: dict[str, Scene] = {}
        self._lights: dict[str, Light] = {}

    def _publish(self, changes: list[CacheChange]) -> None:
        if self._hub is not None and changes:
            self._hub.publish(changes)

    def _settle_overlay(self, grouped_light_id: str, fields: list[str]) -> None:
        """Authoritative values for `fields` arrived; drop the optimistic ones."""
        overlay = self._overlay.get(grouped_light_id)
        if not overlay:
            return
        for field in fields:
            overlay.pop(field, None)
        if not overlay:
            del self._overlay[grouped_light_id]

    # Snapshots

    async def replace_groupings(self, kind: GroupingKind, groupings: list[Grouping]) -> list[CacheChange]:
        old = self._groupings[kind]
        new: dict[str, Grouping] = {}
        changes: list[CacheChange] = []
        for grouping in groupings:
            prev = old.get(grouping.id)
            if prev is not None and grouping.light_ids is None and prev.light_ids is not None:
                grouping = grouping.model_copy(update={"light_ids": prev.light_ids})
            if prev is None:
                changes.append(_change(f"{kind.value}.added", grouping.id, kind.value))
            elif prev.projection() != grouping.projection():
                changes.append(_change(f"{kind.value}.updated", grouping.id, kind.value))
            new[grouping.id] = grouping
        for rid in old.keys() - new.keys():
            changes.append(_change(f"{kind.value}.removed", rid, kind.value))
        self._groupings[kind] = new
        self._publish(changes)
        return changes

    async def replace_grouped_lights(self, states: list[GroupedLightState]) -> list[CacheChange]:
        before = {rid: self._view(rid) for rid in self._grouped_lights}
        self._grouped_lights = {s.id: s for s in states}
        for rid in list(self._overlay):
            if rid not in self._grouped_lights:
                del self._overlay[rid]
        for state in states:
            self._settle_overlay(state.id, [f for f in _OVERLAY_FIELDS if getattr(state, f) is not None])
        changes: list[CacheChange] = []
        for state in states:
            prev = before.get(state.id)
            after = self._view(state.id)
            if prev is None:
                changes.append(_change("grouped_light.added", state.id, "grouped_light"))
            elif after is not None and prev.projection() != after.projection():
                changes.append(_change("grouped_light.updated", state.id, "grouped_light"))
        for rid in before.keys() - self._grouped_lights.keys():
            changes.append(_change("grouped_light.removed", rid, "grouped_light"))
        self._publish(changes)
        return changes

    async def upsert_grouping(self, grouping: Grouping) -> bool:
        groupings = self._groupings[grouping.kind]
        prev = groupings.get(grouping.id)
        if prev is not None and grouping.light_ids is None and prev.children == grouping.children:
            grouping = grouping.model_copy(update={"light_ids": prev.light_ids})
        groupings[grouping.id] = grouping
        if prev is not None and prev.projection() == grouping.projection() and prev.light_ids == grouping.light_ids:
            return False
        kind = grouping.kind.value
        self._publish([_change(f"{kind}.added" if prev is None else f"{kind}.updated", grouping.id, kind)])
        return True

    async def upsert_grouped_light(self, state: GroupedLightState) -> bool:
        """A freshly fetched state is authoritative for every field, so the overlay is dropped."""
        prev = self._view(state.id)
        self._grouped_lights[state.id] = state
        self._overlay.pop(state.id, None)
        if prev is not None and prev.projection() == state.projection():
            return False
        kind = "grouped_light.added" if prev is None else "grouped_light.updated"
        self._publish([_change(kind, state.id, "grouped_light")])
        return True

    async def replace_scenes(self, scenes: list[Scene]) -> list[CacheChange]:
        old = self._scenes
        self._scenes = {s.id: s for s in scenes}
        changes: list[CacheChange] = []
        for scene in scenes:
            prev = old.get(scene.id)
            if prev is None:
                changes.append(_change("scene.added", scene.id, "scene"))
            elif _scene_projection(prev) != _scene_projection(scene):
                changes.append(_change("scene.updated", scene.id, "scene"))
        for rid in old.keys() - self._scenes.keys():
            changes.append(_change("scene.removed", rid, "scene"))
        self._publish(changes)
        return changes

    async def upsert_lights(self, lights: list[Light]) -> None:
        for light in lights:
            self._lights[light.id] = light

    async def set_light_ids(self, grouping_id: str, light_ids: list[str]) -> None:
        for kind, groupings in self._groupings.items():
            grouping = groupings.get(grouping_id)
            if grouping is not None:
                groupings[grouping_id] = grouping.model_copy(update={"light_ids": list(light_ids)})
                self._publish([_change(f"{kind.value}.enriched", grouping_id, kind.value)])
                return

    # Deltas

    async def apply_events(self, batch: list[EventData]) -> None:
        for item in batch:
            await self.apply_event(item)

    async def apply_event(self, item: EventData) -> bool:
        if item.event_type == "delete":
            return await self.remove(item.type, item.id)
        if item.type == "grouped_light":
            return await self._patch_grouped_light(item)
        if item.type in ("room", "zone"):
            return await self._patch_grouping(GroupingKind(item.type), item)
        if item.type == "scene":
            return await self._patch_scene(item)
        return False

    async def remove(self, rtype: str, rid: str) -> bool:
        removed = False
        if rtype == "grouped_light":
            removed = self._grouped_lights.pop(rid, None) is not None
            self._overlay.pop(rid, None)
        elif rtype in ("room", "zone"):
            removed = self._groupings[GroupingKind(rtype)].pop(rid, None) is not None
        elif rtype == "scene":
            removed = self._scenes.pop(rid, None) is not None
        if removed:
            self._publish([_change(f"{rtype}.removed", rid, rtype)])
        return removed

    async def _patch_grouped_light(self, item: EventData) -> bool:
        prev = self._view(item.id)
        confirmed = self._grouped_lights.get(item.id)
        patch: dict[str, Any] = {}
        if item.on is not None:
            patch["on"] = item.on.on
        if item.dimming is not None:
            patch["brightness"] = item.dimming.brightness
        if item.color is not None and item.color.xy is not None:
            patch["color_xy"] = XYColor(x=item.color.xy.x, y=item.color.xy.y)
        if item.color_temperature is not None and item.color_temperature.mirek is not None:
            patch["color_temp_mirek"] = item.color_temperature.mirek

        if confirmed is None:
            self._grouped_lights[item.id] = GroupedLightState(id=item.id, **patch)
        else:
            self._grouped_lights[item.id] = confirmed.model_copy(update=patch)

        self._settle_overlay(item.id, list(patch))

        after = self._view(item.id)
        if prev is not None and after is not None and prev.projection() == after.projection():
            return False
        kind = "grouped_light.added" if prev is None else "grouped_light.updated"
        self._publish([_change(kind, item.id, "grouped_light")])
        return True

    async def _patch_grouping(self, kind: GroupingKind, item: EventData) -> bool:
        groupings = self._groupings[kind]
        prev = groupings.get(item.id)
        if prev is None:
            services = list(item.services or [])
            grouping = Grouping(
                id=item.id,
                kind=kind,
                name=(item.metadata.name if item.metadata else None) or "",
                archetype=(item.metadata.archetype if item.metadata else None) or "other",
                children=list(item.children or []),
                services=services,
                grouped_light_id=grouped_light_service(services),
            )
            groupings[item.id] = grouping
            self._publish([_change(f"{kind.value}.added", item.id, kind.value)])
            return True

        patch: dict[str, Any] = {}
        if item.metadata is not None:
            if item.metadata.name is not None:
                patch["name"] = item.metadata.name
            if item.metadata.archetype is not None:
                patch["archetype"] = item.metadata.archetype
        if item.children is not None:
            patch["children"] = list(item.children)
            if list(item.children) != prev.children:
                # membership changed; enrichment has to run again
                patch["light_ids"] = None
        if item.services is not None:
            patch["services"] = list(item.services)
            patch["grouped_light_id"] = grouped_light_service(list(item.services))
        grouping = prev.model_copy(update=patch)
        groupings[item.id] = grouping
        stale = prev.light_ids is not None and grouping.light_ids is None
        if prev.projection() == grouping.projection() and not stale:
            return False
        self._publish([_change(f"{kind.value}.updated", item.id, kind.value)])
        return True

    async def _patch_scene(self, item: EventData) -> bool:
        prev = self._scenes.get(item.id)
        if prev is None:
            if item.group is None:
                logger.debug("ignoring scene %s without group reference", item.id)
                return False
            scene = Scene(
                id=item.id,
                name=(item.metadata.name if item.metadata else None) or "",
                group=item.group,
                status=(item.status.active if item.status else None) or "inactive",
            )
            self._scenes[item.id] = scene
            self._publish([_change("scene.added", item.id, "scene")])
            return True

        patch: dict[str, Any] = {}
        if item.metadata is not None and item.metadata.name is not None:
            patch["name"] = item.metadata.name
        if item.status is not None and item.status.active is not None:
            patch["status"] = item.status.active
        if item.group is not None:
            patch["group"] = item.group
        scene = prev.model_copy(update=patch)
        self._scenes[item.id] = scene
        if _scene_projection(prev) == _scene_projection(scene):
            return False
        self._publish([_change("scene.updated", item.id, "scene")])
        return True

    # Local writes

    async def apply_optimistic(self, grouped_light_id: str, **fields: Any) -> GroupedLightState:
        if not fields:
            raise ValueError("no fields to apply")
        unknown = set(fields) - set(_OVERLAY_FIELDS)
        if unknown:
            raise ValueError(f"not an overridable field: {sorted(unknown)}")
        overlay = self._overlay.setdefault(grouped_light_id, {})
        overlay.update(fields)
        self._publish([_change("grouped_light.updated", grouped_light_id, "grouped_light", source="local")])
        confirmed = self._grouped_lights.get(grouped_light_id)
        if confirmed is None:
            return GroupedLightState(id=grouped_light_id, **overlay)
        return confirmed.model_copy(update=overlay)

    def discard_optimistic(self, grouped_light_id: str, *fields: str) -> None:
        """Revert to the confirmed state, for `fields` only when given."""
        overlay = self._overlay.get(grouped_light_id)
        if not overlay:
            return
        if fields:
            self._settle_overlay(grouped_light_id, list(fields))
        else:
            del self._overlay[grouped_light_id]
        self._publish([_change("grouped_light.updated", grouped_light_id, "grouped_light", source="local")])

    async def mark_scene_active(self, scene_id: str) -> None:
        scene = self._scenes.get(scene_id)
        if scene is None:
            return
        changes: list[CacheChange] = []
        for other in list(self._scenes.values()):
            if other.id == scene_id:
                continue
            if other.group.rid == scene.group.rid and other.is_active:
                self._scenes[other.id] = other.model_copy(update={"status": "inactive"})
                changes.append(_change("scene.updated", other.id, "scene", source="local"))
        if scene.status != "active":
            self._scenes[scene_id] = scene.model_copy(update={"status": "active"})
            changes.append(_change("scene.updated", scene_id, "scene", source="local"))
        self._publish(changes)

    # Queries

    def _view(self, grouped_light_id: str) -> GroupedLightState | None:
        confirmed = self._grouped_lights.get(grouped_light_id)
        overlay = self._overlay.get(grouped_light_id)
        if not overlay:
            return confirmed
        if confirmed is None:
            return GroupedLightState(id=grouped_light_id, **overlay)
        return confirmed.model_copy(update=overlay)

    def rooms(self) -> list[Grouping]:
        return list(self._groupings[GroupingKind.ROOM].values())

    def zones(self) -> list[Grouping]:
        return list(self._groupings[GroupingKind.ZONE].values())

    def grouping(self, grouping_id: str) -> Grouping | None:
        for groupings in self._groupings.values():
            if grouping_id in groupings:
                return groupings[grouping_id]
        return None

    def grouped_lights(self) -> list[GroupedLightState]:
        ids = list(self._grouped_lights) + [rid for rid in self._overlay if rid not in self._grouped_lights]
        return [view for view in (self._view(rid) for rid in ids) if view is not None]

    def grouped_light(self, grouped_light_id: str) -> GroupedLightState | None:
        return self._view(grouped_light_id)

    def confirmed_grouped_light(self, grouped_light_id: str) -> GroupedLightState | None:
        return self._grouped_lights.get(grouped_light_id)

    def grouped_light_for(self, grouping_id: str) -> GroupedLightState | None:
        grouping = self.grouping(grouping_id)
        if grouping is None or grouping.grouped_light_id is None:
            return None
        return self._view(grouping.grouped_light_id)

    def scenes(self) -> list[Scene]:
        return list(self._scenes.values())

    def scene(self, scene_id: str) -> Scene | None:
        return self._scenes.get(scene_id)

    def scenes_for(self, grouping_id: str) -> list[Scene]:
        grouping = self.grouping(grouping_id)
        if grouping is None:
            return []
        return [
            s for s in self._scenes.values()
            if s.group.rid == grouping.id and s.group.rtype == grouping.kind.value
        ]

    def active_scene_for(self, grouping_id: str) -> Scene | None:
        for scene in self.scenes_for(grouping_id):
            if scene.is_active:
                return scene
        return None

    def lights_for(self, grouping_id: str) -> list[Light]:
        grouping = self.grouping(grouping_id)
        if grouping is None or not grouping.light_ids:
            return []
        return [self._lights[i] for i in grouping.light_ids if i in self._lights]

    def average_brightness(self, grouping_id: str) -> float | None:
        levels = [
            light.brightness for light in self.lights_for(grouping_id)
            if light.on and light.brightness is not None
        ]
        if levels:
            return sum(levels) / len(levels)
        state = self.grouped_light_for(grouping_id)
        if state is not None and state.on and state.brightness is not None:
            return state.brightness
        return None

    def representative_colors(self, grouping_id: str) -> list[color.RGB]:
        colors = color.light_colors(self.lights_for(grouping_id))
        if colors:
            return colors
        scene = self.active_scene_for(grouping_id)
        if scene is not None:
            return color.scene_colors(scene)
        return []

    def snapshot(self) -> dict[str, Any]:
        return {
            "rooms": [g.model_dump(mode="json") for g in self.rooms()],
            "zones": [g.model_dump(mode="json") for g in self.zones()],
            "groupedLights": [s.model_dump(mode="json") for s in self.grouped_lights()],
            "scenes": [s.model_dump(mode="json") for s in self.scenes()],
        }

    # Persistence

    async def save(self, store: Store) -> None:
        await store.save(ROOMS_KEY, _GROUPINGS, self.rooms())
        await store.save(ZONES_KEY, _GROUPINGS, self.zones())
        await store.save(GROUPED_LIGHTS_KEY, _GROUPED_LIGHTS, list(self._grouped_lights.values()))
        await store.save(SCENES_KEY, _SCENES, self.scenes())
        await store.save(LIGHTS_KEY, _LIGHTS, list(self._lights.values()))

    async def load(self, store: Store) -> None:
        rooms = await store.load(ROOMS_KEY, _GROUPINGS) or []
        zones = await store.load(ZONES_KEY, _GROUPINGS) or []
        grouped = await store.load(GROUPED_LIGHTS_KEY, _GROUPED_LIGHTS) or []
        scenes = await store.load(SCENES_KEY, _SCENES) or []
        lights = await store.load(LIGHTS_KEY, _LIGHTS) or []
        self._groupings[GroupingKind.ROOM] = {g.id: g for g in rooms}
        self._groupings[GroupingKind.ZONE] = {g.id: g for g in zones}
        self._grouped_lights = {s.id: s for s in grouped}
        self._overlay.clear()
        self._scenes = {s.id: s for s in scenes}
        self._lights = {light.id: light for light in lights}
        logger.info(
            "restored cache: %d rooms, %d zones, %d grouped lights, %d scenes",
            len(rooms), len(zones), len(grouped), len(scenes),
        )

    def clear(self) -> None:
        for groupings in self._groupings.values():
            groupings.clear()
        self._grouped_lights.clear()
        self._overlay.clear()
        self._scenes.clear()
        self._lights.clear()
