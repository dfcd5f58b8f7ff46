import asyncio
import dataclasses
import json

import httpx
import pytest

from hue_session.hue_client import HueHTTPError
from hue_session.models import BridgeConnection, GroupingKind, StreamState, XYColor
from hue_session.session import BridgeSession, NotConnectedError
from hue_session.store import Store


ROOM = {
    "id": "g1",
    "type": "room",
    "metadata": {"name": "Den", "archetype": "living_room"},
    "children": [{"rid": "d1", "rtype": "device"}],
    "services": [{"rid": "gl1", "rtype": "grouped_light"}],
}
GROUPED_LIGHT = {"id": "gl1", "on": {"on": True}, "dimming": {"brightness": 80.0}}
SCENE = {
    "id": "s1",
    "metadata": {"name": "Relax"},
    "group": {"rid": "g1", "rtype": "room"},
    "actions": [
        {"target": {"rid": "l1", "rtype": "light"}, "action": {"on": {"on": True}, "dimming": {"brightness": 40.0}}}
    ],
    "status": {"active": "inactive"},
}
DEVICE = {"id": "d1", "services": [{"rid": "l1", "rtype": "light"}, {"rid": "l2", "rtype": "light"}]}


def _light(lid: str, brightness: float) -> dict:
    return {"id": lid, "metadata": {"name": lid}, "on": {"on": True}, "dimming": {"brightness": brightness}}


class FakeBridge:
    def __init__(self) -> None:
        self.puts: list[tuple[str, dict]] = []
        self.gets: list[str] = []
        self.fail_puts = False
        self.room = dict(ROOM)
        self.room_missing = False
        self.grouped_light = dict(GROUPED_LIGHT)

    def _ok(self, data: list) -> httpx.Response:
        return httpx.Response(200, json={"errors": [], "data": data})

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "PUT":
            if self.fail_puts:
                return httpx.Response(503, text="busy")
            self.puts.append((path, json.loads(request.content)))
            return self._ok([{"rid": path.rsplit("/", 1)[-1], "rtype": "x"}])
        self.gets.append(path)
        if path == "/clip/v2/resource/room":
            return self._ok([self.room])
        if path == "/clip/v2/resource/room/g1" and not self.room_missing:
            return self._ok([self.room])
        if path == "/clip/v2/resource/zone":
            return self._ok([])
        if path in ("/clip/v2/resource/grouped_light", "/clip/v2/resource/grouped_light/gl1"):
            return self._ok([self.grouped_light])
        if path == "/clip/v2/resource/scene":
            return self._ok([SCENE])
        if path == "/clip/v2/resource/device/d1":
            return self._ok([DEVICE])
        if path == "/clip/v2/resource/light/l1":
            return self._ok([_light("l1", 30.0)])
        if path == "/clip/v2/resource/light/l2":
            return self._ok([_light("l2", 70.0)])
        if path == "/clip/v2/resource":
            return self._ok([])
        return httpx.Response(404, json={"errors": [{"description": "not found"}]})


async def _session(config, connection: BridgeConnection, bridge: FakeBridge) -> tuple[BridgeSession, Store]:
    store = Store(":memory:")
    await store.connect()
    session = BridgeSession(store, config=config, transport=httpx.MockTransport(bridge.handler))
    await session.connect(connection)
    return session, store


async def _teardown(session: BridgeSession, store: Store) -> None:
    await session.close()
    await store.close()


@pytest.mark.asyncio
async def test_controls_require_a_connection(config):
    store = Store(":memory:")
    await store.connect()
    session = BridgeSession(store, config=config)
    try:
        assert await session.load() is None
        with pytest.raises(NotConnectedError):
            await session.set_power("gl1", True)
        with pytest.raises(NotConnectedError):
            await session.validate()
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_load_falls_back_to_environment_connection(config):
    env_config = dataclasses.replace(config, bridge_host="192.168.1.50", application_key="env-key")
    store = Store(":memory:")
    await store.connect()
    session = BridgeSession(store, config=env_config)
    try:
        connection = await session.load()
        assert connection is not None
        assert connection.bridge_id == "manual_192_168_1_50"
        assert connection.application_key == "env-key"
        assert (await store.load_connection()).address == "192.168.1.50"
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_refresh_all_populates_and_persists_cache(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_all()
        assert [r.name for r in session.cache.rooms()] == ["Den"]
        assert session.cache.grouped_light_for("g1").brightness == 80.0
        assert [s.id for s in session.cache.scenes_for("g1")] == ["s1"]

        reloaded = BridgeSession(store, config=config)
        assert (await reloaded.load()) == connection
        assert [r.id for r in reloaded.cache.rooms()] == ["g1"]
        await reloaded.close()
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_enrich_resolves_lights_through_devices(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_rooms()
        lights = await session.enrich("g1")
        assert sorted(light.id for light in lights) == ["l1", "l2"]
        assert session.cache.grouping("g1").light_ids == ["l1", "l2"]
        assert session.cache.average_brightness("g1") == 50.0

        with pytest.raises(KeyError):
            await session.enrich("missing")
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_brightness_burst_is_throttled_and_last_value_wins(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_grouped_lights()
        for level in (10, 20, 30, 40, 150):
            view = await session.set_brightness("gl1", level)
        assert view.brightness == 100.0
        assert bridge.puts == [("/clip/v2/resource/grouped_light/gl1", {"dimming": {"brightness": 10.0}})]

        await asyncio.sleep(config.control_throttle_seconds + 0.15)
        assert bridge.puts[-1] == ("/clip/v2/resource/grouped_light/gl1", {"dimming": {"brightness": 100.0}})
        assert len(bridge.puts) == 2
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_power_is_never_throttled(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_grouped_lights()
        await session.set_power("gl1", False)
        await session.set_power("gl1", True)
        await session.set_power("gl1", False)
        assert [body for _, body in bridge.puts] == [
            {"on": {"on": False}},
            {"on": {"on": True}},
            {"on": {"on": False}},
        ]
        assert session.cache.grouped_light("gl1").on is False
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_failed_power_write_reverts_optimistic_state(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_grouped_lights()
        bridge.fail_puts = True
        with pytest.raises(HueHTTPError):
            await session.set_power("gl1", False)
        assert session.cache.grouped_light("gl1").on is True
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_brightness_deltas_are_summed_inside_window(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_grouped_lights()
        await session.adjust_brightness("gl1", 5)
        await session.adjust_brightness("gl1", 5)
        view = await session.adjust_brightness("gl1", -20)
        assert view.brightness == 70.0

        await asyncio.sleep(config.control_throttle_seconds + 0.15)
        assert [body for _, body in bridge.puts] == [
            {"dimming_delta": {"action": "up", "brightness_delta": 5}},
            {"dimming_delta": {"action": "down", "brightness_delta": 15.0}},
        ]
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_color_writes_replace_each_other_in_one_put(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_grouped_lights()
        await session.set_color_xy("gl1", XYColor(x=0.3, y=0.3))
        view = await session.set_color_temperature("gl1", 366)
        assert view.color_temp_mirek == 366
        assert len(bridge.puts) == 1

        await asyncio.sleep(config.control_throttle_seconds + 0.15)
        assert bridge.puts[-1][1] == {"color_temperature": {"mirek": 366}}
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_activate_scene_refreshes_when_stream_is_down(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_all()
        bridge.grouped_light = {"id": "gl1", "on": {"on": True}, "dimming": {"brightness": 40.0}}
        gets_before = bridge.gets.count("/clip/v2/resource/grouped_light")

        await session.activate_scene("s1")

        assert bridge.puts == [("/clip/v2/resource/scene/s1", {"recall": {"action": "active"}})]
        assert session.cache.active_scene_for("g1").id == "s1"
        assert bridge.gets.count("/clip/v2/resource/grouped_light") == gets_before + 1
        assert session.cache.grouped_light("gl1").brightness == 40.0
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_turn_off_all_hits_every_grouped_light(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_grouped_lights()
        assert await session.turn_off_all() == 1
        assert bridge.puts == [("/clip/v2/resource/grouped_light/gl1", {"on": {"on": False}})]
        assert session.cache.grouped_light("gl1").on is False
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_validate_updates_last_known_good(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        result = await session.validate()
        assert result.ok
        assert session.describe()["lastKnownGood"] is True
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_connecting_a_different_bridge_clears_cache(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_rooms()
        await session.connect(connection.model_copy(update={"address": "192.168.1.30"}))
        assert [r.id for r in session.cache.rooms()] == ["g1"]

        await session.connect(connection.model_copy(update={"bridge_id": "001788fffeabcdef"}))
        assert session.cache.rooms() == []
        assert (await store.load_connection()).bridge_id == "001788fffeabcdef"
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_disconnect_forgets_connection(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_rooms()
        await session.disconnect()
        assert not session.is_connected
        assert session.stream_status.state is StreamState.IDLE
        assert await store.load_connection() is None
        assert session.cache.rooms() == []
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_mixed_commands_share_one_put_per_window(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    path = "/clip/v2/resource/grouped_light/gl1"
    try:
        await session.refresh_grouped_lights()
        await session.set_brightness("gl1", 40)
        await session.adjust_brightness("gl1", 10)
        view = await session.set_color_xy("gl1", XYColor(x=0.3, y=0.3))
        assert view.brightness == 50.0
        assert view.color_xy == XYColor(x=0.3, y=0.3)
        assert bridge.puts == [(path, {"dimming": {"brightness": 40.0}})]

        await session.set_brightness("gl2", 10)
        assert bridge.puts[-1] == ("/clip/v2/resource/grouped_light/gl2", {"dimming": {"brightness": 10.0}})

        await asyncio.sleep(config.control_throttle_seconds + 0.15)
        gl1_puts = [body for p, body in bridge.puts if p == path]
        assert gl1_puts == [
            {"dimming": {"brightness": 40.0}},
            {"dimming_delta": {"action": "up", "brightness_delta": 10.0}, "color": {"xy": {"x": 0.3, "y": 0.3}}},
        ]
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_failed_brightness_write_reverts_optimistic_state(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_grouped_lights()
        bridge.fail_puts = True
        with pytest.raises(HueHTTPError):
            await session.set_brightness("gl1", 10)
        assert session.cache.grouped_light("gl1").brightness == 80.0
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_failed_trailing_write_reverts_only_its_fields(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_grouped_lights()
        await session.set_brightness("gl1", 10)
        bridge.fail_puts = True
        view = await session.set_color_temperature("gl1", 300)
        assert view.color_temp_mirek == 300

        await asyncio.sleep(config.control_throttle_seconds + 0.15)
        state = session.cache.grouped_light("gl1")
        assert state.color_temp_mirek is None
        assert state.brightness == 10.0
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_turn_off_all_failure_reverts_and_raises(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_grouped_lights()
        bridge.fail_puts = True
        with pytest.raises(HueHTTPError):
            await session.turn_off_all()
        assert session.cache.grouped_light("gl1").on is True
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_power_and_brightness_go_out_together(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    path = "/clip/v2/resource/grouped_light/gl1"
    try:
        await session.refresh_grouped_lights()
        await session.set_brightness("gl1", 10)
        await session.set_brightness("gl1", 20)
        view = await session.set_power_and_brightness("gl1", False, 60)
        assert view.on is False
        assert view.brightness == 60.0

        await asyncio.sleep(config.control_throttle_seconds + 0.15)
        assert bridge.puts == [
            (path, {"dimming": {"brightness": 10.0}}),
            (path, {"on": {"on": False}, "dimming": {"brightness": 60.0}}),
        ]
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_grouping_refresh_is_debounced_unless_forced(config, connection):
    bridge = FakeBridge()
    debounced = dataclasses.replace(config, refresh_debounce_seconds=30)
    session, store = await _session(debounced, connection, bridge)
    try:
        assert await session.refresh_rooms() is True
        assert await session.refresh_rooms() is False
        assert await session.refresh_rooms(force=True) is True
        assert bridge.gets.count("/clip/v2/resource/room") == 2
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_overlapping_grouping_refresh_is_skipped(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        results = await asyncio.gather(session.refresh_zones(), session.refresh_zones())
        assert sorted(results) == [False, True]
        assert bridge.gets.count("/clip/v2/resource/zone") == 1
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_refresh_room_updates_one_grouping(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_all()
        bridge.room = {**ROOM, "metadata": {"name": "Study", "archetype": "office"}}
        bridge.grouped_light = {"id": "gl1", "on": {"on": False}, "dimming": {"brightness": 25.0}}

        room = await session.refresh_room("g1")
        assert room.name == "Study"
        assert room.kind is GroupingKind.ROOM
        assert session.cache.grouped_light_for("g1").brightness == 25.0
        assert "/clip/v2/resource/room/g1" in bridge.gets
        assert "/clip/v2/resource/grouped_light/gl1" in bridge.gets
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_refresh_room_drops_a_room_the_bridge_no_longer_has(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_rooms()
        bridge.room_missing = True
        assert await session.refresh_room("g1") is None
        assert session.cache.rooms() == []
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_periodic_refresh_runs_until_stopped(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        assert session.start_periodic_refresh(0.05) is True
        assert session.start_periodic_refresh(0.05) is False
        await asyncio.sleep(0.2)
        await session.stop_periodic_refresh()

        count = bridge.gets.count("/clip/v2/resource/grouped_light")
        assert count >= 2
        assert session.describe()["lastRefresh"] is not None
        await asyncio.sleep(0.1)
        assert bridge.gets.count("/clip/v2/resource/grouped_light") == count

        assert session.start_periodic_refresh() is False
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_demo_mode_serves_a_built_in_house_offline(config):
    bridge = FakeBridge()
    store = Store(":memory:")
    await store.connect()
    session = BridgeSession(store, config=config, transport=httpx.MockTransport(bridge.handler))
    try:
        assert await session.load() is None
        await session.enable_demo_mode()
        assert [r.name for r in session.cache.rooms()] == ["Living Room", "Bedroom", "Kitchen"]

        view = await session.set_brightness("demo-grouped-light-1", 30)
        assert view.brightness == 30.0
        assert await session.turn_off_all() == 4
        assert (await session.validate()).ok
        assert session.describe()["demoMode"] is True
        assert bridge.puts == []
        assert bridge.gets == []

        reloaded = BridgeSession(store, config=config)
        await reloaded.load()
        assert reloaded.demo_mode
        assert [z.name for z in reloaded.cache.zones()] == ["Downstairs"]
        await reloaded.close()

        await session.disable_demo_mode()
        assert session.cache.rooms() == []
        assert await store.load_demo_mode() is False
    finally:
        await _teardown(session, store)


@pytest.mark.asyncio
async def test_demo_mode_keeps_cached_bridge_data(config, connection):
    bridge = FakeBridge()
    session, store = await _session(config, connection, bridge)
    try:
        await session.refresh_all()
        await session.enable_demo_mode()
        assert [r.id for r in session.cache.rooms()] == ["g1"]

        await session.set_power("gl1", False)
        assert session.cache.grouped_light("gl1").on is False
        assert bridge.puts == []

        await session.disable_demo_mode()
        assert session.cache.grouped_light("gl1").on is True
    finally:
        await _teardown(session, store)
