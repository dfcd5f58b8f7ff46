import pytest

from hue_session.event_hub import EventHub
from hue_session.models import CacheChange


def _change(kind: str, rid: str = "g1") -> CacheChange:
    return CacheChange.now(kind, rid, kind.split(".")[0])


@pytest.mark.asyncio
async def test_lagging_subscriber_loses_oldest_changes():
    hub = EventHub(max_queue_size=2)
    with hub.subscribe() as sub:
        hub.publish([_change("room.added", "a"), _change("room.updated", "b"), _change("room.removed", "c")])
        assert sub.dropped == 1
        assert [c.resource.rid for c in sub.pending()] == ["b", "c"]


@pytest.mark.asyncio
async def test_next_times_out_with_none():
    hub = EventHub()
    with hub.subscribe() as sub:
        assert await sub.next(timeout=0.01) is None
        hub.publish([_change("scene.updated", "s1")])
        change = await sub.next(timeout=1.0)
        assert change.type == "scene.updated"
        assert change.source == "bridge"


@pytest.mark.asyncio
async def test_rtype_filter_and_unsubscribe():
    hub = EventHub()
    scenes = hub.subscribe(rtypes=["scene"])
    everything = hub.subscribe()
    try:
        hub.publish([_change("room.updated"), _change("scene.added", "s1")])
        assert [c.type for c in scenes.pending()] == ["scene.added"]
        assert [c.type for c in everything.pending()] == ["room.updated", "scene.added"]
    finally:
        scenes.close()
        everything.close()

    assert hub.subscriber_count == 0
    hub.publish([_change("room.updated")])
    assert everything.pending() == []


def test_change_serializes_flat_resource_reference():
    change = CacheChange.now("grouped_light.updated", "gl1", "grouped_light", source="local")
    payload = change.model_dump(mode="json")
    assert payload["resource"] == {"rid": "gl1", "rtype": "grouped_light"}
    assert payload["source"] == "local"
    assert payload["ts"].endswith("Z")
