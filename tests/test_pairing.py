import json
from datetime import datetime, timezone

import httpx
import pytest

from hue_session.hue_client import BridgeApplicationError, HueHTTPError, LinkButtonNotPressed
from hue_session.models import BridgeCandidate
from hue_session.pairing import (
    BridgePairing,
    BridgeRejected,
    HostIdentifierProvider,
    StaticIdentifierProvider,
)
from hue_session.pair_tool import pair_until_deadline


CANDIDATE = BridgeCandidate(id="001788fffe123456", address="192.168.1.29")
PAIRED_AT = datetime(2026, 1, 27, 12, 0, tzinfo=timezone.utc)


def _pairing(handler, identifier: str | None = "4f1c2a9e-0000-4000-8000-000000000000") -> BridgePairing:
    return BridgePairing(
        app_id="hue_session",
        identifier_provider=StaticIdentifierProvider(identifier),
        transport=httpx.MockTransport(handler),
        clock=lambda: PAIRED_AT,
    )


@pytest.mark.asyncio
async def test_link_button_then_success_with_identical_request():
    bodies: list[dict] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/api"
        bodies.append(json.loads(request.content))
        if len(bodies) == 1:
            return httpx.Response(200, json=[{"error": {"type": 101, "address": "", "description": "link button not pressed"}}])
        return httpx.Response(200, json=[{"success": {"username": "new-app-key", "clientkey": "ABCDEF"}}])

    pairing = _pairing(handler)
    with pytest.raises(LinkButtonNotPressed):
        await pairing.register(CANDIDATE)
    connection = await pairing.register(CANDIDATE)

    assert bodies[0] == bodies[1] == {"devicetype": "hue_session#4f1c2a9e", "generateclientkey": True}
    assert connection.application_key == "new-app-key"
    assert connection.client_key == "ABCDEF"
    assert connection.bridge_id == CANDIDATE.id
    assert connection.address == CANDIDATE.address
    assert connection.paired_at == PAIRED_AT


@pytest.mark.asyncio
async def test_link_button_is_distinct_from_other_bridge_errors():
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"error": {"type": 7, "description": "invalid value"}}])

    with pytest.raises(BridgeRejected) as exc:
        await _pairing(handler).register(CANDIDATE)
    assert exc.value.error_type == 7
    assert not isinstance(exc.value, BridgeApplicationError)


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [[], {"success": {"username": "x"}}, [{"success": {}}], [{"weird": 1}]])
async def test_unexpected_shapes_are_rejected(body):
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    with pytest.raises(BridgeRejected):
        await _pairing(handler).register(CANDIDATE)


@pytest.mark.asyncio
async def test_non_2xx_is_http_error():
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="oops")

    with pytest.raises(HueHTTPError) as exc:
        await _pairing(handler).register(CANDIDATE)
    assert exc.value.status_code == 500


def test_devicetype_falls_back_to_unknown():
    pairing = _pairing(lambda request: httpx.Response(200), identifier=None)
    assert pairing.devicetype() == "hue_session#unknown"


def test_host_identifier_is_stable():
    provider = HostIdentifierProvider()
    assert provider.get_device_identifier() == provider.get_device_identifier()


@pytest.mark.asyncio
async def test_pair_until_deadline_retries_while_button_unpressed():
    calls = {"n": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(200, json=[{"error": {"type": 101, "description": "link button not pressed"}}])
        return httpx.Response(200, json=[{"success": {"username": "k"}}])

    waits: list[int] = []
    connection = await pair_until_deadline(
        _pairing(handler),
        CANDIDATE,
        timeout_seconds=5,
        interval_seconds=0.01,
        on_waiting=lambda attempt, remaining: waits.append(attempt),
    )
    assert connection is not None
    assert connection.application_key == "k"
    assert connection.client_key is None
    assert waits == [1, 2]
