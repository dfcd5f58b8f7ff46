from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import httpx

from hue_session.hue_client import (
    HueDecodeError,
    HueHTTPError,
    HueTransportError,
    LinkButtonNotPressed,
)
from hue_session.models import BridgeCandidate, BridgeConnection
from hue_session.transport import make_client


logger = logging.getLogger(__name__)

LINK_BUTTON_NOT_PRESSED = 101


class BridgeRejected(Exception):
    def __init__(self, description: str, *, error_type: int | None = None) -> None:
        super().__init__(description)
        self.description = description
        self.error_type = error_type


class DeviceIdentifierProvider(Protocol):
    def get_device_identifier(self) -> str | None: ...


class StaticIdentifierProvider:
    def __init__(self, identifier: str | None) -> None:
        self._identifier = identifier

    def get_device_identifier(self) -> str | None:
        return self._identifier


class HostIdentifierProvider:
    """Stable per-host id derived from the MAC address."""

    def get_device_identifier(self) -> str | None:
        node = uuid.getnode()
        # getnode() sets the multicast bit when it had to fall back to a random value.
        if node >> 40 & 0x01:
            return None
        return str(uuid.uuid5(uuid.NAMESPACE_OID, f"{node:012x}"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BridgePairing:
    def __init__(
        self,
        *,
        app_id: str = "hue_session",
        identifier_provider: DeviceIdentifierProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._app_id = app_id
        self._identifiers = identifier_provider or HostIdentifierProvider()
        self._transport = transport
        self._timeout = timeout
        self._clock = clock

    def devicetype(self) -> str:
        identifier = self._identifiers.get_device_identifier()
        suffix = identifier[:8] if identifier else "unknown"
        return f"{self._app_id}#{suffix}"

    async def register(self, candidate: BridgeCandidate) -> BridgeConnection:
        """
        One registration attempt against the bridge's /api endpoint.

        Raises LinkButtonNotPressed when the bridge wants its button pressed;
        the caller may retry the identical request.
        """
        payload = {"devicetype": self.devicetype(), "generateclientkey": True}
        client = make_client(candidate.base_url, timeout=self._timeout, transport=self._transport)
        try:
            resp = await client.post("/api", json=payload)
        except httpx.TransportError as exc:
            raise HueTransportError(str(exc) or type(exc).__name__) from exc
        finally:
            await client.aclose()

        if not 200 <= resp.status_code < 300:
            raise HueHTTPError(status_code=resp.status_code, body=resp.text)
        try:
            body: Any = resp.json()
        except ValueError as exc:
            logger.warning("undecodable pairing response from %s: %s", candidate.address, resp.text)
            raise HueDecodeError("pairing response is not JSON", raw_body=resp.text) from exc

        first = body[0] if isinstance(body, list) and body else None
        if isinstance(first, dict) and isinstance(first.get("error"), dict):
            err = first["error"]
            description = str(err.get("description") or "unknown error")
            try:
                error_type = int(err.get("type", 0))
            except (TypeError, ValueError):
                error_type = None
            if error_type == LINK_BUTTON_NOT_PRESSED:
                raise LinkButtonNotPressed([description])
            raise BridgeRejected(f"Bridge error ({error_type}): {description}", error_type=error_type)

        if isinstance(first, dict) and isinstance(first.get("success"), dict):
            success = first["success"]
            username = success.get("username")
            if isinstance(username, str) and username:
                client_key = success.get("clientkey")
                logger.info("paired with bridge %s at %s", candidate.id, candidate.address)
                return BridgeConnection(
                    bridge_id=candidate.id,
                    address=candidate.address,
                    port=candidate.port,
                    application_key=username,
                    client_key=client_key if isinstance(client_key, str) else None,
                    paired_at=self._clock(),
                )

        logger.warning("unexpected pairing response from %s: %s", candidate.address, resp.text)
        raise BridgeRejected("Unexpected pairing response from bridge")
