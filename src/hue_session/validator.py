from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from hue_session.hue_client import (
    RESOURCE_ROOT,
    BridgeClient,
    HueDecodeError,
    HueHTTPError,
    HueTransportError,
)
from hue_session.models import BridgeConnection
from hue_session.resources import ResourceEnvelope


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: str | None = None  # network | http | bridge_error | decode
    message: str | None = None
    status_code: int | None = None


class ConnectionValidator:
    """
    Liveness check for a stored connection.

    Uses its own short-lived client per call, so concurrent checks share
    nothing but `last_known_good`.
    """

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None, timeout: float = 10.0) -> None:
        self._transport = transport
        self._timeout = timeout
        self.last_known_good: bool | None = None

    async def validate(self, connection: BridgeConnection) -> ValidationResult:
        client = BridgeClient.for_connection(connection, transport=self._transport, timeout=self._timeout)
        try:
            envelope = await client.request("GET", RESOURCE_ROOT, model=ResourceEnvelope[dict])
        except HueTransportError as exc:
            result = ValidationResult(ok=False, reason="network", message=str(exc))
        except HueHTTPError as exc:
            result = ValidationResult(
                ok=False, reason="http", message=f"HTTP {exc.status_code}", status_code=exc.status_code
            )
        except HueDecodeError as exc:
            result = ValidationResult(ok=False, reason="decode", message=str(exc))
        else:
            if envelope.errors:
                result = ValidationResult(
                    ok=False, reason="bridge_error", message="; ".join(envelope.error_descriptions())
                )
            else:
                result = ValidationResult(ok=True)
        finally:
            await client.close()

        self.last_known_good = result.ok
        if not result.ok:
            logger.warning("bridge %s failed validation: %s (%s)", connection.bridge_id, result.reason, result.message)
        return result
