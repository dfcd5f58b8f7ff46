from __future__ import annotations

import httpx


APPLICATION_KEY_HEADER = "hue-application-key"

# Bridges hold the SSE connection open indefinitely; only connecting is bounded.
STREAM_TIMEOUT = httpx.Timeout(None, connect=5.0)


def bridge_base_url(address: str, port: int = 443) -> str:
    if port == 443:
        return f"https://{address}"
    return f"https://{address}:{port}"


def make_client(
    base_url: str,
    *,
    application_key: str | None = None,
    timeout: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """
    Build a client for talking to a bridge on the LAN.

    Bridges present self-signed certificates, so verification is disabled.
    """
    headers = {}
    if application_key:
        headers[APPLICATION_KEY_HEADER] = application_key
    return httpx.AsyncClient(
        base_url=base_url,
        verify=False,
        timeout=httpx.Timeout(timeout, connect=min(timeout, 3.0)),
        headers=headers,
        transport=transport,
    )
