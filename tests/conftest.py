from datetime import datetime, timezone

import pytest

from hue_session.config import AppConfig
from hue_session.models import BridgeConnection


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(
        port=8000,
        bridge_host=None,
        application_key=None,
        app_id="hue_session",
        db_path=":memory:",
        discovery_cache_seconds=900,
        mdns_enabled=False,
        mdns_timeout_seconds=10.0,
        mdns_debounce_seconds=1.0,
        rest_timeout_seconds=5.0,
        control_throttle_seconds=0.2,
        stream_retry_seconds=0,
        refresh_interval_seconds=0,
        refresh_debounce_seconds=0,
        demo_mode=False,
        log_level="DEBUG",
    )


@pytest.fixture
def connection() -> BridgeConnection:
    return BridgeConnection(
        bridge_id="001788fffe123456",
        address="192.168.1.29",
        application_key="app-key",
        client_key="client-key",
        paired_at=datetime(2026, 1, 27, 12, 0, tzinfo=timezone.utc),
    )
