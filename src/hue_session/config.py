from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import os


def _env_bool(value: str | None, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AppConfig:
    port: int
    bridge_host: Optional[str]
    application_key: Optional[str]
    app_id: str
    db_path: Optional[str]
    discovery_cache_seconds: int
    mdns_enabled: bool
    mdns_timeout_seconds: float
    mdns_debounce_seconds: float
    rest_timeout_seconds: float
    control_throttle_seconds: float
    stream_retry_seconds: float
    refresh_interval_seconds: float
    refresh_debounce_seconds: float
    demo_mode: bool
    log_level: str

    @staticmethod
    def from_env() -> "AppConfig":
        return AppConfig(
            port=int(os.getenv("PORT", "8000")),
            bridge_host=os.getenv("HUE_BRIDGE_HOST"),
            application_key=os.getenv("HUE_APPLICATION_KEY"),
            app_id=os.getenv("HUE_APP_ID", "hue_session"),
            db_path=os.getenv("DB_PATH"),
            discovery_cache_seconds=int(os.getenv("DISCOVERY_CACHE_SECONDS", "900")),
            mdns_enabled=_env_bool(os.getenv("MDNS_ENABLED")),
            mdns_timeout_seconds=float(os.getenv("MDNS_TIMEOUT_SECONDS", "10")),
            mdns_debounce_seconds=float(os.getenv("MDNS_DEBOUNCE_SECONDS", "1")),
            rest_timeout_seconds=float(os.getenv("REST_TIMEOUT_SECONDS", "10")),
            control_throttle_seconds=float(os.getenv("CONTROL_THROTTLE_SECONDS", "1")),
            stream_retry_seconds=float(os.getenv("STREAM_RETRY_SECONDS", "30")),
            refresh_interval_seconds=float(os.getenv("REFRESH_INTERVAL_SECONDS", "60")),
            refresh_debounce_seconds=float(os.getenv("REFRESH_DEBOUNCE_SECONDS", "30")),
            demo_mode=_env_bool(os.getenv("DEMO_MODE")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
