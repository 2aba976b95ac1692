"""Runtime settings, configurable through ``QC_*`` environment variables."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="QC_", env_file=".env", extra="ignore")

    # Server
    host: str = "127.0.0.1"
    port: int = 8003
    log_level: str = "INFO"
    log_json: bool = False

    # Datastore
    # JSON file with users, machines, sessions, tests and parts loaded at startup
    seed_file: Path | None = None

    # Test deadline monitoring
    default_expected_duration_minutes: float = 30
    overdue_recheck_seconds: float = 5 * 60
    overdue_critical_minutes: int = 60

    # Part (teflon) expiry scanning
    expiry_scan_interval_seconds: float = 6 * 60 * 60
    expiry_window_days: int = 7
    expiry_renotify_hours: float = 24

    # Notification retention
    overdue_retention_hours: float = 24
    part_expiry_retention_hours: float = 7 * 24
    operation_alert_retention_hours: float = 12
    manual_retention_hours: float = 24
    prune_interval_seconds: float = 10 * 60

    # Live feed
    snapshot_interval_seconds: float = 5
    heartbeat_interval_seconds: float = 30
    online_window_seconds: float = 5 * 60
    stream_queue_size: int = 100

    # Web Push (VAPID)
    vapid_public_key: str | None = None
    vapid_private_key: str | None = None
    vapid_email: str = "admin@qc-monitor.local"
    push_ttl_seconds: int = 24 * 60 * 60


@lru_cache
def get_settings() -> Settings:
    return Settings()
