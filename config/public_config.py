from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_app_root() -> Path:
    """
    Default application root.

      - Docker: /app
      - Local/dev: current working directory
    """
    env = os.environ.get("APP_ROOT")
    if env:
        return Path(env).resolve()
    if Path("/app").exists():
        return Path("/app").resolve()
    return Path.cwd().resolve()


class PublicConfig(BaseSettings):
    """
    Non-sensitive config with safe defaults.

    Loaded from (in order):
      - process env
      - optional `.env` file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- core paths ---
    app_root: Path = Field(default_factory=_default_app_root, alias="APP_ROOT")
    # Runtime-only state directory (queue DB + lock file).
    state_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "_state").resolve(), alias="WORKSHOP_STATE_DIR"
    )
    log_dir: Path = Field(
        default_factory=lambda: (Path.cwd() / "logs").resolve(), alias="WORKSHOP_LOG_DIR"
    )
    queue_db_name: str = Field(default="queue.db", alias="QUEUE_DB_NAME")

    # --- query cache ---
    # Live queue displays tolerate a few seconds of staleness; reads beyond that go to the store.
    queue_cache_ttl_sec: float = Field(default=5.0, alias="QUEUE_CACHE_TTL_SEC")
    # Snapshot reads may serve an expired record for this long while the store is unreachable.
    queue_cache_stale_grace_sec: float = Field(default=30.0, alias="QUEUE_CACHE_STALE_GRACE_SEC")
    queue_cache_max_entries: int = Field(default=100, alias="QUEUE_CACHE_MAX_ENTRIES")

    # --- optimistic transactions ---
    queue_retry_max_attempts: int = Field(default=3, alias="QUEUE_RETRY_MAX_ATTEMPTS")
    queue_retry_base_ms: int = Field(default=100, alias="QUEUE_RETRY_BASE_MS")
    queue_retry_cap_ms: int = Field(default=2000, alias="QUEUE_RETRY_CAP_MS")
    queue_retry_jitter: bool = Field(default=True, alias="QUEUE_RETRY_JITTER")

    # --- document store ---
    queue_store_lock_timeout_sec: float = Field(default=10.0, alias="QUEUE_STORE_LOCK_TIMEOUT_SEC")

    # --- queue business rules ---
    queue_default_location: str = Field(default="main", alias="QUEUE_DEFAULT_LOCATION")
    queue_entry_ttl_min: int = Field(default=15, alias="QUEUE_ENTRY_TTL_MIN")
    queue_avg_service_min: int = Field(default=15, alias="QUEUE_AVG_SERVICE_MIN")
    # Day partitions for position counters are cut in this timezone.
    queue_timezone: str = Field(default="UTC", alias="QUEUE_TIMEZONE")

    # --- expiry sweep ---
    queue_expire_enabled: bool = Field(default=True, alias="QUEUE_EXPIRE_ENABLED")
    queue_expire_max_age_min: int = Field(default=240, alias="QUEUE_EXPIRE_MAX_AGE_MIN")
    queue_expire_interval_sec: float = Field(default=60.0, alias="QUEUE_EXPIRE_INTERVAL_SEC")
    queue_expire_page_size: int = Field(default=200, alias="QUEUE_EXPIRE_PAGE_SIZE")
    # Each sweep tick also opens or closes locations according to their weekly hours.
    queue_hours_sync_enabled: bool = Field(default=True, alias="QUEUE_HOURS_SYNC_ENABLED")

    # --- update distribution ---
    queue_poll_interval_sec: float = Field(default=30.0, alias="QUEUE_POLL_INTERVAL_SEC")
    # Push delivery costs a live listener per screen; off unless explicitly enabled.
    queue_realtime_enabled: bool = Field(default=False, alias="QUEUE_REALTIME_ENABLED")

    # --- web server ---
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")
    cors_origins: str = Field(default="", alias="CORS_ORIGINS")

    # --- logging ---
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=3, alias="LOG_BACKUP_COUNT")

    def cors_origin_list(self) -> list[str]:
        raw = str(self.cors_origins or "")
        return [p.strip() for p in raw.replace(";", ",").split(",") if p.strip()]

    def queue_db_path(self) -> Path:
        return Path(self.state_dir) / str(self.queue_db_name or "queue.db")
