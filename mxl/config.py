"""
MxL Configuration
Server settings read from environment variables.

Empty DATABASE_URL selects the in-memory backends (local development and
tests). Client-side settings live in mxl.client.settings.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Server-side pipeline settings."""

    database_url: str = ""
    api_key_header: str = "x-api-key"
    bootstrap_api_key: Optional[str] = None

    # Durable log
    log_partitions: int = Field(default=8, ge=1, le=256)
    max_message_bytes: int = Field(default=1024 * 1024, gt=0)
    consumer_poll_interval_seconds: float = Field(default=1.0, gt=0)
    consumer_poll_batch: int = Field(default=100, ge=1)

    # Storage lifecycle
    event_ttl_days: int = Field(default=90, ge=1)
    session_retention_days: int = Field(default=90, ge=1)
    archive_after_days: int = Field(default=90, ge=1)
    enable_archiving: bool = False
    archive_dir: str = "./archive"
    archive_batch_size: int = Field(default=5000, ge=1)
    retention_interval_hours: float = Field(default=24.0, gt=0)

    # Fast cache
    cache_event_ttl_seconds: int = Field(default=86400, ge=1)
    cache_session_max_events: int = Field(default=1000, ge=1)
    realtime_metric_ttl_seconds: int = Field(default=3600, ge=1)

    # Enrichment
    geoip_url: str = ""
    geoip_timeout_seconds: float = Field(default=2.0, gt=0)

    log_level: str = "INFO"

    @field_validator("api_key_header")
    @classmethod
    def _lower_header(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def use_postgres(self) -> bool:
        return bool(self.database_url)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment."""
        return cls(
            database_url=os.getenv("DATABASE_URL", ""),
            api_key_header=os.getenv("API_KEY_HEADER", "x-api-key"),
            bootstrap_api_key=os.getenv("BOOTSTRAP_API_KEY") or None,
            log_partitions=int(os.getenv("LOG_PARTITIONS", "8")),
            max_message_bytes=int(os.getenv("MAX_MESSAGE_BYTES", str(1024 * 1024))),
            consumer_poll_interval_seconds=float(os.getenv("CONSUMER_POLL_INTERVAL_SECONDS", "1")),
            event_ttl_days=int(os.getenv("EVENT_TTL_DAYS", "90")),
            session_retention_days=int(os.getenv("SESSION_RETENTION_DAYS", "90")),
            archive_after_days=int(os.getenv("ARCHIVE_AFTER_DAYS", "90")),
            enable_archiving=_env_bool("ENABLE_ARCHIVING", False),
            archive_dir=os.getenv("ARCHIVE_DIR", "./archive"),
            retention_interval_hours=float(os.getenv("RETENTION_INTERVAL_HOURS", "24")),
            cache_event_ttl_seconds=int(os.getenv("CACHE_EVENT_TTL_SECONDS", "86400")),
            cache_session_max_events=int(os.getenv("CACHE_SESSION_MAX_EVENTS", "1000")),
            realtime_metric_ttl_seconds=int(os.getenv("REALTIME_METRIC_TTL_SECONDS", "3600")),
            geoip_url=os.getenv("GEOIP_URL", ""),
            geoip_timeout_seconds=float(os.getenv("GEOIP_TIMEOUT_SECONDS", "2")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
