from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings

from .constants import DEFAULT_RQ_QUEUE_NAME

_DEV_DEFAULT_REDIS_URL = "redis://127.0.0.1:6379/0"
_logger = logging.getLogger(__name__)


def default_data_root() -> Path:
    """Return runtime data root, preferring /data with local fallback."""
    configured = os.getenv("BOOKING_SYNC_DATA_ROOT")
    if configured:
        return Path(configured)

    data_root = Path("/data")
    if data_root.exists() and os.access(data_root, os.W_OK):
        return data_root
    return Path("data")


def _default_metrics_snapshot_path() -> Path:
    return default_data_root() / "metrics.snap"


def _normalize_optional_env(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


class AppSettings(BaseSettings):
    """Runtime settings for the sync service, API and worker."""

    env: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        validation_alias=AliasChoices("BOOKING_SYNC_ENV"),
    )
    data_root: Path = default_data_root()
    db_path: Path = default_data_root() / "db" / "booking_sync.db"
    metrics_snapshot_path: Path = Field(
        default_factory=_default_metrics_snapshot_path,
        validation_alias=AliasChoices(
            "BOOKING_SYNC_METRICS_SNAPSHOT_PATH",
            "PROM_SNAPSHOT_PATH",
        ),
    )
    sqlite_busy_timeout_ms: int = Field(
        default=30000,
        ge=0,
        validation_alias=AliasChoices(
            "BOOKING_SYNC_SQLITE_BUSY_TIMEOUT_MS",
            "SQLITE_BUSY_TIMEOUT_MS",
        ),
    )
    redis_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("BOOKING_SYNC_REDIS_URL", "REDIS_URL"),
    )
    rq_queue_name: str = Field(
        default=DEFAULT_RQ_QUEUE_NAME,
        validation_alias=AliasChoices("BOOKING_SYNC_RQ_QUEUE_NAME", "RQ_QUEUE_NAME"),
    )
    rq_worker_burst: bool = Field(
        default=False,
        validation_alias=AliasChoices("BOOKING_SYNC_RQ_WORKER_BURST", "RQ_WORKER_BURST"),
    )
    rq_job_timeout_seconds: int = Field(
        default=300,
        ge=1,
        validation_alias=AliasChoices(
            "BOOKING_SYNC_RQ_JOB_TIMEOUT_SECONDS",
            "RQ_JOB_TIMEOUT_SECONDS",
        ),
    )

    feed_fetch_timeout_seconds: float = Field(
        default=20.0,
        gt=0,
        validation_alias=AliasChoices("BOOKING_SYNC_FEED_FETCH_TIMEOUT_SECONDS"),
    )
    feed_fetch_max_bytes: int = Field(
        default=5 * 1024 * 1024,
        ge=1,
        validation_alias=AliasChoices("BOOKING_SYNC_FEED_FETCH_MAX_BYTES"),
    )
    feed_fetch_max_redirects: int = Field(
        default=3,
        ge=0,
        validation_alias=AliasChoices("BOOKING_SYNC_FEED_FETCH_MAX_REDIRECTS"),
    )
    sync_lock_ttl_seconds: int = Field(
        default=600,
        ge=1,
        validation_alias=AliasChoices("BOOKING_SYNC_SYNC_LOCK_TTL_SECONDS"),
    )

    scheduler_enabled: bool = Field(
        default=False,
        validation_alias=AliasChoices("BOOKING_SYNC_SCHEDULER_ENABLED"),
    )
    scheduler_interval_seconds: int = Field(
        default=900,
        ge=1,
        validation_alias=AliasChoices("BOOKING_SYNC_SCHEDULER_INTERVAL_SECONDS"),
    )

    @model_validator(mode="after")
    def validate_runtime_environment(self) -> "AppSettings":
        self.redis_url = _normalize_optional_env(self.redis_url)

        if self.env == "dev":
            if self.redis_url is None:
                _logger.warning(
                    "BOOKING_SYNC_REDIS_URL is not set in BOOKING_SYNC_ENV=dev; defaulting to %s",
                    _DEV_DEFAULT_REDIS_URL,
                )
                self.redis_url = _DEV_DEFAULT_REDIS_URL
            return self

        if self.redis_url is None:
            raise ValueError(
                "Missing required environment variable(s) for "
                f"BOOKING_SYNC_ENV={self.env}: BOOKING_SYNC_REDIS_URL"
            )
        return self

    class Config:
        env_prefix = "BOOKING_SYNC_"


__all__ = ["AppSettings", "default_data_root"]
