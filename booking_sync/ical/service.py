from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
import logging
import sqlite3
import threading
import time
from typing import Any

from redis import Redis, RedisError

from booking_sync.config import AppSettings
from booking_sync.constants import SYNC_OUTCOME_FAILED, SYNC_OUTCOME_SKIPPED, SYNC_OUTCOME_SUCCESS
from booking_sync.db import get_sync_configuration, update_sync_configuration_sync_state
from booking_sync.locks import release_sync_lock, try_acquire_sync_lock
from booking_sync.metrics import (
    dropped_events_total,
    feed_fetch_failures_total,
    sync_duration_seconds,
    sync_runs_total,
    synced_bookings_total,
)

from .dates import interpret_events
from .errors import (
    ConfigNotFoundError,
    FeedUnreachableError,
    SyncCancelledError,
    SyncError,
    SyncInProgressError,
    SyncLockUnavailableError,
    SyncStateError,
)
from .fetch import fetch_feed
from .parser import parse_ical_feed
from .reconcile import reconcile
from .relevance import filter_relevant_events

_logger = logging.getLogger(__name__)
_LAST_ERROR_MAX_CHARS = 1000


@dataclass(frozen=True)
class SyncResult:
    sync_configuration_id: str
    success: bool
    skipped: bool = False
    synced_count: int = 0
    parsed_count: int = 0
    dropped_count: int = 0
    filtered_out_count: int = 0
    synced_at: str | None = None
    error: str | None = None
    error_type: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _utc_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace(
        "+00:00", "Z"
    )


def _raise_if_cancelled(cancel_event: threading.Event | None, stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise SyncCancelledError(f"Sync cancelled {stage}")


def _run_locked(
    configuration: dict[str, Any],
    *,
    settings: AppSettings,
    now: datetime,
    cancel_event: threading.Event | None,
) -> SyncResult:
    configuration_id = str(configuration["id"])
    _raise_if_cancelled(cancel_event, "before fetching the feed")
    try:
        feed_text = fetch_feed(
            str(configuration.get("ical_url") or ""),
            timeout_seconds=float(settings.feed_fetch_timeout_seconds),
            max_bytes=int(settings.feed_fetch_max_bytes),
            max_redirects=int(settings.feed_fetch_max_redirects),
            cancel_event=cancel_event,
        )
    except FeedUnreachableError:
        feed_fetch_failures_total.inc()
        raise

    report = parse_ical_feed(feed_text)
    dated, unreadable_dates = interpret_events(report.events)
    relevant = filter_relevant_events(dated, now)
    dropped = report.dropped_blocks + unreadable_dates

    _raise_if_cancelled(cancel_event, "before replacing external bookings")
    stored = reconcile(configuration, relevant, settings=settings)

    synced_at = _utc_iso(now)
    try:
        update_sync_configuration_sync_state(
            configuration_id,
            last_sync_at=synced_at,
            last_sync_count=stored,
            last_error=None,
            settings=settings,
        )
    except sqlite3.Error as exc:
        raise SyncStateError(
            f"External bookings were stored but the sync state could not be recorded: {exc}"
        ) from exc

    if dropped:
        dropped_events_total.inc(dropped)
    synced_bookings_total.inc(stored)
    _logger.info(
        "ical sync finished configuration=%s parsed=%d dropped=%d relevant=%d stored=%d",
        configuration_id,
        len(report.events),
        dropped,
        len(relevant),
        stored,
    )
    return SyncResult(
        sync_configuration_id=configuration_id,
        success=True,
        synced_count=stored,
        parsed_count=len(report.events),
        dropped_count=dropped,
        filtered_out_count=len(dated) - len(relevant),
        synced_at=synced_at,
    )


def _record_failure(configuration_id: str, exc: SyncError, *, settings: AppSettings) -> None:
    try:
        update_sync_configuration_sync_state(
            configuration_id,
            last_error=str(exc)[:_LAST_ERROR_MAX_CHARS],
            settings=settings,
        )
    except sqlite3.Error:
        _logger.exception("could not record sync failure configuration=%s", configuration_id)


def _release_lock(
    configuration_id: str,
    token: str | None,
    *,
    settings: AppSettings,
    redis_client: Redis | None,
) -> None:
    # An unreleased lock expires after sync_lock_ttl_seconds.
    try:
        release_sync_lock(configuration_id, settings, token=token, redis_client=redis_client)
    except RedisError:
        _logger.exception("could not release sync lock configuration=%s", configuration_id)


def run_sync(
    configuration_id: str,
    *,
    settings: AppSettings | None = None,
    now: datetime | None = None,
    redis_client: Redis | None = None,
    cancel_event: threading.Event | None = None,
) -> SyncResult:
    """Synchronize one configuration's external bookings with its feed.

    Inactive configurations are skipped without touching stored data. Fatal
    problems raise a :class:`SyncError` subclass; on failure ``last_sync_at``
    is left unchanged and ``last_error`` is recorded.
    """
    cfg = settings or AppSettings()
    configuration = get_sync_configuration(configuration_id, settings=cfg)
    if configuration is None:
        raise ConfigNotFoundError(str(configuration_id))

    if not configuration["is_active"]:
        _logger.info("ical sync skipped configuration=%s inactive", configuration_id)
        sync_runs_total.labels(outcome=SYNC_OUTCOME_SKIPPED).inc()
        return SyncResult(
            sync_configuration_id=str(configuration_id),
            success=True,
            skipped=True,
        )

    try:
        acquired, retry_after, token = try_acquire_sync_lock(
            str(configuration_id),
            cfg,
            redis_client=redis_client,
        )
    except RedisError as exc:
        sync_runs_total.labels(outcome=SYNC_OUTCOME_FAILED).inc()
        failure = SyncLockUnavailableError(f"Sync lock backend unavailable: {exc}")
        _record_failure(str(configuration_id), failure, settings=cfg)
        raise failure from exc
    if not acquired:
        raise SyncInProgressError(str(configuration_id), retry_after=retry_after)

    started = time.monotonic()
    _logger.info(
        "ical sync started configuration=%s platform=%s",
        configuration_id,
        configuration.get("platform_name"),
    )
    try:
        result = _run_locked(
            configuration,
            settings=cfg,
            now=now or datetime.now(tz=timezone.utc),
            cancel_event=cancel_event,
        )
    except SyncError as exc:
        sync_runs_total.labels(outcome=SYNC_OUTCOME_FAILED).inc()
        _logger.warning(
            "ical sync failed configuration=%s error_type=%s: %s",
            configuration_id,
            type(exc).__name__,
            exc,
        )
        _record_failure(str(configuration_id), exc, settings=cfg)
        raise
    finally:
        sync_duration_seconds.observe(time.monotonic() - started)
        _release_lock(str(configuration_id), token, settings=cfg, redis_client=redis_client)

    sync_runs_total.labels(outcome=SYNC_OUTCOME_SUCCESS).inc()
    return result


def run_sync_safely(configuration_id: str, **kwargs: Any) -> SyncResult:
    """Run :func:`run_sync` and report fatal errors as a failed result."""
    try:
        return run_sync(configuration_id, **kwargs)
    except SyncError as exc:
        return SyncResult(
            sync_configuration_id=str(configuration_id),
            success=False,
            error=str(exc),
            error_type=type(exc).__name__,
        )


__all__ = ["SyncResult", "run_sync", "run_sync_safely"]
