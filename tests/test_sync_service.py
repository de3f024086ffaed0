from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import sqlite3
import threading

import httpx
import pytest
import redis
import respx

from booking_sync.db import (
    create_sync_configuration,
    get_sync_configuration,
    list_external_bookings,
    replace_external_bookings,
    update_sync_configuration,
    update_sync_configuration_sync_state,
)
from booking_sync.ical.errors import (
    ConfigNotFoundError,
    FeedUnreachableError,
    SyncCancelledError,
    SyncInProgressError,
    SyncLockUnavailableError,
    SyncStateError,
)
from booking_sync.ical import service as sync_service
from booking_sync.ical.service import run_sync, run_sync_safely
from booking_sync.locks import sync_lock_key

from conftest import make_settings

_FEED_URL = "https://www.airbnb.com/calendar/ical/42.ics?s=token"
_NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)

_FEED = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Airbnb Inc//Hosting Calendar 1.0//EN",
        "BEGIN:VEVENT",
        "UID:A1",
        "SUMMARY:Reserved",
        "DTSTART;VALUE=DATE:20250601",
        "DTEND;VALUE=DATE:20250604",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:B2",
        "SUMMARY:Missing end",
        "DTSTART;VALUE=DATE:20250701",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:PAST",
        "SUMMARY:Already gone",
        "DTSTART;VALUE=DATE:20241201",
        "DTEND;VALUE=DATE:20241205",
        "END:VEVENT",
        "END:VCALENDAR",
        "",
    ]
)


def _setup(tmp_path: Path, **kwargs):
    cfg = make_settings(tmp_path)
    configuration = create_sync_configuration(
        "property-1",
        ical_url=_FEED_URL,
        settings=cfg,
        **kwargs,
    )
    return cfg, configuration


@respx.mock
def test_sync_stores_only_valid_relevant_events(tmp_path: Path, fake_redis):
    cfg, configuration = _setup(tmp_path)
    respx.get(_FEED_URL).mock(return_value=httpx.Response(200, text=_FEED))

    result = run_sync(configuration["id"], settings=cfg, now=_NOW, redis_client=fake_redis)

    assert result.success is True
    assert result.synced_count == 1
    assert result.parsed_count == 2
    assert result.dropped_count == 1
    assert result.filtered_out_count == 1
    assert result.synced_at == "2025-01-01T00:00:00Z"

    rows = list_external_bookings(sync_configuration_id=configuration["id"], settings=cfg)
    assert len(rows) == 1
    assert rows[0]["external_uid"] == "A1"
    assert rows[0]["start_date"] == "2025-06-01"
    assert rows[0]["end_date"] == "2025-06-03"
    assert rows[0]["summary"] == "Reserved"
    assert rows[0]["property_id"] == "property-1"

    stored = get_sync_configuration(configuration["id"], settings=cfg)
    assert stored["last_sync_at"] == "2025-01-01T00:00:00Z"
    assert stored["last_sync_count"] == 1
    assert stored["last_error"] is None
    assert fake_redis.get(sync_lock_key(configuration["id"])) is None


@respx.mock
def test_repeated_sync_is_idempotent(tmp_path: Path, fake_redis):
    cfg, configuration = _setup(tmp_path)
    respx.get(_FEED_URL).mock(return_value=httpx.Response(200, text=_FEED))

    run_sync(configuration["id"], settings=cfg, now=_NOW, redis_client=fake_redis)
    second = run_sync(configuration["id"], settings=cfg, now=_NOW, redis_client=fake_redis)

    rows = list_external_bookings(sync_configuration_id=configuration["id"], settings=cfg)
    assert second.synced_count == 1
    assert [row["external_uid"] for row in rows] == ["A1"]


def test_inactive_configuration_is_skipped_without_touching_bookings(tmp_path: Path, fake_redis):
    cfg, configuration = _setup(tmp_path, is_active=False)
    replace_external_bookings(
        configuration["id"],
        [{"external_uid": "kept", "start_date": "2025-02-01", "end_date": "2025-02-02"}],
        settings=cfg,
    )

    result = run_sync(configuration["id"], settings=cfg, now=_NOW, redis_client=fake_redis)

    assert result.success is True
    assert result.skipped is True
    assert result.synced_count == 0
    rows = list_external_bookings(sync_configuration_id=configuration["id"], settings=cfg)
    assert [row["external_uid"] for row in rows] == ["kept"]
    assert get_sync_configuration(configuration["id"], settings=cfg)["last_sync_at"] is None


def test_missing_configuration_raises_not_found(tmp_path: Path, fake_redis):
    cfg = make_settings(tmp_path)

    with pytest.raises(ConfigNotFoundError) as exc_info:
        run_sync("does-not-exist", settings=cfg, now=_NOW, redis_client=fake_redis)

    assert exc_info.value.configuration_id == "does-not-exist"


@respx.mock
def test_unreachable_feed_keeps_bookings_and_last_sync(tmp_path: Path, fake_redis):
    cfg, configuration = _setup(tmp_path)
    replace_external_bookings(
        configuration["id"],
        [{"external_uid": "kept", "start_date": "2025-02-01", "end_date": "2025-02-02"}],
        settings=cfg,
    )
    update_sync_configuration_sync_state(
        configuration["id"],
        last_sync_at="2024-12-31T00:00:00Z",
        settings=cfg,
    )
    respx.get(_FEED_URL).mock(return_value=httpx.Response(503))

    with pytest.raises(FeedUnreachableError) as exc_info:
        run_sync(configuration["id"], settings=cfg, now=_NOW, redis_client=fake_redis)

    assert exc_info.value.status_code == 503
    stored = get_sync_configuration(configuration["id"], settings=cfg)
    assert stored["last_sync_at"] == "2024-12-31T00:00:00Z"
    assert stored["last_error"] == "Failed to fetch feed: HTTP 503 Service Unavailable"
    rows = list_external_bookings(sync_configuration_id=configuration["id"], settings=cfg)
    assert [row["external_uid"] for row in rows] == ["kept"]
    assert fake_redis.get(sync_lock_key(configuration["id"])) is None


@respx.mock
def test_successful_sync_clears_previous_error(tmp_path: Path, fake_redis):
    cfg, configuration = _setup(tmp_path)
    update_sync_configuration_sync_state(
        configuration["id"],
        last_error="Failed to fetch feed: HTTP 500 Internal Server Error",
        settings=cfg,
    )
    respx.get(_FEED_URL).mock(return_value=httpx.Response(200, text=_FEED))

    run_sync(configuration["id"], settings=cfg, now=_NOW, redis_client=fake_redis)

    assert get_sync_configuration(configuration["id"], settings=cfg)["last_error"] is None


def test_held_lock_raises_in_progress(tmp_path: Path, fake_redis):
    cfg, configuration = _setup(tmp_path)
    fake_redis.set(sync_lock_key(configuration["id"]), "other-run", nx=True, ex=45)

    with pytest.raises(SyncInProgressError) as exc_info:
        run_sync(configuration["id"], settings=cfg, now=_NOW, redis_client=fake_redis)

    assert exc_info.value.retry_after == 45
    assert fake_redis.get(sync_lock_key(configuration["id"])) == "other-run"


def test_cancelled_run_leaves_state_untouched(tmp_path: Path, fake_redis):
    cfg, configuration = _setup(tmp_path)
    replace_external_bookings(
        configuration["id"],
        [{"external_uid": "kept", "start_date": "2025-02-01", "end_date": "2025-02-02"}],
        settings=cfg,
    )
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(SyncCancelledError):
        run_sync(
            configuration["id"],
            settings=cfg,
            now=_NOW,
            redis_client=fake_redis,
            cancel_event=cancel_event,
        )

    rows = list_external_bookings(sync_configuration_id=configuration["id"], settings=cfg)
    assert [row["external_uid"] for row in rows] == ["kept"]
    assert get_sync_configuration(configuration["id"], settings=cfg)["last_sync_at"] is None
    assert fake_redis.get(sync_lock_key(configuration["id"])) is None


@respx.mock
def test_reactivated_configuration_syncs_again(tmp_path: Path, fake_redis):
    cfg, configuration = _setup(tmp_path, is_active=False)
    respx.get(_FEED_URL).mock(return_value=httpx.Response(200, text=_FEED))
    update_sync_configuration(configuration["id"], is_active=True, settings=cfg)

    result = run_sync(configuration["id"], settings=cfg, now=_NOW, redis_client=fake_redis)

    assert result.skipped is False
    assert result.synced_count == 1


def test_run_sync_safely_reports_failures(tmp_path: Path, fake_redis):
    cfg = make_settings(tmp_path)

    result = run_sync_safely("missing", settings=cfg, now=_NOW, redis_client=fake_redis)

    assert result.success is False
    assert result.error_type == "ConfigNotFoundError"
    assert result.error == "Sync configuration not found: missing"
    assert result.as_dict()["sync_configuration_id"] == "missing"


class _UnreachableRedis:
    def set(self, *_args, **_kwargs):
        raise redis.ConnectionError("Connection refused")


def test_unreachable_lock_backend_is_reported_as_failed_run(tmp_path: Path):
    cfg, configuration = _setup(tmp_path)

    with pytest.raises(SyncLockUnavailableError):
        run_sync(configuration["id"], settings=cfg, now=_NOW, redis_client=_UnreachableRedis())

    result = run_sync_safely(configuration["id"], settings=cfg, now=_NOW, redis_client=_UnreachableRedis())

    assert result.success is False
    assert result.error_type == "SyncLockUnavailableError"
    assert "Connection refused" in result.error
    stored = get_sync_configuration(configuration["id"], settings=cfg)
    assert stored["last_sync_at"] is None
    assert stored["last_error"] == result.error


@respx.mock
def test_lock_release_failure_does_not_fail_the_sync(tmp_path: Path, fake_redis, monkeypatch):
    cfg, configuration = _setup(tmp_path)
    respx.get(_FEED_URL).mock(return_value=httpx.Response(200, text=_FEED))

    def _broken_eval(*_args, **_kwargs):
        raise redis.ConnectionError("Connection reset by peer")

    monkeypatch.setattr(fake_redis, "eval", _broken_eval)

    result = run_sync(configuration["id"], settings=cfg, now=_NOW, redis_client=fake_redis)

    assert result.success is True
    assert result.synced_count == 1


@respx.mock
def test_feed_error_survives_failed_error_bookkeeping(tmp_path: Path, fake_redis, monkeypatch):
    cfg, configuration = _setup(tmp_path)
    respx.get(_FEED_URL).mock(return_value=httpx.Response(500))

    def _locked_db(*_args, **_kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(sync_service, "update_sync_configuration_sync_state", _locked_db)

    with pytest.raises(FeedUnreachableError):
        run_sync(configuration["id"], settings=cfg, now=_NOW, redis_client=fake_redis)

    result = run_sync_safely(configuration["id"], settings=cfg, now=_NOW, redis_client=fake_redis)
    assert result.success is False
    assert result.error_type == "FeedUnreachableError"
    assert fake_redis.get(sync_lock_key(configuration["id"])) is None


@respx.mock
def test_unrecorded_success_raises_state_error_and_keeps_bookings(tmp_path: Path, fake_redis, monkeypatch):
    cfg, configuration = _setup(tmp_path)
    respx.get(_FEED_URL).mock(return_value=httpx.Response(200, text=_FEED))

    def _fail_on_success_write(configuration_id, **kwargs):
        if "last_sync_at" in kwargs:
            raise sqlite3.OperationalError("disk I/O error")
        return update_sync_configuration_sync_state(configuration_id, **kwargs)

    monkeypatch.setattr(sync_service, "update_sync_configuration_sync_state", _fail_on_success_write)

    with pytest.raises(SyncStateError, match="disk I/O error"):
        run_sync(configuration["id"], settings=cfg, now=_NOW, redis_client=fake_redis)

    rows = list_external_bookings(sync_configuration_id=configuration["id"], settings=cfg)
    assert [row["external_uid"] for row in rows] == ["A1"]
    stored = get_sync_configuration(configuration["id"], settings=cfg)
    assert stored["last_sync_at"] is None
    assert "could not be recorded" in stored["last_error"]
