"""Periodic trigger that queues syncs for configurations whose interval elapsed."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable, Iterable

from .config import AppSettings
from .db import list_sync_configurations
from .jobs import SyncJob, enqueue_sync_job

_LOG = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(tz=timezone.utc).replace(microsecond=0)


def _parse_utc(value: object) -> datetime | None:
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    normalised = raw.replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(normalised)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_sync_due(configuration: dict[str, Any], now: datetime) -> bool:
    if not configuration.get("is_active"):
        return False
    last_sync_at = _parse_utc(configuration.get("last_sync_at"))
    if last_sync_at is None:
        return True
    frequency_hours = max(1, int(configuration.get("sync_frequency_hours") or 1))
    return now - last_sync_at >= timedelta(hours=frequency_hours)


def select_due_configurations(
    configurations: Iterable[dict[str, Any]],
    now: datetime,
) -> list[dict[str, Any]]:
    return [row for row in configurations if is_sync_due(row, now)]


def run_scheduler_once(
    *,
    settings: AppSettings | None = None,
    now: datetime | None = None,
    enqueue: Callable[..., SyncJob] | None = None,
) -> dict[str, Any]:
    cfg = settings or AppSettings()
    current_time = now or _utc_now()
    enqueue_fn = enqueue or enqueue_sync_job

    active = list_sync_configurations(active_only=True, settings=cfg)
    due = select_due_configurations(active, current_time)
    job_ids: list[str] = []
    already_queued_ids: list[str] = []
    failed_ids: list[str] = []
    for row in due:
        configuration_id = str(row.get("id") or "")
        try:
            job = enqueue_fn(configuration_id, settings=cfg)
        except Exception:
            # One unreachable queue or vanished row must not stop the sweep.
            _LOG.exception("scheduled sync enqueue failed configuration=%s", configuration_id)
            failed_ids.append(configuration_id)
            continue
        if getattr(job, "already_queued", False):
            already_queued_ids.append(configuration_id)
            continue
        job_ids.append(job.job_id)

    if due:
        _LOG.info(
            "scheduled sync sweep active=%d due=%d enqueued=%d already_queued=%d failed=%d",
            len(active),
            len(due),
            len(job_ids),
            len(already_queued_ids),
            len(failed_ids),
        )
    return {
        "active_configurations": len(active),
        "due_configurations": len(due),
        "enqueued": len(job_ids),
        "already_queued": len(already_queued_ids),
        "failed": len(failed_ids),
        "job_ids": job_ids,
        "already_queued_configuration_ids": already_queued_ids,
        "failed_configuration_ids": failed_ids,
    }


__all__ = ["is_sync_due", "run_scheduler_once", "select_due_configurations"]
