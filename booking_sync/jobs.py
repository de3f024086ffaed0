from __future__ import annotations

from dataclasses import dataclass

from redis import Redis
from rq import Queue

from .config import AppSettings
from .db import get_sync_configuration, init_db
from .ical.errors import ConfigNotFoundError

_PENDING_JOB_STATUSES = {"queued", "started", "deferred", "scheduled"}


@dataclass(frozen=True)
class SyncJob:
    """Queue envelope for one background sync run."""

    job_id: str
    sync_configuration_id: str
    already_queued: bool = False


def get_queue(settings: AppSettings | None = None) -> Queue:
    cfg = settings or AppSettings()
    connection = Redis.from_url(cfg.redis_url)
    return Queue(name=cfg.rq_queue_name, connection=connection)


def sync_job_id(configuration_id: str) -> str:
    """RQ job id of a configuration's sync; one pending job per configuration."""
    return f"sync-{configuration_id}"


def _status_value(status: object | None) -> str | None:
    if status is None:
        return None
    return getattr(status, "value", str(status))


def enqueue_sync_job(
    configuration_id: str,
    *,
    settings: AppSettings | None = None,
    queue: Queue | None = None,
) -> SyncJob:
    """Queue a background sync unless one is already pending for the configuration."""
    cfg = settings or AppSettings()
    init_db(cfg)
    if get_sync_configuration(configuration_id, settings=cfg) is None:
        raise ConfigNotFoundError(str(configuration_id))
    job_id = sync_job_id(str(configuration_id))
    target = queue or get_queue(cfg)

    existing = target.fetch_job(job_id)
    if existing is not None:
        status = _status_value(existing.get_status(refresh=True))
        if status in _PENDING_JOB_STATUSES:
            return SyncJob(
                job_id=job_id,
                sync_configuration_id=str(configuration_id),
                already_queued=True,
            )
        # Finished or failed runs keep their id; drop the old record before reuse.
        existing.delete()

    from .worker_tasks import process_sync_job

    target.enqueue(
        process_sync_job,
        str(configuration_id),
        job_id=job_id,
        job_timeout=cfg.rq_job_timeout_seconds,
    )
    return SyncJob(job_id=job_id, sync_configuration_id=str(configuration_id))


__all__ = ["SyncJob", "enqueue_sync_job", "get_queue", "sync_job_id"]
