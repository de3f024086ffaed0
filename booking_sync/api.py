from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from datetime import date
import logging
import threading
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field
from redis import Redis

from .config import AppSettings
from .constants import DEFAULT_SYNC_FREQUENCY_HOURS
from .db import (
    create_sync_configuration,
    delete_sync_configuration,
    get_sync_configuration,
    init_db,
    list_external_bookings,
    list_sync_configurations,
    update_sync_configuration,
)
from .healthchecks import check_health_component, collect_health_checks
from .ical.errors import (
    ConfigNotFoundError,
    FeedUnreachableError,
    SyncCancelledError,
    SyncError,
    SyncInProgressError,
    SyncLockUnavailableError,
)
from .ical.fetch import redacted_feed_host, validate_feed_url
from .ical.service import SyncResult, run_sync
from .jobs import enqueue_sync_job
from .metrics import write_metrics_snapshot
from .scheduler import run_scheduler_once

_settings = AppSettings()
_logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    init_db(_settings)
    _settings.metrics_snapshot_path.parent.mkdir(parents=True, exist_ok=True)

    tasks = [asyncio.create_task(write_metrics_snapshot(_settings.metrics_snapshot_path))]
    if _settings.scheduler_enabled:
        tasks.append(asyncio.create_task(_scheduled_sync_loop()))

    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task


app = FastAPI(lifespan=_lifespan)


class SyncConfigurationCreate(BaseModel):
    property_id: str
    ical_url: str
    platform_name: str | None = None
    is_active: bool = True
    sync_frequency_hours: int = Field(default=DEFAULT_SYNC_FREQUENCY_HOURS, ge=1)


class SyncConfigurationUpdate(BaseModel):
    platform_name: str | None = None
    ical_url: str | None = None
    is_active: bool | None = None
    sync_frequency_hours: int | None = Field(default=None, ge=1)


def redacted_sync_configuration(row: dict[str, Any]) -> dict[str, Any]:
    """Public view of a configuration; feed URLs embed platform secrets."""
    ical_url = str(row.get("ical_url") or "").strip()
    return {
        "id": row.get("id"),
        "property_id": row.get("property_id"),
        "platform_name": row.get("platform_name"),
        "is_active": bool(row.get("is_active")),
        "sync_frequency_hours": row.get("sync_frequency_hours"),
        "last_sync_at": row.get("last_sync_at"),
        "last_sync_count": row.get("last_sync_count"),
        "last_error": row.get("last_error"),
        "created_at": row.get("created_at"),
        "updated_at": row.get("updated_at"),
        "url_configured": bool(ical_url),
        "url_host": redacted_feed_host(ical_url),
    }


def _sync_redis_client() -> Redis:
    return Redis.from_url(_settings.redis_url)


def _require_configuration(configuration_id: str) -> dict[str, Any]:
    row = get_sync_configuration(configuration_id, settings=_settings)
    if row is None:
        raise HTTPException(status_code=404, detail="Sync configuration not found")
    return row


def _validated_url(raw_url: str) -> str:
    try:
        return validate_feed_url(raw_url)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


def _parse_date_param(value: str | None, name: str) -> str | None:
    if value is None:
        return None
    try:
        return date.fromisoformat(value.strip()).isoformat()
    except ValueError:
        raise HTTPException(status_code=422, detail=f"{name} must be an ISO date (YYYY-MM-DD)")


def _status_for_sync_error(exc: SyncError) -> int:
    if isinstance(exc, ConfigNotFoundError):
        return 404
    if isinstance(exc, SyncInProgressError):
        return 409
    if isinstance(exc, FeedUnreachableError):
        return 502
    if isinstance(exc, (SyncCancelledError, SyncLockUnavailableError)):
        return 503
    return 500


def _sync_error_response(configuration_id: str, exc: SyncError) -> JSONResponse:
    failed = SyncResult(
        sync_configuration_id=configuration_id,
        success=False,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    headers: dict[str, str] = {}
    if isinstance(exc, SyncInProgressError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(
        status_code=_status_for_sync_error(exc),
        content=failed.as_dict(),
        headers=headers,
    )


@app.get("/healthz")
async def healthz() -> dict[str, object]:
    checks = await run_in_threadpool(collect_health_checks, _settings)
    return {
        "status": "ok" if all(item["ok"] for item in checks.values()) else "degraded",
        "checks": checks,
    }


@app.get("/healthz/{component}")
async def healthz_component(component: str) -> dict[str, object]:
    try:
        payload = await run_in_threadpool(
            check_health_component,
            component,
            settings=_settings,
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="Unknown health component")
    if not payload["ok"]:
        raise HTTPException(status_code=503, detail=str(payload["detail"]))
    return payload


@app.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/api/sync-configurations")
async def create_configuration(payload: SyncConfigurationCreate) -> dict[str, Any]:
    ical_url = await run_in_threadpool(_validated_url, payload.ical_url)
    try:
        row = await run_in_threadpool(
            create_sync_configuration,
            payload.property_id,
            ical_url=ical_url,
            platform_name=payload.platform_name,
            is_active=payload.is_active,
            sync_frequency_hours=payload.sync_frequency_hours,
            settings=_settings,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return redacted_sync_configuration(row)


@app.get("/api/sync-configurations")
async def list_configurations(property_id: str | None = None) -> dict[str, Any]:
    rows = await run_in_threadpool(
        list_sync_configurations,
        property_id=property_id,
        settings=_settings,
    )
    items = [redacted_sync_configuration(row) for row in rows]
    return {"items": items, "total": len(items)}


@app.get("/api/sync-configurations/{configuration_id}")
async def get_configuration(configuration_id: str) -> dict[str, Any]:
    row = await run_in_threadpool(_require_configuration, configuration_id)
    return redacted_sync_configuration(row)


@app.patch("/api/sync-configurations/{configuration_id}")
async def update_configuration(
    configuration_id: str,
    payload: SyncConfigurationUpdate,
) -> dict[str, Any]:
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("ical_url") is not None:
        changes["ical_url"] = await run_in_threadpool(_validated_url, changes["ical_url"])
    elif "ical_url" in changes:
        raise HTTPException(status_code=422, detail="ical_url must not be null")
    if "is_active" in changes and changes["is_active"] is None:
        raise HTTPException(status_code=422, detail="is_active must not be null")
    if "sync_frequency_hours" in changes and changes["sync_frequency_hours"] is None:
        raise HTTPException(status_code=422, detail="sync_frequency_hours must not be null")
    try:
        row = await run_in_threadpool(
            lambda: update_sync_configuration(
                configuration_id,
                settings=_settings,
                **changes,
            )
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if row is None:
        raise HTTPException(status_code=404, detail="Sync configuration not found")
    return redacted_sync_configuration(row)


@app.delete("/api/sync-configurations/{configuration_id}")
async def delete_configuration(configuration_id: str) -> dict[str, Any]:
    deleted = await run_in_threadpool(
        delete_sync_configuration,
        configuration_id,
        settings=_settings,
    )
    if not deleted:
        raise HTTPException(status_code=404, detail="Sync configuration not found")
    return {"id": configuration_id, "deleted": True}


@app.post("/api/sync-configurations/{configuration_id}/sync")
async def sync_configuration_now(configuration_id: str):
    cancel_event = threading.Event()
    try:
        result = await run_in_threadpool(
            run_sync,
            configuration_id,
            settings=_settings,
            redis_client=_sync_redis_client(),
            cancel_event=cancel_event,
        )
    except asyncio.CancelledError:
        cancel_event.set()
        raise
    except SyncError as exc:
        return _sync_error_response(configuration_id, exc)
    return result.as_dict()


@app.post("/api/sync-configurations/{configuration_id}/enqueue")
async def enqueue_configuration_sync(configuration_id: str) -> dict[str, Any]:
    try:
        job = await run_in_threadpool(
            enqueue_sync_job,
            configuration_id,
            settings=_settings,
        )
    except ConfigNotFoundError:
        raise HTTPException(status_code=404, detail="Sync configuration not found")
    return {
        "job_id": job.job_id,
        "sync_configuration_id": job.sync_configuration_id,
        "already_queued": job.already_queued,
    }


@app.get("/api/sync-configurations/{configuration_id}/bookings")
async def list_configuration_bookings(configuration_id: str) -> dict[str, Any]:
    await run_in_threadpool(_require_configuration, configuration_id)
    rows = await run_in_threadpool(
        list_external_bookings,
        sync_configuration_id=configuration_id,
        settings=_settings,
    )
    return {"items": rows, "total": len(rows)}


@app.get("/api/external-bookings")
async def external_bookings(
    property_id: str | None = None,
    date_from: str | None = Query(default=None, alias="from"),
    date_to: str | None = Query(default=None, alias="to"),
) -> dict[str, Any]:
    starts_from = _parse_date_param(date_from, "from")
    ends_to = _parse_date_param(date_to, "to")
    rows = await run_in_threadpool(
        list_external_bookings,
        property_id=property_id,
        starts_from=starts_from,
        ends_to=ends_to,
        settings=_settings,
    )
    return {"items": rows, "total": len(rows)}


async def _scheduled_sync_loop() -> None:
    while True:
        try:
            summary = await run_in_threadpool(run_scheduler_once, settings=_settings)
            if int(summary.get("failed") or 0) > 0:
                _logger.warning(
                    "Scheduled sync sweep could not enqueue %s configuration(s)",
                    summary["failed"],
                )
        except Exception:
            _logger.exception("Scheduled sync sweep failed")
        await asyncio.sleep(_settings.scheduler_interval_seconds)


__all__ = ["app", "redacted_sync_configuration"]
