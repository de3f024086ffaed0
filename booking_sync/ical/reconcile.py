from __future__ import annotations

from dataclasses import asdict
import json
import logging
import sqlite3
from typing import Any, Iterable

from booking_sync.config import AppSettings
from booking_sync.constants import DEFAULT_PLATFORM_NAME
from booking_sync.db import replace_external_bookings

from .dates import DatedEvent
from .errors import ReconcileFailureError

_logger = logging.getLogger(__name__)


def _platform_name(configuration: dict[str, Any]) -> str:
    return str(configuration.get("platform_name") or "").strip() or DEFAULT_PLATFORM_NAME


def booking_rows_for_events(
    configuration: dict[str, Any],
    events: Iterable[DatedEvent],
) -> list[dict[str, Any]]:
    """Map dated events to external booking rows, one per UID (last wins)."""
    platform = _platform_name(configuration)
    by_uid: dict[str, dict[str, Any]] = {}
    for event in events:
        raw = event.raw
        by_uid[raw.uid] = {
            "external_uid": raw.uid,
            "summary": raw.summary.strip() or f"Booking via {platform}",
            "start_date": event.start_date.isoformat(),
            "end_date": event.end_date.isoformat(),
            "platform_name": platform,
            "raw_source": json.dumps(asdict(raw), ensure_ascii=False, sort_keys=True),
        }
    return list(by_uid.values())


def reconcile(
    configuration: dict[str, Any],
    events: list[DatedEvent],
    *,
    settings: AppSettings | None = None,
) -> int:
    """Replace all external bookings of ``configuration`` with ``events``.

    Returns the number of rows stored. Storage failures raise
    :class:`ReconcileFailureError` and leave the configuration without
    external bookings.
    """
    configuration_id = str(configuration["id"])
    rows = booking_rows_for_events(configuration, events)
    duplicates = len(events) - len(rows)
    if duplicates:
        _logger.info(
            "collapsed duplicate feed uids configuration=%s duplicates=%d",
            configuration_id,
            duplicates,
        )
    try:
        return replace_external_bookings(configuration_id, rows, settings=settings)
    except sqlite3.Error as exc:
        raise ReconcileFailureError(
            f"Failed to store external bookings: {exc}"
        ) from exc


__all__ = ["booking_rows_for_events", "reconcile"]
