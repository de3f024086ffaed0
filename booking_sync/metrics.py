from __future__ import annotations

import asyncio
from pathlib import Path

from prometheus_client import Counter, Histogram, generate_latest

sync_runs_total = Counter(
    "ical_sync_runs_total",
    "External calendar sync runs by outcome",
    ["outcome"],
)

sync_duration_seconds = Histogram(
    "ical_sync_duration_seconds",
    "External calendar sync run duration seconds",
    buckets=(0.1, 0.5, 1, 2, 5, 10, 20, 30, 60),
)

feed_fetch_failures_total = Counter(
    "ical_feed_fetch_failures_total",
    "Feed fetches that failed or returned a non-2xx status",
)

dropped_events_total = Counter(
    "ical_dropped_events_total",
    "Feed events dropped as malformed or unreadable",
)

synced_bookings_total = Counter(
    "ical_synced_bookings_total",
    "External bookings written by successful sync runs",
)


async def write_metrics_snapshot(path: Path, *, interval_seconds: float = 60) -> None:
    """Periodically write metrics to ``path``."""
    while True:
        path.write_bytes(generate_latest())
        await asyncio.sleep(interval_seconds)


__all__ = [
    "dropped_events_total",
    "feed_fetch_failures_total",
    "sync_duration_seconds",
    "sync_runs_total",
    "synced_bookings_total",
    "write_metrics_snapshot",
]
