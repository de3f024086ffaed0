from .dates import DatedEvent, ICalDateError, interpret_event_dates, interpret_events, parse_ical_date
from .errors import (
    ConfigNotFoundError,
    FeedUnreachableError,
    ReconcileFailureError,
    SyncCancelledError,
    SyncError,
    SyncInProgressError,
    SyncLockUnavailableError,
    SyncStateError,
)
from .fetch import fetch_feed, redacted_feed_host, validate_feed_url
from .parser import ICalProperty, ParseReport, RawEvent, parse_ical, parse_ical_feed
from .reconcile import reconcile
from .relevance import filter_relevant_events, relevance_window
from .service import SyncResult, run_sync, run_sync_safely

__all__ = [
    "ConfigNotFoundError",
    "DatedEvent",
    "FeedUnreachableError",
    "ICalDateError",
    "ICalProperty",
    "ParseReport",
    "RawEvent",
    "ReconcileFailureError",
    "SyncCancelledError",
    "SyncError",
    "SyncInProgressError",
    "SyncLockUnavailableError",
    "SyncResult",
    "SyncStateError",
    "fetch_feed",
    "filter_relevant_events",
    "interpret_event_dates",
    "interpret_events",
    "parse_ical",
    "parse_ical_date",
    "parse_ical_feed",
    "reconcile",
    "redacted_feed_host",
    "relevance_window",
    "run_sync",
    "run_sync_safely",
    "validate_feed_url",
]
