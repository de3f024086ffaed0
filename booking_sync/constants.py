from __future__ import annotations

DEFAULT_RQ_QUEUE_NAME = "booking-sync"
SYNC_LOCK_KEY_PREFIX = "booking_sync:sync-lock:"

DEFAULT_PLATFORM_NAME = "Airbnb"
DEFAULT_SYNC_FREQUENCY_HOURS = 24

# Events are kept when they start within [today, today + N years).
RELEVANCE_WINDOW_YEARS = 2

SYNC_OUTCOME_SUCCESS = "success"
SYNC_OUTCOME_SKIPPED = "skipped"
SYNC_OUTCOME_FAILED = "failed"
SYNC_OUTCOMES = (
    SYNC_OUTCOME_SUCCESS,
    SYNC_OUTCOME_SKIPPED,
    SYNC_OUTCOME_FAILED,
)

__all__ = [
    "DEFAULT_PLATFORM_NAME",
    "DEFAULT_RQ_QUEUE_NAME",
    "DEFAULT_SYNC_FREQUENCY_HOURS",
    "RELEVANCE_WINDOW_YEARS",
    "SYNC_LOCK_KEY_PREFIX",
    "SYNC_OUTCOMES",
    "SYNC_OUTCOME_FAILED",
    "SYNC_OUTCOME_SKIPPED",
    "SYNC_OUTCOME_SUCCESS",
]
