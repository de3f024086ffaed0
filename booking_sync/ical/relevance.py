from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Iterable

from booking_sync.constants import RELEVANCE_WINDOW_YEARS

from .dates import DatedEvent


def _reference_date(reference_now: date | datetime) -> date:
    if isinstance(reference_now, datetime):
        if reference_now.tzinfo is not None:
            reference_now = reference_now.astimezone(timezone.utc)
        return reference_now.date()
    return reference_now


def _add_years(value: date, years: int) -> date:
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        # Feb 29 in a non-leap target year.
        return value.replace(year=value.year + years, day=28)


def relevance_window(reference_now: date | datetime) -> tuple[date, date]:
    """Return the half-open ``[start, end)`` window of relevant start dates."""
    start = _reference_date(reference_now)
    return start, _add_years(start, RELEVANCE_WINDOW_YEARS)


def filter_relevant_events(
    events: Iterable[DatedEvent],
    reference_now: date | datetime,
) -> list[DatedEvent]:
    window_start, window_end = relevance_window(reference_now)
    return [event for event in events if window_start <= event.start_date < window_end]


__all__ = ["filter_relevant_events", "relevance_window"]
