from __future__ import annotations

from dataclasses import dataclass
from datetime import date, time, timedelta
import logging
from typing import Iterable

from .parser import RawEvent

_logger = logging.getLogger(__name__)


class ICalDateError(ValueError):
    """Raised when a DATE or DATE-TIME token cannot be read."""


@dataclass(frozen=True)
class DatedEvent:
    """A feed event with its stay interpreted as inclusive calendar dates."""

    raw: RawEvent
    start_date: date
    end_date: date
    all_day: bool


def is_date_time(token: str) -> bool:
    return "T" in token.strip().upper()


def _digits(value: str, token: str) -> int:
    if not value.isascii() or not value.isdigit():
        raise ICalDateError(f"Invalid iCalendar date token: {token!r}")
    return int(value)


def parse_ical_date(token: str) -> date:
    """Return the calendar day of a ``YYYYMMDD`` or ``YYYYMMDDTHHMMSS[Z]`` token.

    The time of day of a DATE-TIME is validated but does not change the day.
    """
    raw = str(token or "").strip().upper()
    if is_date_time(raw):
        cleaned = raw.replace("T", "").replace("Z", "")
        clock = cleaned[8:]
        if clock:
            hour = _digits(clock[0:2], token)
            minute = _digits(clock[2:4], token) if len(clock) > 2 else 0
            second = _digits(clock[4:6], token) if len(clock) > 4 else 0
            if len(clock) > 6:
                raise ICalDateError(f"Invalid iCalendar date token: {token!r}")
            try:
                time(hour, minute, min(second, 59))
            except ValueError as exc:
                raise ICalDateError(f"Invalid iCalendar time in token: {token!r}") from exc
    else:
        cleaned = raw
        if len(cleaned) != 8:
            raise ICalDateError(f"Invalid iCalendar date token: {token!r}")

    day_part = cleaned[:8]
    if len(day_part) != 8:
        raise ICalDateError(f"Invalid iCalendar date token: {token!r}")
    year = _digits(day_part[0:4], token)
    month = _digits(day_part[4:6], token)
    day = _digits(day_part[6:8], token)
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise ICalDateError(f"Invalid iCalendar date: {token!r}") from exc


def interpret_event_dates(event: RawEvent) -> DatedEvent:
    """Interpret ``event`` start/end tokens as an inclusive stay.

    All-day events (DTSTART without a time) carry an exclusive DTEND, so one
    day is taken off to get the last occupied night. The end never precedes
    the start.
    """
    start = parse_ical_date(event.dtstart)
    end = parse_ical_date(event.dtend)
    all_day = not is_date_time(event.dtstart)
    if all_day:
        end = end - timedelta(days=1)
    if end < start:
        end = start
    return DatedEvent(raw=event, start_date=start, end_date=end, all_day=all_day)


def interpret_events(events: Iterable[RawEvent]) -> tuple[list[DatedEvent], int]:
    """Interpret every event; unreadable dates drop the event.

    Returns the interpreted events and the number dropped.
    """
    dated: list[DatedEvent] = []
    dropped = 0
    for event in events:
        try:
            dated.append(interpret_event_dates(event))
        except ICalDateError as exc:
            dropped += 1
            _logger.debug("dropping ical event uid=%s: %s", event.uid, exc)
    return dated, dropped


__all__ = [
    "DatedEvent",
    "ICalDateError",
    "interpret_event_dates",
    "interpret_events",
    "is_date_time",
    "parse_ical_date",
]
