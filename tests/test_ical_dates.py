from __future__ import annotations

from datetime import date

import pytest

from booking_sync.ical.dates import (
    ICalDateError,
    interpret_event_dates,
    interpret_events,
    parse_ical_date,
)
from booking_sync.ical.parser import RawEvent


def _event(dtstart: str, dtend: str, uid: str = "evt-1") -> RawEvent:
    return RawEvent(uid=uid, summary="Reserved", dtstart=dtstart, dtend=dtend)


def test_all_day_end_is_made_inclusive():
    dated = interpret_event_dates(_event("20250110", "20250113"))

    assert dated.start_date == date(2025, 1, 10)
    assert dated.end_date == date(2025, 1, 12)
    assert dated.all_day is True


def test_single_night_all_day_event_ends_on_start_day():
    dated = interpret_event_dates(_event("20250601", "20250602"))
    assert dated.end_date == dated.start_date == date(2025, 6, 1)


def test_all_day_end_never_precedes_start():
    dated = interpret_event_dates(_event("20250601", "20250601"))
    assert dated.end_date == date(2025, 6, 1)


def test_all_day_correction_crosses_month_and_year():
    dated = interpret_event_dates(_event("20241230", "20250101"))
    assert dated.end_date == date(2024, 12, 31)


def test_date_time_events_keep_their_end_day():
    dated = interpret_event_dates(_event("20250601T150000Z", "20250603T110000Z"))

    assert dated.start_date == date(2025, 6, 1)
    assert dated.end_date == date(2025, 6, 3)
    assert dated.all_day is False


def test_timed_start_disables_correction_even_with_date_end():
    dated = interpret_event_dates(_event("20250601T150000", "20250603"))
    assert dated.end_date == date(2025, 6, 3)


@pytest.mark.parametrize(
    ("token", "expected"),
    [
        ("20250601", date(2025, 6, 1)),
        ("20250601T000000Z", date(2025, 6, 1)),
        ("20250601T235959", date(2025, 6, 1)),
        (" 20240229 ", date(2024, 2, 29)),
        ("20250601t1200", date(2025, 6, 1)),
    ],
)
def test_parse_ical_date_reads_calendar_day(token: str, expected: date):
    assert parse_ical_date(token) == expected


@pytest.mark.parametrize(
    "token",
    ["", "2025-06-01", "202506", "20250230", "20251301", "2025060a", "20250601T250000", "20250601T12000000"],
)
def test_parse_ical_date_rejects_malformed_tokens(token: str):
    with pytest.raises(ICalDateError):
        parse_ical_date(token)


def test_interpret_events_drops_unreadable_dates():
    dated, dropped = interpret_events(
        [
            _event("20250601", "20250604", uid="good"),
            _event("not-a-date", "20250604", uid="bad-start"),
            _event("20250601", "20250631", uid="bad-end"),
        ]
    )

    assert [item.raw.uid for item in dated] == ["good"]
    assert dropped == 2
