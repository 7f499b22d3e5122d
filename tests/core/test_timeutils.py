"""
Unit Tests for time helpers (durations, due dates, datetime parsing)
"""

from datetime import datetime, timedelta, timezone

import pytest

from hrflow.core.timeutils import (
    duration_to_timedelta,
    normalize_unit,
    parse_datetime,
    resolve_due_at,
    utcnow,
)

START = datetime(2026, 10, 19, 9, 0, 0)


@pytest.mark.unit
def test_utcnow_is_naive():
    assert utcnow().tzinfo is None


@pytest.mark.unit
@pytest.mark.parametrize("raw,unit", [
    ("days", "day"),
    ("Day", "day"),
    (" hours ", "hour"),
    ("minutes", "minute"),
    ("weeks", "week"),
    ("second", "second"),
])
def test_normalize_unit(raw, unit):
    assert normalize_unit(raw) == unit


@pytest.mark.unit
def test_normalize_unit_rejects_unknown():
    with pytest.raises(ValueError, match="Unknown duration unit"):
        normalize_unit("fortnights")


@pytest.mark.unit
def test_duration_to_timedelta():
    assert duration_to_timedelta(1, "days") == timedelta(days=1)
    assert duration_to_timedelta(2, "hours") == timedelta(hours=2)
    assert duration_to_timedelta(1.5, "minute") == timedelta(seconds=90)


@pytest.mark.unit
def test_duration_must_not_be_negative():
    with pytest.raises(ValueError):
        duration_to_timedelta(-1, "days")


@pytest.mark.unit
def test_parse_datetime_converts_to_naive_utc():
    assert parse_datetime("2026-01-15T09:00:00Z") == datetime(2026, 1, 15, 9, 0, 0)
    assert parse_datetime("2026-01-15T11:00:00+02:00") == datetime(2026, 1, 15, 9, 0, 0)
    aware = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)
    assert parse_datetime(aware) == datetime(2026, 1, 15, 9, 0, 0)


@pytest.mark.unit
def test_parse_datetime_rejects_other_types():
    with pytest.raises(ValueError):
        parse_datetime(12345)


# ============================================================================
# DUE DATES
# ============================================================================

@pytest.mark.unit
def test_resolve_due_at_none():
    assert resolve_due_at(None, START) is None
    assert resolve_due_at({}, START) is None


@pytest.mark.unit
def test_resolve_due_at_days_and_hours():
    assert resolve_due_at({"days": 3}, START) == START + timedelta(days=3)
    assert resolve_due_at({"hours": 4}, START) == START + timedelta(hours=4)
    assert resolve_due_at({"days": 1, "hours": 2}, START) == START + timedelta(days=1, hours=2)


@pytest.mark.unit
def test_resolve_due_at_relative_day():
    assert resolve_due_at({"relative": "Day +3"}, START) == START + timedelta(days=3)
    assert resolve_due_at({"relative": "day-1"}, START) == START - timedelta(days=1)


@pytest.mark.unit
def test_resolve_due_at_unsigned_relative_day_counts_forward():
    assert resolve_due_at({"relative": "Day 1"}, START) == START + timedelta(days=1)
    assert resolve_due_at({"relative": "day 0"}, START) == START


@pytest.mark.unit
def test_resolve_due_at_absolute_wins():
    due = resolve_due_at({"absolute": "2026-11-02T09:00:00Z", "days": 3}, START)

    assert due == datetime(2026, 11, 2, 9, 0, 0)


@pytest.mark.unit
def test_resolve_due_at_rejects_bad_relative():
    with pytest.raises(ValueError, match="Unrecognised relative due date"):
        resolve_due_at({"relative": "next tuesday"}, START)
