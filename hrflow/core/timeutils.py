"""
Time helpers.

All persisted timestamps are naive UTC datetimes. The engine never calls
`datetime.now()` directly; components receive a clock (any zero-argument
callable returning naive UTC) so tests can move time forward.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

Clock = Callable[[], datetime]

_UNIT_SECONDS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 604800,
}

_RELATIVE_DAY = re.compile(r"^\s*day\s*([+-]?)\s*(\d+)\s*$", re.IGNORECASE)


def utcnow() -> datetime:
    """Current time as naive UTC (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_datetime(value: Any) -> datetime:
    """Accept a datetime or ISO-8601 string (trailing Z allowed)."""
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return to_naive_utc(datetime.fromisoformat(text))
    raise ValueError(f"Not a datetime: {value!r}")


def normalize_unit(unit: str) -> str:
    unit = unit.strip().lower()
    if unit.endswith("s"):
        unit = unit[:-1]
    if unit not in _UNIT_SECONDS:
        raise ValueError(f"Unknown duration unit: {unit!r}")
    return unit


def duration_to_timedelta(value: float, unit: str) -> timedelta:
    """Convert a `{value, unit}` pair (e.g. 3 days) to a timedelta."""
    if value < 0:
        raise ValueError("Duration must not be negative")
    return timedelta(seconds=value * _UNIT_SECONDS[normalize_unit(unit)])


def resolve_due_at(due: Optional[Dict[str, Any]], start: datetime) -> Optional[datetime]:
    """
    Resolve a due-date spec relative to `start`.

    Supported shapes:
        {"days": 3} / {"hours": 4}
        {"relative": "Day +3"} / {"relative": "Day 1"}
        {"absolute": "2026-01-15T09:00:00Z"}
    """
    if not due:
        return None

    if due.get("absolute"):
        return parse_datetime(due["absolute"])

    relative = due.get("relative")
    if relative:
        match = _RELATIVE_DAY.match(str(relative))
        if not match:
            raise ValueError(f"Unrecognised relative due date: {relative!r}")
        sign, amount = match.groups()
        days = -int(amount) if sign == "-" else int(amount)
        return start + timedelta(days=days)

    delta = timedelta(
        days=float(due.get("days", 0) or 0),
        hours=float(due.get("hours", 0) or 0),
    )
    if not delta:
        return None
    return start + delta
