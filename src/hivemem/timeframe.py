"""Time window normalisation for recall.

Accepts None, a TimeWindow, a (start, end) pair, a date, or a short
phrase such as "yesterday" or "last 3 days". All windows are UTC.
"""

from __future__ import annotations

import re
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any

from src.hivemem.errors import ValidationError
from src.hivemem.models import TimeWindow

RECENT_DAYS = 3

_LAST_N = re.compile(r"^last\s+(\d+)\s+(minute|hour|day|week|month)s?$")

_UNIT_SECONDS = {
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 7 * 86400,
    "month": 30 * 86400,
}


def _to_epoch(value: Any) -> float:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    raise ValidationError(f"Invalid time bound: {value!r}")


def _day_bounds(day: date) -> TimeWindow:
    start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    end = start + timedelta(days=1) - timedelta(microseconds=1)
    return TimeWindow(start.timestamp(), end.timestamp())


def _parse_phrase(phrase: str, now: float) -> TimeWindow:
    text = " ".join(phrase.lower().split())
    now_dt = datetime.fromtimestamp(now, tz=timezone.utc)
    today = now_dt.date()

    if text == "today":
        return TimeWindow(_day_bounds(today).start, now)
    if text == "yesterday":
        return _day_bounds(today - timedelta(days=1))
    if text in ("recent", "recently"):
        return TimeWindow(now - RECENT_DAYS * 86400, now)
    if text == "this week":
        monday = today - timedelta(days=today.weekday())
        return TimeWindow(_day_bounds(monday).start, now)
    if text == "last week":
        monday = today - timedelta(days=today.weekday())
        start = _day_bounds(monday - timedelta(days=7)).start
        return TimeWindow(start, _day_bounds(monday).start - 1e-6)
    if text == "this month":
        return TimeWindow(_day_bounds(today.replace(day=1)).start, now)
    if text == "last month":
        first = today.replace(day=1)
        prev_first = (first - timedelta(days=1)).replace(day=1)
        return TimeWindow(_day_bounds(prev_first).start, _day_bounds(first).start - 1e-6)

    match = _LAST_N.match(text)
    if match:
        amount = int(match.group(1))
        if amount <= 0:
            raise ValidationError(f"Invalid timeframe: {phrase!r}")
        return TimeWindow(now - amount * _UNIT_SECONDS[match.group(2)], now)

    raise ValidationError(f"Unrecognised timeframe: {phrase!r}")


def normalize_window(value: Any, now: float | None = None) -> TimeWindow | None:
    """Normalise a caller-supplied timeframe. None means unrestricted."""
    now = time.time() if now is None else now

    if value is None:
        return None
    if isinstance(value, TimeWindow):
        window = value
    elif isinstance(value, str):
        window = _parse_phrase(value, now)
    elif isinstance(value, datetime):
        window = _day_bounds(value.astimezone(timezone.utc).date() if value.tzinfo else value.date())
    elif isinstance(value, date):
        window = _day_bounds(value)
    elif isinstance(value, (tuple, list)) and len(value) == 2:
        window = TimeWindow(_to_epoch(value[0]), _to_epoch(value[1]))
    else:
        raise ValidationError(f"Invalid timeframe: {value!r}")

    if window.start > window.end:
        raise ValidationError("Timeframe start must not be after its end")
    return window
