"""Rolling-window planning for tutoring sessions.

Pure functions: given what already exists for an allocation, decide how many
sessions to add and on which dates/time. The scheduler service owns the I/O.
"""

import re
from dataclasses import dataclass
from datetime import date, time, timedelta
from typing import Any

WEEKDAYS: frozenset[int] = frozenset({0, 1, 2, 3, 4})  # Monday..Friday

_DAY_NAMES = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}

_TIME_24H = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*$")
_TIME_12H = re.compile(r"^\s*(\d{1,2})(?::(\d{2}))?\s*([AaPp])\.?[Mm]\.?\s*$")


def _parse_time(value: Any) -> time | None:
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        m = _TIME_24H.match(value)
        if m:
            hour, minute = int(m.group(1)), int(m.group(2))
            if hour < 24 and minute < 60:
                return time(hour, minute)
        m = _TIME_12H.match(value)
        if m:
            hour, minute = int(m.group(1)), int(m.group(2) or 0)
            if 1 <= hour <= 12 and minute < 60:
                hour = hour % 12 + (12 if m.group(3).lower() == "p" else 0)
                return time(hour, minute)
    return None


def parse_time_slot(value: Any, default: str = "16:00") -> time:
    """Parse "16:00", "16:00:00" or "4:00 PM"; anything unparseable falls back to ``default``."""
    return _parse_time(value) or _parse_time(default) or time(16, 0)


def parse_start_date(value: Any) -> date | None:
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def parse_days_of_week(value: Any) -> frozenset[int]:
    """Weekday hints as 0=Monday..6=Sunday; names ("mon", "Tuesday") or ints. Empty/invalid -> weekdays."""
    if not isinstance(value, (list, tuple, set, frozenset)):
        return WEEKDAYS
    days: set[int] = set()
    for item in value:
        if isinstance(item, int) and not isinstance(item, bool) and 0 <= item <= 6:
            days.add(item)
        elif isinstance(item, str):
            key = item.strip().lower()
            for name, number in _DAY_NAMES.items():
                if len(key) >= 3 and name.startswith(key):
                    days.add(number)
                    break
    return frozenset(days) or WEEKDAYS


def sessions_to_create(upcoming: int, consumed: int, tier: int, low_water: int, high_water: int) -> int:
    """How many sessions to add to the window.

    Nothing while ``upcoming`` is at or above the low-water mark; otherwise
    refill up to the high-water mark, never beyond what the tier has left.
    ``consumed`` counts scheduled plus completed sessions.
    """
    if upcoming >= low_water:
        return 0
    remaining = max(tier - consumed, 0)
    return max(min(high_water - upcoming, remaining), 0)


def next_session_dates(
    count: int,
    today: date,
    start_date: date | None = None,
    last_scheduled: date | None = None,
    days_of_week: frozenset[int] = WEEKDAYS,
) -> list[date]:
    """The next ``count`` eligible dates.

    Dates continue the day after the latest existing session, never before
    the start date and never in the past.
    """
    current = max(start_date or today, today)
    if last_scheduled is not None:
        current = max(current, last_scheduled + timedelta(days=1))

    dates: list[date] = []
    while len(dates) < count:
        if current.weekday() in days_of_week:
            dates.append(current)
        current += timedelta(days=1)
    return dates


@dataclass(frozen=True)
class WindowPlan:
    slot: time
    dates: list[date]

    @property
    def count(self) -> int:
        return len(self.dates)


def plan_window(
    metadata: dict[str, Any],
    *,
    upcoming: int,
    consumed: int,
    last_scheduled: date | None,
    today: date,
    low_water: int,
    high_water: int,
    default_time_slot: str,
) -> WindowPlan:
    """Plan the sessions to add for one allocation from its metadata and current session counts."""
    tier = int(metadata.get("sessionCount") or 0)
    slot = parse_time_slot(
        metadata.get("timeSlot") or metadata.get("preferredTimeSlot"),
        default=default_time_slot,
    )
    count = sessions_to_create(upcoming, consumed, tier, low_water, high_water)
    if count == 0:
        return WindowPlan(slot=slot, dates=[])

    dates = next_session_dates(
        count,
        today=today,
        start_date=parse_start_date(metadata.get("startDate")),
        last_scheduled=last_scheduled,
        days_of_week=parse_days_of_week(metadata.get("daysOfWeek")),
    )
    return WindowPlan(slot=slot, dates=dates)
