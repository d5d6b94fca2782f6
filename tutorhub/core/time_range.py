from __future__ import annotations

import re
from datetime import date, datetime, time
from typing import Any


WEEKDAY_NAMES = ('Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday')
MINUTES_PER_DAY = 24 * 60

_CLOCK_RE = re.compile(r'^\s*(\d{1,2})(?::(\d{2}))?\s*([AaPp]\.?[Mm]\.?)?\s*$')
_EMBEDDED_CLOCK_RE = re.compile(r'(\d{1,2}):(\d{2})')


def overlaps(start_a: Any, end_a: Any, start_b: Any, end_b: Any) -> bool:
    """Closed-open interval intersection; touching endpoints do not overlap."""
    return start_a < end_b and start_b < end_a


def duration_minutes(start: datetime, end: datetime) -> int:
    return int(round((end - start).total_seconds() / 60.0))


def to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def from_minutes(total: int) -> time:
    if total < 0 or total >= MINUTES_PER_DAY:
        raise ValueError('Minutes out of range for a clock time')
    return time(hour=total // 60, minute=total % 60)


def parse_hhmm(value: str) -> time:
    hh, mm = value.split(':', 1)
    hour = int(hh)
    minute = int(mm[:2])
    if hour < 0 or hour > 23 or minute < 0 or minute > 59:
        raise ValueError('Invalid HH:MM time')
    return time(hour=hour, minute=minute)


def parse_time_string(value: str | None) -> int | None:
    """Minutes since midnight for '17:30', '5:30 PM', '5 pm' or a bare hour like '17'.

    Strings that carry a clock time inside other text ('Mon 17:30') fall back to
    the first HH:MM found. Unparseable input returns None.
    """
    if not value:
        return None
    text = str(value).strip()
    match = _CLOCK_RE.match(text)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        meridiem = (match.group(3) or '').replace('.', '').lower()
        if meridiem:
            if hour < 1 or hour > 12:
                return None
            if meridiem == 'pm' and hour != 12:
                hour += 12
            elif meridiem == 'am' and hour == 12:
                hour = 0
        if hour > 23 or minute > 59:
            return None
        return hour * 60 + minute

    embedded = _EMBEDDED_CLOCK_RE.search(text)
    if embedded:
        hour, minute = int(embedded.group(1)), int(embedded.group(2))
        if hour <= 23 and minute <= 59:
            return hour * 60 + minute
    return None


def weekday_name(day: date) -> str:
    return WEEKDAY_NAMES[day.weekday()]


def weekday_index(name: str) -> int:
    normalized = (name or '').strip().lower()
    for index, candidate in enumerate(WEEKDAY_NAMES):
        if candidate.lower() == normalized or candidate[:3].lower() == normalized:
            return index
    raise ValueError(f'Unknown day of week: {name}')


def add_minutes(value: time, minutes: int) -> time | None:
    total = to_minutes(value) + minutes
    if total < 0 or total >= MINUTES_PER_DAY:
        return None
    return from_minutes(total)
