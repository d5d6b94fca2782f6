"""Single source of wall-clock time for tutorhub.

Class sessions, slots, waitlist deadlines and rate-limit windows are stored as
naive datetimes in the configured app timezone. Services take a
``time_provider`` argument so tests can pin the clock; nothing else in the
package should read the system clock directly.
"""
from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo

from tutorhub.config import settings


APP_TIMEZONE = settings.app_timezone or "Asia/Kolkata"
APP_ZONEINFO = ZoneInfo(APP_TIMEZONE)


def to_local_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt
    return dt.astimezone(APP_ZONEINFO).replace(tzinfo=None)


class TimeProvider:
    """Tests subclass this and override `now`."""

    def now(self) -> datetime:
        return datetime.now(APP_ZONEINFO)

    def local_now(self) -> datetime:
        return to_local_naive(self.now())

    def today(self) -> date:
        return self.local_now().date()


default_time_provider = TimeProvider()
