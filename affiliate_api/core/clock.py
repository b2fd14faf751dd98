"""
Civil-calendar time provider pinned to one IANA timezone.

Wall-clock time enters the system here and only here. Everything downstream
works on ``datetime.date`` values, so day arithmetic is calendar arithmetic
and a DST transition can never skip or repeat a day.
"""

import calendar
import re
import time
from datetime import date, datetime, timedelta
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

DATE_KEY_FORMAT = "%Y-%m-%d"
_DATE_KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class TimeProvider:
    """
    Resolves "now" and date keys in a fixed timezone.

    The host's local zone is never consulted. ``now()`` is the only impure
    method; tests substitute a fixed instant by subclassing or by passing
    ``frozen_at``.

    Attributes:
        timezone: ZoneInfo the civil calendar is anchored to
    """

    def __init__(self, timezone: str = "America/Denver", frozen_at: Optional[datetime] = None):
        self.timezone_name = timezone
        self.timezone = ZoneInfo(timezone)
        self._frozen_at = frozen_at

    def now(self) -> datetime:
        """Current instant as an aware datetime in the configured zone."""
        if self._frozen_at is not None:
            return self._frozen_at.astimezone(self.timezone)
        return datetime.now(self.timezone)

    def epoch_millis(self) -> int:
        """Milliseconds since the epoch, used for cache and health bookkeeping."""
        if self._frozen_at is not None:
            return int(self._frozen_at.timestamp() * 1000)
        return int(time.time() * 1000)

    def today(self) -> date:
        """Current civil date in the configured zone."""
        return self.now().date()

    def to_civil_date(self, instant: datetime) -> date:
        """
        Civil date of an instant in the configured zone.

        Naive datetimes are taken to be UTC.
        """
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=ZoneInfo("UTC"))
        return instant.astimezone(self.timezone).date()

    def date_key(self, instant: Optional[datetime] = None) -> str:
        """``YYYY-MM-DD`` key of an instant (default: now)."""
        return format_date_key(self.to_civil_date(instant or self.now()))


def format_date_key(day: date) -> str:
    return day.strftime(DATE_KEY_FORMAT)


def parse_date_key(value: str) -> date:
    """
    Parse a ``YYYY-MM-DD`` key into a date.

    Raises:
        ValueError: If the string is not a zero-padded ISO calendar date
    """
    if not isinstance(value, str) or not _DATE_KEY_PATTERN.match(value):
        raise ValueError(f"Malformed date key: {value!r}")
    return datetime.strptime(value, DATE_KEY_FORMAT).date()


def is_date_key(value: str) -> bool:
    try:
        parse_date_key(value)
    except ValueError:
        return False
    return True


def add_days(day: date, days: int) -> date:
    return day + timedelta(days=days)


def add_months(day: date, months: int) -> date:
    """Shift by whole months, clamping the day to the target month's length."""
    month_index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(month_index, 12)
    month += 1
    return date(year, month, min(day.day, days_in_month(year, month)))


def add_years(day: date, years: int) -> date:
    """Shift by whole years; Feb 29 becomes Feb 28 in non-leap years."""
    return add_months(day, years * 12)


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def first_of_month(day: date) -> date:
    return day.replace(day=1)


def last_of_month(day: date) -> date:
    return day.replace(day=days_in_month(day.year, day.month))


def iter_days(start: date, end: date) -> Iterator[date]:
    """Every calendar day from ``start`` to ``end`` inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def format_display_date(day: date) -> str:
    """Chart/table label, e.g. ``Jun 30, 2024``."""
    return f"{day.strftime('%b')} {day.day}, {day.year}"


def format_month_label(day: date) -> str:
    """Month-bucket label, e.g. ``Jun 2024``."""
    return day.strftime("%b %Y")
