"""
Enumeration types for the affiliate dashboard.

All enums inherit from str to ensure JSON serialization compatibility.
"""

from enum import Enum


class Timeframe(str, Enum):
    """
    Named reporting windows.

    Each value maps deterministically to an inclusive date range in the
    reporting timezone (see ``ReportAggregator.resolve_range``).
    """

    TODAY = "Today"
    YESTERDAY = "Yesterday"
    LAST_30_DAYS = "Last 30 Days"
    THIS_MONTH = "This Month"
    LAST_MONTH = "Last Month"
    LAST_6_MONTHS = "Last 6 Months"
    THIS_YEAR = "This Year"
    ALL_TIME = "All Time"

    @property
    def aggregates_by_month(self) -> bool:
        return self in MONTHLY_TIMEFRAMES


MONTHLY_TIMEFRAMES = frozenset(
    {Timeframe.LAST_6_MONTHS, Timeframe.THIS_YEAR, Timeframe.ALL_TIME}
)


class Granularity(str, Enum):
    """Resolution of a report series."""

    DAY = "day"
    MONTH = "month"


class ApprovalStatus(str, Enum):
    """Status values of an ``approved_users`` row."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    REVOKED = "revoked"
