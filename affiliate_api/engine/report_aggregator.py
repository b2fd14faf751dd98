"""
Report Aggregator: sparse day buckets to a dense timeframe series.

Resolves a named timeframe to an inclusive civil-date range in the
reporting timezone, zero-fills every day the sparse map lacks, sums
totals, and collapses long timeframes to one entry per month.
Pure apart from reading "today" from the injected TimeProvider.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Iterator, Mapping, Union

import structlog

from affiliate_api.core.clock import (
    TimeProvider,
    add_days,
    add_months,
    add_years,
    first_of_month,
    format_date_key,
    is_date_key,
    iter_days,
    last_of_month,
    parse_date_key,
)
from affiliate_api.models.enums import Granularity, Timeframe
from affiliate_api.models.reports import (
    DailyDataPoint,
    MetricsDayBucket,
    ReportOverview,
    UserReport,
    parse_timeframe,
)

logger = structlog.get_logger(__name__)

LAST_30_DAYS_SPAN = 30
LAST_6_MONTHS_SPAN = 6


@dataclass(frozen=True)
class DateRange:
    """Inclusive civil-date range."""

    start: date
    end: date

    def __len__(self) -> int:
        return (self.end - self.start).days + 1

    def days(self) -> Iterator[date]:
        return iter_days(self.start, self.end)

    def keys(self) -> list[str]:
        return [format_date_key(day) for day in self.days()]


def year_range(year: int) -> DateRange:
    return DateRange(date(year, 1, 1), date(year, 12, 31))


def aggregate_by_month(points: Iterable[DailyDataPoint]) -> list[DailyDataPoint]:
    """
    Collapse a daily series into monthly buckets.

    Each bucket is keyed by the first day of its month and holds the sum of
    its days. Output is ascending by date.
    """
    months: dict[str, dict[str, Any]] = {}
    for point in points:
        month_key = f"{point.date[:7]}-01"
        totals = months.setdefault(
            month_key,
            {"earnings": Decimal(0), "new_customers": 0, "new_referrals": 0, "clicks_count": 0},
        )
        totals["earnings"] += point.earnings
        totals["new_customers"] += point.new_customers
        totals["new_referrals"] += point.new_referrals
        totals["clicks_count"] += point.clicks_count

    return [DailyDataPoint(date=key, **totals) for key, totals in sorted(months.items())]


class ReportAggregator:
    """
    Turns a sparse ``date_key -> metrics`` map into a gap-free report.

    Output guarantee: the series has one entry per calendar day in range
    (one per month for Last 6 Months, This Year and All Time), and the
    overview equals the sum of the per-day values before aggregation.
    """

    def __init__(self, clock: TimeProvider, all_time_lookback_years: int = 2):
        self.clock = clock
        self.all_time_lookback_years = all_time_lookback_years

    def resolve_range(
        self,
        timeframe: Union[str, Timeframe],
        date_keys: Iterable[str] = (),
    ) -> DateRange:
        """
        Map a timeframe to its inclusive date range.

        Args:
            timeframe: Timeframe or timeframe name
            date_keys: Keys present in the sparse map; only consulted by All Time

        Returns:
            DateRange in the reporting timezone
        """
        timeframe = parse_timeframe(timeframe)
        today = self.clock.today()

        if timeframe is Timeframe.TODAY:
            return DateRange(today, today)
        if timeframe is Timeframe.YESTERDAY:
            yesterday = add_days(today, -1)
            return DateRange(yesterday, yesterday)
        if timeframe is Timeframe.THIS_MONTH:
            return DateRange(first_of_month(today), last_of_month(today))
        if timeframe is Timeframe.LAST_MONTH:
            start = add_months(first_of_month(today), -1)
            return DateRange(start, last_of_month(start))
        if timeframe is Timeframe.LAST_6_MONTHS:
            return DateRange(add_months(today, -LAST_6_MONTHS_SPAN), today)
        if timeframe is Timeframe.THIS_YEAR:
            return year_range(today.year)
        if timeframe is Timeframe.ALL_TIME:
            return self._all_time_range(today, date_keys)
        return DateRange(add_days(today, -(LAST_30_DAYS_SPAN - 1)), today)

    def _all_time_range(self, today: date, date_keys: Iterable[str]) -> DateRange:
        # Young accounts get This Year instead of a mostly-empty multi-year chart.
        cutoff = date(today.year - 1, 1, 1)
        has_older_data = any(
            parse_date_key(key) < cutoff for key in date_keys if is_date_key(key)
        )
        if not has_older_data:
            logger.debug("all_time_narrowed_to_this_year", cutoff=format_date_key(cutoff))
            return year_range(today.year)
        return DateRange(add_years(today, -self.all_time_lookback_years), today)

    def run(
        self,
        overview: Mapping[str, Union[MetricsDayBucket, dict]],
        timeframe: Union[str, Timeframe],
    ) -> UserReport:
        """
        Build the dense report for ``timeframe``.

        Args:
            overview: Sparse map of date key to bucket (model or stored JSON)
            timeframe: Timeframe or timeframe name

        Returns:
            UserReport with ascending series and summed overview

        Raises:
            ReportValidationError: Malformed timeframe or bucket
        """
        timeframe = parse_timeframe(timeframe)
        date_range = self.resolve_range(timeframe, overview.keys())

        buckets = []
        points = []
        for date_key in date_range.keys():
            bucket = MetricsDayBucket.from_raw(overview.get(date_key))
            buckets.append(bucket)
            points.append(DailyDataPoint.from_bucket(date_key, bucket))

        granularity = Granularity.DAY
        if timeframe.aggregates_by_month:
            points = aggregate_by_month(points)
            granularity = Granularity.MONTH

        points.sort(key=lambda point: point.date)

        return UserReport(
            timeframe=timeframe,
            start_date=format_date_key(date_range.start),
            end_date=format_date_key(date_range.end),
            granularity=granularity,
            overview=ReportOverview.from_buckets(buckets),
            daily_data=tuple(points),
        )


def total_buckets(overview: Mapping[str, Union[MetricsDayBucket, dict]]) -> ReportOverview:
    """Sum every bucket in a sparse map regardless of date."""
    return ReportOverview.from_buckets(MetricsDayBucket.from_raw(raw) for raw in overview.values())
