"""
Report data models for the affiliate dashboard.

Stored shapes (``MetricsDayBucket``, ``UserReportDocument``) mirror the JSON
kept in the ``dashboard_kpis.user_reports`` column. Derived shapes
(``DailyDataPoint``, ``ReportOverview``, ``UserReport``) are immutable and
recomputed on every request.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator

from affiliate_api.core.clock import parse_date_key
from affiliate_api.models.enums import Granularity, Timeframe

logger = structlog.get_logger(__name__)

METRIC_FIELDS = ("clicks", "signups", "customers", "earnings")


class ReportValidationError(ValueError):
    """Raised for malformed timeframes, date keys or metric payloads."""

    retryable = False


def parse_timeframe(value: Union[str, Timeframe]) -> Timeframe:
    """
    Resolve a timeframe name.

    Unknown names fall back to ``Last 30 Days``; a missing or blank value is
    rejected.

    Raises:
        ReportValidationError: If value is not a non-empty string
    """
    if isinstance(value, Timeframe):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ReportValidationError(f"Timeframe must be a non-empty string, got {value!r}")

    wanted = value.strip().lower()
    for timeframe in Timeframe:
        if timeframe.value.lower() == wanted:
            return timeframe

    logger.info("timeframe_unrecognized", timeframe=value, fallback=Timeframe.LAST_30_DAYS.value)
    return Timeframe.LAST_30_DAYS


def validate_date_key(value: str) -> date:
    """
    Parse a ``YYYY-MM-DD`` date key.

    Raises:
        ReportValidationError: If the key is not a valid calendar date
    """
    try:
        return parse_date_key(value)
    except ValueError as e:
        raise ReportValidationError(str(e)) from e


def to_decimal(value: Any) -> Decimal:
    """Exact decimal for a JSON number; floats go through ``str`` to drop binary noise."""
    if value is None:
        return Decimal(0)
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ReportValidationError("Earnings must be a number")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ReportValidationError(f"Earnings must be a number, got {value!r}") from e


def decimal_to_json(value: Decimal) -> Union[int, float]:
    if value == value.to_integral_value():
        return int(value)
    return float(value)


class MetricsDayBucket(BaseModel):
    """
    Metrics for one user on one civil day.

    Attributes:
        clicks: Referral link clicks
        signups: Referred signups
        customers: Referred signups that became paying customers
        earnings: Commission earned
    """

    model_config = ConfigDict(frozen=True)

    clicks: int = Field(default=0, ge=0)
    signups: int = Field(default=0, ge=0)
    customers: int = Field(default=0, ge=0)
    earnings: Decimal = Field(default=Decimal(0), ge=0)

    @field_validator("earnings", mode="before")
    @classmethod
    def coerce_earnings(cls, v: Any) -> Decimal:
        """Route JSON numbers through ``to_decimal``."""
        return to_decimal(v)

    @field_serializer("earnings", when_used="json")
    def serialize_earnings(self, v: Decimal) -> Union[int, float]:
        return decimal_to_json(v)

    @classmethod
    def zero(cls) -> "MetricsDayBucket":
        return cls()

    @classmethod
    def from_raw(cls, raw: Any) -> "MetricsDayBucket":
        """
        Build a bucket from stored JSON, treating missing or null fields as 0.

        Raises:
            ReportValidationError: If a field is negative or not numeric
        """
        if isinstance(raw, MetricsDayBucket):
            return raw
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise ReportValidationError(f"Day bucket must be an object, got {type(raw).__name__}")
        values = {name: raw.get(name) or 0 for name in METRIC_FIELDS}
        try:
            return cls(**values)
        except ValidationError as e:
            raise ReportValidationError(f"Invalid day bucket: {e}") from e

    def merge(self, update: "DayMetricsUpdate") -> "MetricsDayBucket":
        """Overwrite the fields present in ``update``; others keep their value."""
        return self.model_copy(update=update.model_dump(exclude_unset=True, exclude_none=True))

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class DayMetricsUpdate(BaseModel):
    """Partial day-bucket payload. Absent fields are left untouched on merge."""

    model_config = ConfigDict(extra="forbid")

    clicks: Optional[int] = Field(default=None, ge=0)
    signups: Optional[int] = Field(default=None, ge=0)
    customers: Optional[int] = Field(default=None, ge=0)
    earnings: Optional[Decimal] = Field(default=None, ge=0)

    @field_validator("earnings", mode="before")
    @classmethod
    def coerce_earnings(cls, v: Any) -> Optional[Decimal]:
        """Route JSON numbers through ``to_decimal``."""
        return None if v is None else to_decimal(v)

    @classmethod
    def parse(cls, payload: Union["DayMetricsUpdate", dict]) -> "DayMetricsUpdate":
        """
        Validate a partial-metrics payload.

        Raises:
            ReportValidationError: On unknown fields or negative values
        """
        if isinstance(payload, DayMetricsUpdate):
            return payload
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise ReportValidationError(f"Invalid metrics update: {e}") from e


class UserReportDocument(BaseModel):
    """
    One user's stored report document.

    ``overview`` is the sparse ``date_key -> bucket`` map. ``links``,
    ``sub_ids`` and ``traffic_sources`` are opaque and passed through as-is.
    ``version`` is the row's optimistic-concurrency stamp (0 = not stored yet).
    """

    user_id: str
    overview: dict[str, MetricsDayBucket] = Field(default_factory=dict)
    links: dict[str, Any] = Field(default_factory=dict)
    sub_ids: dict[str, Any] = Field(default_factory=dict)
    traffic_sources: dict[str, Any] = Field(default_factory=dict)
    version: int = Field(default=0, ge=0)
    updated_at: Optional[datetime] = None

    @classmethod
    def empty(cls, user_id: str) -> "UserReportDocument":
        return cls(user_id=user_id)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "UserReportDocument":
        """Build from a ``dashboard_kpis`` row."""
        reports = row.get("user_reports") or {}
        overview = reports.get("overview") or {}
        return cls(
            user_id=str(row["user_id"]),
            overview={key: MetricsDayBucket.from_raw(raw) for key, raw in overview.items()},
            links=reports.get("links") or {},
            sub_ids=reports.get("sub_ids") or {},
            traffic_sources=reports.get("traffic_sources") or {},
            version=row.get("version") or 0,
            updated_at=row.get("updated_at"),
        )

    def to_user_reports(self) -> dict[str, Any]:
        """JSON payload for the ``user_reports`` column."""
        return {
            "links": self.links,
            "sub_ids": self.sub_ids,
            "overview": {key: bucket.to_json() for key, bucket in sorted(self.overview.items())},
            "traffic_sources": self.traffic_sources,
        }

    def bucket(self, date_key: str) -> MetricsDayBucket:
        return self.overview.get(date_key) or MetricsDayBucket.zero()


class ReportOverview(BaseModel):
    """Summed metrics over a set of days."""

    model_config = ConfigDict(frozen=True)

    earnings: Decimal = Decimal(0)
    clicks: int = 0
    signups: int = 0
    customers: int = 0

    @field_serializer("earnings", when_used="json")
    def serialize_earnings(self, v: Decimal) -> Union[int, float]:
        return decimal_to_json(v)

    @classmethod
    def from_buckets(cls, buckets) -> "ReportOverview":
        earnings, clicks, signups, customers = Decimal(0), 0, 0, 0
        for bucket in buckets:
            earnings += bucket.earnings
            clicks += bucket.clicks
            signups += bucket.signups
            customers += bucket.customers
        return cls(earnings=earnings, clicks=clicks, signups=signups, customers=customers)

    @property
    def referrals(self) -> int:
        return self.signups


class DailyDataPoint(BaseModel):
    """One entry of a report series: a day, or a month keyed by its first day."""

    model_config = ConfigDict(frozen=True)

    date: str
    earnings: Decimal = Decimal(0)
    new_customers: int = 0
    new_referrals: int = 0
    clicks_count: int = 0

    @field_serializer("earnings", when_used="json")
    def serialize_earnings(self, v: Decimal) -> Union[int, float]:
        return decimal_to_json(v)

    @classmethod
    def from_bucket(cls, date_key: str, bucket: MetricsDayBucket) -> "DailyDataPoint":
        return cls(
            date=date_key,
            earnings=bucket.earnings,
            new_customers=bucket.customers,
            new_referrals=bucket.signups,
            clicks_count=bucket.clicks,
        )


class UserReport(BaseModel):
    """
    Dense, ordered report for one timeframe.

    Attributes:
        timeframe: Timeframe the report was built for
        start_date: First day of the resolved range (inclusive)
        end_date: Last day of the resolved range (inclusive)
        granularity: ``day`` or ``month``
        overview: Totals over every day in range, summed before aggregation
        daily_data: Ascending series with no gaps
    """

    model_config = ConfigDict(frozen=True)

    timeframe: Timeframe
    start_date: str
    end_date: str
    granularity: Granularity
    overview: ReportOverview
    daily_data: tuple[DailyDataPoint, ...]
