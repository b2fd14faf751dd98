"""
Pydantic v2 data models for the affiliate dashboard.

Model Organization:
    - enums: Timeframe, granularity and approval status
    - reports: stored day buckets and documents, derived report shapes

Usage:
    >>> from affiliate_api.models import MetricsDayBucket
    >>> MetricsDayBucket.from_raw({"clicks": 3, "earnings": 1.5}).earnings
    Decimal('1.5')
"""

# Enumerations
from .enums import ApprovalStatus, Granularity, Timeframe

# Report models
from .reports import (
    DailyDataPoint,
    DayMetricsUpdate,
    MetricsDayBucket,
    ReportOverview,
    ReportValidationError,
    UserReport,
    UserReportDocument,
    parse_timeframe,
    validate_date_key,
)

__all__ = [
    # Enumerations
    "ApprovalStatus",
    "Granularity",
    "Timeframe",
    # Report models
    "DailyDataPoint",
    "DayMetricsUpdate",
    "MetricsDayBucket",
    "ReportOverview",
    "ReportValidationError",
    "UserReport",
    "UserReportDocument",
    "parse_timeframe",
    "validate_date_key",
]
