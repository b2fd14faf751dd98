"""
Report engines for the affiliate dashboard.

- report_aggregator: timeframe resolution, densification and month rollup
- report_export: CSV rendering of an aggregated report

Both are pure: they take a clock and stored buckets and never touch the
store.
"""

__all__ = [
    "ReportAggregator",
    "report_to_csv",
]

from affiliate_api.engine.report_aggregator import ReportAggregator
from affiliate_api.engine.report_export import report_to_csv
