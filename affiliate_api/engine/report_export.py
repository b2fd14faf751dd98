"""
CSV rendering of a UserReport.

Rows are newest first. Day series are labelled ``Jun 30, 2024``; month
series are labelled ``Jun 2024`` under a ``Month`` header.
"""

import csv
import io
from decimal import ROUND_HALF_UP, Decimal

from affiliate_api.core.clock import format_display_date, format_month_label, parse_date_key
from affiliate_api.models.enums import Granularity
from affiliate_api.models.reports import UserReport

CSV_COLUMNS = ("Earnings", "New Customers", "New Referrals", "Clicks Count")

CENT = Decimal("0.01")


def format_currency(value: Decimal) -> str:
    return f"${value.quantize(CENT, rounding=ROUND_HALF_UP)}"


def export_filename(report: UserReport, date_key: str) -> str:
    """``reports-last-30-days-2024-06-30.csv``"""
    slug = "-".join(report.timeframe.value.lower().split())
    return f"reports-{slug}-{date_key}.csv"


def report_to_csv(report: UserReport) -> str:
    monthly = report.granularity is Granularity.MONTH
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(("Month" if monthly else "Period",) + CSV_COLUMNS)

    for point in sorted(report.daily_data, key=lambda p: p.date, reverse=True):
        day = parse_date_key(point.date)
        label = format_month_label(day) if monthly else format_display_date(day)
        writer.writerow(
            (
                label,
                format_currency(point.earnings),
                point.new_customers,
                point.new_referrals,
                point.clicks_count,
            )
        )
    return buffer.getvalue()
