#!/usr/bin/env python3
"""
Ensure every affiliate has a report bucket for today.

Intended for a daily cron shortly after midnight in the reporting timezone.
Users that fail are listed and the script exits non-zero; the others are
still seeded.

Usage:
    python scripts/seed_daily_reports.py                  # today, store from .env
    python scripts/seed_daily_reports.py --date 2024-06-30
    python scripts/seed_daily_reports.py --backend duckdb --db-path ./data/affiliate.duckdb
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from affiliate_api.config import get_settings
from affiliate_api.dependencies import build_container
from affiliate_api.models.reports import ReportValidationError, validate_date_key
from affiliate_api.services.daily_reports import seed_daily_buckets
from affiliate_api.utils.logging import configure_logging


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed today's report bucket for every affiliate")
    parser.add_argument("--date", dest="date_key", help="Date key YYYY-MM-DD (default: today)")
    parser.add_argument("--backend", choices=["postgrest", "duckdb"], help="Override STORE_BACKEND")
    parser.add_argument("--db-path", help="Override DB_PATH for the duckdb backend")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    overrides = {}
    if args.backend:
        overrides["store_backend"] = args.backend
    if args.db_path:
        overrides["db_path"] = args.db_path
    settings = get_settings().model_copy(update=overrides)
    configure_logging(settings)

    container = build_container(settings)
    try:
        summary = await seed_daily_buckets(container.metrics_store, container.clock, args.date_key)
    finally:
        await container.shutdown()

    print(json.dumps(summary.to_dict(), indent=2))
    return 1 if summary.failed else 0


def main() -> None:
    args = parse_args()
    if args.date_key:
        try:
            validate_date_key(args.date_key)
        except ReportValidationError as e:
            print(f"Invalid --date: {e}", file=sys.stderr)
            sys.exit(2)
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
