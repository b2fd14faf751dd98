"""
Daily report seeding.

Makes sure every affiliate has a (zeroed) bucket for today's civil date so
the dashboard shows the day before any metrics arrive. One user's failure
never stops the run; failures are logged and listed in the summary.
"""

from dataclasses import dataclass, field
from functools import partial
from typing import Optional

import structlog

from affiliate_api.core.clock import TimeProvider
from affiliate_api.services.metrics_store import MetricsStore

logger = structlog.get_logger(__name__)

REFERRERS_TABLE = "affiliate_referrers"


@dataclass
class SeedSummary:
    """Outcome of one seeding run."""

    date_key: str
    processed: int = 0
    created: int = 0
    existing: int = 0
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "date_key": self.date_key,
            "processed": self.processed,
            "created": self.created,
            "existing": self.existing,
            "failed": list(self.failed),
        }


async def list_referrer_ids(metrics_store: MetricsStore) -> list[str]:
    rows = await metrics_store.executor.execute(
        partial(metrics_store.store.select, REFERRERS_TABLE, "user_id", order_by="user_id"),
        metrics_store.timeout_ms,
        operation="list_referrers",
    )
    return [str(row["user_id"]) for row in rows]


async def seed_daily_buckets(
    metrics_store: MetricsStore,
    clock: TimeProvider,
    date_key: Optional[str] = None,
) -> SeedSummary:
    """
    Ensure a bucket for ``date_key`` (default: today) exists for every referrer.

    Raises:
        StoreError: If the referrer list itself cannot be read
        QueryTimeoutError: If listing referrers times out
    """
    date_key = date_key or clock.date_key()
    summary = SeedSummary(date_key=date_key)

    user_ids = await list_referrer_ids(metrics_store)
    logger.info("daily_seed_started", date_key=date_key, users=len(user_ids))

    for user_id in user_ids:
        summary.processed += 1
        try:
            created = await metrics_store.ensure_day(user_id, date_key)
        except Exception as e:
            logger.error("daily_seed_user_failed", user_id=user_id, date_key=date_key, error=str(e))
            summary.failed.append(user_id)
            continue
        if created:
            summary.created += 1
        else:
            summary.existing += 1

    logger.info(
        "daily_seed_completed",
        date_key=date_key,
        processed=summary.processed,
        created=summary.created,
        existing=summary.existing,
        failed=len(summary.failed),
    )
    return summary
