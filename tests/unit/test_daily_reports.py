"""
Unit tests for the daily bucket seeding job.
"""

import pytest

from affiliate_api.services.daily_reports import REFERRERS_TABLE, seed_daily_buckets
from affiliate_api.services.metrics_store import KPI_TABLE
from affiliate_api.storage.base import StoreError
from tests.conftest import make_bucket, make_report_row


def referrer(user_id, code):
    return {"user_id": user_id, "code": code}


@pytest.fixture
def seeded_store(memory_store):
    memory_store.seed(REFERRERS_TABLE, referrer("u1", "AAAA1111"), referrer("u2", "BBBB2222"), referrer("u3", "CCCC3333"))
    memory_store.seed(KPI_TABLE, make_report_row("u2", overview={"2024-06-30": make_bucket(clicks=5)}))
    return memory_store


class TestSeedDailyBuckets:
    async def test_creates_missing_buckets_for_today(self, metrics_store, seeded_store, clock):
        summary = await seed_daily_buckets(metrics_store, clock)

        assert summary.date_key == "2024-06-30"
        assert (summary.processed, summary.created, summary.existing) == (3, 2, 1)
        assert summary.failed == []
        overviews = {r["user_id"]: r["user_reports"]["overview"] for r in seeded_store.tables[KPI_TABLE]}
        assert overviews["u1"] == {"2024-06-30": make_bucket()}
        assert overviews["u2"] == {"2024-06-30": make_bucket(clicks=5)}

    async def test_second_run_is_noop(self, metrics_store, seeded_store, clock):
        await seed_daily_buckets(metrics_store, clock)
        summary = await seed_daily_buckets(metrics_store, clock)
        assert (summary.created, summary.existing) == (0, 3)

    async def test_explicit_date(self, metrics_store, seeded_store, clock):
        summary = await seed_daily_buckets(metrics_store, clock, "2024-07-01")
        assert summary.created == 3

    async def test_one_user_failing_does_not_abort_batch(self, metrics_store, seeded_store, clock):
        def fail_u3(method, table, filters):
            if table == KPI_TABLE and any(f.column == "user_id" and f.value == "u3" for f in filters):
                return StoreError("boom")
            return None

        seeded_store.fail_when = fail_u3
        summary = await seed_daily_buckets(metrics_store, clock)

        assert summary.failed == ["u3"]
        assert summary.processed == 3
        assert summary.created == 1
        assert summary.to_dict()["failed"] == ["u3"]

    async def test_listing_failure_propagates(self, metrics_store, seeded_store, clock):
        seeded_store.fail_when = lambda method, table, filters: StoreError("down") if table == REFERRERS_TABLE else None
        with pytest.raises(StoreError):
            await seed_daily_buckets(metrics_store, clock)

    async def test_no_referrers(self, metrics_store, clock):
        summary = await seed_daily_buckets(metrics_store, clock)
        assert summary.processed == 0
