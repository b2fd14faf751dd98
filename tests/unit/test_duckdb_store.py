"""
Tests for the embedded DuckDB store, alone and underneath MetricsStore.
"""

from datetime import datetime

import pytest

from affiliate_api.core.cache import ResultCache
from affiliate_api.core.executor import ResilientQueryExecutor
from affiliate_api.engine.report_aggregator import ReportAggregator
from affiliate_api.models.enums import Timeframe
from affiliate_api.services.metrics_store import MetricsStore
from affiliate_api.storage.base import StoreConflictError, StoreError, eq, in_
from affiliate_api.storage.duckdb_storage import DuckDBStore
from tests.conftest import RecordingSleep, make_bucket


@pytest.fixture
async def duck(tmp_path):
    store = DuckDBStore(str(tmp_path / "affiliate.duckdb"))
    yield store
    await store.close()


def kpi_row(user_id="u1", version=1, overview=None):
    return {
        "user_id": user_id,
        "user_reports": {"links": {}, "sub_ids": {}, "overview": overview or {}, "traffic_sources": {}},
        "version": version,
        "updated_at": datetime(2024, 6, 30, 18, 0),
    }


class TestDuckDBStore:
    async def test_insert_and_fetch_json_document(self, duck):
        await duck.insert("dashboard_kpis", [kpi_row(overview={"2024-06-30": make_bucket(clicks=2)})])
        row = await duck.fetch_one("dashboard_kpis", "user_id, user_reports, version", [eq("user_id", "u1")])
        assert row["user_reports"]["overview"]["2024-06-30"]["clicks"] == 2
        assert row["version"] == 1

    async def test_fetch_one_absent(self, duck):
        assert await duck.fetch_one("dashboard_kpis", filters=[eq("user_id", "nobody")]) is None

    async def test_versioned_update(self, duck):
        await duck.insert("dashboard_kpis", [kpi_row(version=3)])

        stale = await duck.update("dashboard_kpis", {"version": 4}, [eq("user_id", "u1"), eq("version", 2)])
        fresh = await duck.update("dashboard_kpis", {"version": 4}, [eq("user_id", "u1"), eq("version", 3)])

        assert stale == []
        assert [r["version"] for r in fresh] == [4]

    async def test_duplicate_key_is_conflict(self, duck):
        await duck.insert("affiliate_referrers", [{"user_id": "u1", "code": "AAAA1111"}])
        with pytest.raises(StoreConflictError):
            await duck.insert("affiliate_referrers", [{"user_id": "u2", "code": "AAAA1111"}])

    async def test_upsert_updates_existing_row(self, duck):
        await duck.insert("approved_users", [{"user_id": "u1", "user_email": "a@b.co", "status": "active"}])
        await duck.upsert(
            "approved_users",
            [{"user_id": "u1", "user_email": "a@b.co", "status": "revoked"}],
            on_conflict="user_id",
        )
        rows = await duck.select("approved_users", "user_id, status")
        assert rows == [{"user_id": "u1", "status": "revoked"}]

    async def test_select_order_limit_and_in(self, duck):
        await duck.insert("affiliate_referrers", [
            {"user_id": "b", "code": "B"},
            {"user_id": "a", "code": "A"},
            {"user_id": "c", "code": "C"},
        ])
        rows = await duck.select("affiliate_referrers", "user_id", [in_("user_id", ["a", "c"])], order_by="user_id", descending=True)
        assert [r["user_id"] for r in rows] == ["c", "a"]
        assert await duck.select("affiliate_referrers", "user_id", [in_("user_id", [])]) == []
        assert len(await duck.select("affiliate_referrers", limit=2)) == 2

    async def test_delete_returns_count(self, duck):
        await duck.insert("affiliate_referrers", [{"user_id": "a", "code": "A"}, {"user_id": "b", "code": "B"}])
        assert await duck.delete("affiliate_referrers", [eq("user_id", "a")]) == 1
        assert len(await duck.select("affiliate_referrers")) == 1

    async def test_unknown_column_rejected(self, duck):
        with pytest.raises(StoreError):
            await duck.select("dashboard_kpis", "user_id; DROP TABLE dashboard_kpis")

    async def test_unknown_table_rejected(self, duck):
        with pytest.raises(StoreError):
            await duck.select("users")

    async def test_ping(self, duck):
        await duck.ping("approved_users")


class TestMetricsStoreOnDuckDB:
    async def test_upsert_then_report(self, duck, clock):
        cache = ResultCache(clock.epoch_millis)
        executor = ResilientQueryExecutor(None, cache, sleep=RecordingSleep())
        metrics_store = MetricsStore(duck, executor, ReportAggregator(clock))

        await metrics_store.upsert_day("u1", "2024-06-30", {"clicks": 3, "earnings": 4.5})
        await metrics_store.upsert_day("u1", "2024-06-30", {"signups": 1})
        report = await metrics_store.get_report("u1", Timeframe.TODAY)

        assert report.overview.clicks == 3
        assert report.overview.signups == 1
        assert float(report.overview.earnings) == 4.5
        document = await metrics_store.get_document("u1")
        assert document.version == 2
