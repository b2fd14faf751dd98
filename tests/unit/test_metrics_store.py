"""
Unit tests for the MetricsStore facade over an in-memory store.
"""

from decimal import Decimal

import pytest

from affiliate_api.core.executor import QueryTimeoutError
from affiliate_api.models.enums import Timeframe
from affiliate_api.models.reports import ReportValidationError
from affiliate_api.services.metrics_store import KPI_TABLE, WriteConflictError
from affiliate_api.storage.base import StoreConflictError, StoreConnectionError
from tests.conftest import make_bucket, make_report_row


def stored_row(store, user_id="user-1"):
    rows = [r for r in store.tables[KPI_TABLE] if r["user_id"] == user_id]
    assert len(rows) == 1
    return rows[0]


class TestGetReport:
    async def test_absent_user_gets_zero_filled_report(self, metrics_store):
        report = await metrics_store.get_report("nobody", Timeframe.LAST_30_DAYS)
        assert len(report.daily_data) == 30
        assert report.overview.earnings == 0

    async def test_report_from_stored_document(self, metrics_store, memory_store):
        memory_store.seed(KPI_TABLE, make_report_row(overview={
            "2024-06-30": make_bucket(clicks=4, earnings=1.25),
            "2024-06-29": make_bucket(clicks=1),
        }))
        report = await metrics_store.get_report("user-1", "Today")
        assert report.overview.clicks == 4
        assert report.overview.earnings == Decimal("1.25")

    async def test_fetch_failure_propagates_instead_of_zeros(self, metrics_store, memory_store):
        memory_store.fail_when = lambda method, table, filters: StoreConnectionError("down")
        with pytest.raises(StoreConnectionError):
            await metrics_store.get_report("user-1", Timeframe.TODAY)
        assert memory_store.count("select") == 4

    async def test_timeout_propagates(self, metrics_store, memory_store):
        memory_store.fail_when = lambda method, table, filters: QueryTimeoutError("select", 10)
        with pytest.raises(QueryTimeoutError):
            await metrics_store.get_report("user-1", Timeframe.TODAY)
        assert memory_store.count("select") == 1

    async def test_invalid_input_rejected_before_remote_call(self, metrics_store, memory_store):
        with pytest.raises(ReportValidationError):
            await metrics_store.get_report("user-1", "")
        with pytest.raises(ReportValidationError):
            await metrics_store.get_report("", "Today")
        assert memory_store.count("select") == 0

    async def test_second_read_served_from_cache(self, metrics_store, memory_store):
        await metrics_store.get_report("user-1", Timeframe.TODAY)
        await metrics_store.get_report("user-1", Timeframe.TODAY)
        assert memory_store.count("select") == 1

    async def test_cache_key_includes_timeframe(self, metrics_store, memory_store):
        await metrics_store.get_report("user-1", Timeframe.TODAY)
        await metrics_store.get_report("user-1", Timeframe.THIS_YEAR)
        assert memory_store.count("select") == 2

    async def test_cache_key_includes_user(self, metrics_store, memory_store):
        await metrics_store.get_report("user-1", Timeframe.TODAY)
        await metrics_store.get_report("user-2", Timeframe.TODAY)
        assert memory_store.count("select") == 2

    async def test_force_refetches_and_refreshes(self, metrics_store, memory_store):
        await metrics_store.get_report("user-1", Timeframe.TODAY)
        memory_store.seed(KPI_TABLE, make_report_row(overview={"2024-06-30": make_bucket(clicks=9)}))

        stale = await metrics_store.get_report("user-1", Timeframe.TODAY)
        fresh = await metrics_store.get_report("user-1", Timeframe.TODAY, force=True)
        cached = await metrics_store.get_report("user-1", Timeframe.TODAY)

        assert stale.overview.clicks == 0
        assert fresh.overview.clicks == 9
        assert cached.overview.clicks == 9
        assert memory_store.count("select") == 2

    async def test_cache_expires(self, metrics_store, memory_store, clock):
        await metrics_store.get_report("user-1", Timeframe.TODAY)
        clock.advance(300_000)
        await metrics_store.get_report("user-1", Timeframe.TODAY)
        assert memory_store.count("select") == 2


class TestGetTotalsAndDocument:
    async def test_totals_cover_every_stored_day(self, metrics_store, memory_store):
        memory_store.seed(KPI_TABLE, make_report_row(overview={
            "2019-01-01": make_bucket(clicks=1, earnings=0.1),
            "2024-06-30": make_bucket(clicks=2, customers=1, earnings=0.2),
        }))
        totals = await metrics_store.get_totals("user-1")
        assert totals.clicks == 3
        assert totals.customers == 1
        assert totals.earnings == Decimal("0.3")

    async def test_totals_absent_user_are_zero(self, metrics_store):
        totals = await metrics_store.get_totals("nobody")
        assert totals.clicks == 0

    async def test_totals_cached_independently_of_reports(self, metrics_store, memory_store):
        await metrics_store.get_report("user-1", Timeframe.TODAY)
        await metrics_store.get_totals("user-1")
        await metrics_store.get_totals("user-1")
        assert memory_store.count("select") == 2

    async def test_document_absent_is_none(self, metrics_store):
        assert await metrics_store.get_document("nobody") is None

    async def test_document_exposes_opaque_maps(self, metrics_store, memory_store):
        memory_store.seed(KPI_TABLE, make_report_row(sub_ids={"s1": 2}, version=3))
        document = await metrics_store.get_document("user-1")
        assert document.sub_ids == {"s1": 2}
        assert document.version == 3


class TestUpsertDay:
    async def test_creates_document_for_new_user(self, metrics_store, memory_store):
        bucket = await metrics_store.upsert_day("user-1", "2024-06-30", {"clicks": 3})
        assert bucket.clicks == 3
        row = stored_row(memory_store)
        assert row["version"] == 1
        assert row["user_reports"]["overview"]["2024-06-30"] == make_bucket(clicks=3)

    async def test_merges_into_existing_bucket_and_keeps_other_maps(self, metrics_store, memory_store):
        memory_store.seed(KPI_TABLE, make_report_row(
            overview={"2024-06-30": make_bucket(clicks=5, earnings=10), "2024-06-01": make_bucket(signups=1)},
            version=2,
            links={"l1": {"clicks": 1}},
        ))
        bucket = await metrics_store.upsert_day("user-1", "2024-06-30", {"earnings": 12.5})

        assert bucket.clicks == 5
        assert bucket.earnings == Decimal("12.5")
        row = stored_row(memory_store)
        assert row["version"] == 3
        assert row["user_reports"]["links"] == {"l1": {"clicks": 1}}
        assert row["user_reports"]["overview"]["2024-06-01"] == make_bucket(signups=1)

    @pytest.mark.parametrize(
        "date_key,payload",
        [
            ("2024-02-30", {"clicks": 1}),
            ("06/30/2024", {"clicks": 1}),
            ("2024-06-30", {"clicks": -1}),
            ("2024-06-30", {"views": 1}),
        ],
    )
    async def test_invalid_input_rejected_before_remote_call(self, metrics_store, memory_store, date_key, payload):
        with pytest.raises(ReportValidationError):
            await metrics_store.upsert_day("user-1", date_key, payload)
        assert sum(memory_store.calls.values()) == 0

    async def test_write_invalidates_cached_reads(self, metrics_store):
        before = await metrics_store.get_report("user-1", Timeframe.TODAY)
        totals_before = await metrics_store.get_totals("user-1")
        await metrics_store.upsert_day("user-1", "2024-06-30", {"clicks": 7})

        after = await metrics_store.get_report("user-1", Timeframe.TODAY)
        totals_after = await metrics_store.get_totals("user-1")
        assert before.overview.clicks == 0 and totals_before.clicks == 0
        assert after.overview.clicks == 7 and totals_after.clicks == 7

    async def test_concurrent_writer_is_retried_not_overwritten(self, metrics_store, memory_store):
        memory_store.seed(KPI_TABLE, make_report_row(overview={}, version=1))
        interfered = []

        def other_writer(method, table):
            if method == "update" and not interfered:
                interfered.append(True)
                row = stored_row(memory_store)
                row["user_reports"]["overview"]["2024-06-29"] = make_bucket(clicks=11)
                row["version"] = 2

        memory_store.before_write = other_writer
        await metrics_store.upsert_day("user-1", "2024-06-30", {"clicks": 1})

        row = stored_row(memory_store)
        assert row["version"] == 3
        assert row["user_reports"]["overview"]["2024-06-29"] == make_bucket(clicks=11)
        assert row["user_reports"]["overview"]["2024-06-30"] == make_bucket(clicks=1)
        assert memory_store.count("update") == 2

    async def test_insert_race_falls_back_to_update(self, metrics_store, memory_store):
        def other_inserter(method, table):
            if method == "insert" and not memory_store.tables[KPI_TABLE]:
                memory_store.seed(KPI_TABLE, make_report_row(overview={"2024-06-01": make_bucket(clicks=2)}))

        memory_store.before_write = other_inserter
        await metrics_store.upsert_day("user-1", "2024-06-30", {"clicks": 1})

        row = stored_row(memory_store)
        assert set(row["user_reports"]["overview"]) == {"2024-06-01", "2024-06-30"}
        assert row["version"] == 2

    async def test_persistent_conflict_raises(self, metrics_store, memory_store):
        memory_store.seed(KPI_TABLE, make_report_row(version=1))

        def always_bump(method, table):
            stored_row(memory_store)["version"] += 1

        memory_store.before_write = always_bump
        with pytest.raises(WriteConflictError) as exc_info:
            await metrics_store.upsert_day("user-1", "2024-06-30", {"clicks": 1})
        assert exc_info.value.attempts == 3
        assert memory_store.count("update") == 3

    async def test_legacy_row_without_version(self, metrics_store, memory_store):
        memory_store.seed(KPI_TABLE, make_report_row(version=None))
        await metrics_store.upsert_day("user-1", "2024-06-30", {"signups": 1})
        assert stored_row(memory_store)["version"] == 1

    async def test_conflict_error_not_retried_by_executor(self, metrics_store, memory_store):
        memory_store.fail_when = (
            lambda method, table, filters: StoreConflictError("dup") if method == "insert" else None
        )
        with pytest.raises(WriteConflictError):
            await metrics_store.upsert_day("user-1", "2024-06-30", {"clicks": 1})
        assert memory_store.count("insert") == 3


class TestEnsureDay:
    async def test_creates_then_reports_existing(self, metrics_store, memory_store):
        assert await metrics_store.ensure_day("user-1", "2024-06-30") is True
        assert await metrics_store.ensure_day("user-1", "2024-06-30") is False
        assert memory_store.count("insert") == 1
        assert memory_store.count("update") == 0

    async def test_existing_bucket_untouched(self, metrics_store, memory_store):
        memory_store.seed(KPI_TABLE, make_report_row(overview={"2024-06-30": make_bucket(clicks=4)}))
        assert await metrics_store.ensure_day("user-1", "2024-06-30") is False
        assert stored_row(memory_store)["user_reports"]["overview"]["2024-06-30"] == make_bucket(clicks=4)
