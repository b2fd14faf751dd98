"""
Pytest configuration and shared fixtures for the affiliate reports test suite.

Provides a controllable clock, an in-memory RemoteStore with failure
injection, document factories and pre-wired service fixtures so unit,
property and API tests never touch the network or the wall clock.
"""

import copy
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Sequence
from zoneinfo import ZoneInfo

import pytest

from affiliate_api.config import Settings
from affiliate_api.core.cache import ResultCache
from affiliate_api.core.clock import TimeProvider
from affiliate_api.core.executor import ResilientQueryExecutor
from affiliate_api.engine.report_aggregator import ReportAggregator
from affiliate_api.services.metrics_store import MetricsStore
from affiliate_api.services.referrals import ReferralService
from affiliate_api.storage.base import Filter, RemoteStore, StoreConflictError

DENVER = ZoneInfo("America/Denver")


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock(TimeProvider):
    """TimeProvider whose instant only moves when a test moves it."""

    def __init__(self, at: datetime, timezone: str = "America/Denver"):
        super().__init__(timezone)
        self.current = at

    def now(self) -> datetime:
        return self.current.astimezone(self.timezone)

    def epoch_millis(self) -> int:
        return int(self.current.timestamp() * 1000)

    def advance(self, ms: int) -> None:
        self.current += timedelta(milliseconds=ms)


def denver(year: int, month: int, day: int, hour: int = 12) -> datetime:
    return datetime(year, month, day, hour, tzinfo=DENVER)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

PRIMARY_KEYS = {
    "dashboard_kpis": ("user_id",),
    "affiliate_referrers": ("user_id",),
    "approved_users": ("user_id",),
}
UNIQUE_COLUMNS = {"affiliate_referrers": ("code",)}


class InMemoryStore(RemoteStore):
    """
    RemoteStore over plain dicts.

    Attributes:
        tables: table name -> list of row dicts
        calls: Counter of (method, table) invocations
        fail_when: Optional hook ``(method, table, filters) -> Exception | None``;
            a returned exception is raised instead of running the call
        before_write: Optional hook ``(method, table) -> None`` run before
            insert, update or upsert, used to simulate a concurrent writer
    """

    def __init__(self):
        self.tables: dict[str, list[dict[str, Any]]] = {name: [] for name in PRIMARY_KEYS}
        self.calls: Counter = Counter()
        self.fail_when: Optional[Callable[[str, str, Sequence[Filter]], Optional[Exception]]] = None
        self.before_write: Optional[Callable[[str, str], None]] = None

    def _enter(self, method: str, table: str, filters: Sequence[Filter] = ()) -> None:
        self.calls[(method, table)] += 1
        if self.fail_when is not None:
            error = self.fail_when(method, table, filters)
            if error is not None:
                raise error

    def count(self, method: str, table: str = "dashboard_kpis") -> int:
        return self.calls[(method, table)]

    def seed(self, table: str, *rows: dict[str, Any]) -> None:
        self.tables[table].extend(copy.deepcopy(rows))

    def _matching(self, table: str, filters: Sequence[Filter]) -> list[dict[str, Any]]:
        return [row for row in self.tables[table] if all(f.matches(row) for f in filters)]

    def _check_unique(self, table: str, row: dict[str, Any], ignore: Optional[dict] = None) -> None:
        for column in PRIMARY_KEYS[table] + UNIQUE_COLUMNS.get(table, ()):
            for existing in self.tables[table]:
                if existing is not ignore and existing.get(column) == row.get(column):
                    raise StoreConflictError(
                        f"duplicate key value violates unique constraint on {column}",
                        status_code=409,
                        code="23505",
                    )

    async def select(self, table, columns="*", filters=(), order_by=None, descending=False, limit=None):
        self._enter("select", table, filters)
        rows = self._matching(table, filters)
        if order_by:
            rows = sorted(rows, key=lambda r: r.get(order_by), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        if columns.strip() != "*":
            names = [c.strip() for c in columns.split(",")]
            rows = [{name: row.get(name) for name in names} for row in rows]
        return copy.deepcopy(rows)

    async def insert(self, table, rows):
        self._enter("insert", table)
        if self.before_write is not None:
            self.before_write("insert", table)
        stored = []
        for row in rows:
            row = copy.deepcopy(row)
            self._check_unique(table, row)
            self.tables[table].append(row)
            stored.append(copy.deepcopy(row))
        return stored

    async def update(self, table, values, filters):
        self._enter("update", table, filters)
        if self.before_write is not None:
            self.before_write("update", table)
        updated = []
        for row in self._matching(table, filters):
            row.update(copy.deepcopy(values))
            updated.append(copy.deepcopy(row))
        return updated

    async def upsert(self, table, rows, on_conflict):
        self._enter("upsert", table)
        if self.before_write is not None:
            self.before_write("upsert", table)
        keys = [k.strip() for k in on_conflict.split(",")]
        stored = []
        for row in rows:
            existing = self._matching(table, [Filter(k, "eq", row[k]) for k in keys])
            self._check_unique(table, row, ignore=existing[0] if existing else None)
            if existing:
                existing[0].update(copy.deepcopy(row))
                stored.append(copy.deepcopy(existing[0]))
            else:
                self.tables[table].append(copy.deepcopy(row))
                stored.append(copy.deepcopy(row))
        return stored

    async def delete(self, table, filters):
        self._enter("delete", table, filters)
        doomed = self._matching(table, filters)
        self.tables[table] = [row for row in self.tables[table] if row not in doomed]
        return len(doomed)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def make_bucket(clicks: int = 0, signups: int = 0, customers: int = 0, earnings: Any = 0) -> dict:
    """Stored day-bucket JSON."""
    return {"clicks": clicks, "signups": signups, "customers": customers, "earnings": earnings}


def make_report_row(
    user_id: str = "user-1",
    overview: Optional[dict] = None,
    version: Optional[int] = 1,
    **reports: Any,
) -> dict:
    """A ``dashboard_kpis`` row as the store returns it."""
    return {
        "user_id": user_id,
        "user_reports": {
            "links": reports.get("links", {}),
            "sub_ids": reports.get("sub_ids", {}),
            "overview": overview or {},
            "traffic_sources": reports.get("traffic_sources", {}),
        },
        "version": version,
        "updated_at": datetime(2024, 6, 1, 18, 0),
    }


def make_settings(**overrides: Any) -> Settings:
    values = dict(
        store_backend="duckdb",
        start_background_tasks=False,
        dev_mode=True,
        log_format="console",
        log_level="warning",
        retry_base_delay_ms=1000,
        query_max_retries=3,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records backoff delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    """Clock pinned to noon, 2024-06-30, America/Denver."""
    return FakeClock(denver(2024, 6, 30))


@pytest.fixture
def cache(clock):
    return ResultCache(clock.epoch_millis)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def executor(cache, sleep):
    return ResilientQueryExecutor(None, cache, default_timeout_ms=1000, max_retries=3, sleep=sleep)


@pytest.fixture
def memory_store():
    """Fresh InMemoryStore instance for each test."""
    return InMemoryStore()


@pytest.fixture
def aggregator(clock):
    return ReportAggregator(clock)


@pytest.fixture
def metrics_store(memory_store, executor, aggregator):
    return MetricsStore(memory_store, executor, aggregator, write_conflict_retries=2)


@pytest.fixture
def referral_service(memory_store, executor):
    return ReferralService(memory_store, executor)
