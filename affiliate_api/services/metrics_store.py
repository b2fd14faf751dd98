"""
Metrics store facade.

The narrow set of report operations the rest of the system calls: fetch a
user's day-bucket document, build a timeframe report from it, sum all-time
totals, and write one day's metrics. Every remote call goes through the
ResilientQueryExecutor; every report goes through the ReportAggregator.

Day writes are read-modify-write on the whole document, guarded by the
row's ``version`` stamp: the update only lands if nobody else wrote since
our read, otherwise the document is re-read and the change re-applied.
"""

from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Optional, Union

import structlog

from affiliate_api.core.cache import cache_key
from affiliate_api.core.executor import ResilientQueryExecutor
from affiliate_api.engine.report_aggregator import ReportAggregator, total_buckets
from affiliate_api.models.enums import Timeframe
from affiliate_api.models.reports import (
    DayMetricsUpdate,
    MetricsDayBucket,
    ReportOverview,
    ReportValidationError,
    UserReport,
    UserReportDocument,
    parse_timeframe,
    validate_date_key,
)
from affiliate_api.storage.base import RemoteStore, StoreConflictError, eq

logger = structlog.get_logger(__name__)

KPI_TABLE = "dashboard_kpis"
DOCUMENT_COLUMNS = "user_id, user_reports, version, updated_at"

REPORT_CACHE_OP = "user_report"
TOTALS_CACHE_OP = "user_totals"
DOCUMENT_CACHE_OP = "report_document"


class WriteConflictError(Exception):
    """Raised when a versioned write keeps losing to concurrent writers."""

    def __init__(self, user_id: str, attempts: int):
        self.user_id = user_id
        self.attempts = attempts
        super().__init__(f"Report document for {user_id} changed concurrently {attempts} times")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _require_user_id(user_id: str) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ReportValidationError("user_id must be a non-empty string")
    return user_id


class MetricsStore:
    """
    Report reads and writes for one remote store.

    Attributes:
        store: Remote store holding ``dashboard_kpis``
        executor: Resilience wrapper used for every remote call
        aggregator: Turns sparse documents into timeframe reports
    """

    def __init__(
        self,
        store: RemoteStore,
        executor: ResilientQueryExecutor,
        aggregator: ReportAggregator,
        timeout_ms: Optional[int] = None,
        report_cache_ttl_ms: int = 300_000,
        totals_cache_ttl_ms: int = 300_000,
        write_conflict_retries: int = 5,
    ):
        self.store = store
        self.executor = executor
        self.aggregator = aggregator
        self.timeout_ms = timeout_ms
        self.report_cache_ttl_ms = report_cache_ttl_ms
        self.totals_cache_ttl_ms = totals_cache_ttl_ms
        self.write_conflict_retries = write_conflict_retries

    # =========================================================================
    # Reads
    # =========================================================================

    def _fetch_row_op(self, user_id: str):
        return partial(self.store.fetch_one, KPI_TABLE, DOCUMENT_COLUMNS, [eq("user_id", user_id)])

    async def _cached(self, op: Callable, key: tuple, ttl_ms: int, force: bool, operation: str) -> Any:
        # force refreshes the entry instead of bypassing it
        if force:
            self.executor.cache.invalidate(key)
        return await self.executor.execute(
            op,
            self.timeout_ms,
            use_cache=True,
            cache_key=key,
            cache_ttl_ms=ttl_ms,
            operation=operation,
        )

    async def get_document(self, user_id: str, *, force: bool = False) -> Optional[UserReportDocument]:
        """
        Fetch the user's stored report document.

        Returns:
            The document, or None when the user has no report row yet
        """
        _require_user_id(user_id)
        row = await self._cached(
            self._fetch_row_op(user_id),
            cache_key(DOCUMENT_CACHE_OP, user_id),
            self.report_cache_ttl_ms,
            force,
            "fetch_report_document",
        )
        return UserReportDocument.from_row(row) if row else None

    async def get_report(
        self,
        user_id: str,
        timeframe: Union[str, Timeframe] = Timeframe.LAST_30_DAYS,
        *,
        force: bool = False,
    ) -> UserReport:
        """
        Build the report for ``timeframe``.

        A user without a report row gets a fully zero-filled report, not an
        error. A failed fetch raises the executor's error.

        Raises:
            ReportValidationError: Malformed user id or timeframe
            QueryTimeoutError: The fetch timed out
            StoreError: The fetch failed after retries
        """
        _require_user_id(user_id)
        timeframe = parse_timeframe(timeframe)
        row = await self._cached(
            self._fetch_row_op(user_id),
            cache_key(REPORT_CACHE_OP, user_id, timeframe.value),
            self.report_cache_ttl_ms,
            force,
            "fetch_user_report",
        )
        overview = UserReportDocument.from_row(row).overview if row else {}
        report = self.aggregator.run(overview, timeframe)
        logger.info(
            "user_report_built",
            user_id=user_id,
            timeframe=timeframe.value,
            points=len(report.daily_data),
            stored_days=len(overview),
        )
        return report

    async def get_totals(self, user_id: str, *, force: bool = False) -> ReportOverview:
        """Sum every bucket in the user's document, regardless of timeframe."""
        _require_user_id(user_id)
        fetch = self._fetch_row_op(user_id)

        async def load_totals() -> ReportOverview:
            row = await fetch()
            if not row:
                return ReportOverview()
            return total_buckets(UserReportDocument.from_row(row).overview)

        return await self._cached(
            load_totals,
            cache_key(TOTALS_CACHE_OP, user_id),
            self.totals_cache_ttl_ms,
            force,
            "fetch_user_totals",
        )

    # =========================================================================
    # Writes
    # =========================================================================

    async def upsert_day(
        self,
        user_id: str,
        date_key: str,
        partial_metrics: Union[DayMetricsUpdate, dict],
    ) -> MetricsDayBucket:
        """
        Merge ``partial_metrics`` into the bucket for ``date_key``.

        Missing buckets start at zero. Present fields overwrite, absent
        fields keep their stored value.

        Returns:
            The bucket as written

        Raises:
            ReportValidationError: Malformed user id, date key or payload
            WriteConflictError: Concurrent writers kept winning
        """
        _require_user_id(user_id)
        validate_date_key(date_key)
        update = DayMetricsUpdate.parse(partial_metrics)

        def apply(document: UserReportDocument) -> bool:
            document.overview[date_key] = document.bucket(date_key).merge(update)
            return True

        document = await self._modify_document(user_id, apply, "upsert_day")
        return document.overview[date_key]

    async def ensure_day(self, user_id: str, date_key: str) -> bool:
        """
        Create a zero bucket for ``date_key`` if the document lacks one.

        Returns:
            True when a bucket was created, False when it already existed
        """
        _require_user_id(user_id)
        validate_date_key(date_key)
        created = False

        def apply(document: UserReportDocument) -> bool:
            nonlocal created
            created = date_key not in document.overview
            if created:
                document.overview[date_key] = MetricsDayBucket.zero()
            return created

        await self._modify_document(user_id, apply, "ensure_day")
        return created

    async def _modify_document(
        self,
        user_id: str,
        mutate: Callable[[UserReportDocument], bool],
        operation: str,
    ) -> UserReportDocument:
        attempts = self.write_conflict_retries + 1
        for attempt in range(attempts):
            row = await self.executor.execute(
                self._fetch_row_op(user_id), self.timeout_ms, operation=f"{operation}_read"
            )
            document = UserReportDocument.from_row(row) if row else UserReportDocument.empty(user_id)
            if not mutate(document):
                return document

            now = _utcnow()
            if row is None:
                written = await self._insert_document(document, now, operation)
            else:
                written = await self._update_document(document, row.get("version"), now, operation)

            if written is not None:
                self.invalidate_user(user_id)
                logger.info("report_document_written", user_id=user_id, operation=operation, version=written.version)
                return written

            logger.warning(
                "report_document_write_conflict",
                user_id=user_id,
                operation=operation,
                attempt=attempt + 1,
            )

        raise WriteConflictError(user_id, attempts)

    async def _insert_document(
        self, document: UserReportDocument, now: datetime, operation: str
    ) -> Optional[UserReportDocument]:
        row = {
            "user_id": document.user_id,
            "user_reports": document.to_user_reports(),
            "version": 1,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await self.executor.execute(
                partial(self.store.insert, KPI_TABLE, [row]), self.timeout_ms, operation=f"{operation}_insert"
            )
        except StoreConflictError:
            return None
        return document.model_copy(update={"version": 1, "updated_at": now})

    async def _update_document(
        self, document: UserReportDocument, expected_version: Optional[int], now: datetime, operation: str
    ) -> Optional[UserReportDocument]:
        new_version = (expected_version or 0) + 1
        rows = await self.executor.execute(
            partial(
                self.store.update,
                KPI_TABLE,
                {"user_reports": document.to_user_reports(), "version": new_version, "updated_at": now},
                [eq("user_id", document.user_id), eq("version", expected_version)],
            ),
            self.timeout_ms,
            operation=f"{operation}_update",
        )
        if not rows:
            return None
        return document.model_copy(update={"version": new_version, "updated_at": now})

    def invalidate_user(self, user_id: str) -> int:
        """Drop every cached report, totals and document entry of a user."""
        cache = self.executor.cache
        return sum(
            cache.invalidate_prefix((op, user_id))
            for op in (REPORT_CACHE_OP, TOTALS_CACHE_OP, DOCUMENT_CACHE_OP)
        )
