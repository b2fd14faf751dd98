"""
Abstract remote store interface for the affiliate dashboard.

This module defines the query API the core consumes: select with filter
predicates, single-row fetch, insert, update-by-filter, upsert with a
conflict key and delete-by-filter. Implementations talk to PostgREST
(production) or DuckDB (local development) without changing callers.

Every operation is a coroutine because the store sits across a network
boundary that can time out, fail transiently or return partial results.
Resilience (timeouts, retries, caching) is applied by the caller through
``ResilientQueryExecutor``, not here.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence

FILTER_OPERATORS = frozenset({"eq", "neq", "in", "gt", "gte", "lt", "lte"})


class StoreError(Exception):
    """Raised when the store reports a failed operation."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class StoreConnectionError(StoreError):
    """Raised when the store cannot be reached at all."""

    pass


class StoreConflictError(StoreError):
    """Raised on unique-key violations. Deterministic, so never retried."""

    retryable = False


@dataclass(frozen=True)
class Filter:
    """
    A single filter predicate.

    Attributes:
        column: Column name
        op: One of eq, neq, in, gt, gte, lt, lte
        value: Comparison value (a sequence for ``in``)
    """

    column: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")
        if self.op == "in" and isinstance(self.value, (str, bytes)):
            raise ValueError("'in' filter requires a sequence of values")

    def matches(self, row: dict[str, Any]) -> bool:
        """Evaluate the predicate against an in-memory row."""
        actual = row.get(self.column)
        if self.op == "eq":
            return actual == self.value
        if self.op == "neq":
            return actual != self.value
        if self.op == "in":
            return actual in self.value
        if actual is None:
            return False
        if self.op == "gt":
            return actual > self.value
        if self.op == "gte":
            return actual >= self.value
        if self.op == "lt":
            return actual < self.value
        return actual <= self.value


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


class RemoteStore(ABC):
    """
    Abstract base class for remote store implementations.

    Each document (report, referral code, approval) is a single row keyed by
    user id, so no operation needs a transaction across tables.
    """

    @abstractmethod
    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read rows matching every filter.

        Args:
            table: Table name
            columns: Comma-separated column list or "*"
            filters: Predicates combined with AND
            order_by: Optional column to sort by
            descending: Sort direction for ``order_by``
            limit: Maximum number of rows

        Returns:
            Matching rows as dicts

        Raises:
            StoreError: If the read fails
        """
        pass

    async def fetch_one(
        self,
        table: str,
        columns: str = "*",
        filters: Sequence[Filter] = (),
    ) -> Optional[dict[str, Any]]:
        """
        Read a single row.

        Zero rows is a normal outcome and returns None rather than raising.

        Raises:
            StoreError: If the read fails or more than one row matches
        """
        rows = await self.select(table, columns=columns, filters=filters, limit=2)
        if not rows:
            return None
        if len(rows) > 1:
            raise StoreError(f"Expected at most one row from {table}, got several", code="multiple_rows")
        return rows[0]

    @abstractmethod
    async def insert(self, table: str, rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Insert rows and return them as stored.

        Raises:
            StoreConflictError: On unique-key violation
            StoreError: If the write fails
        """
        pass

    @abstractmethod
    async def update(
        self,
        table: str,
        values: dict[str, Any],
        filters: Sequence[Filter],
    ) -> list[dict[str, Any]]:
        """
        Update rows matching every filter.

        Returns:
            The updated rows; empty when nothing matched

        Raises:
            StoreError: If the write fails
        """
        pass

    @abstractmethod
    async def upsert(
        self,
        table: str,
        rows: Sequence[dict[str, Any]],
        on_conflict: str,
    ) -> list[dict[str, Any]]:
        """
        Insert rows, merging into existing rows that share ``on_conflict``.

        Raises:
            StoreError: If the write fails
        """
        pass

    @abstractmethod
    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        """
        Delete rows matching every filter.

        Returns:
            Number of rows deleted

        Raises:
            StoreError: If the delete fails
        """
        pass

    async def ping(self, table: str) -> None:
        """Trivial existence query used by the health monitor."""
        await self.select(table, columns="user_id", limit=1)

    async def close(self) -> None:
        """Release connections. Default: nothing to release."""
        return None
