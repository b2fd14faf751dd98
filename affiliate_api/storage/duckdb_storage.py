"""
DuckDB store implementation for local development and tests.

Implements the same RemoteStore query API as the PostgREST client on top of
an embedded DuckDB database, so the whole stack runs without a network
store. Blocking DuckDB calls run in worker threads via ``asyncio.to_thread``.

Key features:
- Thread-safe access with per-thread cursors on one shared connection
- Automatic schema creation (idempotent)
- JSON columns encoded/decoded transparently
- Unique-key violations surfaced as ``StoreConflictError``
"""

import asyncio
import json
import threading
from pathlib import Path
from typing import Any, Optional, Sequence

import duckdb
import structlog

from .base import Filter, RemoteStore, StoreConflictError, StoreError

logger = structlog.get_logger(__name__)

DEFAULT_USER_REPORTS = '{"links": {}, "sub_ids": {}, "overview": {}, "traffic_sources": {}}'

SCHEMA = {
    "dashboard_kpis": f"""
        CREATE TABLE IF NOT EXISTS dashboard_kpis (
            user_id VARCHAR PRIMARY KEY,
            user_reports JSON NOT NULL DEFAULT '{DEFAULT_USER_REPORTS}',
            version INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "affiliate_referrers": """
        CREATE TABLE IF NOT EXISTS affiliate_referrers (
            user_id VARCHAR PRIMARY KEY,
            code VARCHAR NOT NULL UNIQUE,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "approved_users": """
        CREATE TABLE IF NOT EXISTS approved_users (
            user_id VARCHAR PRIMARY KEY,
            user_email VARCHAR NOT NULL,
            approved_by VARCHAR,
            status VARCHAR NOT NULL DEFAULT 'active',
            notes VARCHAR,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """,
}

TABLE_COLUMNS = {
    "dashboard_kpis": ("user_id", "user_reports", "version", "created_at", "updated_at"),
    "affiliate_referrers": ("user_id", "code", "created_at", "updated_at"),
    "approved_users": (
        "user_id", "user_email", "approved_by", "status", "notes", "created_at", "updated_at",
    ),
}

JSON_COLUMNS = {"dashboard_kpis": frozenset({"user_reports"})}

_SQL_OPERATORS = {"eq": "=", "neq": "<>", "gt": ">", "gte": ">=", "lt": "<", "lte": "<="}


class DuckDBStore(RemoteStore):
    """
    RemoteStore backed by an embedded DuckDB database.

    Attributes:
        db_path: Database file path, or ":memory:"
    """

    def __init__(self, db_path: str = "./data/affiliate.duckdb"):
        """
        Initialize DuckDB store.

        Args:
            db_path: Path to DuckDB database file (":memory:" for a private in-memory db)
        """
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = duckdb.connect(db_path)
        self._local = threading.local()
        self._lock = threading.Lock()

        self._initialize_schema()
        logger.info("duckdb_store_initialized", db_path=db_path)

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        if not hasattr(self._local, "cursor"):
            self._local.cursor = self._connection.cursor()
            logger.debug("duckdb_cursor_created", thread_id=threading.get_ident())
        return self._local.cursor

    def _initialize_schema(self) -> None:
        """Create all tables. Idempotent."""
        with self._lock:
            for table, ddl in SCHEMA.items():
                self._connection.execute(ddl)
                logger.debug("duckdb_table_ready", table=table)

    # =========================================================================
    # SQL building
    # =========================================================================

    @staticmethod
    def _check_table(table: str) -> tuple[str, ...]:
        if table not in TABLE_COLUMNS:
            raise StoreError(f"Unknown table: {table}", status_code=404, code="unknown_table")
        return TABLE_COLUMNS[table]

    def _check_columns(self, table: str, columns: Sequence[str]) -> None:
        known = self._check_table(table)
        unknown = [c for c in columns if c not in known]
        if unknown:
            raise StoreError(
                f"Unknown column(s) for {table}: {', '.join(unknown)}",
                status_code=400,
                code="unknown_column",
            )

    def _select_list(self, table: str, columns: str) -> str:
        if columns.strip() == "*":
            return "*"
        names = [c.strip() for c in columns.split(",") if c.strip()]
        self._check_columns(table, names)
        return ", ".join(names)

    def _where(self, table: str, filters: Sequence[Filter]) -> tuple[str, list[Any]]:
        self._check_columns(table, [f.column for f in filters])
        clauses: list[str] = []
        params: list[Any] = []
        for f in filters:
            if f.op == "in":
                values = list(f.value)
                if not values:
                    clauses.append("FALSE")
                    continue
                clauses.append(f"{f.column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            elif f.value is None and f.op in ("eq", "neq"):
                clauses.append(f"{f.column} IS {'NOT ' if f.op == 'neq' else ''}NULL")
            else:
                clauses.append(f"{f.column} {_SQL_OPERATORS[f.op]} ?")
                params.append(self._encode(table, f.column, f.value))
        if not clauses:
            return "", params
        return " WHERE " + " AND ".join(clauses), params

    @staticmethod
    def _encode(table: str, column: str, value: Any) -> Any:
        if column in JSON_COLUMNS.get(table, ()) and value is not None:
            return json.dumps(value)
        return value

    def _decode_rows(self, table: str, cursor: duckdb.DuckDBPyConnection) -> list[dict[str, Any]]:
        names = [d[0] for d in cursor.description]
        json_columns = JSON_COLUMNS.get(table, frozenset())
        rows = []
        for record in cursor.fetchall():
            row = dict(zip(names, record))
            for column in json_columns & row.keys():
                if isinstance(row[column], str):
                    row[column] = json.loads(row[column])
            rows.append(row)
        return rows

    def _run(self, table: str, sql: str, params: list[Any]) -> list[dict[str, Any]]:
        cursor = self._cursor()
        try:
            cursor.execute(sql, params)
            return self._decode_rows(table, cursor)
        except duckdb.ConstraintException as e:
            logger.warning("duckdb_constraint_violation", table=table, error=str(e))
            raise StoreConflictError(str(e), status_code=409, code="23505") from e
        except duckdb.Error as e:
            logger.error("duckdb_query_failed", table=table, error=str(e))
            raise StoreError(f"DuckDB query failed: {e}", status_code=500) from e

    # =========================================================================
    # RemoteStore implementation
    # =========================================================================

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        select_list = self._select_list(table, columns)
        where, params = self._where(table, filters)
        sql = f"SELECT {select_list} FROM {table}{where}"
        if order_by:
            self._check_columns(table, [order_by])
            sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            sql += f" LIMIT {int(limit)}"
        return await asyncio.to_thread(self._run, table, sql, params)

    def _insert_rows(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        stored: list[dict[str, Any]] = []
        for row in rows:
            columns = list(row)
            self._check_columns(table, columns)
            placeholders = ", ".join("?" for _ in columns)
            sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING *"
            params = [self._encode(table, c, row[c]) for c in columns]
            stored.extend(self._run(table, sql, params))
        return stored

    async def insert(self, table: str, rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._insert_rows, table, list(rows))

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        filters: Sequence[Filter],
    ) -> list[dict[str, Any]]:
        if not values:
            raise StoreError("Update requires at least one column", status_code=400)
        self._check_columns(table, list(values))
        assignments = ", ".join(f"{c} = ?" for c in values)
        params = [self._encode(table, c, v) for c, v in values.items()]
        where, where_params = self._where(table, filters)
        sql = f"UPDATE {table} SET {assignments}{where} RETURNING *"
        return await asyncio.to_thread(self._run, table, sql, params + where_params)

    async def upsert(
        self,
        table: str,
        rows: Sequence[dict[str, Any]],
        on_conflict: str,
    ) -> list[dict[str, Any]]:
        keys = [c.strip() for c in on_conflict.split(",") if c.strip()]
        self._check_columns(table, keys)
        return await asyncio.to_thread(self._upsert_rows, table, list(rows), keys)

    def _upsert_rows(self, table: str, rows: list[dict[str, Any]], keys: list[str]) -> list[dict[str, Any]]:
        stored: list[dict[str, Any]] = []
        for row in rows:
            columns = list(row)
            self._check_columns(table, columns)
            placeholders = ", ".join("?" for _ in columns)
            updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c not in keys)
            action = f"DO UPDATE SET {updates}" if updates else "DO NOTHING"
            sql = (
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
                f"ON CONFLICT ({', '.join(keys)}) {action} RETURNING *"
            )
            params = [self._encode(table, c, row[c]) for c in columns]
            stored.extend(self._run(table, sql, params))
        return stored

    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        self._check_table(table)
        where, params = self._where(table, filters)
        sql = f"DELETE FROM {table}{where} RETURNING *"
        deleted = await asyncio.to_thread(self._run, table, sql, params)
        return len(deleted)

    async def close(self) -> None:
        self._connection.close()
        logger.info("duckdb_store_closed", db_path=self.db_path)
