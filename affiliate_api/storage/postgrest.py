"""
PostgREST (Supabase REST) store client.

This module provides an async client for the PostgREST query API:
- Filtered selects with ordering and limits
- Insert / update / upsert / delete with ``return=representation``
- Mapping of HTTP and transport failures onto the store error taxonomy

Retries and timeouts are not handled here; callers wrap every call in
``ResilientQueryExecutor``.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

import httpx
import structlog

from .base import Filter, RemoteStore, StoreConflictError, StoreConnectionError, StoreError

logger = structlog.get_logger(__name__)

UNIQUE_VIOLATION = "23505"


def _format_scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _format_filter(f: Filter) -> tuple[str, str]:
    """Render a filter as a PostgREST query parameter."""
    if f.value is None and f.op in ("eq", "neq"):
        return f.column, "is.null" if f.op == "eq" else "not.is.null"
    if f.op == "in":
        items = ",".join(f'"{_format_scalar(v)}"' for v in f.value)
        return f.column, f"in.({items})"
    return f.column, f"{f.op}.{_format_scalar(f.value)}"


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


class PostgrestStore(RemoteStore):
    """
    RemoteStore backed by a PostgREST endpoint.

    Attributes:
        base_url: REST root, e.g. ``https://<project>.supabase.co/rest/v1``
        schema: Database schema sent in the profile headers
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        schema: str = "public",
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            base_url: REST root URL
            api_key: Service key sent as ``apikey`` and bearer token
            schema: Database schema
            client: Pre-built client (tests pass one with a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.schema = schema
        self._headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Accept-Profile": schema,
            "Content-Profile": schema,
            "Accept": "application/json",
        }
        self._http_client = client
        self._owns_client = client is None

        logger.info("postgrest_store_initialized", base_url=self.base_url, schema=schema)

    async def __aenter__(self):
        """Async context manager entry."""
        self._client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            # Executor enforces the real per-query timeout; this is only a backstop.
            self._http_client = httpx.AsyncClient(timeout=60.0)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[list[tuple[str, str]]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer

        try:
            response = await self._client().request(
                method,
                f"{self.base_url}/{table}",
                params=params,
                json=_jsonable(json) if json is not None else None,
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise self._translate_status_error(method, table, e.response) from e
        except httpx.TransportError as e:
            logger.warning("postgrest_transport_error", method=method, table=table, error=str(e))
            raise StoreConnectionError(f"Could not reach store: {e}") from e

        if not response.content:
            return []
        return response.json()

    def _translate_status_error(self, method: str, table: str, response: httpx.Response) -> StoreError:
        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}
        if not isinstance(body, dict):
            body = {"message": str(body)}

        code = body.get("code")
        message = body.get("message") or response.reason_phrase or "store request failed"

        logger.error(
            "postgrest_request_failed",
            method=method,
            table=table,
            status_code=response.status_code,
            code=code,
            error=message,
        )

        if code == UNIQUE_VIOLATION or response.status_code == 409:
            return StoreConflictError(message, status_code=response.status_code, code=code)
        return StoreError(message, status_code=response.status_code, code=code)

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        params = [("select", columns)]
        params.extend(_format_filter(f) for f in filters)
        if order_by:
            params.append(("order", f"{order_by}.{'desc' if descending else 'asc'}"))
        if limit is not None:
            params.append(("limit", str(limit)))
        return await self._request("GET", table, params=params)

    async def insert(self, table: str, rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
        return await self._request("POST", table, json=list(rows), prefer="return=representation")

    async def update(
        self,
        table: str,
        values: dict[str, Any],
        filters: Sequence[Filter],
    ) -> list[dict[str, Any]]:
        params = [_format_filter(f) for f in filters]
        return await self._request("PATCH", table, params=params, json=values, prefer="return=representation")

    async def upsert(
        self,
        table: str,
        rows: Sequence[dict[str, Any]],
        on_conflict: str,
    ) -> list[dict[str, Any]]:
        return await self._request(
            "POST",
            table,
            params=[("on_conflict", on_conflict)],
            json=list(rows),
            prefer="resolution=merge-duplicates,return=representation",
        )

    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        params = [_format_filter(f) for f in filters]
        deleted = await self._request("DELETE", table, params=params, prefer="return=representation")
        return len(deleted)
