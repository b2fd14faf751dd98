"""
Remote store layer.

RemoteStore defines the query API (select / fetch_one / insert / update /
upsert / delete) the core consumes. PostgrestStore talks to a Supabase
PostgREST endpoint; DuckDBStore is an embedded backend for local
development.
"""

from affiliate_api.config import Settings

from .base import (
    Filter,
    RemoteStore,
    StoreConflictError,
    StoreConnectionError,
    StoreError,
    eq,
    in_,
)
from .duckdb_storage import DuckDBStore
from .postgrest import PostgrestStore


def create_store(settings: Settings) -> RemoteStore:
    """
    Build the store backend selected by configuration.

    Returns:
        RemoteStore implementation instance
    """
    if settings.store_backend == "duckdb":
        return DuckDBStore(db_path=settings.db_path)
    return PostgrestStore(
        base_url=settings.postgrest_url,
        api_key=settings.postgrest_service_key,
        schema=settings.postgrest_schema,
    )


__all__ = [
    "DuckDBStore",
    "Filter",
    "PostgrestStore",
    "RemoteStore",
    "StoreConflictError",
    "StoreConnectionError",
    "StoreError",
    "create_store",
    "eq",
    "in_",
]
