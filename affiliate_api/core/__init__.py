"""
Resilient data-access core.

- clock: civil calendar pinned to one IANA timezone
- cache: in-process TTL result cache
- health: periodic connectivity probes
- executor: cache/timeout/retry wrapper around remote operations
"""

from affiliate_api.core.cache import CacheEntry, ResultCache, cache_key
from affiliate_api.core.clock import TimeProvider
from affiliate_api.core.executor import (
    AttemptOutcome,
    AttemptState,
    QueryTimeoutError,
    ResilientQueryExecutor,
    RetryPolicy,
)
from affiliate_api.core.health import ConnectionHealthState, HealthMonitor

__all__ = [
    "AttemptOutcome",
    "AttemptState",
    "CacheEntry",
    "ConnectionHealthState",
    "HealthMonitor",
    "QueryTimeoutError",
    "ResilientQueryExecutor",
    "ResultCache",
    "RetryPolicy",
    "TimeProvider",
    "cache_key",
]
