"""
Resilient query executor.

Wraps one opaque remote operation with cache lookup/population, a
per-attempt timeout, health-aware logging and bounded retry with
exponential backoff. The retry policy is a small state machine
(``RetryPolicy.next_state``) kept apart from the I/O so it can be tested
on its own.

Failure semantics:
- cache hit: returns immediately, bypassing health, timeout and retry
- timeout: fatal for the call, never retried; the remote call itself is
  left running and its outcome is logged when it lands
- error marked ``retryable = False``: surfaced after one attempt
- any other error: retried with backoff, then the last error is re-raised

The executor never substitutes fallback data.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Hashable, Optional, TypeVar

import structlog

from affiliate_api.core.cache import ResultCache
from affiliate_api.core.health import HealthMonitor

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class QueryTimeoutError(Exception):
    """Raised when a remote operation does not finish inside its timeout window."""

    def __init__(self, operation: str, timeout_ms: int):
        self.operation = operation
        self.timeout_ms = timeout_ms
        super().__init__(f"{operation} timed out after {timeout_ms}ms")


class AttemptState(str, Enum):
    """States of a single ``execute`` call."""

    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


class AttemptOutcome(str, Enum):
    """What one attempt produced."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    ERROR = "error"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    Attempt numbers are zero-based; attempt ``n`` failing schedules a retry
    after ``base_delay_ms * 2**n`` as long as ``n < max_retries``.
    """

    max_retries: int = 3
    base_delay_ms: int = 1000

    def delay_ms(self, attempt: int) -> int:
        return self.base_delay_ms * (2 ** attempt)

    def next_state(self, outcome: AttemptOutcome, attempt: int) -> AttemptState:
        if outcome is AttemptOutcome.SUCCESS:
            return AttemptState.SUCCEEDED
        if outcome is AttemptOutcome.TIMEOUT:
            return AttemptState.TIMED_OUT
        if outcome is AttemptOutcome.REJECTED or attempt >= self.max_retries:
            return AttemptState.FAILED
        return AttemptState.RETRY_SCHEDULED


def classify_error(error: BaseException) -> AttemptOutcome:
    if isinstance(error, QueryTimeoutError):
        return AttemptOutcome.TIMEOUT
    if getattr(error, "retryable", True) is False:
        return AttemptOutcome.REJECTED
    return AttemptOutcome.ERROR


class ResilientQueryExecutor:
    """
    Runs remote operations under a uniform resilience policy.

    Attributes:
        health_monitor: Consulted for logging only
        cache: Result cache shared by every caller of this executor
        default_timeout_ms: Timeout used when ``execute`` gets none
        policy: Default retry policy
    """

    def __init__(
        self,
        health_monitor: Optional[HealthMonitor],
        cache: ResultCache,
        default_timeout_ms: int = 8000,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            health_monitor: Health signal source (None disables the check)
            cache: Result cache
            default_timeout_ms: Per-attempt timeout default
            max_retries: Retries after the first attempt
            base_delay_ms: Backoff base delay
            sleep: Coroutine used for backoff waits (seconds)
        """
        self.health_monitor = health_monitor
        self.cache = cache
        self.default_timeout_ms = default_timeout_ms
        self.policy = RetryPolicy(max_retries=max_retries, base_delay_ms=base_delay_ms)
        self._sleep = sleep
        self._abandoned: set = set()

    async def execute(
        self,
        op: Callable[[], Awaitable[T]],
        timeout_ms: Optional[int] = None,
        *,
        use_cache: bool = False,
        cache_key: Optional[Hashable] = None,
        cache_ttl_ms: int = 300_000,
        skip_health_check: bool = False,
        max_retries: Optional[int] = None,
        operation: str = "query",
    ) -> T:
        """
        Execute ``op`` with caching, timeout and retry.

        Args:
            op: Zero-argument callable returning a fresh awaitable per attempt
            timeout_ms: Per-attempt timeout (default: executor default)
            use_cache: Serve from and populate the result cache
            cache_key: Required when ``use_cache`` is set
            cache_ttl_ms: Lifetime of the populated entry
            skip_health_check: Do not consult the health monitor
            max_retries: Override the policy's retry count
            operation: Name used in log events and timeout errors

        Returns:
            The operation's result

        Raises:
            QueryTimeoutError: An attempt exceeded the timeout
            ValueError: ``use_cache`` without ``cache_key``
            Exception: The last error once retries are exhausted
        """
        if use_cache and cache_key is None:
            raise ValueError("cache_key is required when use_cache is set")

        if use_cache:
            entry = self.cache.lookup(cache_key)
            if entry is not None:
                logger.debug("query_cache_hit", operation=operation)
                return entry.value

        if not skip_health_check and self.health_monitor is not None:
            if not self.health_monitor.is_healthy():
                logger.warning(
                    "query_connection_unhealthy",
                    operation=operation,
                    consecutive_failures=self.health_monitor.state.consecutive_failures,
                )

        timeout_ms = self.default_timeout_ms if timeout_ms is None else timeout_ms
        policy = self.policy
        if max_retries is not None:
            policy = RetryPolicy(max_retries=max_retries, base_delay_ms=policy.base_delay_ms)

        attempt = 0
        while True:
            started = time.perf_counter()
            try:
                result = await self._attempt(op, timeout_ms, operation)
            except Exception as e:
                state = policy.next_state(classify_error(e), attempt)
                if state is AttemptState.TIMED_OUT:
                    logger.error(
                        "query_timed_out",
                        operation=operation,
                        timeout_ms=timeout_ms,
                        attempt=attempt + 1,
                    )
                    raise
                if state is AttemptState.FAILED:
                    logger.error(
                        "query_failed",
                        operation=operation,
                        error=str(e),
                        error_type=type(e).__name__,
                        attempts=attempt + 1,
                    )
                    raise
                delay_ms = policy.delay_ms(attempt)
                logger.warning(
                    "query_retry_scheduled",
                    operation=operation,
                    error=str(e),
                    attempt=attempt + 1,
                    delay_ms=delay_ms,
                )
                await self._sleep(delay_ms / 1000)
                attempt += 1
                continue

            logger.debug(
                "query_succeeded",
                operation=operation,
                attempt=attempt + 1,
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
            )
            if use_cache:
                self.cache.set(cache_key, result, cache_ttl_ms)
            return result

    async def _attempt(self, op: Callable[[], Awaitable[T]], timeout_ms: int, operation: str) -> T:
        # Timing out or being cancelled stops the wait, not the remote call.
        task = asyncio.ensure_future(op())
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        finally:
            if not task.done():
                self._abandon(task, operation)
        if not done:
            raise QueryTimeoutError(operation, timeout_ms)
        return task.result()

    @property
    def abandoned_count(self) -> int:
        """Remote calls still running after their caller stopped waiting."""
        return len(self._abandoned)

    def _abandon(self, task: "asyncio.Future[Any]", operation: str) -> None:
        self._abandoned.add(task)
        task.add_done_callback(partial(self._collect_abandoned, operation))

    def _collect_abandoned(self, operation: str, task: "asyncio.Future[Any]") -> None:
        self._abandoned.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("abandoned_query_failed", operation=operation, error=str(error))
        else:
            logger.debug("abandoned_query_completed", operation=operation)

    async def drain(self, timeout_s: float = 5.0) -> None:
        """
        Give abandoned calls ``timeout_s`` to finish, then cancel the rest.

        Called on shutdown before the store is closed.
        """
        pending = set(self._abandoned)
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout_s)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.wait(still_running)
            logger.warning("abandoned_queries_cancelled", count=len(still_running))