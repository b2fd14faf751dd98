"""
Connection health monitor for the remote store.

Issues lightweight probes on a timer and keeps a rolling health signal.
The signal is advisory: the query executor logs it but never refuses a
query because of it.
"""

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

FAILURE_THRESHOLD = 3
STALE_AFTER_MS = 120_000


@dataclass
class ConnectionHealthState:
    """
    Mutable probe bookkeeping.

    Attributes:
        is_healthy: Outcome of the most recent probe
        last_check_ms: Epoch milliseconds of the most recent probe (0 = never)
        consecutive_failures: Failed probes since the last success
        latency_ms: Round-trip time of the most recent successful probe
    """

    is_healthy: bool = True
    last_check_ms: int = 0
    consecutive_failures: int = 0
    latency_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class HealthMonitor:
    """
    Tracks store connectivity through periodic probes.

    Probes never overlap: a ``probe()`` issued while another is in flight
    returns without starting a second request.
    """

    def __init__(
        self,
        probe_fn: Callable[[], Awaitable[Any]],
        clock_ms: Callable[[], int],
        probe_timeout_ms: int = 3000,
    ):
        """
        Args:
            probe_fn: Zero-argument coroutine factory issuing the trivial query
            clock_ms: Epoch-milliseconds clock
            probe_timeout_ms: Upper bound on a single probe
        """
        self._probe_fn = probe_fn
        self._clock_ms = clock_ms
        self.probe_timeout_ms = probe_timeout_ms
        self.state = ConnectionHealthState()
        self._probe_in_flight = False
        self._task: Optional[asyncio.Task] = None
        self._reported_healthy: Optional[bool] = None

    @property
    def latency_ms(self) -> int:
        return self.state.latency_ms

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_healthy(self) -> bool:
        """Derived health: last probe ok, fewer than 3 failures, checked within 2 minutes."""
        state = self.state
        if not state.is_healthy or state.consecutive_failures >= FAILURE_THRESHOLD:
            return False
        return self._clock_ms() - state.last_check_ms <= STALE_AFTER_MS

    async def probe(self) -> ConnectionHealthState:
        """
        Run one bounded probe and record the outcome.

        Never raises for probe failures; they are state transitions.
        """
        if self._probe_in_flight:
            logger.debug("health_probe_skipped", reason="probe_in_flight")
            return self.state

        self._probe_in_flight = True
        started_ms = self._clock_ms()
        try:
            await asyncio.wait_for(self._probe_fn(), timeout=self.probe_timeout_ms / 1000)
        except Exception as e:
            self.state.consecutive_failures += 1
            self.state.is_healthy = False
            self.state.last_check_ms = self._clock_ms()
            logger.warning(
                "health_probe_failed",
                error=str(e) or type(e).__name__,
                consecutive_failures=self.state.consecutive_failures,
            )
        else:
            now_ms = self._clock_ms()
            self.state.consecutive_failures = 0
            self.state.is_healthy = True
            self.state.latency_ms = now_ms - started_ms
            self.state.last_check_ms = now_ms
            logger.debug("health_probe_succeeded", latency_ms=self.state.latency_ms)
        finally:
            self._probe_in_flight = False

        self._log_transition()
        return self.state

    def _log_transition(self) -> None:
        healthy = self.is_healthy()
        if healthy == self._reported_healthy:
            return
        if healthy:
            logger.info("connection_became_healthy", latency_ms=self.state.latency_ms)
        else:
            logger.warning(
                "connection_became_unhealthy",
                consecutive_failures=self.state.consecutive_failures,
            )
        self._reported_healthy = healthy

    async def _run(self, interval_ms: int) -> None:
        while True:
            await self.probe()
            await asyncio.sleep(interval_ms / 1000)

    def start(self, interval_ms: int) -> None:
        """Begin periodic probing on the running event loop."""
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(interval_ms))
        logger.info("health_monitor_started", interval_ms=interval_ms)

    async def stop(self) -> None:
        """Cancel periodic probing and wait for the task to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("health_monitor_stopped")
