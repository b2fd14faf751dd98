"""
Composition root.

Builds the single process-wide set of collaborators (store, clock, cache,
health monitor, executor, aggregator, services) and owns their background
tasks. Routers reach it through ``get_container``.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from fastapi import Request

from affiliate_api.config import Settings
from affiliate_api.core.cache import ResultCache
from affiliate_api.core.clock import TimeProvider
from affiliate_api.core.executor import ResilientQueryExecutor
from affiliate_api.core.health import HealthMonitor
from affiliate_api.engine.report_aggregator import ReportAggregator
from affiliate_api.services.metrics_store import MetricsStore
from affiliate_api.services.referrals import ReferralService
from affiliate_api.storage import RemoteStore, create_store
from affiliate_api.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Process-wide collaborators shared by every request."""

    settings: Settings
    store: RemoteStore
    clock: TimeProvider
    cache: ResultCache
    health_monitor: HealthMonitor
    executor: ResilientQueryExecutor
    aggregator: ReportAggregator
    metrics_store: MetricsStore
    referrals: ReferralService
    _sweep_task: Optional[asyncio.Task] = field(default=None, repr=False)

    def start_background_tasks(self) -> None:
        """Start health probing and cache sweeping on the running loop."""
        self.health_monitor.start(self.settings.health_probe_interval_ms)
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(
                self.cache.sweep_forever(self.settings.cache_sweep_interval_seconds)
            )

    async def shutdown(self) -> None:
        """Stop background tasks and release the store."""
        await self.health_monitor.stop()
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.executor.drain()
        await self.store.close()
        logger.info("service_container_closed")


def build_container(
    settings: Settings,
    store: Optional[RemoteStore] = None,
    clock: Optional[TimeProvider] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> ServiceContainer:
    """
    Wire every collaborator from settings.

    Args:
        settings: Application settings
        store: Store override (default: backend chosen by settings)
        clock: Clock override (default: real clock in the report timezone)
        sleep: Backoff sleep used by the executor
    """
    store = store or create_store(settings)
    clock = clock or TimeProvider(settings.report_timezone)
    cache = ResultCache(clock.epoch_millis)
    health_monitor = HealthMonitor(
        lambda: store.ping(settings.health_probe_table),
        clock.epoch_millis,
        probe_timeout_ms=settings.health_probe_timeout_ms,
    )
    executor = ResilientQueryExecutor(
        health_monitor,
        cache,
        default_timeout_ms=settings.query_timeout_ms,
        max_retries=settings.query_max_retries,
        base_delay_ms=settings.retry_base_delay_ms,
        sleep=sleep,
    )
    aggregator = ReportAggregator(clock, all_time_lookback_years=settings.all_time_lookback_years)
    metrics_store = MetricsStore(
        store,
        executor,
        aggregator,
        report_cache_ttl_ms=settings.report_cache_ttl_ms,
        totals_cache_ttl_ms=settings.totals_cache_ttl_ms,
        write_conflict_retries=settings.write_conflict_retries,
    )
    referrals = ReferralService(store, executor)

    logger.info(
        "service_container_built",
        store=type(store).__name__,
        timezone=settings.report_timezone,
    )
    return ServiceContainer(
        settings=settings,
        store=store,
        clock=clock,
        cache=cache,
        health_monitor=health_monitor,
        executor=executor,
        aggregator=aggregator,
        metrics_store=metrics_store,
        referrals=referrals,
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_metrics_store(request: Request) -> MetricsStore:
    return request.app.state.container.metrics_store


def get_referral_service(request: Request) -> ReferralService:
    return request.app.state.container.referrals
