"""
Unit tests for the connection health monitor.
"""

import asyncio

from affiliate_api.core.health import FAILURE_THRESHOLD, HealthMonitor


class ConnectionCheckStub:
    def __init__(self, error: Exception = None):
        self.error = error
        self.calls = 0
        self.gate: asyncio.Event = None
        self.started = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error


class TestHealthMonitor:
    async def test_successful_check_marks_healthy(self, clock):
        monitor = HealthMonitor(ConnectionCheckStub(), clock.epoch_millis)
        state = await monitor.probe()
        assert state.is_healthy
        assert state.consecutive_failures == 0
        assert state.last_check_ms == clock.epoch_millis()
        assert monitor.is_healthy()

    async def test_failures_count_up_and_reset(self, clock):
        check = ConnectionCheckStub(error=ConnectionError("down"))
        monitor = HealthMonitor(check, clock.epoch_millis)

        for _ in range(FAILURE_THRESHOLD):
            await monitor.probe()
        assert monitor.state.consecutive_failures == FAILURE_THRESHOLD
        assert not monitor.is_healthy()

        check.error = None
        await monitor.probe()
        assert monitor.state.consecutive_failures == 0
        assert monitor.is_healthy()

    async def test_check_never_raises(self, clock):
        monitor = HealthMonitor(ConnectionCheckStub(error=RuntimeError("boom")), clock.epoch_millis)
        state = await monitor.probe()
        assert not state.is_healthy

    async def test_stale_check_reports_unhealthy(self, clock):
        monitor = HealthMonitor(ConnectionCheckStub(), clock.epoch_millis)
        await monitor.probe()
        clock.advance(120_000)
        assert monitor.is_healthy()
        clock.advance(1)
        assert not monitor.is_healthy()

    async def test_check_timeout_counts_as_failure(self, clock):
        check = ConnectionCheckStub()
        check.gate = asyncio.Event()
        monitor = HealthMonitor(check, clock.epoch_millis, probe_timeout_ms=10)

        state = await monitor.probe()
        assert not state.is_healthy
        assert state.consecutive_failures == 1

    async def test_checks_never_overlap(self, clock):
        check = ConnectionCheckStub()
        check.gate = asyncio.Event()
        monitor = HealthMonitor(check, clock.epoch_millis, probe_timeout_ms=5000)

        first = asyncio.create_task(monitor.probe())
        await asyncio.wait_for(check.started.wait(), timeout=1)
        await monitor.probe()
        assert check.calls == 1

        check.gate.set()
        await first
        assert check.calls == 1
        assert monitor.is_healthy()

    async def test_start_and_stop(self, clock):
        check = ConnectionCheckStub()
        monitor = HealthMonitor(check, clock.epoch_millis)

        monitor.start(60_000)
        assert monitor.is_running
        await asyncio.sleep(0.01)
        await monitor.stop()

        assert not monitor.is_running
        assert check.calls == 1

    async def test_stop_without_start_is_noop(self, clock):
        monitor = HealthMonitor(ConnectionCheckStub(), clock.epoch_millis)
        await monitor.stop()
        assert not monitor.is_running

    def test_state_to_dict(self, clock):
        monitor = HealthMonitor(ConnectionCheckStub(), clock.epoch_millis)
        assert set(monitor.state.to_dict()) == {
            "is_healthy",
            "last_check_ms",
            "consecutive_failures",
            "latency_ms",
        }
