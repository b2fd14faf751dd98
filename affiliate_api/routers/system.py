"""
System health router.

Wired to:
- HealthMonitor for the store connection signal
- ResultCache for cache occupancy
"""

import time

from fastapi import APIRouter, Depends

from affiliate_api import __version__
from affiliate_api.dependencies import ServiceContainer, get_container
from affiliate_api.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()

# Track startup time for uptime calculation
_startup_time = time.time()


def _health_payload(container: ServiceContainer) -> dict:
    monitor = container.health_monitor
    healthy = monitor.is_healthy()
    return {
        "status": "healthy" if healthy else "degraded",
        "version": __version__,
        "uptime_seconds": round(time.time() - _startup_time, 1),
        "store_backend": container.settings.store_backend,
        "connection": {**monitor.state.to_dict(), "derived_healthy": healthy},
        "monitoring": monitor.is_running,
        "cache_entries": len(container.cache),
    }


@router.get("/health")
async def system_health(container: ServiceContainer = Depends(get_container)):
    """Current store connection health as last observed by the probes."""
    return {"success": True, "data": _health_payload(container)}


@router.post("/health/probe")
async def run_health_probe(container: ServiceContainer = Depends(get_container)):
    """Run one probe now instead of waiting for the next interval."""
    await container.health_monitor.probe()
    logger.info("manual_health_probe", healthy=container.health_monitor.is_healthy())
    return {"success": True, "data": _health_payload(container)}
