"""
Admin router - maintenance jobs.
"""

from typing import Optional

from fastapi import APIRouter, Depends

from affiliate_api.auth.dependencies import require_admin
from affiliate_api.dependencies import ServiceContainer, get_container
from affiliate_api.models.reports import validate_date_key
from affiliate_api.services.daily_reports import seed_daily_buckets
from affiliate_api.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.post("/update-user-reports")
async def update_user_reports(
    admin_id: str = Depends(require_admin),
    container: ServiceContainer = Depends(get_container),
    date_key: Optional[str] = None,
):
    """Ensure every referrer has a bucket for today (or ``date_key``)."""
    if date_key is not None:
        validate_date_key(date_key)
    logger.info("daily_seed_requested", admin_id=admin_id, date_key=date_key)
    summary = await seed_daily_buckets(container.metrics_store, container.clock, date_key)
    return {"success": True, "data": summary.to_dict()}
