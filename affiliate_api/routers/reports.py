"""
Report router - aggregated reports, raw document, totals, CSV export and
day writes for the calling user.

Wired to:
- MetricsStore for every read and write
- report_export for CSV rendering

Store, timeout and validation errors propagate to the app-level
exception handlers.
"""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import PlainTextResponse

from affiliate_api.auth.dependencies import get_current_user_id
from affiliate_api.dependencies import ServiceContainer, get_container, get_metrics_store
from affiliate_api.engine.report_export import export_filename, report_to_csv
from affiliate_api.models.enums import Timeframe
from affiliate_api.services.metrics_store import MetricsStore
from affiliate_api.utils.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@router.get("")
async def get_report(
    user_id: str = Depends(get_current_user_id),
    metrics_store: MetricsStore = Depends(get_metrics_store),
    timeframe: str = Query(default=Timeframe.LAST_30_DAYS.value),
    force: bool = False,
):
    """Aggregated report for a named timeframe (unknown names mean Last 30 Days)."""
    report = await metrics_store.get_report(user_id, timeframe, force=force)
    return {"success": True, "data": report.model_dump(mode="json")}


@router.get("/raw")
async def get_raw_document(
    user_id: str = Depends(get_current_user_id),
    metrics_store: MetricsStore = Depends(get_metrics_store),
    force: bool = False,
):
    """Stored ``user_reports`` document, or null when the user has none."""
    document = await metrics_store.get_document(user_id, force=force)
    data = None
    if document is not None:
        data = {
            "user_id": document.user_id,
            "user_reports": document.to_user_reports(),
            "version": document.version,
            "updated_at": document.updated_at.isoformat() if document.updated_at else None,
        }
    return {"success": True, "data": data}


@router.get("/totals")
async def get_totals(
    user_id: str = Depends(get_current_user_id),
    metrics_store: MetricsStore = Depends(get_metrics_store),
    force: bool = False,
):
    totals = await metrics_store.get_totals(user_id, force=force)
    data = totals.model_dump(mode="json")
    data["referrals"] = totals.referrals
    return {"success": True, "data": data}


@router.get("/export")
async def export_report(
    user_id: str = Depends(get_current_user_id),
    container: ServiceContainer = Depends(get_container),
    timeframe: str = Query(default=Timeframe.LAST_30_DAYS.value),
):
    """CSV download of a timeframe report, newest row first."""
    report = await container.metrics_store.get_report(user_id, timeframe)
    filename = export_filename(report, container.clock.date_key())
    logger.info("report_exported", user_id=user_id, timeframe=report.timeframe.value, rows=len(report.daily_data))
    return PlainTextResponse(
        content=report_to_csv(report),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.put("/days/{date_key}")
async def upsert_day(
    date_key: str,
    user_id: str = Depends(get_current_user_id),
    metrics_store: MetricsStore = Depends(get_metrics_store),
    payload: Dict[str, Any] = Body(...),
):
    """Merge partial metrics into one day's bucket."""
    bucket = await metrics_store.upsert_day(user_id, date_key, payload)
    return {"success": True, "data": {"date": date_key, **bucket.to_json()}}
