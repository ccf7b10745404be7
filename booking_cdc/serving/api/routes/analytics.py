"""
Analytics API Endpoints

Snapshot access for the booking dashboard.
"""

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from booking_cdc.analytics.aggregation import AggregationWindow
from booking_cdc.schemas import utcnow
from booking_cdc.serving.api.dependencies import analytics_window, get_analytics_service
from booking_cdc.serving.cache import snapshot_cache
from booking_cdc.serving.query import AnalyticsService, SnapshotResponse, snapshot_csv

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.get("/snapshot", response_model=SnapshotResponse)
async def get_snapshot(
    window: AggregationWindow = Depends(analytics_window),
    refresh: bool = Query(True, description="Fold in newly derived records before answering"),
    service: AnalyticsService = Depends(get_analytics_service),
) -> SnapshotResponse:
    """
    Snapshot for a window.

    With ``refresh=false`` the answer may come from cache and is then marked
    ``refresh_mode="cached"``. If re-aggregation exceeds its deadline the
    last stored snapshot is returned with ``degraded=true``.
    """
    if not refresh:
        cached = await snapshot_cache.get(window.key)
        if cached:
            logger.debug("Returning cached snapshot", window=window.key)
            return SnapshotResponse.model_validate(cached).model_copy(update={"refresh_mode": "cached"})

    response = await service.get_snapshot(window, refresh=refresh)
    if not response.degraded:
        await snapshot_cache.set(window.key, response.model_dump(mode="json"))
    return response


@router.post("/refresh", response_model=SnapshotResponse)
async def refresh_snapshot(
    window: AggregationWindow = Depends(analytics_window),
    service: AnalyticsService = Depends(get_analytics_service),
) -> SnapshotResponse:
    """Re-aggregate the window from scratch and store a new snapshot"""
    await snapshot_cache.invalidate_all()
    response = await service.get_snapshot(window, force=True)
    logger.info("Manual snapshot refresh", window=window.key, degraded=response.degraded)
    return response


@router.get("/snapshot/export.csv")
async def export_snapshot(
    window: AggregationWindow = Depends(analytics_window),
    service: AnalyticsService = Depends(get_analytics_service),
) -> Response:
    """Snapshot breakdowns as CSV"""
    response = await service.get_snapshot(window)
    generated_at = utcnow()
    filename = f"booking_snapshot_{generated_at.strftime('%Y%m%dT%H%M%SZ')}.csv"
    return Response(
        content=snapshot_csv(response.snapshot),
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Generated-At": generated_at.isoformat() + "Z",
        },
    )
