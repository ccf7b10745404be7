"""
Booking Record Endpoints

Read-only access to derived booking records: filtered listing, audit of
invalid records and streamed CSV export.
"""

from typing import List

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from booking_cdc.schemas import DerivedRecord, utcnow
from booking_cdc.serving.api.dependencies import booking_filters, get_query_service
from booking_cdc.serving.query import QueryFilters, QueryService, export_filename

router = APIRouter()
logger = structlog.get_logger(__name__)


class BookingPage(BaseModel):
    """Paginated derived records"""
    items: List[DerivedRecord]
    total: int
    limit: int
    offset: int


@router.get("", response_model=BookingPage)
async def list_bookings(
    filters: QueryFilters = Depends(booking_filters),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    service: QueryService = Depends(get_query_service),
) -> BookingPage:
    """Valid derived records ordered by effective time"""
    items, total = await service.page(filters, limit=limit, offset=offset, valid=True)
    return BookingPage(items=items, total=total, limit=limit, offset=offset)


@router.get("/audit", response_model=BookingPage)
async def audit_bookings(
    filters: QueryFilters = Depends(booking_filters),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    service: QueryService = Depends(get_query_service),
) -> BookingPage:
    """Records that failed validation, kept for data quality review"""
    items, total = await service.page(filters, limit=limit, offset=offset, valid=False)
    return BookingPage(items=items, total=total, limit=limit, offset=offset)


@router.get("/export.csv")
async def export_bookings(
    filters: QueryFilters = Depends(booking_filters),
    service: QueryService = Depends(get_query_service),
) -> StreamingResponse:
    """Stream valid records as CSV"""
    generated_at = utcnow()
    filename = export_filename(generated_at)
    logger.info("Record export requested", filename=filename, **filters.model_dump(mode="json"))
    return StreamingResponse(
        service.export_csv(filters),
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Generated-At": generated_at.isoformat() + "Z",
        },
    )
