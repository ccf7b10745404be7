"""
Route Dependencies

Process-wide services live on ``app.state`` so that every request shares
the same append locks and single-flight derivation lock.
"""

from datetime import date, datetime, timedelta
from typing import Optional

from fastapi import Query, Request

from booking_cdc.analytics.aggregation import AggregationWindow
from booking_cdc.config import get_settings
from booking_cdc.ingestion.buffer import IngestionBuffer
from booking_cdc.scheduling.job_log import JobRunLog
from booking_cdc.scheduling.pipeline import CDCPipeline
from booking_cdc.schemas import utcnow
from booking_cdc.serving.query import AnalyticsService, QueryFilters, QueryService


def get_buffer(request: Request) -> IngestionBuffer:
    return request.app.state.buffer


def get_pipeline(request: Request) -> CDCPipeline:
    return request.app.state.pipeline


def get_analytics_service(request: Request) -> AnalyticsService:
    return request.app.state.analytics


def get_query_service() -> QueryService:
    return QueryService()


def get_job_log() -> JobRunLog:
    return JobRunLog()


def booking_filters(
    start_date: Optional[date] = Query(None, description="First effective day (inclusive)"),
    end_date: Optional[date] = Query(None, description="Last effective day (inclusive)"),
    status: Optional[str] = Query(None, description="Booking status, e.g. BOOKED"),
    movie_id: Optional[str] = Query(None),
) -> QueryFilters:
    return QueryFilters.from_dates(start_date, end_date, status=status, movie_id=movie_id)


def analytics_window(
    start_date: Optional[date] = Query(None, description="First day of the window (inclusive)"),
    end_date: Optional[date] = Query(None, description="Last day of the window (inclusive)"),
) -> AggregationWindow:
    """Explicit date window, or the trailing configured number of days"""
    if start_date is None and end_date is None:
        return AggregationWindow.trailing_days(get_settings().pipeline.default_window_days, utcnow())
    return AggregationWindow(
        start=datetime.combine(start_date, datetime.min.time()) if start_date else None,
        end=datetime.combine(end_date + timedelta(days=1), datetime.min.time()) if end_date else None,
    )
