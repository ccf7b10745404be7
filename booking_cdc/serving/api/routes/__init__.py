"""
API Routes Module
"""
from .analytics import router as analytics_router
from .bookings import router as bookings_router
from .health import router as health_router
from .ingest import router as ingest_router
from .pipeline import router as pipeline_router

__all__ = [
    "analytics_router",
    "bookings_router",
    "health_router",
    "ingest_router",
    "pipeline_router",
]
