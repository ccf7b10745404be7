"""
FastAPI Application Factory

Creates and configures the booking analytics API: middleware, routers,
shared services and the mapping of pipeline errors to HTTP responses.
"""

from typing import Callable, Dict, Optional, Type

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from booking_cdc.analytics.refresher import AnalyticsRefresher
from booking_cdc.config import get_settings
from booking_cdc.errors import (
    AggregationTimeoutError,
    BookingCDCError,
    DuplicateEventError,
    MalformedEnvelopeError,
    PipelineRunError,
)
from booking_cdc.ingestion.buffer import IngestionBuffer
from booking_cdc.scheduling.pipeline import CDCPipeline
from booking_cdc.serving.api.middleware import RequestLoggingMiddleware
from booking_cdc.serving.api.routes import (
    analytics_router,
    bookings_router,
    health_router,
    ingest_router,
    pipeline_router,
)
from booking_cdc.serving.query import AnalyticsService
from booking_cdc.transformation.processor import DerivationProcessor

logger = structlog.get_logger(__name__)

ERROR_STATUS: Dict[Type[BookingCDCError], int] = {
    DuplicateEventError: 409,
    MalformedEnvelopeError: 422,
    AggregationTimeoutError: 503,
    PipelineRunError: 503,
}


async def booking_cdc_error_handler(request: Request, exc: BookingCDCError) -> JSONResponse:
    status_code = 500
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    log = logger.error if status_code >= 500 else logger.info
    log("Request failed", path=request.url.path, status_code=status_code, **exc.to_dict())
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_api_app(lifespan: Optional[Callable] = None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI app instance
    """
    settings = get_settings()
    app = FastAPI(
        title="Movie Booking CDC Analytics API",
        description="Change-data-capture analytics over movie bookings",
        version=settings.version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Services shared by all requests
    buffer = IngestionBuffer()
    refresher = AnalyticsRefresher()
    app.state.buffer = buffer
    app.state.pipeline = CDCPipeline(processor=DerivationProcessor(buffer=buffer), refresher=refresher)
    app.state.analytics = AnalyticsService(refresher=refresher)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(BookingCDCError, booking_cdc_error_handler)

    app.include_router(health_router, prefix="/api/v1", tags=["Health"])
    app.include_router(bookings_router, prefix="/api/v1/bookings", tags=["Bookings"])
    app.include_router(analytics_router, prefix="/api/v1/analytics", tags=["Analytics"])
    app.include_router(pipeline_router, prefix="/api/v1/pipeline", tags=["Pipeline"])
    app.include_router(ingest_router, prefix="/api/v1/ingest", tags=["Ingest"])

    app.mount("/metrics", make_asgi_app())

    @app.get("/api/v1/info")
    async def api_info():
        """API information endpoint."""
        return {
            "name": settings.app_name,
            "version": settings.version,
            "environment": settings.app_env,
            "documentation": "/docs",
        }

    return app
