"""
FastAPI Production Application

Main entry point for the Movie Booking CDC Analytics API.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from booking_cdc.config import get_settings
from booking_cdc.config.logging import configure_logging
from booking_cdc.database.connection import close_database, init_database
from booking_cdc.serving.api.main import create_api_app
from booking_cdc.serving.cache import close_redis, init_redis

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    configure_logging()
    settings = get_settings()

    logger.info("Starting Movie Booking CDC Analytics API", environment=settings.app_env)

    # The API stays up without a database; readiness reports it
    try:
        await init_database(create_schema=not settings.is_production)
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Database init failed", error=str(e))

    await init_redis()

    yield

    logger.info("Shutting down...")
    await close_database()
    await close_redis()


app = create_api_app(lifespan=lifespan)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
