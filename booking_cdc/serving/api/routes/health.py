"""
Health Check Endpoints

Provides health and readiness checks for orchestration systems.
"""

from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Response
from pydantic import BaseModel

from booking_cdc.config import get_settings
from booking_cdc.database.connection import check_database_health
from booking_cdc.schemas import utcnow
from booking_cdc.serving.cache import check_redis_health

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    environment: str
    timestamp: datetime
    checks: Dict[str, Any]


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Comprehensive health check endpoint.

    Checks:
    - Database connectivity
    - Redis connectivity (optional; a disabled cache is not a failure)
    """
    settings = get_settings()
    checks = {
        "database": await check_database_health(),
        "redis": await check_redis_health(),
    }

    overall_status = "healthy"
    if checks["database"].get("status") != "healthy":
        overall_status = "unhealthy"
    elif checks["redis"].get("status") == "unhealthy":
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=settings.version,
        environment=settings.app_env,
        timestamp=utcnow(),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """Liveness probe; 200 while the process is serving"""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(response: Response) -> Dict[str, str]:
    """Readiness probe; 503 until the database is reachable"""
    db_health = await check_database_health()
    if db_health.get("status") != "healthy":
        response.status_code = 503
        return {"status": "not_ready", "reason": "database_unavailable"}
    return {"status": "ready"}
