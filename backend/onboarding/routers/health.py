"""Health check endpoints for load balancers and monitoring."""

from datetime import datetime, timezone

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from onboarding.config import settings
from onboarding.database import engine
from onboarding.utils.redis import ping_redis

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Lightweight health check for load balancer (no DB/Redis check)."""
    return {
        "status": "ok",
        "service": "onboarding",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment,
    }


@router.get("/health/ready")
async def readiness_check():
    """Readiness check: the database is required, Redis only degrades.

    Rate limiting fails open, so a Redis outage reports ``degraded`` with
    200 rather than taking the instance out of rotation.
    """
    checks = {
        "service": "ok",
        "database": "unknown",
        "redis": "unknown",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except (SQLAlchemyError, OSError) as e:
        checks["database"] = f"error: {str(e)[:100]}"

    checks["redis"] = "ok" if await ping_redis() else "unavailable"

    healthy = checks["database"] == "ok"
    if not healthy:
        overall = "unhealthy"
    elif checks["redis"] != "ok":
        overall = "degraded"
    else:
        overall = "healthy"

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": overall,
            "service": "onboarding",
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
