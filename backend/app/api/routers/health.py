"""Simple health and readiness endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, status
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings, get_settings
from app.db.session import get_engine
from app.utils.redis_client import create_redis_client

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["health"])

SERVICE_NAME = "material-importer-api"


def _redis_required(settings: Settings) -> bool:
    """Redis matters when it backs the job store or carries queued imports."""
    return settings.job_store_backend == "redis" or not settings.celery_task_always_eager


@router.get("/live", summary="Liveness probe")
async def live() -> dict[str, str]:
    """Indicates API process is running."""
    return {"status": "ok", "service": SERVICE_NAME}


@router.get("/ready", summary="Readiness probe")
def ready() -> dict[str, Any]:
    """Check readiness of dependencies (database, and Redis when in use).

    Used by load balancers to determine if traffic should be routed to this instance.
    """
    settings = get_settings()
    checks: dict[str, Any] = {
        "status": "ok",
        "service": SERVICE_NAME,
        "checks": {},
    }
    all_healthy = True

    # Check database connectivity
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        checks["checks"]["database"] = {
            "status": "healthy",
            "message": "Database connection successful",
        }
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}", exc_info=True)
        checks["checks"]["database"] = {
            "status": "unhealthy",
            "message": f"Database connection failed: {str(e)}",
        }
        all_healthy = False

    if _redis_required(settings):
        redis_url = (
            settings.redis_url
            if settings.job_store_backend == "redis"
            else settings.celery_broker_url or settings.redis_url
        )
        try:
            redis_client = create_redis_client(
                redis_url, decode_responses=True, socket_connect_timeout=2
            )
            redis_client.ping()
            checks["checks"]["redis"] = {
                "status": "healthy",
                "message": "Redis connection successful",
            }
            redis_client.close()
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}", exc_info=True)
            checks["checks"]["redis"] = {
                "status": "unhealthy",
                "message": f"Redis connection failed: {str(e)}",
            }
            all_healthy = False
    else:
        checks["checks"]["redis"] = {
            "status": "skipped",
            "message": "Redis not used by this deployment",
        }

    if not all_healthy:
        checks["status"] = "unhealthy"
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=checks,
        )

    return checks
