"""Health check endpoint.

Verifies connectivity to the database and Redis, returns structured status.
Used by Docker healthchecks, load balancers, and monitoring systems. Redis
only backs the webhook fast path, so its absence degrades but never fails
the service.
"""

from __future__ import annotations

from fastapi import APIRouter
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from escrow_ledger.infrastructure.database.engine import _get_engine
from escrow_ledger.infrastructure.redis_client import get_redis, is_redis_initialized
from escrow_ledger.logging_config import get_logger
from escrow_ledger.schemas.common import HealthResponse

router = APIRouter(prefix="/api/v1", tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check() -> HealthResponse:
    """Check connectivity to the database and Redis."""
    try:
        async with _get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "healthy"
    except (SQLAlchemyError, OSError) as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    if not is_redis_initialized():
        redis_status = "disabled"
    else:
        try:
            await get_redis().ping()
            redis_status = "healthy"
        except (RedisError, OSError) as exc:
            redis_status = f"unhealthy: {exc}"
            logger.error("health.redis_check_failed", error=str(exc))

    # Redis is an optional fast path; only a configured but failing Redis degrades.
    redis_ok = redis_status in ("healthy", "disabled")
    overall = "ok" if db_status == "healthy" and redis_ok else "degraded"

    return HealthResponse(
        status=overall,
        version="0.1.0",
        database=db_status,
        redis=redis_status,
    )
