import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from stacksgate.core.config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint for load balancer.

    Returns 503 during graceful shutdown so the balancer stops routing traffic.
    """
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "stacksgate"},
        )
    return {"status": "healthy", "service": "stacksgate"}


@router.get("/ready")
async def readiness_check(request: Request):
    """Readiness check - verifies storage and cache backends are available."""
    settings = get_settings()
    checks: dict[str, bool] = {}

    if settings.storage_backend == "sql":
        checks["database"] = False
        try:
            from stacksgate.db.base import get_session_factory

            async with get_session_factory()() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")

    if settings.redis_url:
        checks["redis"] = False
        try:
            from stacksgate.db.redis import get_redis

            await get_redis().ping()
            checks["redis"] = True
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")

    disabled = getattr(getattr(request.app.state, "coordinator", None), "disabled", {})

    all_healthy = all(checks.values())
    return JSONResponse(
        status_code=200 if all_healthy else 503,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
            "disabled_subsystems": sorted(disabled),
        },
    )
