"""Liveness and readiness probes for the ops API."""

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from fulfillment.db.base import get_session_factory
from fulfillment.db.redis import get_redis

logger = structlog.get_logger(__name__)

router = APIRouter()

SERVICE_NAME = "fulfillment-ops"


async def _database_ready() -> bool:
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("readiness_database_failed", error=str(exc), error_type=type(exc).__name__)
        return False
    return True


async def _cache_ready() -> bool:
    try:
        await get_redis().ping()
    except Exception as exc:
        logger.error("readiness_cache_failed", error=str(exc), error_type=type(exc).__name__)
        return False
    return True


@router.get("/health")
async def health_check(request: Request):
    """503 once SIGTERM was received, so the load balancer drains this instance."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(status_code=503, content={"status": "shutting_down", "service": SERVICE_NAME})
    return {"status": "healthy", "service": SERVICE_NAME}


@router.get("/ready")
async def readiness_check(request: Request):
    checks = {
        "database": await _database_ready(),
        "cache": await _cache_ready(),
        "event_log": getattr(request.app.state, "event_log", None) is not None,
    }
    ready = all(checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "degraded", "checks": checks},
    )
