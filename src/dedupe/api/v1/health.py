"""Health check endpoints.

/health is liveness only. /health/ready checks the database, Redis when
progress entries live there, and whether the retry sweeper is ticking.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.dedupe.config import ProgressBackend, get_settings
from src.dedupe.core.database import get_engine
from src.dedupe.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _database_status() -> str | None:
    """None when the database answers, otherwise the error text."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        return str(e)
    return None


async def _redis_status() -> str | None:
    try:
        if not await get_redis_pool().ping():
            return "PING did not return PONG"
    except Exception as e:
        return str(e)
    return None


@router.get("/health/ready")
async def readiness_check(request: Request):
    """200 when every dependency in use is reachable, 503 otherwise."""
    settings = get_settings()
    checks: dict = {}

    db_error = await _database_status()
    checks["database"] = "error" if db_error else "ok"
    if db_error:
        checks["database_error"] = db_error

    if settings.PROGRESS_BACKEND == ProgressBackend.redis:
        redis_error = await _redis_status()
        checks["redis"] = "error" if redis_error else "ok"
        if redis_error:
            checks["redis_error"] = redis_error
    else:
        checks["redis"] = "unused"

    sweeper = getattr(request.app.state, "retry_sweeper", None)
    checks["retry_sweeper"] = "running" if sweeper is not None and sweeper.running else "stopped"

    healthy = checks["database"] == "ok" and checks["redis"] != "error"
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if healthy else "degraded", "checks": checks},
    )
