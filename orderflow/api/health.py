"""
Orderflow - Health endpoint
"""
import asyncio

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import get_settings
from orderflow.core.redis_client import get_redis
from orderflow.db.database import get_db
from orderflow.services import outbox

settings = get_settings()
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    deps: dict[str, str] = {}
    healthy = True
    backlog: dict[str, int] = {}

    # Check Database
    try:
        await asyncio.wait_for(db.execute(text("SELECT 1")), timeout=settings.HEALTH_CHECK_TIMEOUT)
        deps["database"] = "ok"
        backlog = await outbox.stats(db)
    except Exception as e:
        deps["database"] = f"error: {str(e)[:100]}"
        healthy = False

    # Check Redis (only the broadcast relay depends on it at request time)
    if settings.BROADCAST_BACKEND == "redis":
        try:
            redis = get_redis()
            await asyncio.wait_for(redis.ping(), timeout=settings.HEALTH_CHECK_TIMEOUT)
            deps["redis"] = "ok"
        except Exception as e:
            deps["redis"] = f"error: {str(e)[:100]}"
            healthy = False

    return JSONResponse(
        content={
            "status": "healthy" if healthy else "degraded",
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "dependencies": deps,
            "kitchen_subscribers": request.app.state.broadcast.subscriber_count,
            "outbox": backlog,
        },
        status_code=200 if healthy else 503,
    )
