"""Health check endpoints."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import text

from config import settings
from database import engine
from services.job_queue import GENERATION_QUEUE_NAME, PIPELINE_QUEUE_NAME

router = APIRouter()


def _credential_status(value: str) -> str:
    return "configured" if value else "missing"


@router.get("/health")
async def health_check():
    """Database, Redis and queue depth, plus which remote credentials are set."""
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "queues": {},
        "gemini_api_key": _credential_status(settings.GEMINI_API_KEY),
        "background_removal_api_key": _credential_status(settings.BACKGROUND_REMOVAL_API_KEY),
        "object_storage": _credential_status(settings.STORAGE_ENDPOINT_URL),
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as exc:
        health_status["database"] = f"down: {exc}"
        health_status["status"] = "degraded"

    # RQ keeps pending job ids in a list per queue
    try:
        client = redis.from_url(settings.REDIS_URL)
        await client.ping()
        for name in (PIPELINE_QUEUE_NAME, GENERATION_QUEUE_NAME):
            health_status["queues"][name] = await client.llen(f"rq:queue:{name}")
        await client.aclose()
        health_status["redis"] = "up"
    except Exception as exc:
        health_status["redis"] = f"down: {exc}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once generation, cutout and publishing can all reach their services."""
    required = {
        "GEMINI_API_KEY": settings.GEMINI_API_KEY,
        "BACKGROUND_REMOVAL_API_KEY": settings.BACKGROUND_REMOVAL_API_KEY,
        "PUBLIC_BASE_URL": settings.PUBLIC_BASE_URL,
    }
    missing = [name for name, value in required.items() if not value]
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Liveness probe."""
    return {"alive": True}
