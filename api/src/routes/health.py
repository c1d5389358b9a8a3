from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
import redis.asyncio as redis

from api.src.db.database import get_db
from api.src.config import get_settings
from api.src.services.pipeline_parser import load_pipeline_file, PipelineConfigError
from api.src.services.queue import get_queue_length

settings = get_settings()

router = APIRouter(tags=["health"])

async def _check_db(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
        return "healthy"
    except Exception as e:
        return f"unhealthy: {e}"

async def _check_redis() -> str:
    client = redis.from_url(settings.redis_url)
    try:
        await client.ping()
        return "healthy"
    except Exception as e:
        return f"unhealthy: {e}"
    finally:
        await client.aclose()

def _check_pipeline() -> str:
    try:
        load_pipeline_file(settings.pipeline_file)
        return "healthy"
    except PipelineConfigError as e:
        return f"unhealthy: {e}"

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "pagesflow-api"}

@router.get("/health/db")
async def db_health_check(db: AsyncSession = Depends(get_db)):
    status = await _check_db(db)
    return {"status": status.split(":")[0], "database": status}

@router.get("/health/redis")
async def redis_health_check():
    status = await _check_redis()
    return {"status": status.split(":")[0], "redis": status}

@router.get("/health/pipeline")
async def pipeline_health_check():
    status = _check_pipeline()
    return {"status": status.split(":")[0], "pipeline_file": settings.pipeline_file, "pipeline": status}

@router.get("/health/queue")
async def queue_health_check():
    try:
        queue_length = await get_queue_length()
        return {
            "status": "healthy",
            "queue_length": queue_length,
        }
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}

@router.get("/health/all")
async def full_health_check(db: AsyncSession = Depends(get_db)):
    """Combined health check for all services."""
    health = {
        "api": "healthy",
        "database": await _check_db(db),
        "redis": await _check_redis(),
        "pipeline": _check_pipeline(),
        "queue_length": 0,
    }

    try:
        health["queue_length"] = await get_queue_length()
    except Exception:
        health["queue_length"] = None

    overall = "healthy" if all(
        v == "healthy" for k, v in health.items()
        if k != "queue_length"
    ) else "degraded"

    return {"status": overall, "services": health}
