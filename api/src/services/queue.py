"""
Redis queue service for pipeline jobs.
"""

import redis.asyncio as redis
import json
from typing import Dict, Any, Optional
from datetime import datetime, timezone

from api.src.config import get_settings

settings = get_settings()

PIPELINE_QUEUE = "pagesflow:jobs"
PIPELINE_STATUS = "pagesflow:status"
CANCEL_PREFIX = "pagesflow:cancel:"
CANCEL_TTL = 24 * 3600

async def get_redis_client() -> redis.Redis:
    """Get async Redis client."""
    return redis.from_url(settings.redis_url, decode_responses=True)

async def enqueue_pipeline_run(
    run_id: str,
    config: Dict[str, Any],
    repo_info: Dict[str, Any],
    trigger: str,
):
    """Add pipeline run to processing queue. Never carries secrets."""
    client = await get_redis_client()

    job = {
        "run_id": run_id,
        "config": config,
        "repo_info": repo_info,
        "trigger": trigger,
        "queued_at": datetime.now(timezone.utc).isoformat(),
    }

    try:
        await client.lpush(PIPELINE_QUEUE, json.dumps(job))
        await client.hset(PIPELINE_STATUS, run_id, "queued")
    finally:
        await client.aclose()

async def request_cancel(run_id: str):
    """Flag a run for external abort. The controller polls this key."""
    client = await get_redis_client()

    try:
        await client.set(f"{CANCEL_PREFIX}{run_id}", "1", ex=CANCEL_TTL)
    finally:
        await client.aclose()

async def get_run_status(run_id: str) -> Optional[str]:
    """Get pipeline run status from Redis."""
    client = await get_redis_client()

    try:
        return await client.hget(PIPELINE_STATUS, run_id)
    finally:
        await client.aclose()

async def get_queue_length() -> int:
    """Get number of jobs in queue."""
    client = await get_redis_client()

    try:
        return await client.llen(PIPELINE_QUEUE)
    finally:
        await client.aclose()
