"""
Queue worker - pulls jobs from Redis and executes them.
"""

import asyncio
import json
import logging
import signal
import threading
import uuid
from typing import Optional, Dict, Any

import httpx
import redis
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from controller.src.config import RunConfig, get_settings
from controller.src.models.step import PipelineJob
from controller.src.services.executor import PipelineExecutor
from controller.src.services.locks import RedisPublishLock, no_lock
from controller.src.services.provisioner import Provisioner
from controller.src.services.publisher import PagesPublisher
from controller.src.services.runner import CommandRunner
from controller.src.services.status_reporter import StatusReporter

logger = logging.getLogger(__name__)
settings = get_settings()

PIPELINE_QUEUE = "pagesflow:jobs"
CANCEL_PREFIX = "pagesflow:cancel:"

async def get_next_job(client: redis.Redis) -> Optional[Dict[str, Any]]:
    """Pull next job from Redis queue."""
    result = await asyncio.to_thread(client.brpop, PIPELINE_QUEUE, 5)
    if result:
        _, job_data = result
        return json.loads(job_data)
    return None

def build_executor(
    client: redis.Redis,
    run_id: str,
    shutdown: threading.Event,
    http: httpx.Client,
) -> PipelineExecutor:
    """Wire an executor for one run. Configuration is fixed at this point."""
    config = RunConfig.from_settings(settings)

    def abort_check() -> bool:
        return shutdown.is_set() or bool(client.exists(f"{CANCEL_PREFIX}{run_id}"))

    runner = CommandRunner(abort_check=abort_check)
    lock = (
        RedisPublishLock(
            client,
            settings.publish_lock_timeout,
            settings.publish_lock_wait,
            abort_check=abort_check,
        )
        if settings.publish_lock_enabled
        else no_lock
    )

    return PipelineExecutor(
        config=config,
        reporter=StatusReporter(redis_client=client),
        runner=runner,
        provisioner=Provisioner(runner, config, http),
        publisher=PagesPublisher(runner, config, http, lock=lock),
    )

def discard_malformed_job(reporter: StatusReporter, job_data: Dict[str, Any], error: ValidationError) -> bool:
    """Fail the row of a job that cannot be parsed, when its run id is usable."""
    run_id = job_data.get("run_id")
    try:
        run_id = str(uuid.UUID(str(run_id)))
    except ValueError:
        logger.error(f"Malformed job has no usable run id: {run_id!r}")
        return False

    try:
        reporter.mark_failed(run_id, f"Malformed job: {error.error_count()} validation errors")
    except (SQLAlchemyError, redis.RedisError) as e:
        logger.exception(f"Could not mark run {run_id} failed: {e}")
        return False
    return True

def execute_job(client: redis.Redis, job_data: Dict[str, Any], shutdown: threading.Event):
    job = PipelineJob.model_validate(job_data)

    with httpx.Client(timeout=settings.http_timeout) as http:
        executor = build_executor(client, job.run_id, shutdown, http)
        run = executor.execute(job)

    client.delete(f"{CANCEL_PREFIX}{job.run_id}")
    return run

async def worker_loop():
    """Main worker loop."""
    client = redis.from_url(settings.redis_url, decode_responses=True)
    shutdown = threading.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    logger.info("Worker started, waiting for jobs...")

    try:
        while not shutdown.is_set():
            try:
                job = await get_next_job(client)

                if job:
                    run_id = job.get("run_id", "unknown")
                    logger.info(f"Received job for run {run_id}")

                    try:
                        await asyncio.to_thread(execute_job, client, job, shutdown)
                    except ValidationError as e:
                        logger.error(f"Discarding malformed job for run {run_id}: {e}")
                        await asyncio.to_thread(
                            discard_malformed_job, StatusReporter(redis_client=client), job, e
                        )
                    except Exception as e:
                        logger.exception(f"Failed to execute pipeline {run_id}: {e}")

            except redis.RedisError as e:
                logger.exception(f"Worker error: {e}")
                await asyncio.sleep(5)
    finally:
        logger.info("Worker shutting down...")
        client.close()

def run_worker():
    """Entry point for worker."""
    asyncio.run(worker_loop())
