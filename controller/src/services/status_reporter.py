"""
Report pipeline and step status to database.
"""

import logging
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

import redis
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from controller.src.config import get_settings
from controller.src.models.db import PipelineRun as PipelineRunRow, PipelineStep as PipelineStepRow
from controller.src.models.run import PipelineRun
from controller.src.models.step import StepStatus

logger = logging.getLogger(__name__)

PIPELINE_STATUS = "pagesflow:status"

@lru_cache()
def get_session_factory() -> sessionmaker:
    """Sync database connection for controller."""
    settings = get_settings()
    engine = create_engine(settings.database_url)
    return sessionmaker(bind=engine)

class StatusReporter:
    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        redis_client: Optional[redis.Redis] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.redis_client = redis_client

    def update_run_status(self, run: PipelineRun):
        """Write the run's status, timestamps, failure and deployment."""
        values = {
            "status": run.status.value,
            "updated_at": datetime.now(timezone.utc),
        }

        if run.started_at:
            values["started_at"] = run.started_at
        if run.finished_at:
            values["finished_at"] = run.finished_at
        if run.failed_stage:
            values["failed_stage"] = run.failed_stage
        if run.error:
            values["error"] = run.error
        if run.deployment:
            values["deployment_id"] = run.deployment.id
            values["deployment_url"] = run.deployment.url

        with self.session_factory() as session:
            session.execute(
                update(PipelineRunRow)
                .where(PipelineRunRow.id == uuid.UUID(run.run_id))
                .values(**values)
            )
            session.commit()

        if self.redis_client is not None:
            self.redis_client.hset(PIPELINE_STATUS, run.run_id, run.status.value)

        logger.info(f"Updated run {run.run_id} status to {run.status.value}")

    def update_step_status(
        self,
        run_id: str,
        step_order: int,
        status: StepStatus,
        logs: Optional[str] = None,
        attempts: Optional[int] = None,
        started_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
    ):
        """Update pipeline step status in database. Logs must already be masked."""
        values = {"status": status.value, "updated_at": datetime.now(timezone.utc)}

        if logs is not None:
            values["logs"] = logs
        if attempts is not None:
            values["attempts"] = attempts
        if started_at:
            values["started_at"] = started_at
        if finished_at:
            values["finished_at"] = finished_at

        with self.session_factory() as session:
            session.execute(
                update(PipelineStepRow)
                .where(PipelineStepRow.run_id == uuid.UUID(run_id))
                .where(PipelineStepRow.step_order == step_order)
                .values(**values)
            )
            session.commit()
        logger.debug(f"Updated step {step_order} of run {run_id} to {status.value}")

    def mark_failed(self, run_id: str, error: str):
        """Fail a run that never reached the executor. Its steps are skipped."""
        now = datetime.now(timezone.utc)
        run_uuid = uuid.UUID(run_id)

        with self.session_factory() as session:
            session.execute(
                update(PipelineRunRow)
                .where(PipelineRunRow.id == run_uuid)
                .values(status="failed", error=error, finished_at=now, updated_at=now)
            )
            session.execute(
                update(PipelineStepRow)
                .where(PipelineStepRow.run_id == run_uuid)
                .values(status=StepStatus.SKIPPED.value, updated_at=now)
            )
            session.commit()

        if self.redis_client is not None:
            self.redis_client.hset(PIPELINE_STATUS, run_id, "failed")

        logger.warning(f"Marked run {run_id} failed: {error}")
