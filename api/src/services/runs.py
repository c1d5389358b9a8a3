"""
Create admitted pipeline runs and hand them to the controller.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from api.src.models.pipeline import PipelineRun, PipelineStep
from api.src.services.pipeline_parser import stage_plan
from api.src.services.queue import enqueue_pipeline_run
from api.src.services.trigger import TriggerEvent

logger = logging.getLogger(__name__)

async def create_pipeline_run(
    db: AsyncSession,
    event: TriggerEvent,
    config: Dict[str, Any],
    repo_info: Dict[str, Any],
    triggered_by: Optional[str] = None,
) -> Dict[str, Any]:
    """Persist a run with its planned steps and enqueue it."""
    pipeline_run = PipelineRun(
        repository=repo_info["repository"],
        clone_url=repo_info["clone_url"],
        branch=repo_info["ref"],
        commit_sha=repo_info.get("commit_sha") or None,
        trigger_kind=event.kind.value,
        status="queued",
        triggered_by=triggered_by,
        config=config,
    )
    db.add(pipeline_run)
    await db.flush()

    plan = stage_plan(config)
    for i, step_config in enumerate(plan):
        step = PipelineStep(
            run_id=pipeline_run.id,
            name=step_config["name"],
            kind=step_config["kind"],
            commands=step_config["commands"],
            status="pending",
            step_order=i,
        )
        db.add(step)

    await db.commit()

    await enqueue_pipeline_run(
        run_id=str(pipeline_run.id),
        config=config,
        repo_info=repo_info,
        trigger=event.kind.value,
    )

    logger.info(
        f"Pipeline run {pipeline_run.id} ({event.kind.value} on {repo_info['ref']}) "
        "created and queued"
    )

    return {
        "status": "queued",
        "run_id": str(pipeline_run.id),
        "steps": len(plan),
    }
