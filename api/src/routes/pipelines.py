from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from typing import Any, Dict, List, Optional
from uuid import UUID

from api.src.config import get_settings
from api.src.db.database import get_db
from api.src.models.pipeline import PipelineRun, PipelineStep
from api.src.models.run import PipelineRunResponse, TriggerResponse
from api.src.routes.deps import get_pipeline_definition
from api.src.services.queue import get_run_status, request_cancel
from api.src.services.runs import create_pipeline_run
from api.src.services.trigger import (
    TriggerEvent,
    TriggerKind,
    deployment_branch,
    resolve_trigger,
)

settings = get_settings()

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

TERMINAL_STATUSES = {"succeeded", "failed"}

@router.post("/dispatch", response_model=TriggerResponse)
async def dispatch_run(
    db: AsyncSession = Depends(get_db),
    definition: Dict[str, Any] = Depends(get_pipeline_definition),
):
    """Manually start a run against the deployment branch."""
    event = TriggerEvent(kind=TriggerKind.MANUAL)
    if not resolve_trigger(event, definition["trigger"]):
        raise HTTPException(status_code=422, detail="Manual dispatch is disabled for this pipeline")

    if not settings.repository_clone_url:
        raise HTTPException(status_code=500, detail="No repository configured for manual dispatch")

    repo_info = {
        "repository": settings.repository_full_name or settings.repository_clone_url,
        "clone_url": settings.repository_clone_url,
        "ref": deployment_branch(definition["trigger"]),
        "commit_sha": None,
    }

    result = await create_pipeline_run(
        db,
        event=event,
        config=definition,
        repo_info=repo_info,
        triggered_by="manual",
    )
    return result

@router.get("/runs", response_model=List[PipelineRunResponse])
async def list_runs(
    limit: int = 20,
    offset: int = 0,
    status: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """List all pipeline runs."""
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.steps))
        .order_by(PipelineRun.created_at.desc())
    )

    if status:
        query = query.where(PipelineRun.status == status)

    query = query.limit(limit).offset(offset)

    result = await db.execute(query)
    runs = result.scalars().all()
    return runs

async def _load_run(run_id: UUID, db: AsyncSession) -> PipelineRun:
    query = (
        select(PipelineRun)
        .options(selectinload(PipelineRun.steps))
        .where(PipelineRun.id == run_id)
    )
    result = await db.execute(query)
    run = result.scalar_one_or_none()

    if not run:
        raise HTTPException(status_code=404, detail="Pipeline run not found")

    return run

@router.get("/runs/{run_id}", response_model=PipelineRunResponse)
async def get_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get a specific pipeline run."""
    return await _load_run(run_id, db)

@router.get("/runs/{run_id}/status")
async def get_run_status_endpoint(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get real-time status of a pipeline run."""
    run = await _load_run(run_id, db)

    # Get live status from Redis
    redis_status = await get_run_status(str(run_id))

    return {
        "run_id": str(run_id),
        "db_status": run.status,
        "live_status": redis_status,
        "failed_stage": run.failed_stage,
        "deployment_url": run.deployment_url,
        "steps": [
            {
                "name": step.name,
                "kind": step.kind,
                "status": step.status,
                "order": step.step_order,
            }
            for step in sorted(run.steps, key=lambda s: s.step_order)
        ]
    }

@router.get("/runs/{run_id}/logs")
async def get_run_logs(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get logs for all steps in a pipeline run."""
    query = (
        select(PipelineStep)
        .where(PipelineStep.run_id == run_id)
        .order_by(PipelineStep.step_order)
    )
    result = await db.execute(query)
    steps = result.scalars().all()

    if not steps:
        raise HTTPException(status_code=404, detail="Pipeline run not found")

    return {
        "run_id": str(run_id),
        "steps": [
            {
                "name": step.name,
                "status": step.status,
                "attempts": step.attempts,
                "logs": step.logs,
                "started_at": step.started_at,
                "finished_at": step.finished_at,
            }
            for step in steps
        ]
    }

@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: UUID, db: AsyncSession = Depends(get_db)):
    """Ask the controller to abort a run. Its sandbox is torn down."""
    run = await _load_run(run_id, db)

    if run.status in TERMINAL_STATUSES:
        raise HTTPException(status_code=409, detail=f"Pipeline run already {run.status}")

    await request_cancel(str(run_id))
    return {"run_id": str(run_id), "status": "cancel-requested"}

@router.get("/stats")
async def get_pipeline_stats(db: AsyncSession = Depends(get_db)):
    """Get pipeline statistics."""
    # Count runs by status
    status_query = (
        select(PipelineRun.status, func.count(PipelineRun.id))
        .group_by(PipelineRun.status)
    )
    result = await db.execute(status_query)
    status_counts = {row[0]: row[1] for row in result.all()}

    # First failing stage of failed runs
    failure_query = (
        select(PipelineRun.failed_stage, func.count(PipelineRun.id))
        .where(PipelineRun.status == "failed")
        .group_by(PipelineRun.failed_stage)
    )
    result = await db.execute(failure_query)
    failures = {row[0] or "unknown": row[1] for row in result.all()}

    return {
        "runs": status_counts,
        "failures_by_stage": failures,
        "total_runs": sum(status_counts.values()),
    }
