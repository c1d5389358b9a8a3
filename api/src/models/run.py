from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime
from uuid import UUID

class StepBase(BaseModel):
    name: str
    kind: str
    commands: List[str]

class StepResponse(StepBase):
    id: UUID
    status: str
    step_order: int
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class PipelineRunBase(BaseModel):
    branch: str
    commit_sha: Optional[str] = None

class PipelineRunResponse(PipelineRunBase):
    id: UUID
    repository: str
    trigger_kind: str
    status: str
    triggered_by: Optional[str] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    deployment_url: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime
    steps: List[StepResponse] = []

    class Config:
        from_attributes = True

class TriggerResponse(BaseModel):
    status: str
    run_id: Optional[str] = None
    steps: int = 0
    reason: Optional[str] = None
