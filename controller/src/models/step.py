"""
Pipeline definition and step execution models.
"""

from pydantic import BaseModel
from typing import List, Optional, Dict
from datetime import datetime
from enum import Enum

class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

class StageKind(str, Enum):
    PROVISION = "provision"
    MODULE = "module"
    DEPENDENCIES = "dependencies"
    PROJECT = "project"
    PUBLISH = "publish"

class TriggerConfig(BaseModel):
    manual: bool = True
    branches: List[str] = ["main"]

class RuntimeConfig(BaseModel):
    name: str
    version: str
    method: str = "node-dist"
    probe: Optional[str] = None

class ToolInstallation(BaseModel):
    name: str
    method: str
    version: str = "latest"
    url: Optional[str] = None
    env: Dict[str, str] = {}
    bin_dir: Optional[str] = None
    probe: Optional[str] = None

    @property
    def pinned(self) -> bool:
        return self.version != "latest"

class StageConfig(BaseModel):
    name: str
    kind: StageKind
    commands: List[str]
    output: str
    timeout: Optional[int] = None
    retries: int = 0

class PublishConfig(BaseModel):
    provider: str = "cloudflare-pages"
    directory: str
    working_directory: str
    timeout: Optional[int] = None

class PipelineDefinition(BaseModel):
    name: str
    trigger: TriggerConfig
    working_directory: str
    runtime: RuntimeConfig
    tools: List[ToolInstallation] = []
    stages: List[StageConfig]
    publish: PublishConfig

class RepoInfo(BaseModel):
    repository: str
    clone_url: str
    ref: str
    commit_sha: Optional[str] = None

class StepResult(BaseModel):
    step_order: int
    name: str
    status: StepStatus
    attempts: int = 0
    logs: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

class PipelineJob(BaseModel):
    run_id: str
    config: PipelineDefinition
    repo_info: RepoInfo
    trigger: str
    queued_at: str
