"""
Pipeline run state machine and artifact handles.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Type

from controller.src.errors import PipelineError
from controller.src.models.step import StageKind, StepResult

class RunStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    BUILDING_MODULE = "building-module"
    INSTALLING_DEPS = "installing-deps"
    BUILDING_PROJECT = "building-project"
    PUBLISHING = "publishing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

TERMINAL_STATUSES = {RunStatus.SUCCEEDED, RunStatus.FAILED}

# Linear happy path; FAILED is reachable from any non-terminal state
_NEXT = {
    RunStatus.PENDING: RunStatus.PROVISIONING,
    RunStatus.PROVISIONING: RunStatus.BUILDING_MODULE,
    RunStatus.BUILDING_MODULE: RunStatus.INSTALLING_DEPS,
    RunStatus.INSTALLING_DEPS: RunStatus.BUILDING_PROJECT,
    RunStatus.BUILDING_PROJECT: RunStatus.PUBLISHING,
    RunStatus.PUBLISHING: RunStatus.SUCCEEDED,
}

STAGE_STATUS = {
    StageKind.PROVISION: RunStatus.PROVISIONING,
    StageKind.MODULE: RunStatus.BUILDING_MODULE,
    StageKind.DEPENDENCIES: RunStatus.INSTALLING_DEPS,
    StageKind.PROJECT: RunStatus.BUILDING_PROJECT,
    StageKind.PUBLISH: RunStatus.PUBLISHING,
}

class InvalidTransition(Exception):
    """Raised when a run is moved along an edge the state machine lacks."""

class ArtifactKind(str, Enum):
    SOURCE_TREE = "source-tree"
    MODULE = "module"
    DEPENDENCIES = "dependencies"
    STATIC_ASSETS = "static-assets"

@dataclass(frozen=True)
class Artifact:
    """A filesystem product of one stage that a later stage consumes."""

    kind: ArtifactKind
    path: str
    stage: str

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def verify(self, error: Type[PipelineError], stage: str) -> "Artifact":
        """Raise the consuming stage's error kind if the artifact is gone."""
        if not self.exists():
            raise error(
                f"Required {self.kind.value} artifact from '{self.stage}' "
                f"missing at {self.path}",
                stage=stage,
            )
        return self

@dataclass(frozen=True)
class Deployment:
    id: Optional[str] = None
    url: Optional[str] = None

@dataclass
class PipelineRun:
    """One execution of the pipeline, owned by the executor for its lifetime."""

    run_id: str
    trigger: str
    branch: str
    status: RunStatus = RunStatus.PENDING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    deployment: Optional[Deployment] = None
    steps: List[StepResult] = field(default_factory=list)
    artifacts: Dict[ArtifactKind, Artifact] = field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def enter(self, kind: StageKind):
        """Move into the status of the stage about to start."""
        target = STAGE_STATUS[kind]
        if _NEXT.get(self.status) != target:
            raise InvalidTransition(f"Cannot move run from {self.status.value} to {target.value}")
        if self.status == RunStatus.PENDING:
            self.started_at = datetime.now(timezone.utc)
        self.status = target

    def succeed(self):
        if self.status != RunStatus.PUBLISHING:
            raise InvalidTransition(f"Cannot succeed run from {self.status.value}")
        self.status = RunStatus.SUCCEEDED
        self.finished_at = datetime.now(timezone.utc)

    def fail(self, stage: Optional[str], error: str):
        if self.finished:
            raise InvalidTransition(f"Run already {self.status.value}")
        self.status = RunStatus.FAILED
        self.failed_stage = stage
        self.error = error
        self.finished_at = datetime.now(timezone.utc)

    def record(self, artifact: Artifact) -> Artifact:
        self.artifacts[artifact.kind] = artifact
        return artifact

    def artifact(self, kind: ArtifactKind) -> Artifact:
        return self.artifacts[kind]
