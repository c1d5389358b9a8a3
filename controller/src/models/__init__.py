from controller.src.models.step import (
    StepStatus,
    StageKind,
    StageConfig,
    ToolInstallation,
    RuntimeConfig,
    PublishConfig,
    TriggerConfig,
    PipelineDefinition,
    RepoInfo,
    StepResult,
    PipelineJob,
)
from controller.src.models.run import (
    RunStatus,
    PipelineRun,
    InvalidTransition,
    Artifact,
    ArtifactKind,
    Deployment,
)

__all__ = [
    "StepStatus",
    "StageKind",
    "StageConfig",
    "ToolInstallation",
    "RuntimeConfig",
    "PublishConfig",
    "TriggerConfig",
    "PipelineDefinition",
    "RepoInfo",
    "StepResult",
    "PipelineJob",
    "RunStatus",
    "PipelineRun",
    "InvalidTransition",
    "Artifact",
    "ArtifactKind",
    "Deployment",
]
