from api.src.models.pipeline import PipelineRun, PipelineStep
from api.src.models.run import (
    PipelineRunResponse,
    StepResponse,
    TriggerResponse,
)

__all__ = [
    "PipelineRun",
    "PipelineStep",
    "PipelineRunResponse",
    "StepResponse",
    "TriggerResponse",
]
