from api.src.services.github import (
    verify_signature,
    parse_webhook_payload,
)
from api.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    load_pipeline_file,
    stage_plan,
    PipelineConfigError,
)
from api.src.services.queue import (
    enqueue_pipeline_run,
    request_cancel,
    get_run_status,
    get_queue_length,
)
from api.src.services.runs import create_pipeline_run
from api.src.services.trigger import (
    TriggerEvent,
    TriggerKind,
    resolve_trigger,
    deployment_branch,
    event_from_push,
)

__all__ = [
    "verify_signature",
    "parse_webhook_payload",
    "parse_pipeline_config",
    "parse_pipeline_dict",
    "load_pipeline_file",
    "stage_plan",
    "PipelineConfigError",
    "enqueue_pipeline_run",
    "request_cancel",
    "get_run_status",
    "get_queue_length",
    "create_pipeline_run",
    "TriggerEvent",
    "TriggerKind",
    "resolve_trigger",
    "deployment_branch",
    "event_from_push",
]
