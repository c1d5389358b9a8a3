"""
Trigger resolution: decide whether an inbound event starts a pipeline run.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

class TriggerKind(str, Enum):
    MANUAL = "manual"
    PUSH = "push"
    OTHER = "other"

@dataclass(frozen=True)
class TriggerEvent:
    kind: TriggerKind
    branch: Optional[str] = None

def resolve_trigger(event: TriggerEvent, trigger_config: Dict[str, Any]) -> bool:
    """
    Admit a manual dispatch, or a push to one of the deployment branches.
    Everything else is rejected.
    """
    if event.kind == TriggerKind.MANUAL:
        return bool(trigger_config.get("manual", True))

    if event.kind == TriggerKind.PUSH:
        return event.branch is not None and event.branch in trigger_config.get("branches", [])

    return False

def deployment_branch(trigger_config: Dict[str, Any]) -> str:
    """Branch a manual dispatch deploys."""
    return trigger_config["branches"][0]

def event_from_push(webhook_data: Dict[str, Any]) -> TriggerEvent:
    """Build a trigger event from a parsed push payload."""
    ref = webhook_data.get("ref", "")
    if not ref.startswith("refs/heads/"):
        # Tag pushes carry no branch
        return TriggerEvent(kind=TriggerKind.PUSH, branch=None)
    return TriggerEvent(kind=TriggerKind.PUSH, branch=webhook_data["branch"])
