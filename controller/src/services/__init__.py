from controller.src.services.executor import PipelineExecutor
from controller.src.services.log_collector import StageLog
from controller.src.services.provisioner import Provisioner
from controller.src.services.publisher import PagesPublisher
from controller.src.services.runner import CommandRunner, CommandResult
from controller.src.services.sandbox import Sandbox
from controller.src.services.status_reporter import StatusReporter

__all__ = [
    "PipelineExecutor",
    "StageLog",
    "Provisioner",
    "PagesPublisher",
    "CommandRunner",
    "CommandResult",
    "Sandbox",
    "StatusReporter",
]
