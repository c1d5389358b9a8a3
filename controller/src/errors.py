"""
Pipeline error taxonomy.

Every error is terminal for the run. The executor records the stage that
raised it as the run's first failing stage.
"""

from typing import Optional

class PipelineError(Exception):
    """Base class for errors that fail a pipeline run."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

class ProvisioningError(PipelineError):
    """Checkout, runtime or tool installation failed."""

class BuildError(PipelineError):
    """The native module or the web project failed to build."""

class DependencyError(PipelineError):
    """Installing project dependencies or linking the module failed."""

class PublishError(PipelineError):
    """Uploading the static assets to the hosting provider failed."""

class RunAborted(PipelineError):
    """The run was aborted by an operator or a worker shutdown."""
