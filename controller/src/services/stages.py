"""
Build stages: native module, project dependencies, web project.

Each stage takes the artifacts produced so far, checks the one it needs,
runs its commands in the web-project working directory and returns the
artifact it produced. Failures raise the stage's error kind.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Type

from controller.src.config import RunConfig
from controller.src.errors import BuildError, DependencyError, PipelineError
from controller.src.models.run import Artifact, ArtifactKind
from controller.src.models.step import PipelineDefinition, StageConfig, StageKind
from controller.src.services.log_collector import StageLog
from controller.src.services.runner import CommandResult, CommandRunner
from controller.src.services.sandbox import Sandbox

logger = logging.getLogger(__name__)

STAGE_ERRORS: Dict[StageKind, Type[PipelineError]] = {
    StageKind.MODULE: BuildError,
    StageKind.DEPENDENCIES: DependencyError,
    StageKind.PROJECT: BuildError,
}

REQUIRES = {
    StageKind.MODULE: ArtifactKind.SOURCE_TREE,
    StageKind.DEPENDENCIES: ArtifactKind.MODULE,
    StageKind.PROJECT: ArtifactKind.DEPENDENCIES,
}

PRODUCES = {
    StageKind.MODULE: ArtifactKind.MODULE,
    StageKind.DEPENDENCIES: ArtifactKind.DEPENDENCIES,
    StageKind.PROJECT: ArtifactKind.STATIC_ASSETS,
}

@dataclass
class StageContext:
    sandbox: Sandbox
    definition: PipelineDefinition
    runner: CommandRunner
    config: RunConfig
    log: StageLog
    attempts: int = 0

    @property
    def working_directory(self) -> str:
        return self.sandbox.workdir(self.definition.working_directory)

def run_commands(ctx: StageContext, stage: StageConfig, env: Dict[str, str]):
    """
    Run the stage's commands in order, stopping at the first failure.
    A stage with retries re-runs its whole command list.
    """
    error = STAGE_ERRORS[stage.kind]
    timeout = stage.timeout or ctx.config.stage_timeout
    failed: Optional[CommandResult] = None

    for attempt in range(1, stage.retries + 2):
        ctx.attempts = attempt
        failed = None

        for command in stage.commands:
            result = ctx.runner.run(command, cwd=ctx.working_directory, env=env, timeout=timeout)
            ctx.log.command(result)
            if not result.ok:
                failed = result
                break

        if failed is None:
            return

        if attempt <= stage.retries:
            logger.warning(f"Stage '{stage.name}' failed on attempt {attempt}, retrying")
            ctx.log.write(f"Attempt {attempt} failed, retrying")

    reason = f"timed out after {timeout}s" if failed.timed_out else f"exited with {failed.exit_code}"
    raise error(f"'{failed.command}' {reason}", stage=stage.name)

def run_build_stage(
    ctx: StageContext,
    stage: StageConfig,
    artifacts: Dict[ArtifactKind, Artifact],
) -> Artifact:
    """Run one build stage and return the artifact it produced."""
    error = STAGE_ERRORS[stage.kind]

    required = artifacts.get(REQUIRES[stage.kind])
    if required is None:
        raise error(f"No {REQUIRES[stage.kind].value} artifact to build from", stage=stage.name)
    required.verify(error, stage.name)

    run_commands(ctx, stage, env=ctx.sandbox.stage_env())

    produced = Artifact(
        kind=PRODUCES[stage.kind],
        path=os.path.join(ctx.working_directory, stage.output),
        stage=stage.name,
    )
    if not produced.exists():
        raise error(f"Stage did not produce {stage.output}", stage=stage.name)

    if stage.kind == StageKind.DEPENDENCIES:
        check_module_linked(required, produced, stage.name)

    return produced

def check_module_linked(module: Artifact, dependencies: Artifact, stage: str):
    """The compiled module must resolve as a local dependency."""
    manifest = os.path.join(module.path, "package.json")
    try:
        with open(manifest, "r") as f:
            name = json.load(f)["name"]
    except (OSError, ValueError, KeyError) as e:
        raise DependencyError(f"Cannot read module package name from {manifest}: {e}", stage=stage)

    if not os.path.exists(os.path.join(dependencies.path, name)):
        raise DependencyError(f"Module '{name}' is not linked into {dependencies.path}", stage=stage)
