"""
Pipeline executor - runs the stage sequence of one pipeline run.

Stages run strictly in order: provision, the three build stages, publish.
The first failure ends the run; later stages are marked skipped and never
start. The sandbox is released on every exit path.
"""

import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, List, Tuple, Type

from controller.src.config import RunConfig
from controller.src.credentials import SecretMasker
from controller.src.errors import (
    BuildError,
    DependencyError,
    PipelineError,
    ProvisioningError,
    PublishError,
    RunAborted,
)
from controller.src.models.run import ArtifactKind, PipelineRun
from controller.src.models.step import PipelineJob, StageConfig, StageKind, StepResult, StepStatus
from controller.src.services.log_collector import StageLog
from controller.src.services.provisioner import Provisioner
from controller.src.services.publisher import PagesPublisher
from controller.src.services.runner import CommandRunner
from controller.src.services.sandbox import Sandbox
from controller.src.services.stages import StageContext, run_build_stage

logger = logging.getLogger(__name__)

STAGE_ERRORS: Dict[StageKind, Type[PipelineError]] = {
    StageKind.PROVISION: ProvisioningError,
    StageKind.MODULE: BuildError,
    StageKind.DEPENDENCIES: DependencyError,
    StageKind.PROJECT: BuildError,
    StageKind.PUBLISH: PublishError,
}

Action = Callable[[StageContext, PipelineRun, PipelineJob], Any]

def _now() -> datetime:
    return datetime.now(timezone.utc)

class PipelineExecutor:
    def __init__(
        self,
        config: RunConfig,
        reporter,
        runner: CommandRunner,
        provisioner: Provisioner,
        publisher: PagesPublisher,
        sandbox_factory: Callable[..., Sandbox] = Sandbox,
    ):
        self.config = config
        self.reporter = reporter
        self.runner = runner
        self.provisioner = provisioner
        self.publisher = publisher
        self.sandbox_factory = sandbox_factory
        self.masker = SecretMasker(config.secrets.values())

    def execute(self, job: PipelineJob) -> PipelineRun:
        """
        Execute a pipeline run.
        Returns the run in a terminal state.
        """
        run = PipelineRun(run_id=job.run_id, trigger=job.trigger, branch=job.repo_info.ref)
        plan = self.plan(job)
        sandbox = self.sandbox_factory(
            self.config.sandbox_root,
            job.run_id,
            self.config.passthrough_env,
            rustup_home=self.config.rustup_home or None,
        )

        logger.info(f"Starting pipeline run {job.run_id} with {len(plan)} stages")

        try:
            for order, (name, kind, action) in enumerate(plan):
                try:
                    self._run_stage(run, sandbox, job, order, name, kind, action)
                except PipelineError as e:
                    run.fail(name, self.masker.redact(e.message))
                    self._skip_remaining(run, plan, order + 1)
                    break
                except Exception as e:
                    # Raised outside the stage action, e.g. by the status reporter
                    logger.exception(f"Run {job.run_id} broke off at stage {order} ({name})")
                    run.fail(name, self.masker.redact(f"{type(e).__name__}: {e}"))
                    self._skip_remaining(run, plan, order + 1)
                    break
            else:
                run.succeed()
        finally:
            sandbox.release()
            self.reporter.update_run_status(run)

        if run.failed_stage:
            logger.error(f"Pipeline run {job.run_id} failed at '{run.failed_stage}': {run.error}")
        else:
            logger.info(f"Pipeline run {job.run_id} finished with status: {run.status.value}")
        return run

    def plan(self, job: PipelineJob) -> List[Tuple[str, StageKind, Action]]:
        """Ordered (name, kind, action) triples for a run."""
        plan: List[Tuple[str, StageKind, Action]] = [
            (StageKind.PROVISION.value, StageKind.PROVISION, self._provision),
        ]
        for stage in job.config.stages:
            plan.append((stage.name, stage.kind, partial(self._build, stage)))
        plan.append((StageKind.PUBLISH.value, StageKind.PUBLISH, self._publish))
        return plan

    def _run_stage(
        self,
        run: PipelineRun,
        sandbox: Sandbox,
        job: PipelineJob,
        order: int,
        name: str,
        kind: StageKind,
        action: Action,
    ):
        run.enter(kind)
        self.reporter.update_run_status(run)

        started_at = _now()
        self.reporter.update_step_status(run.run_id, order, StepStatus.RUNNING, started_at=started_at)
        logger.info(f"Executing stage {order}: {name}")

        log = StageLog(self.masker, self.config.log_tail_lines)
        ctx = StageContext(
            sandbox=sandbox,
            definition=job.config,
            runner=self.runner,
            config=self.config,
            log=log,
            attempts=1,
        )

        status = StepStatus.SUCCEEDED
        error = None
        try:
            action(ctx, run, job)
        except RunAborted as e:
            status, error = StepStatus.CANCELLED, e
            error.message = "aborted"
        except PipelineError as e:
            status, error = StepStatus.FAILED, e
        except Exception as e:
            # Anything unexpected still fails the run with this stage's error kind
            logger.exception(f"Stage {order} ({name}) failed with exception")
            status = StepStatus.FAILED
            error = STAGE_ERRORS[kind](f"{type(e).__name__}: {e}")

        if error is not None:
            error.stage = name
            log.write(f"Error: {error.message}")

        finished_at = _now()
        run.steps.append(StepResult(
            step_order=order,
            name=name,
            status=status,
            attempts=ctx.attempts,
            logs=log.text(),
            started_at=started_at,
            finished_at=finished_at,
            error=self.masker.redact(error.message) if error else None,
        ))
        self.reporter.update_step_status(
            run.run_id, order, status,
            logs=log.text(),
            attempts=ctx.attempts,
            finished_at=finished_at,
        )

        if error is not None:
            logger.error(f"Stage {order} ({name}) {status.value}: {self.masker.redact(error.message)}")
            raise error
        logger.info(f"Stage {order} ({name}) succeeded")

    def _skip_remaining(self, run: PipelineRun, plan, start: int):
        for order in range(start, len(plan)):
            name = plan[order][0]
            run.steps.append(StepResult(step_order=order, name=name, status=StepStatus.SKIPPED))
            self.reporter.update_step_status(run.run_id, order, StepStatus.SKIPPED)

    def _provision(self, ctx: StageContext, run: PipelineRun, job: PipelineJob):
        try:
            ctx.sandbox.acquire()
        except OSError as e:
            raise ProvisioningError(f"Cannot create sandbox: {e}")

        source = self.provisioner.provision(ctx.sandbox, job.config, job.repo_info, ctx.log)
        run.record(source)

    def _build(self, stage: StageConfig, ctx: StageContext, run: PipelineRun, job: PipelineJob):
        produced = run_build_stage(ctx, stage, run.artifacts)
        run.record(produced)

    def _publish(self, ctx: StageContext, run: PipelineRun, job: PipelineJob):
        assets = run.artifacts.get(ArtifactKind.STATIC_ASSETS)
        if assets is None:
            raise PublishError("No static assets to publish")

        run.deployment = self.publisher.publish(
            ctx.sandbox, job.config.publish, assets, job.repo_info.ref, ctx.log
        )
