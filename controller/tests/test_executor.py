"""Tests for the pipeline executor: stage order, failures, secrets and cleanup."""

import json
import os

import httpx
import pytest

from controller.src.errors import ProvisioningError
from controller.src.models.run import Artifact, ArtifactKind, RunStatus
from controller.src.models.step import PipelineJob, StepStatus
from controller.src.services.executor import PipelineExecutor
from controller.src.services.publisher import PagesPublisher
from controller.src.services.sandbox import Sandbox
from controller.tests.support import TOKEN, CloudflareApi, FakeRunner, make_config

RUN_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"

MODULE_NAME = "site-wasm"

class RecordingReporter:
    def __init__(self):
        self.run_statuses = []
        self.steps = {}
        self.logs = {}
        self.attempts = {}

    def update_run_status(self, run):
        self.run_statuses.append(run.status)

    def update_step_status(self, run_id, step_order, status, logs=None, attempts=None,
                           started_at=None, finished_at=None):
        self.steps.setdefault(step_order, []).append(status)
        if logs is not None:
            self.logs[step_order] = logs
        if attempts is not None:
            self.attempts[step_order] = attempts

class FakeProvisioner:
    def __init__(self, error=None):
        self.error = error

    def provision(self, sandbox, definition, repo_info, log):
        if self.error:
            raise self.error
        os.makedirs(sandbox.workdir(definition.working_directory))
        log.write(f"Checked out {repo_info.repository}@{repo_info.ref}")
        return Artifact(kind=ArtifactKind.SOURCE_TREE, path=sandbox.source_dir, stage="provision")

class CountingSandbox(Sandbox):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.releases = 0

    def release(self):
        self.releases += 1
        super().release()

def build_module(command, cwd, env):
    os.makedirs(os.path.join(cwd, "pkg"))
    with open(os.path.join(cwd, "pkg", "package.json"), "w") as f:
        json.dump({"name": MODULE_NAME}, f)
    return "[INFO]: :-) Done in 12.3s"

def install_dependencies(command, cwd, env):
    os.makedirs(os.path.join(cwd, "node_modules", MODULE_NAME))
    return "Done in 4.1s"

def build_project(command, cwd, env):
    os.makedirs(os.path.join(cwd, "dist"))
    return "vite build complete"

def handlers():
    return {
        "wasm-pack build": build_module,
        "pnpm install": install_dependencies,
        "pnpm build": build_project,
        "npx": lambda *_: "Deployment complete!",
    }

def make_job(**stage_overrides):
    stages = [
        {"name": "build wasm", "kind": "module", "commands": ["wasm-pack build --release"], "output": "pkg"},
        {"name": "install dependencies", "kind": "dependencies",
         "commands": ["pnpm install --frozen-lockfile"], "output": "node_modules"},
        {"name": "build project", "kind": "project", "commands": ["pnpm build"], "output": "dist"},
    ]
    for stage in stages:
        stage.update(stage_overrides.get(stage["kind"], {}))

    return PipelineJob.model_validate({
        "run_id": RUN_ID,
        "config": {
            "name": "Deploy",
            "trigger": {"manual": True, "branches": ["main"]},
            "working_directory": "web",
            "runtime": {"name": "node", "version": "21"},
            "tools": [],
            "stages": stages,
            "publish": {"directory": "dist", "working_directory": "web"},
        },
        "repo_info": {
            "repository": "user/site",
            "clone_url": "https://github.com/user/site.git",
            "ref": "main",
            "commit_sha": "abc123",
        },
        "trigger": "push",
        "queued_at": "2026-01-01T00:00:00+00:00",
    })

class Harness:
    def __init__(self, tmp_path, api=None, provisioner=None, reporter=None):
        self.config = make_config(str(tmp_path / "sandboxes"))
        self.runner = FakeRunner(handlers())
        self.reporter = reporter or RecordingReporter()
        self.api = api or CloudflareApi()
        self.sandboxes = []
        http = httpx.Client(transport=httpx.MockTransport(self.api))
        self.executor = PipelineExecutor(
            config=self.config,
            reporter=self.reporter,
            runner=self.runner,
            provisioner=provisioner or FakeProvisioner(),
            publisher=PagesPublisher(self.runner, self.config, http),
            sandbox_factory=self.make_sandbox,
        )

    def make_sandbox(self, root, run_id, passthrough_env, **kwargs):
        sandbox = CountingSandbox(root, run_id, passthrough_env, **kwargs)
        self.sandboxes.append(sandbox)
        return sandbox

    @property
    def sandbox(self) -> CountingSandbox:
        return self.sandboxes[0]

    def final_step_statuses(self):
        return [self.reporter.steps[order][-1] for order in sorted(self.reporter.steps)]

@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path)

def test_push_to_main_deploys(harness):
    run = harness.executor.execute(make_job())

    assert run.status == RunStatus.SUCCEEDED
    assert run.failed_stage is None
    assert run.deployment.url == "https://abc123.wasm-site.pages.dev"
    assert harness.reporter.run_statuses == [
        RunStatus.PROVISIONING,
        RunStatus.BUILDING_MODULE,
        RunStatus.INSTALLING_DEPS,
        RunStatus.BUILDING_PROJECT,
        RunStatus.PUBLISHING,
        RunStatus.SUCCEEDED,
    ]
    assert harness.final_step_statuses() == [StepStatus.SUCCEEDED] * 5
    assert [cmd.split()[0] for cmd in harness.runner.commands()] == ["wasm-pack", "pnpm", "pnpm", "npx"]
    assert set(run.artifacts) == {
        ArtifactKind.SOURCE_TREE,
        ArtifactKind.MODULE,
        ArtifactKind.DEPENDENCIES,
        ArtifactKind.STATIC_ASSETS,
    }

def test_stages_run_in_the_web_project(harness):
    harness.executor.execute(make_job())

    web = harness.sandbox.workdir("web")
    assert {call.cwd for call in harness.runner.calls} == {web}

def test_module_build_failure_stops_the_run(harness):
    harness.runner.handlers["wasm-pack build"] = lambda *_: 1

    run = harness.executor.execute(make_job())

    assert run.status == RunStatus.FAILED
    assert run.failed_stage == "build wasm"
    assert run.error == "'wasm-pack build --release' exited with 1"
    assert harness.final_step_statuses() == [
        StepStatus.SUCCEEDED,
        StepStatus.FAILED,
        StepStatus.SKIPPED,
        StepStatus.SKIPPED,
        StepStatus.SKIPPED,
    ]
    assert harness.runner.commands() == ["wasm-pack build --release"]
    assert harness.api.requests == []
    assert harness.reporter.run_statuses[-1] == RunStatus.FAILED

def test_publish_auth_failure_keeps_assets_unpublished(tmp_path):
    harness = Harness(tmp_path, api=CloudflareApi(verify_code=401))

    run = harness.executor.execute(make_job())

    assert run.status == RunStatus.FAILED
    assert run.failed_stage == "publish"
    assert "Invalid API Token" in run.error
    assert run.deployment is None
    assert ArtifactKind.STATIC_ASSETS in run.artifacts
    assert not any(cmd.startswith("npx") for cmd in harness.runner.commands())
    assert harness.final_step_statuses()[-1] == StepStatus.FAILED

def test_provisioning_failure(tmp_path):
    harness = Harness(tmp_path, provisioner=FakeProvisioner(ProvisioningError("Checkout exited with 128")))

    run = harness.executor.execute(make_job())

    assert run.failed_stage == "provision"
    assert run.error == "Checkout exited with 128"
    assert harness.runner.calls == []
    assert harness.final_step_statuses() == [StepStatus.FAILED] + [StepStatus.SKIPPED] * 4
    assert harness.sandbox.releases == 1

@pytest.mark.parametrize("failing", ["wasm-pack build", "pnpm install", "pnpm build", "npx"])
def test_sandbox_released_exactly_once(harness, failing):
    harness.runner.handlers[failing] = lambda *_: 2

    run = harness.executor.execute(make_job())

    assert run.status == RunStatus.FAILED
    assert harness.sandbox.releases == 1
    assert not os.path.exists(harness.sandbox.path)

def test_sandbox_released_after_success(harness):
    harness.executor.execute(make_job())

    assert harness.sandbox.releases == 1
    assert not os.path.exists(harness.sandbox.path)

def test_abort_cancels_the_running_stage(harness):
    harness.runner.abort_on = "pnpm install"

    run = harness.executor.execute(make_job())

    assert run.status == RunStatus.FAILED
    assert run.failed_stage == "install dependencies"
    assert run.error == "aborted"
    assert harness.final_step_statuses() == [
        StepStatus.SUCCEEDED,
        StepStatus.SUCCEEDED,
        StepStatus.CANCELLED,
        StepStatus.SKIPPED,
        StepStatus.SKIPPED,
    ]
    assert harness.sandbox.releases == 1

def test_secrets_reach_only_the_publisher(harness, monkeypatch):
    monkeypatch.setenv("CF_API_TOKEN", TOKEN)
    monkeypatch.setenv("CLOUDFLARE_API_TOKEN", TOKEN)

    harness.executor.execute(make_job())

    for call in harness.runner.calls:
        if call.command.startswith("npx"):
            assert call.env["CLOUDFLARE_API_TOKEN"] == TOKEN
        else:
            assert TOKEN not in call.env.values()

def test_logs_are_masked(harness):
    harness.runner.handlers["npx"] = lambda command, cwd, env: f"using token {env['CLOUDFLARE_API_TOKEN']}"

    harness.executor.execute(make_job())

    publish_log = harness.reporter.logs[4]
    assert TOKEN not in publish_log
    assert "using token ***" in publish_log

def test_unexpected_error_fails_with_stage_error_kind(harness):
    def explode(*_):
        raise RuntimeError("disk full")

    harness.runner.handlers["pnpm build"] = explode

    run = harness.executor.execute(make_job())

    assert run.failed_stage == "build project"
    assert run.error == "RuntimeError: disk full"
    assert harness.final_step_statuses()[3:] == [StepStatus.FAILED, StepStatus.SKIPPED]

class FlakyReporter(RecordingReporter):
    def update_step_status(self, run_id, step_order, status, **kwargs):
        if step_order == 2 and status == StepStatus.RUNNING:
            raise ConnectionError("db gone")
        super().update_step_status(run_id, step_order, status, **kwargs)

def test_reporter_error_still_finishes_the_run(tmp_path):
    harness = Harness(tmp_path, reporter=FlakyReporter())

    run = harness.executor.execute(make_job())

    assert run.status == RunStatus.FAILED
    assert run.failed_stage == "install dependencies"
    assert run.error == "ConnectionError: db gone"
    assert run.finished_at is not None
    assert harness.reporter.run_statuses[-1] == RunStatus.FAILED
    assert harness.sandbox.releases == 1
    assert harness.runner.commands() == ["wasm-pack build --release"]
    assert harness.reporter.steps[3] == [StepStatus.SKIPPED]
    assert harness.reporter.steps[4] == [StepStatus.SKIPPED]

def test_missing_stage_output_fails_the_stage(harness):
    harness.runner.handlers["pnpm build"] = lambda *_: "built nothing"

    run = harness.executor.execute(make_job())

    assert run.failed_stage == "build project"
    assert run.error == "Stage did not produce dist"

def test_module_must_be_linked(harness):
    def install_without_module(command, cwd, env):
        os.makedirs(os.path.join(cwd, "node_modules", "react"))

    harness.runner.handlers["pnpm install"] = install_without_module

    run = harness.executor.execute(make_job())

    assert run.failed_stage == "install dependencies"
    assert f"Module '{MODULE_NAME}' is not linked" in run.error

def test_retries_rerun_the_stage(harness):
    attempts = []

    def flaky_install(command, cwd, env):
        attempts.append(command)
        if len(attempts) == 1:
            return 1
        return install_dependencies(command, cwd, env)

    harness.runner.handlers["pnpm install"] = flaky_install

    run = harness.executor.execute(make_job(dependencies={"retries": 1}))

    assert run.status == RunStatus.SUCCEEDED
    assert len(attempts) == 2
    assert harness.reporter.attempts[2] == 2

def test_stage_timeout_override(harness):
    harness.executor.execute(make_job(project={"timeout": 900}))

    timeouts = {call.command: call.timeout for call in harness.runner.calls}
    assert timeouts["pnpm build"] == 900
    assert timeouts["wasm-pack build --release"] == 1800
