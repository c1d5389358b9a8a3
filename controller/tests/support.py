"""Shared fakes for controller tests."""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import httpx
from pydantic import SecretStr

from controller.src.config import RunConfig
from controller.src.credentials import PipelineSecrets
from controller.src.errors import RunAborted
from controller.src.services.runner import CommandResult

TOKEN = "cf-token-7f3a9c"
ACCOUNT = "acct-5521"
PROJECT = "wasm-site"

def make_config(sandbox_root: str, **secret_overrides) -> RunConfig:
    secrets = {
        "api_token": SecretStr(TOKEN),
        "account_id": SecretStr(ACCOUNT),
        "project_name": SecretStr(PROJECT),
    }
    secrets.update(secret_overrides)
    return RunConfig(
        sandbox_root=sandbox_root,
        passthrough_env=("PATH", "HOME"),
        stage_timeout=1800,
        provision_timeout=600,
        log_tail_lines=1000,
        node_dist_url="https://nodejs.test/dist",
        http_timeout=5,
        cloudflare_api_url="https://cf.test/client/v4",
        wrangler_version="3",
        secrets=PipelineSecrets(**secrets),
    )

@dataclass
class Call:
    command: str
    cwd: str
    env: Dict[str, str]
    timeout: int
    stdin: Optional[bytes]

class FakeRunner:
    """
    Records every command. A handler registered for a command prefix may
    create files, return output (str) or an exit code (int), or raise.
    """

    def __init__(self, handlers: Optional[Dict[str, Callable]] = None):
        self.handlers = handlers or {}
        self.calls: List[Call] = []
        self.abort_on: Optional[str] = None

    def run(self, command, cwd, env, timeout, stdin=None) -> CommandResult:
        self.calls.append(Call(command, cwd, dict(env), timeout, stdin))
        if self.abort_on and command.startswith(self.abort_on):
            raise RunAborted(f"Run aborted while running '{command}'")

        outcome = None
        for prefix, handler in self.handlers.items():
            if command.startswith(prefix):
                outcome = handler(command, cwd, env)
                break

        if isinstance(outcome, int):
            return CommandResult(command=command, exit_code=outcome, output=f"failed with {outcome}")
        return CommandResult(command=command, exit_code=0, output=outcome or "")

    def commands(self) -> List[str]:
        return [call.command for call in self.calls]

    def call(self, prefix: str) -> Call:
        return next(call for call in self.calls if call.command.startswith(prefix))

DEPLOYMENTS = [
    {"id": "dep-2", "url": "https://abc123.wasm-site.pages.dev", "environment": "production"},
    {"id": "dep-1", "url": "https://old.wasm-site.pages.dev", "environment": "production"},
]

class CloudflareApi:
    """httpx.MockTransport handler standing in for the Cloudflare API."""

    def __init__(self, token_status="active", verify_code=200, deployments_code=200):
        self.token_status = token_status
        self.verify_code = verify_code
        self.deployments_code = deployments_code
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/user/tokens/verify"):
            if self.verify_code >= 400:
                return httpx.Response(self.verify_code, json={
                    "success": False,
                    "errors": [{"code": 1000, "message": "Invalid API Token"}],
                    "result": None,
                })
            return httpx.Response(200, json={"success": True, "result": {"status": self.token_status}})
        if request.url.path.endswith(f"/pages/projects/{PROJECT}/deployments"):
            if self.deployments_code >= 400:
                return httpx.Response(self.deployments_code, text="upstream error")
            return httpx.Response(200, json={"success": True, "result": DEPLOYMENTS})
        return httpx.Response(404, json={"success": False, "errors": []})
