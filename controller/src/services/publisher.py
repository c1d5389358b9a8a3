"""
Publish static assets to Cloudflare Pages.

The upload itself is done by wrangler, the same CLI the Pages GitHub
action drives. The Cloudflare API is used directly to check the token
before uploading and to look up the deployment afterwards.
"""

import logging
import shlex
from typing import Any, Callable, ContextManager, Dict, Optional

import httpx

from controller.src.config import RunConfig
from controller.src.credentials import PipelineSecrets
from controller.src.errors import PublishError
from controller.src.models.run import Artifact, Deployment
from controller.src.models.step import PublishConfig, StageKind
from controller.src.services.locks import no_lock, target_key
from controller.src.services.log_collector import StageLog
from controller.src.services.runner import CommandRunner
from controller.src.services.sandbox import Sandbox

logger = logging.getLogger(__name__)

STAGE = StageKind.PUBLISH.value

class PagesPublisher:
    def __init__(
        self,
        runner: CommandRunner,
        config: RunConfig,
        http: httpx.Client,
        lock: Optional[Callable[[str], ContextManager]] = None,
    ):
        self.runner = runner
        self.config = config
        self.http = http
        self.lock = lock or no_lock

    def publish(
        self,
        sandbox: Sandbox,
        publish: PublishConfig,
        assets: Artifact,
        branch: str,
        log: StageLog,
    ) -> Deployment:
        """Upload the static-asset directory and return the new deployment."""
        secrets = self.config.secrets
        missing = secrets.missing()
        if missing:
            raise PublishError(f"Missing publishing credentials: {', '.join(missing)}", stage=STAGE)

        assets.verify(PublishError, STAGE)
        self.verify_token(secrets)
        log.write("API token verified")

        account_id = secrets.account_id.get_secret_value()
        project_name = secrets.project_name.get_secret_value()
        timeout = publish.timeout or self.config.stage_timeout

        command = (
            f"npx --yes wrangler@{self.config.wrangler_version} pages deploy "
            f"{shlex.quote(publish.directory)} "
            f"--project-name={shlex.quote(project_name)} "
            f"--branch={shlex.quote(branch)}"
        )

        with self.lock(target_key(account_id, project_name)):
            result = self.runner.run(
                command,
                cwd=sandbox.workdir(publish.working_directory),
                env=sandbox.stage_env(secrets.as_env()),
                timeout=timeout,
            )
            log.command(result)

            if not result.ok:
                reason = "timed out" if result.timed_out else f"exited with {result.exit_code}"
                raise PublishError(f"wrangler pages deploy {reason}", stage=STAGE)

            # Still holding the lock, so the newest deployment is this upload
            deployment = self.latest_deployment(secrets)

        if deployment.url:
            log.write(f"Deployed to {deployment.url}")
        return deployment

    def verify_token(self, secrets: PipelineSecrets):
        try:
            result = self._api("GET", "/user/tokens/verify", secrets)
        except httpx.HTTPError as e:
            raise PublishError(f"Cannot reach Cloudflare API: {e}", stage=STAGE) from e

        status = (result or {}).get("status")
        if status != "active":
            raise PublishError(f"Cloudflare API token is {status or 'invalid'}", stage=STAGE)

    def latest_deployment(self, secrets: PipelineSecrets) -> Deployment:
        """Newest deployment of the project. Empty when the lookup fails."""
        path = (
            f"/accounts/{secrets.account_id.get_secret_value()}"
            f"/pages/projects/{secrets.project_name.get_secret_value()}/deployments"
        )
        try:
            deployments = self._api("GET", path, secrets)
        except (httpx.HTTPError, PublishError) as e:
            logger.warning(f"Published, but could not look up the deployment: {e}")
            return Deployment()

        if not deployments:
            return Deployment()

        latest = deployments[0]
        return Deployment(id=latest.get("id"), url=latest.get("url"))

    def _api(self, method: str, path: str, secrets: PipelineSecrets) -> Any:
        response = self.http.request(
            method,
            f"{self.config.cloudflare_api_url.rstrip('/')}{path}",
            headers={"Authorization": f"Bearer {secrets.api_token.get_secret_value()}"},
        )
        try:
            body: Dict[str, Any] = response.json()
        except ValueError:
            raise PublishError(
                f"Cloudflare API returned {response.status_code} with a non-JSON body",
                stage=STAGE,
            )

        if response.status_code >= 400 or not body.get("success", False):
            errors = "; ".join(
                f"{error.get('code')}: {error.get('message')}" for error in body.get("errors", [])
            )
            raise PublishError(
                f"Cloudflare API returned {response.status_code}: {errors or 'request failed'}",
                stage=STAGE,
            )

        return body.get("result")
