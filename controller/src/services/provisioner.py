"""
Environment provisioning: checkout, pinned runtime, pinned tools.
"""

import logging
import os
import platform
import re
import shlex
import tarfile
from typing import Any, Dict, List, Optional

import httpx

from controller.src.config import RunConfig
from controller.src.errors import ProvisioningError
from controller.src.models.run import Artifact, ArtifactKind
from controller.src.models.step import (
    PipelineDefinition,
    RepoInfo,
    RuntimeConfig,
    StageKind,
    ToolInstallation,
)
from controller.src.services.log_collector import StageLog
from controller.src.services.runner import CommandRunner
from controller.src.services.sandbox import Sandbox

logger = logging.getLogger(__name__)

STAGE = StageKind.PROVISION.value

_VERSION_RE = re.compile(r"(\d+(?:\.\d+)*)")

_MACHINES = {
    "x86_64": "x64",
    "amd64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
}

def version_matches(reported: str, pin: str) -> bool:
    """True when the first version number in `reported` satisfies `pin`."""
    match = _VERSION_RE.search(reported)
    if not match:
        return False
    found = match.group(1)
    pin = pin.lstrip("v")
    return found == pin or found.startswith(pin + ".")

def _version_key(version: str) -> tuple:
    return tuple(int(part) for part in version.lstrip("v").split("."))

def select_node_release(releases: List[Dict[str, Any]], major: str) -> str:
    """Newest release of a major line from nodejs.org/dist/index.json."""
    candidates = [
        release["version"] for release in releases
        if release.get("version", "").startswith(f"v{major}.")
    ]
    if not candidates:
        raise ProvisioningError(f"No Node.js release found for major version {major}", stage=STAGE)
    return max(candidates, key=_version_key)

def node_platform() -> str:
    system = platform.system().lower()
    machine = _MACHINES.get(platform.machine().lower())
    if system not in ("linux", "darwin") or machine is None:
        raise ProvisioningError(
            f"Unsupported platform {platform.system()}/{platform.machine()}", stage=STAGE
        )
    return f"{system}-{machine}"

class Provisioner:
    def __init__(self, runner: CommandRunner, config: RunConfig, http: httpx.Client):
        self.runner = runner
        self.config = config
        self.http = http
        self.installers = {
            "script": self._install_script,
            "npm": self._install_npm,
        }

    def provision(
        self,
        sandbox: Sandbox,
        definition: PipelineDefinition,
        repo_info: RepoInfo,
        log: StageLog,
    ) -> Artifact:
        """Populate the sandbox. Returns the checked-out source tree."""
        self.checkout(sandbox, repo_info, log)
        self.install_runtime(sandbox, definition.runtime, log)
        for tool in definition.tools:
            self.install_tool(sandbox, tool, log)

        working_directory = sandbox.workdir(definition.working_directory)
        if not os.path.isdir(working_directory):
            raise ProvisioningError(
                f"Working directory {definition.working_directory} not found in checkout",
                stage=STAGE,
            )

        return Artifact(kind=ArtifactKind.SOURCE_TREE, path=sandbox.source_dir, stage=STAGE)

    def checkout(self, sandbox: Sandbox, repo_info: RepoInfo, log: StageLog):
        """Shallow clone at the triggering ref, then pin the commit if known."""
        env = sandbox.stage_env()
        log.write(f"Checking out {repo_info.repository}@{repo_info.ref}")

        self._run(
            f"git clone --depth 1 --branch {shlex.quote(repo_info.ref)} "
            f"{shlex.quote(repo_info.clone_url)} {shlex.quote(sandbox.source_dir)}",
            cwd=sandbox.path, env=env, log=log, what="Checkout",
        )

        if repo_info.commit_sha:
            sha = shlex.quote(repo_info.commit_sha)
            self._run(
                f"git fetch --depth 1 origin {sha} && git checkout --detach {sha}",
                cwd=sandbox.source_dir, env=env, log=log,
                what=f"Checkout of commit {repo_info.commit_sha}",
            )

    def install_runtime(self, sandbox: Sandbox, runtime: RuntimeConfig, log: StageLog):
        """Download the newest release of the pinned major into the sandbox."""
        log.write(f"Installing {runtime.name} {runtime.version}")
        dist = self.config.node_dist_url.rstrip("/")

        try:
            response = self.http.get(f"{dist}/index.json")
            response.raise_for_status()
            releases = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProvisioningError(f"Cannot read Node.js release index: {e}", stage=STAGE) from e

        version = select_node_release(releases, runtime.version)
        archive = f"node-{version}-{node_platform()}"
        target = os.path.join(sandbox.tools_dir, runtime.name)
        self._download_and_extract(f"{dist}/{version}/{archive}.tar.gz", target)
        sandbox.add_path(os.path.join(target, archive, "bin"))
        logger.info(f"Installed {runtime.name} {version}")

        self._probe(sandbox, runtime.name, runtime.version, runtime.probe, log)

    def install_tool(self, sandbox: Sandbox, tool: ToolInstallation, log: StageLog):
        installer = self.installers.get(tool.method)
        if installer is None:
            raise ProvisioningError(f"Unknown install method '{tool.method}' for {tool.name}", stage=STAGE)

        log.write(f"Installing {tool.name} {tool.version} ({tool.method})")
        tool_dir = os.path.join(sandbox.tools_dir, tool.name)
        os.makedirs(tool_dir, exist_ok=True)

        bin_dir = installer(sandbox, tool, tool_dir, log)
        if tool.bin_dir:
            bin_dir = os.path.join(tool_dir, sandbox.expand_home(tool.bin_dir))
        if bin_dir:
            sandbox.add_path(bin_dir)

        self._probe(sandbox, tool.name, tool.version if tool.pinned else None, tool.probe, log)
        logger.info(f"Installed {tool.name} {tool.version}")

    def _install_script(
        self, sandbox: Sandbox, tool: ToolInstallation, tool_dir: str, log: StageLog
    ) -> Optional[str]:
        """Fetch an installer script and pipe it to sh."""
        try:
            response = self.http.get(tool.url, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProvisioningError(f"Cannot fetch installer for {tool.name}: {e}", stage=STAGE) from e

        self._run(
            "sh", cwd=tool_dir, env=sandbox.stage_env(tool.env), log=log,
            what=f"Installer script for {tool.name}", stdin=response.content,
        )
        return None

    def _install_npm(
        self, sandbox: Sandbox, tool: ToolInstallation, tool_dir: str, log: StageLog
    ) -> Optional[str]:
        """Install a package-manager CLI from the npm registry into the sandbox."""
        self._run(
            f"npm install --global --prefix {shlex.quote(tool_dir)} "
            f"{shlex.quote(f'{tool.name}@{tool.version}')}",
            cwd=tool_dir, env=sandbox.stage_env(tool.env), log=log,
            what=f"npm install of {tool.name}",
        )
        return os.path.join(tool_dir, "bin")

    def _probe(
        self,
        sandbox: Sandbox,
        name: str,
        pin: Optional[str],
        probe: Optional[str],
        log: StageLog,
    ):
        """Check the installed binary runs and reports the pinned version."""
        command = probe or f"{name} --version"
        result = self._run(
            command, cwd=sandbox.path, env=sandbox.stage_env(), log=log,
            what=f"Version check of {name}",
        )
        if pin and not version_matches(result.output, pin):
            raise ProvisioningError(
                f"{name} reports '{result.output.strip()}', expected version {pin}",
                stage=STAGE,
            )

    def _download_and_extract(self, url: str, target: str):
        os.makedirs(target, exist_ok=True)
        archive_path = os.path.join(target, os.path.basename(url))

        try:
            with self.http.stream("GET", url, follow_redirects=True) as response:
                response.raise_for_status()
                with open(archive_path, "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
        except httpx.HTTPError as e:
            raise ProvisioningError(f"Download of {url} failed: {e}", stage=STAGE) from e

        try:
            with tarfile.open(archive_path, "r:gz") as archive:
                archive.extractall(target, filter="data")
        except (tarfile.TarError, OSError) as e:
            raise ProvisioningError(f"Cannot extract {url}: {e}", stage=STAGE) from e
        finally:
            os.remove(archive_path)

    def _run(self, command, cwd, env, log, what, stdin=None):
        result = self.runner.run(
            command, cwd=cwd, env=env, timeout=self.config.provision_timeout, stdin=stdin
        )
        log.command(result)
        if not result.ok:
            reason = "timed out" if result.timed_out else f"exited with {result.exit_code}"
            raise ProvisioningError(f"{what} {reason}", stage=STAGE)
        return result
