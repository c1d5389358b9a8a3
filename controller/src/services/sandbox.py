"""
Per-run sandbox: a temporary directory holding the checkout and the
installed tools, plus the environment stages run with.
"""

import logging
import os
import shutil
import tempfile
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

class Sandbox:
    """
    Use as a context manager. The directory is removed exactly once when
    the block exits, whatever the outcome.
    """

    def __init__(
        self,
        root: str,
        run_id: str,
        passthrough_env: Iterable[str],
        rustup_home: Optional[str] = None,
    ):
        self.root = root
        self.run_id = run_id
        self.passthrough_env = tuple(passthrough_env)
        # Host Rust toolchain, shared read-only across runs
        self.rustup_home = rustup_home
        self.path: Optional[str] = None
        self._paths: List[str] = []
        self._released = False

    def __enter__(self) -> "Sandbox":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    @property
    def source_dir(self) -> str:
        return os.path.join(self.path, "source")

    @property
    def tools_dir(self) -> str:
        return os.path.join(self.path, "tools")

    @property
    def home_dir(self) -> str:
        """HOME for every stage process. Caches and installers write here."""
        return os.path.join(self.path, "home")

    def acquire(self):
        os.makedirs(self.root, exist_ok=True)
        self.path = tempfile.mkdtemp(prefix=f"pagesflow-{self.run_id[:8]}-", dir=self.root)
        os.makedirs(self.tools_dir)
        os.makedirs(self.home_dir)
        logger.info(f"Created sandbox {self.path} for run {self.run_id}")

    def release(self):
        if self._released or self.path is None:
            return
        self._released = True
        shutil.rmtree(self.path, ignore_errors=True)
        logger.info(f"Released sandbox {self.path} for run {self.run_id}")

    @property
    def released(self) -> bool:
        return self._released

    def workdir(self, relative: str) -> str:
        """Absolute path of a directory inside the checkout."""
        return os.path.normpath(os.path.join(self.source_dir, relative))

    def expand_home(self, path: str) -> str:
        """Expand a leading ~ against the sandbox home, not the worker's."""
        if path == "~" or path.startswith("~/"):
            return os.path.normpath(os.path.join(self.home_dir, path[2:]))
        return path

    def add_path(self, bin_dir: str):
        """Put a tool's bin directory on PATH for every later stage."""
        if bin_dir not in self._paths:
            self._paths.insert(0, bin_dir)

    def stage_env(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Environment for a stage process. Built from an allow-list of host
        variables, never from the whole worker environment.
        """
        env = {
            name: os.environ[name]
            for name in self.passthrough_env
            if name in os.environ
        }
        env["PATH"] = os.pathsep.join(self._paths + [env.get("PATH", os.defpath)])

        # Installers and package managers keep their state inside the sandbox
        home = self.home_dir
        env.update({
            "HOME": home,
            "CARGO_HOME": os.path.join(home, ".cargo"),
            "XDG_CACHE_HOME": os.path.join(home, ".cache"),
            "XDG_CONFIG_HOME": os.path.join(home, ".config"),
            "XDG_DATA_HOME": os.path.join(home, ".local", "share"),
            "npm_config_cache": os.path.join(home, ".npm"),
        })
        if self.rustup_home:
            env["RUSTUP_HOME"] = self.rustup_home

        env["CI"] = "true"
        env["PAGESFLOW_RUN_ID"] = self.run_id
        if extra:
            env.update(extra)
        return env
