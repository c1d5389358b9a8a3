"""
Run shell commands for pipeline stages.

Each command runs in its own process group under /bin/sh so a timeout or
an abort can kill the whole tree.
"""

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from controller.src.errors import RunAborted

logger = logging.getLogger(__name__)

@dataclass
class CommandResult:
    command: str
    exit_code: int
    output: str
    timed_out: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

class CommandRunner:
    def __init__(
        self,
        abort_check: Optional[Callable[[], bool]] = None,
        poll_interval: float = 0.5,
    ):
        self.abort_check = abort_check or (lambda: False)
        self.poll_interval = poll_interval

    def run(
        self,
        command: str,
        cwd: str,
        env: Dict[str, str],
        timeout: int,
        stdin: Optional[bytes] = None,
    ) -> CommandResult:
        """
        Run a command to completion.
        Returns the result on exit or timeout; raises RunAborted when the
        abort check fires while it runs.
        """
        if self.abort_check():
            raise RunAborted("Run aborted before command started")

        logger.debug(f"Running '{command}' in {cwd}")
        start = time.monotonic()

        proc = subprocess.Popen(
            ["/bin/sh", "-c", command],
            cwd=cwd,
            env=env,
            stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )

        pending_input = stdin
        while True:
            try:
                out, _ = proc.communicate(input=pending_input, timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                # Input is sent on the first call only
                pending_input = None

            elapsed = time.monotonic() - start
            if self.abort_check():
                output = self._kill(proc)
                logger.warning(f"Aborted '{command}' after {elapsed:.0f}s")
                raise RunAborted(f"Run aborted while running '{command}'\n{output}")

            if elapsed > timeout:
                output = self._kill(proc)
                logger.error(f"'{command}' timed out after {timeout}s")
                return CommandResult(
                    command=command,
                    exit_code=proc.returncode if proc.returncode is not None else -1,
                    output=output + f"\nTimed out after {timeout}s",
                    timed_out=True,
                    duration=elapsed,
                )

        return CommandResult(
            command=command,
            exit_code=proc.returncode,
            output=out.decode("utf-8", errors="replace"),
            duration=time.monotonic() - start,
        )

    def _kill(self, proc: subprocess.Popen) -> str:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        out, _ = proc.communicate()
        return (out or b"").decode("utf-8", errors="replace")
