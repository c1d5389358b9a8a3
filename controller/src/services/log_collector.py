"""
Collect stage output for persistence.
"""

from collections import deque
from typing import Deque

from controller.src.credentials import SecretMasker
from controller.src.services.runner import CommandResult

class StageLog:
    """
    Bounded, secret-masked log of one stage.
    Only the last `tail_lines` lines are kept.
    """

    def __init__(self, masker: SecretMasker, tail_lines: int = 1000):
        self.masker = masker
        self._lines: Deque[str] = deque(maxlen=tail_lines)

    def write(self, text: str):
        for line in self.masker.redact(text).splitlines():
            self._lines.append(line)

    def command(self, result: CommandResult):
        self.write(f"$ {result.command}")
        self.write(result.output)
        if result.timed_out:
            self.write(f"[timed out after {result.duration:.0f}s]")
        else:
            self.write(f"[exit {result.exit_code} in {result.duration:.1f}s]")

    def text(self) -> str:
        return "\n".join(self._lines)
