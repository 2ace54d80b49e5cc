"""
agent/runtime.py — Terminal capabilities

Detected once at startup in main() and passed to whoever needs them.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Optional, TextIO


@dataclass(frozen=True)
class TerminalCapabilities:
    stdin_tty: bool
    stdout_tty: bool

    @property
    def interactive(self) -> bool:
        """The local agent UI needs a real terminal on both ends."""
        return self.stdin_tty and self.stdout_tty

    @classmethod
    def detect(
        cls,
        stdin: Optional[TextIO] = None,
        stdout: Optional[TextIO] = None,
    ) -> "TerminalCapabilities":
        stdin = stdin or sys.stdin
        stdout = stdout or sys.stdout
        return cls(
            stdin_tty=bool(stdin and stdin.isatty()),
            stdout_tty=bool(stdout and stdout.isatty()),
        )
