"""
agent/process.py — Agent Subprocess

Thin wrapper around asyncio subprocesses for the agent CLI.

  interactive=True   the agent owns the terminal (stdin/stdout/stderr inherited)
  interactive=False  stdout is piped and read line by line; stdin is closed

Usage:
    proc = await spawn_agent(["claude", "-p", "hi", "--output-format", "stream-json"],
                             working_dir=cwd, interactive=False)
    async for line in proc.lines():
        ...
    code = await proc.wait()
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Optional

from exceptions import AgentBinaryNotFoundError, AgentSpawnError
from observability.logger import get_logger

log = get_logger(__name__)

# stream-json lines can carry whole file contents
_STREAM_LIMIT = 16 * 1024 * 1024


class AgentProcess:
    def __init__(self, proc: asyncio.subprocess.Process, args: list[str], interactive: bool):
        self._proc = proc
        self.args = args
        self.interactive = interactive

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    async def lines(self) -> AsyncIterator[str]:
        """Yield decoded stdout lines until EOF. Empty for interactive processes."""
        stream = self._proc.stdout
        if stream is None:
            return
        async for raw in stream:
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def wait(self) -> int:
        return await self._proc.wait()

    async def terminate(self, grace: float = 5.0) -> None:
        """SIGTERM, then SIGKILL after `grace` seconds. No-op once exited."""
        if self._proc.returncode is not None:
            return
        log.debug("process.terminate", pid=self.pid)
        with contextlib.suppress(ProcessLookupError):
            self._proc.terminate()
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=grace)
        except asyncio.TimeoutError:
            log.warning("process.kill", pid=self.pid, grace_s=grace)
            with contextlib.suppress(ProcessLookupError):
                self._proc.kill()
            await self._proc.wait()


async def spawn_agent(
    args: list[str],
    env: Optional[dict[str, str]] = None,
    working_dir: str | Path | None = None,
    interactive: bool = True,
) -> AgentProcess:
    """Start the agent CLI. Raises AgentBinaryNotFoundError / AgentSpawnError."""
    full_env = {**os.environ, **(env or {})}
    pipe = None if interactive else asyncio.subprocess.PIPE
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(working_dir) if working_dir is not None else None,
            env=full_env,
            stdin=None if interactive else asyncio.subprocess.DEVNULL,
            stdout=pipe,
            limit=_STREAM_LIMIT,
        )
    except FileNotFoundError as e:
        raise AgentBinaryNotFoundError(args[0]) from e
    except OSError as e:
        raise AgentSpawnError(f"Failed to start {args[0]}: {e}") from e

    log.info("process.spawned", pid=proc.pid, binary=args[0], interactive=interactive)
    return AgentProcess(proc, list(args), interactive)
