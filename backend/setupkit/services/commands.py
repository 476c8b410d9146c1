"""External command execution.

All side effects on the container runtime and the migration tool go
through a CommandRunner so they can be replaced by a recording fake in
tests.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0


class CommandRunner(ABC):
    """Interface for running external commands."""

    @abstractmethod
    async def run(
        self,
        args: list[str],
        *,
        timeout: float,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        """Run `args` and wait at most `timeout` seconds.

        A command still running at the deadline is NOT killed: the result
        comes back with `timed_out=True` and the process is left to finish.
        """


class AsyncCommandRunner(CommandRunner):
    """Real implementation on asyncio subprocesses."""

    def __init__(self):
        self._detached: set[asyncio.Task] = set()

    async def run(self, args, *, timeout, env=None, cwd=None) -> CommandResult:
        full_env = {**os.environ, **env} if env else None
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
                cwd=cwd,
            )
        except FileNotFoundError:
            logger.warning("Command not found: %s", args[0])
            return CommandResult(exit_code=127, stderr=f"{args[0]}: command not found")

        task = asyncio.ensure_future(process.communicate())
        try:
            stdout, stderr = await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Command %s still running after %ss", args[:2], timeout)
            self._detached.add(task)
            task.add_done_callback(self._detached.discard)
            return CommandResult(exit_code=None, timed_out=True)

        return CommandResult(
            exit_code=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
