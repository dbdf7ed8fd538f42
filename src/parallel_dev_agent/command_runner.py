"""External command execution.

Runs git and task interpreters as asyncio subprocesses with:
- stdin closed so nothing can block on an interactive prompt
- credential and terminal prompting disabled through the environment
- stdout/stderr drained concurrently with the exit wait
- a hard deadline that kills the whole process tree
"""

import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

import psutil

from .errors import CommandStartError, CommandTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0

NON_INTERACTIVE_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_ASKPASS": "echo",
    "SSH_ASKPASS": "echo",
    "GIT_SSH_COMMAND": "ssh -o BatchMode=yes -o StrictHostKeyChecking=no",
}


@dataclass
class CommandResult:
    """Captured result of a finished command."""
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def non_interactive_env(extra: Optional[dict[str, str]] = None) -> dict[str, str]:
    """Build a child environment that can never prompt for input.

    The current process environment comes first, then the prompt-disabling
    variables, then ``extra``.
    """
    env = dict(os.environ)
    env.update(NON_INTERACTIVE_ENV)
    if extra:
        env.update(extra)
    return env


def kill_process_tree(pid: int, timeout: float = 3.0) -> None:
    """Kill a process and all of its descendants.

    Children are collected before the parent dies so grandchildren are not
    orphaned. Processes that are already gone are ignored.
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    try:
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    procs = children + [parent]
    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning(f"Access denied killing process {proc.pid}")

    # The direct child is reaped by its owner; only wait for descendants
    gone, alive = psutil.wait_procs(children, timeout=timeout)
    for proc in alive:
        logger.warning(f"Process {proc.pid} survived kill")


def _decode(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


class CommandRunner:
    """Runs external commands without ever blocking on user input."""

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.default_timeout = default_timeout

    async def _create(
        self,
        argv: Sequence[str],
        cwd: Optional[Union[str, Path]],
        env: Optional[dict[str, str]],
    ) -> asyncio.subprocess.Process:
        kwargs = {}
        if sys.platform != "win32":
            # Own process group so the whole tree can be killed together
            kwargs["start_new_session"] = True

        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd is not None else None,
                env=non_interactive_env(env),
                **kwargs,
            )
        except OSError as e:
            logger.error(f"Failed to start {' '.join(argv)}: {e}")
            raise CommandStartError(f"Failed to start '{argv[0]}': {e}", argv) from e

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a command to completion and capture its output.

        Args:
            command: Executable name or path
            args: Positional arguments
            cwd: Working directory
            env: Extra environment variables
            timeout: Deadline in seconds (defaults to the runner's default)

        Returns:
            CommandResult, also for non-zero exit codes

        Raises:
            CommandStartError: The executable could not be started
            CommandTimeoutError: The deadline passed; the process tree was killed
            asyncio.CancelledError: The caller was cancelled; the process tree was killed
        """
        argv = (command, *args)
        deadline = self.default_timeout if timeout is None else timeout
        logger.debug(f"Running {' '.join(argv)} in {cwd}")

        proc = await self._create(argv, cwd, env)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning(f"Command timed out after {deadline:g}s: {' '.join(argv)}")
            await self._kill(proc)
            raise CommandTimeoutError(argv, deadline)
        except asyncio.CancelledError:
            logger.info(f"Command cancelled: {' '.join(argv)}")
            await self._kill(proc)
            raise

        return CommandResult(
            args=argv,
            returncode=proc.returncode,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
        )

    async def spawn(
        self,
        command: str,
        args: Sequence[str] = (),
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[dict[str, str]] = None,
    ) -> asyncio.subprocess.Process:
        """Start a long-running process with piped stdout and stderr.

        The caller owns the returned process and must drain its pipes.
        """
        argv = (command, *args)
        proc = await self._create(argv, cwd, env)
        logger.info(f"Spawned pid {proc.pid}: {' '.join(argv)}")
        return proc

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            await asyncio.to_thread(kill_process_tree, proc.pid)
        await proc.wait()
