"""Library for issuing commands using asyncio and capturing the result."""

import asyncio
from abc import ABC, abstractmethod
import contextlib
import logging
import shlex
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from collections.abc import Sequence
import os

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

_CONCURRENCY = 20
_SEM = asyncio.Semaphore(_CONCURRENCY)


# No public API
__all__: list[str] = []


class Task(ABC):
    """An instance of a async task to execute."""

    @abstractmethod
    async def run(self, stdin: bytes | None = None) -> bytes:
        """Execute the task and return the result."""


def format_path(path: Path) -> str:
    """Format path for debugging."""
    if path.is_absolute():
        cwd = Path.cwd()
        if path.is_relative_to(cwd):
            rel_path = str(path.relative_to(cwd))
            return f"{rel_path} (abs)"
    return str(path)


@dataclass(frozen=True)
class CommandResult:
    """Exit status and captured output of a finished command."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, in that order."""
        return "".join(part for part in (self.stdout, self.stderr) if part)


@dataclass
class Command(Task):
    """An instance of a command to run."""

    cmd: list[str]
    """Array of command line arguments."""

    cwd: Path | None = None
    """Current working directory."""

    exc: type[CommandException] = CommandException
    """Exception to throw in case of an error."""

    retcodes: list[int] | None = None
    """Non-zero error codes that are allowed to indicate success (e.g. for diff)."""

    env: dict[str, str] | None = None
    """Environment variables for the subprocess."""

    @property
    def string(self) -> str:
        """Render the command as a single string."""
        return " ".join([shlex.quote(arg) for arg in self.cmd])

    def __str__(self) -> str:
        """Render as a debug string."""
        cwd: str = ""
        if self.cwd:
            cwd = f"({format_path(self.cwd)}) "
        return f"{cwd}{self.string}"

    async def exec(self, stdin: bytes | None = None) -> CommandResult:
        """Run the command and capture the exit status and output.

        Unlike `run` this never raises for a non-zero exit status.
        """
        _LOGGER.debug("Running command: %s", self)
        env = {
            **os.environ,
            **(self.env if self.env else {}),
        }
        proc = await asyncio.create_subprocess_shell(
            self.string,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=self.cwd,
            env=env,
            start_new_session=True,
        )
        try:
            out, err = await proc.communicate(stdin)
        except asyncio.CancelledError:
            await _kill(proc)
            raise
        return CommandResult(
            returncode=proc.returncode or 0,
            stdout=out.decode("utf-8") if out else "",
            stderr=err.decode("utf-8") if err else "",
        )

    async def run(self, stdin: bytes | None = None) -> bytes:
        """Run the command, returning stdout."""
        result = await self.exec(stdin)
        if result.returncode:
            if self.retcodes and result.returncode in self.retcodes:
                return result.stdout.encode("utf-8")
            errors = [f"Command '{self}' failed with return code {result.returncode}"]
            if result.stdout:
                errors.append(result.stdout)
            if result.stderr:
                errors.append(result.stderr)
            _LOGGER.debug("\n".join(errors))
            raise self.exc(
                "\n".join(errors),
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result.stdout.encode("utf-8")


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill a process and everything it started, then reap it."""
    if proc.returncode is None:
        _LOGGER.debug("Killing process group %d", proc.pid)
        with contextlib.suppress(ProcessLookupError):
            os.killpg(proc.pid, signal.SIGKILL)
    await proc.wait()


async def run_piped(cmds: Sequence[Task]) -> str:
    """Run a set of commands, piped together, returning stdout of last."""
    async with _SEM:
        stdin = None
        out = None
        for cmd in cmds:
            out = await cmd.run(stdin)
            stdin = out
    return out.decode("utf-8") if out else ""


async def run(cmd: Task) -> str:
    """Run the specified command and return stdout."""
    return await run_piped([cmd])


async def capture(cmd: Command) -> CommandResult:
    """Run the specified command, capturing its result without raising."""
    async with _SEM:
        return await cmd.exec()
