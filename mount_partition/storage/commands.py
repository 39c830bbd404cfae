"""External command execution with bounded timeouts.

Every partition table, loop device and mount operation goes through
``run_command``. It never raises for a non-zero exit status: the caller gets a
``CommandResult`` and decides which error that status maps to. Only a missing
executable or an expired timeout raise here.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from typing import Sequence

from mount_partition.config import settings
from mount_partition.logging import LoggerFactory

from .exceptions import ToolFailedError, ToolTimeoutError, ToolUnavailableError


log = LoggerFactory.for_commands()


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of one external command."""

    command: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stderr if there is any, else stdout, stripped."""
        return self.stderr.strip() or self.stdout.strip()

    @property
    def command_line(self) -> str:
        return " ".join(self.command)


def _resolve_timeout(timeout: float | None) -> float | None:
    if timeout is None:
        timeout = settings.get_int(
            "command_timeout_seconds", settings.DEFAULT_COMMAND_TIMEOUT_SECONDS
        )
    if timeout <= 0:
        return None
    return timeout


def run_command(
    command: Sequence[str],
    *,
    timeout: float | None = None,
    input_text: str | None = None,
) -> CommandResult:
    """Run ``command`` and capture its output.

    Args:
        command: Argument list, never a shell string
        timeout: Seconds before the command is killed (defaults to the
            ``command_timeout_seconds`` setting, <= 0 disables it)
        input_text: Optional text fed to stdin

    Raises:
        ToolUnavailableError: If the executable does not exist
        ToolTimeoutError: If the command did not finish in time
    """
    command = [str(part) for part in command]
    limit = _resolve_timeout(timeout)
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            capture_output=True,
            timeout=limit,
        )
    except FileNotFoundError as error:
        log.debug(f"Command not found: {command[0]}")
        raise ToolUnavailableError(command) from error
    except subprocess.TimeoutExpired as error:
        log.warning(f"Command timed out after {limit}s: {' '.join(command)}")
        raise ToolTimeoutError(command, limit) from error

    stdout = result.stdout or ""
    stderr = result.stderr or ""
    output_log = log.bind(tags=["command", "command-output"])
    if stdout.strip():
        output_log.trace(f"stdout: {stdout.strip()}")
    if stderr.strip():
        output_log.trace(f"stderr: {stderr.strip()}")
    if result.returncode != 0:
        log.debug(
            f"Command failed with code {result.returncode}: "
            f"{stderr.strip() or stdout.strip() or 'no output'}"
        )
    return CommandResult(
        command=tuple(command),
        returncode=result.returncode,
        stdout=stdout,
        stderr=stderr,
    )


def run_checked_command(
    command: Sequence[str],
    *,
    context: str = "",
    timeout: float | None = None,
) -> str:
    """Run a command and raise ToolFailedError if it fails.

    Returns:
        The command's stdout
    """
    result = run_command(command, timeout=timeout)
    if not result.ok:
        raise ToolFailedError(
            result.command,
            result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            context=context,
        )
    return result.stdout


__all__ = [
    "CommandResult",
    "run_command",
    "run_checked_command",
]
