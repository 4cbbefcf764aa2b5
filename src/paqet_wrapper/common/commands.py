"""Synchronous OS command execution with per-call timeouts."""

import subprocess
import sys
from dataclasses import dataclass

from .exceptions import CommandError, CommandTimeoutError
from .logging import get_logger

logger = get_logger(__name__)

# Keep console windows from flashing when running under a GUI host
CREATE_NO_WINDOW = 0x08000000 if sys.platform == "win32" else 0


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a finished OS command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Stdout, or stderr when the command wrote nothing to stdout."""
        return self.stdout if self.stdout.strip() else self.stderr


def run_command(args: list[str], timeout: float = 10.0) -> CommandResult:
    """Run a command to completion, draining stdout and stderr.

    Args:
        args: Program and arguments
        timeout: Seconds before the command is killed

    Returns:
        CommandResult with decoded output

    Raises:
        CommandTimeoutError: If the command outlives timeout
        CommandError: If the program cannot be started
    """
    logger.debug("Running command", args=args, timeout=timeout)
    try:
        completed = subprocess.run(
            args,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            creationflags=CREATE_NO_WINDOW,
        )
    except subprocess.TimeoutExpired as e:
        logger.warning("Command timed out", args=args, timeout=timeout)
        raise CommandTimeoutError(
            f"Command timed out after {timeout}s: {' '.join(args)}"
        ) from e
    except OSError as e:
        logger.error("Command could not be started", args=args, error=str(e))
        raise CommandError(f"Failed to run {args[0]}: {e}") from e

    result = CommandResult(
        args=tuple(args),
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )
    logger.debug("Command finished", args=args, returncode=result.returncode)
    return result
