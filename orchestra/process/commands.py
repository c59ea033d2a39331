"""Two-tier external command execution."""

import logging
import subprocess
from pathlib import Path
from typing import NamedTuple, Optional, Sequence, Union

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class CommandOutput(NamedTuple):
    """Outcome of an advisory command."""
    ok: bool
    stdout: str
    stderr: str


def run_advisory(
    args: Sequence[str],
    cwd: Optional[Union[str, Path]] = None,
    timeout: float = DEFAULT_TIMEOUT
) -> CommandOutput:
    """
    Run command, tolerating failure.

    A missing binary, a timeout or a non-zero exit all come back as
    ``ok=False`` and are logged at debug.

    Args:
        args: Command and arguments
        cwd: Working directory
        timeout: Seconds before the command is abandoned

    Returns:
        CommandOutput with ok flag, stdout and stderr
    """
    try:
        result = subprocess.run(
            list(args),
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError) as e:
        logger.debug(f"{' '.join(args)} did not run: {e}")
        return CommandOutput(False, "", str(e))

    if result.returncode != 0:
        logger.debug(f"{' '.join(args)} exited {result.returncode}: {result.stderr.strip()}")
    return CommandOutput(result.returncode == 0, result.stdout, result.stderr)


def run_required(
    args: Sequence[str],
    cwd: Optional[Union[str, Path]] = None,
    timeout: float = DEFAULT_TIMEOUT
) -> str:
    """
    Run command, propagating failure.

    Returns:
        Command stdout

    Raises:
        CommandFailedError: If the command cannot run or exits non-zero
    """
    try:
        result = subprocess.run(
            list(args),
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (subprocess.TimeoutExpired, FileNotFoundError) as e:
        logger.error(f"{' '.join(args)} did not run: {e}")
        raise CommandFailedError(args, None, str(e)) from e

    if result.returncode != 0:
        logger.error(f"{' '.join(args)} exited {result.returncode}: {result.stderr.strip()}")
        raise CommandFailedError(args, result.returncode, result.stderr.strip())

    return result.stdout


class CommandFailedError(Exception):
    """Raised when a load-bearing external command fails."""

    def __init__(self, args: Sequence[str], returncode: Optional[int], stderr: str):
        super().__init__(f"{' '.join(args)} failed ({returncode}): {stderr}")
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
