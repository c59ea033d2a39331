"""Two-tier git command execution on top of GitPython."""

import logging
from pathlib import Path
from typing import NamedTuple, Union

import git as gitpython
from git import Repo

logger = logging.getLogger(__name__)


class GitOutput(NamedTuple):
    """Outcome of an advisory git command."""
    ok: bool
    output: str


class GitRunner:
    """
    Runs git commands against one working copy.

    ``run_advisory`` swallows failures (logged at debug) for prune/cleanup
    style calls; ``run_required`` raises :class:`GitCommandFailed` for calls
    whose success the caller depends on.
    """

    def __init__(self, path: Union[str, Path]):
        """
        Initialize runner.

        Args:
            path: Working copy the commands run in
        """
        self.path = Path(path)
        self.repo = Repo(self.path)

    def run_advisory(self, command: str, *args: str) -> GitOutput:
        """
        Run git command, tolerating failure.

        Args:
            command: Git subcommand (e.g. "worktree")
            *args: Arguments for the subcommand

        Returns:
            GitOutput with ok flag and stdout (stderr on failure)
        """
        try:
            return GitOutput(True, self._execute(command, *args))
        except gitpython.GitCommandError as e:
            logger.debug(f"git {command} {' '.join(args)} failed in {self.path}: {e.stderr.strip()}")
            return GitOutput(False, (e.stderr or "").strip())

    def run_required(self, command: str, *args: str) -> str:
        """
        Run git command, propagating failure.

        Returns:
            Command stdout

        Raises:
            GitCommandFailed: If git exits non-zero
        """
        try:
            return self._execute(command, *args)
        except gitpython.GitCommandError as e:
            logger.error(f"git {command} {' '.join(args)} failed in {self.path}: {e}")
            raise GitCommandFailed(command, args, e.status, (e.stderr or "").strip()) from e

    def branch_exists(self, name: str) -> bool:
        return self.run_advisory("rev-parse", "--verify", "--quiet", f"refs/heads/{name}").ok

    def ref_exists(self, ref: str) -> bool:
        return self.run_advisory("rev-parse", "--verify", "--quiet", ref).ok

    def porcelain_status(self) -> list[str]:
        output = self.run_advisory("status", "--porcelain")
        if not output.ok:
            return []
        return [line for line in output.output.split("\n") if line.strip()]

    def _execute(self, command: str, *args: str) -> str:
        # GitPython turns rev_parse into "git rev-parse"
        return getattr(self.repo.git, command.replace("-", "_"))(*args)


class GitCommandFailed(Exception):
    """Raised when a load-bearing git command fails."""

    def __init__(self, command: str, args: tuple, status, stderr: str):
        super().__init__(f"git {command} {' '.join(args)} failed ({status}): {stderr}")
        self.command = command
        self.args_list = list(args)
        self.status = status
        self.stderr = stderr
