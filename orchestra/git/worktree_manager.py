"""Git worktree manager for agent isolation."""

import logging
import shutil
import time
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field

from orchestra.git.merge_strategy import ConflictStrategy, MergeResult, MergeStrategy
from orchestra.git.runner import GitCommandFailed, GitRunner

logger = logging.getLogger(__name__)


class WorktreeStatus(str, Enum):
    """Lifecycle of an agent worktree."""
    ACTIVE = "active"
    MERGED = "merged"
    CONFLICT = "conflict"
    CLEANED = "cleaned"


class WorktreeInfo(BaseModel):
    """An agent's isolated working copy."""
    agent_id: int
    path: str
    branch: str
    base_branch: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    status: WorktreeStatus = WorktreeStatus.ACTIVE


class WorktreeChanges(BaseModel):
    """Uncommitted state of a worktree."""
    clean: bool
    changes: list[str] = []


class WorktreeManager:
    """
    Manages git worktrees for agent isolation.

    Each agent gets ``<base_path>/agent-<id>`` on its own branch cut from
    the base branch. Work is merged back into the base branch of the main
    working copy; merges must not run concurrently for two agents.
    """

    def __init__(
        self,
        repo_path: Union[str, Path],
        base_path: Union[str, Path] = ".worktrees",
        branch_strategy: str = "per-agent",
        base_branch: str = "main",
        conflict_strategy: ConflictStrategy = "abort",
        cleanup_on_shutdown: bool = True
    ):
        """
        Initialize worktree manager.

        Args:
            repo_path: Root directory of the shared git repository
            base_path: Directory holding agent worktrees (relative to repo_path unless absolute)
            branch_strategy: "per-agent" or "per-task" branch naming
            base_branch: Preferred branch to cut agent branches from
            conflict_strategy: "abort", "stash", "theirs" or "ours"
            cleanup_on_shutdown: Remove every tracked worktree on shutdown
        """
        self.repo_path = Path(repo_path).resolve()
        self.git = GitRunner(self.repo_path)
        self.merger = MergeStrategy(self.repo_path)

        base_path = Path(base_path)
        self.base_path = base_path if base_path.is_absolute() else self.repo_path / base_path
        self.base_path.mkdir(parents=True, exist_ok=True)

        self.branch_strategy = branch_strategy
        self.base_branch = base_branch
        self.conflict_strategy = conflict_strategy
        self.cleanup_on_shutdown = cleanup_on_shutdown

        self.worktrees: dict[int, WorktreeInfo] = {}
        self._exclude_base_path()

    @classmethod
    def from_settings(cls, settings) -> "WorktreeManager":
        return cls(
            settings.repo_path,
            base_path=settings.worktree_base_path,
            branch_strategy=settings.branch_strategy,
            base_branch=settings.base_branch,
            conflict_strategy=settings.conflict_strategy,
            cleanup_on_shutdown=settings.cleanup_on_shutdown,
        )

    def _exclude_base_path(self) -> None:
        """Keep agent worktrees out of the main working copy's status."""
        try:
            relative = self.base_path.relative_to(self.repo_path)
        except ValueError:
            return

        exclude = Path(self.git.repo.git_dir) / "info" / "exclude"
        entry = f"/{relative.as_posix()}/"
        content = exclude.read_text() if exclude.exists() else ""
        if entry not in content.split("\n"):
            exclude.parent.mkdir(parents=True, exist_ok=True)
            with exclude.open("a") as f:
                f.write(f"\n# Agent worktrees\n{entry}\n")

    async def provision(self, agent_id: int, task_id: Optional[str] = None) -> WorktreeInfo:
        """
        Create (or return) the worktree for an agent.

        Provisioning an agent whose worktree is still on disk returns the
        existing record unchanged.

        Args:
            agent_id: Agent identifier
            task_id: Task the branch is named after with the per-task strategy

        Returns:
            WorktreeInfo for the agent

        Raises:
            WorktreeError: If the branch or worktree cannot be created
        """
        existing = self.worktrees.get(agent_id)
        if existing and Path(existing.path).exists():
            return existing

        base_branch = self.detect_base_branch()
        branch_name = self.generate_branch_name(agent_id, task_id)
        worktree_path = self.base_path / f"agent-{agent_id}"

        self._cleanup_stale_path(worktree_path)
        self.git.run_advisory("worktree", "prune")

        # Force-recreate the branch from base
        self.git.run_advisory("branch", "-D", branch_name)
        try:
            self.git.run_required("branch", branch_name, base_branch)
            self.git.run_required("worktree", "add", str(worktree_path), branch_name)
        except GitCommandFailed as e:
            logger.error(f"Failed to create worktree for agent {agent_id}: {e}")
            raise WorktreeError(f"Failed to create worktree: {e.stderr}") from e

        info = WorktreeInfo(
            agent_id=agent_id,
            path=str(worktree_path),
            branch=branch_name,
            base_branch=base_branch,
        )
        self.worktrees[agent_id] = info
        logger.info(f"Provisioned worktree {worktree_path} on {branch_name} (base {base_branch})")
        return info

    async def commit(
        self,
        agent_id: int,
        message: str,
        author_name: Optional[str] = None,
        author_email: Optional[str] = None
    ) -> str:
        """
        Commit changes in agent's worktree.

        Args:
            agent_id: Agent whose worktree to commit
            message: Commit message
            author_name: Optional author name (default: from git config)
            author_email: Optional author email (default: from git config)

        Returns:
            Commit SHA (HEAD when there was nothing to commit)

        Raises:
            WorktreeError: If the agent has no worktree or the commit fails
        """
        info = self.worktrees.get(agent_id)
        if info is None:
            raise WorktreeError(f"No worktree found for agent {agent_id}")

        worktree = GitRunner(info.path)
        worktree.run_required("add", "--all")

        if not worktree.porcelain_status():
            logger.warning(f"No changes to commit in {info.path}")
            return worktree.repo.head.commit.hexsha

        args = ["-m", message]
        if author_name and author_email:
            args.append(f"--author={author_name} <{author_email}>")

        try:
            worktree.run_required("commit", *args)
        except GitCommandFailed as e:
            raise WorktreeError(f"Failed to commit in {info.path}: {e.stderr}") from e

        commit_sha = worktree.repo.head.commit.hexsha
        logger.info(f"Committed changes in {info.path}: {commit_sha[:8]}")
        return commit_sha

    async def merge(self, agent_id: int) -> MergeResult:
        """
        Merge agent's work back to its base branch.

        Conflicts are reported in the result, not raised.

        Args:
            agent_id: Agent whose branch to merge

        Returns:
            MergeResult with commit SHA on success, conflicting (or dirty)
            files on failure
        """
        info = self.worktrees.get(agent_id)
        if info is None:
            return MergeResult(success=False, error="No worktree found for agent")

        worktree = GitRunner(info.path)
        dirty = worktree.porcelain_status()
        if dirty:
            if self.conflict_strategy == "stash":
                worktree.run_advisory(
                    "stash", "push", "--include-untracked", "-m", f"auto-stash-agent-{agent_id}"
                )
                logger.info(f"Stashed {len(dirty)} uncommitted changes for agent {agent_id}")
            else:
                return MergeResult(
                    success=False,
                    error="Uncommitted changes in worktree",
                    conflict_files=[line[3:] for line in dirty],
                )

        if not self.merger.commits_ahead(info.branch, info.base_branch):
            info.status = WorktreeStatus.MERGED
            logger.info(f"Nothing to merge for agent {agent_id}")
            return MergeResult(success=True)

        on_conflict = self.conflict_strategy if self.conflict_strategy in ("theirs", "ours") else "abort"
        result = self.merger.merge_agent_work(
            agent_branch=info.branch,
            target_branch=info.base_branch,
            commit_message=f"Merge agent-{agent_id} work from {info.branch}",
            conflict_strategy=on_conflict,
        )

        info.status = WorktreeStatus.MERGED if result.success else WorktreeStatus.CONFLICT
        return result

    async def cleanup(self, agent_id: int) -> None:
        """
        Remove agent's worktree.

        The branch is deleted only after a successful merge; unmerged work
        stays on its branch.

        Args:
            agent_id: Agent to clean up
        """
        info = self.worktrees.get(agent_id)
        if info is None:
            return

        self.git.run_advisory("worktree", "remove", "--force", info.path)
        if Path(info.path).exists():
            shutil.rmtree(info.path, ignore_errors=True)

        if info.status == WorktreeStatus.MERGED:
            if self.git.run_advisory("branch", "-d", info.branch).ok:
                logger.info(f"Deleted merged branch {info.branch}")
        else:
            logger.info(f"Keeping unmerged branch {info.branch}")

        self.git.run_advisory("worktree", "prune")

        info.status = WorktreeStatus.CLEANED
        del self.worktrees[agent_id]
        logger.info(f"Cleaned up worktree for agent {agent_id}")

    def get_worktree(self, agent_id: int) -> Optional[WorktreeInfo]:
        return self.worktrees.get(agent_id)

    def get_all_worktrees(self) -> list[WorktreeInfo]:
        """Worktrees this manager is tracking."""
        return list(self.worktrees.values())

    async def sync_with_base(self, agent_id: int, strategy: str = "rebase") -> bool:
        """
        Bring the base branch into an agent's worktree.

        Uses origin/<base> when the repository has an origin remote,
        otherwise the local base branch. Never raises.

        Args:
            agent_id: Agent to sync
            strategy: "rebase" or "merge"

        Returns:
            True if the worktree now contains the base branch
        """
        info = self.worktrees.get(agent_id)
        if info is None:
            return False

        try:
            worktree = GitRunner(info.path)
            target = info.base_branch
            if "origin" in [remote.name for remote in worktree.repo.remotes]:
                worktree.run_advisory("fetch", "origin", info.base_branch)
                if worktree.ref_exists(f"origin/{info.base_branch}"):
                    target = f"origin/{info.base_branch}"

            if strategy == "rebase":
                result = worktree.run_advisory("rebase", target)
                if not result.ok:
                    worktree.run_advisory("rebase", "--abort")
            else:
                result = worktree.run_advisory("merge", "--no-edit", target)
                if not result.ok:
                    worktree.run_advisory("merge", "--abort")

            if not result.ok:
                logger.warning(f"Sync of agent {agent_id} with {target} failed: {result.output}")
            return result.ok

        except Exception as e:
            logger.warning(f"Sync of agent {agent_id} failed: {e}")
            return False

    async def get_worktree_status(self, agent_id: int) -> WorktreeChanges:
        """
        Report uncommitted changes in an agent's worktree.

        Returns:
            WorktreeChanges; an agent without a worktree reports clean
        """
        info = self.worktrees.get(agent_id)
        if info is None or not Path(info.path).exists():
            return WorktreeChanges(clean=True)

        changes = [line[3:] for line in GitRunner(info.path).porcelain_status()]
        return WorktreeChanges(clean=not changes, changes=changes)

    async def list_all_git_worktrees(self) -> list[dict[str, str]]:
        """
        List every worktree git knows about, including ones this manager
        did not create.

        Returns:
            List of worktree info dicts with 'path' and (when attached) 'branch' keys
        """
        output = self.git.run_advisory("worktree", "list", "--porcelain")
        if not output.ok:
            return []

        worktrees = []
        current: dict[str, str] = {}

        for line in output.output.split("\n"):
            if line.startswith("worktree "):
                if current:
                    worktrees.append(current)
                current = {"path": line.split(" ", 1)[1]}
            elif line.startswith("branch "):
                current["branch"] = line.split(" ", 1)[1].removeprefix("refs/heads/")
            elif line.startswith("HEAD "):
                current["head"] = line.split(" ", 1)[1]

        if current:
            worktrees.append(current)

        return worktrees

    async def find_divergence(self) -> dict[str, list[str]]:
        """
        Compare bookkeeping with git's own worktree list.

        Only reports; nothing is repaired.

        Returns:
            'untracked': git worktrees under base_path this manager doesn't track,
            'missing': tracked worktrees git no longer lists
        """
        git_paths = {
            str(Path(wt["path"]).resolve()) for wt in await self.list_all_git_worktrees()
        }
        tracked = {str(Path(info.path).resolve()) for info in self.worktrees.values()}
        base = str(self.base_path.resolve())

        return {
            "untracked": sorted(p for p in git_paths - tracked if p.startswith(base)),
            "missing": sorted(tracked - git_paths),
        }

    async def shutdown(self) -> None:
        """Cleanup all worktrees if configured to."""
        if not self.cleanup_on_shutdown:
            logger.info(f"Leaving {len(self.worktrees)} worktrees on disk")
            return

        for agent_id in list(self.worktrees):
            await self.cleanup(agent_id)

    def detect_base_branch(self) -> str:
        """Configured branch if present, else main, else master, else the current branch."""
        for branch in dict.fromkeys([self.base_branch, "main", "master"]):
            if self.git.branch_exists(branch):
                return branch

        current = self.git.run_advisory("branch", "--show-current")
        return current.output.strip() if current.ok and current.output.strip() else "main"

    def generate_branch_name(self, agent_id: int, task_id: Optional[str] = None) -> str:
        timestamp = int(time.time() * 1000)
        if self.branch_strategy == "per-task":
            return f"agent-{agent_id}/task-{task_id or timestamp}"
        return f"agent-{agent_id}/work-{timestamp}"

    def _cleanup_stale_path(self, path: Path) -> None:
        if not path.exists():
            return

        logger.warning(f"Worktree {path} already exists, removing it")
        self.git.run_advisory("worktree", "remove", "--force", str(path))
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)


class WorktreeError(Exception):
    """Raised when a worktree cannot be provisioned or committed."""
    pass
