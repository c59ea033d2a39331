"""Merge strategy for reconciling agent branches into the base branch."""

import logging
from pathlib import Path
from typing import Literal, Optional, Union

from pydantic import BaseModel

from orchestra.git.runner import GitCommandFailed, GitRunner

logger = logging.getLogger(__name__)

ConflictStrategy = Literal["abort", "stash", "theirs", "ours"]


class ConflictInfo(BaseModel):
    """Information about a merge conflict."""
    file_path: str
    conflict_type: str  # "content", "delete/modify", "both_added"


class MergeResult(BaseModel):
    """Result of a merge operation."""
    success: bool
    commit_sha: Optional[str] = None
    conflict_files: list[str] = []
    conflicts: list[ConflictInfo] = []
    error: Optional[str] = None
    resolved_with: Optional[str] = None  # "theirs" / "ours" when conflicts were auto-resolved


class MergeStrategy:
    """
    Merges agent branches into the base branch of the main working copy.

    Always runs in the shared repository with the base branch checked out,
    never inside an agent's worktree.
    """

    def __init__(self, repo_path: Union[str, Path]):
        """
        Initialize merge strategy.

        Args:
            repo_path: Path to the main working copy
        """
        self.git = GitRunner(repo_path)

    def commits_ahead(self, agent_branch: str, target_branch: str) -> list[str]:
        """
        Commits on the agent branch that the target branch lacks.

        Returns:
            One-line log entries, newest first
        """
        output = self.git.run_advisory("log", f"{target_branch}..{agent_branch}", "--oneline")
        if not output.ok:
            return []
        return [line for line in output.output.split("\n") if line.strip()]

    def merge_agent_work(
        self,
        agent_branch: str,
        target_branch: str = "main",
        commit_message: Optional[str] = None,
        conflict_strategy: ConflictStrategy = "abort"
    ) -> MergeResult:
        """
        Merge agent's branch back to target branch with --no-ff.

        Strategy:
        1. Checkout target branch
        2. Attempt merge
        3. On conflict, abort (default) or auto-resolve with theirs/ours
        4. If successful, return commit SHA

        Args:
            agent_branch: Branch name from agent (e.g., "agent-1/work-1700000000000")
            target_branch: Target branch to merge into (default: "main")
            commit_message: Optional custom commit message
            conflict_strategy: What to do with conflicting files

        Returns:
            MergeResult with success status, commit SHA, or conflicts
        """
        try:
            self.git.run_required("checkout", target_branch)
        except GitCommandFailed as e:
            return MergeResult(
                success=False,
                error=f"Failed to checkout {target_branch}: {e.stderr}"
            )

        merge_msg = commit_message or f"Merge agent work from {agent_branch}"
        merged = self.git.run_advisory("merge", "--no-ff", agent_branch, "-m", merge_msg)

        if merged.ok:
            commit_sha = self.git.repo.head.commit.hexsha
            logger.info(f"Merged {agent_branch} into {target_branch}: {commit_sha[:8]}")
            return MergeResult(success=True, commit_sha=commit_sha)

        conflict_files = self.get_conflict_files()
        if not conflict_files:
            # Not a content conflict (e.g. unrelated histories, dirty base)
            self.abort_merge()
            logger.error(f"Merge of {agent_branch} failed: {merged.output}")
            return MergeResult(success=False, error=f"Merge failed: {merged.output}")

        conflicts = self._detect_conflicts()
        logger.warning(
            f"Merge conflict merging {agent_branch} into {target_branch}: "
            f"{', '.join(conflict_files)}"
        )

        if conflict_strategy in ("theirs", "ours"):
            return self._resolve(agent_branch, conflict_files, conflicts, conflict_strategy)

        self.abort_merge()
        return MergeResult(
            success=False,
            conflict_files=conflict_files,
            conflicts=conflicts,
            error=f"Merge conflicts in {len(conflict_files)} files"
        )

    def _resolve(
        self,
        agent_branch: str,
        conflict_files: list[str],
        conflicts: list[ConflictInfo],
        side: str
    ) -> MergeResult:
        """Take one side for every conflicting file and commit the merge."""
        for file_path in conflict_files:
            if not self.git.run_advisory("checkout", f"--{side}", "--", file_path).ok:
                # The chosen side deleted the file
                self.git.run_advisory("rm", "--quiet", "--", file_path)
                continue
            self.git.run_advisory("add", "--", file_path)

        try:
            self.git.run_required("commit", "--no-edit")
        except GitCommandFailed as e:
            self.abort_merge()
            return MergeResult(
                success=False,
                conflict_files=conflict_files,
                conflicts=conflicts,
                error=f"Failed to commit {side} resolution: {e.stderr}"
            )

        commit_sha = self.git.repo.head.commit.hexsha
        logger.info(f"Resolved conflicts merging {agent_branch} with {side}: {commit_sha[:8]}")
        return MergeResult(
            success=True,
            commit_sha=commit_sha,
            conflict_files=conflict_files,
            conflicts=conflicts,
            resolved_with=side
        )

    def get_conflict_files(self) -> list[str]:
        output = self.git.run_advisory("diff", "--name-only", "--diff-filter=U")
        if not output.ok:
            return []
        return [f for f in output.output.split("\n") if f]

    def _detect_conflicts(self) -> list[ConflictInfo]:
        """
        Parse git status to classify conflicted files.

        Returns:
            List of ConflictInfo objects
        """
        conflicts = []

        for line in self.git.porcelain_status():
            status_code = line[:2]
            file_path = line[3:].strip()

            # UU = both modified, DD = both deleted, DU/UD = deleted by one side,
            # AA = both added, AU/UA = added by one side
            if status_code == "UU":
                conflicts.append(ConflictInfo(file_path=file_path, conflict_type="content"))
            elif status_code in ("DD", "DU", "UD"):
                conflicts.append(ConflictInfo(file_path=file_path, conflict_type="delete/modify"))
            elif status_code in ("AA", "AU", "UA"):
                conflicts.append(ConflictInfo(file_path=file_path, conflict_type="both_added"))

        return conflicts

    def abort_merge(self) -> bool:
        """Abort an in-progress merge; False if there was nothing to abort."""
        aborted = self.git.run_advisory("merge", "--abort").ok
        if aborted:
            logger.info("Merge aborted")
        return aborted

    def has_conflicts(self) -> bool:
        return bool(self.get_conflict_files())

    def get_diff_files(self, branch1: str, branch2: str) -> list[str]:
        """
        Get list of files that differ between two branches.

        Returns:
            List of file paths
        """
        output = self.git.run_advisory("diff", "--name-only", branch1, branch2)
        if not output.ok:
            return []
        return [f for f in output.output.split("\n") if f]
