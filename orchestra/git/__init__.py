"""Workspace isolation through git worktrees."""

from orchestra.git.merge_strategy import ConflictInfo, MergeResult, MergeStrategy
from orchestra.git.runner import GitCommandFailed, GitOutput, GitRunner
from orchestra.git.worktree_manager import (
    WorktreeChanges,
    WorktreeError,
    WorktreeInfo,
    WorktreeManager,
    WorktreeStatus,
)

__all__ = [
    "ConflictInfo",
    "MergeResult",
    "MergeStrategy",
    "GitCommandFailed",
    "GitOutput",
    "GitRunner",
    "WorktreeChanges",
    "WorktreeError",
    "WorktreeInfo",
    "WorktreeManager",
    "WorktreeStatus",
]
