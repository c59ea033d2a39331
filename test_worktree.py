"""Tests for WorktreeManager provisioning, status, sync and cleanup."""

import re
import shutil
from pathlib import Path

import git as gitpython_module
import pytest

from orchestra.git.worktree_manager import WorktreeManager, WorktreeStatus


def branch_exists(repo_path: Path, branch: str) -> bool:
    return bool(gitpython_module.Repo(repo_path).git.branch("--list", branch).strip())


async def write_and_commit(manager: WorktreeManager, agent_id: int, filename: str, content: str) -> str:
    info = manager.get_worktree(agent_id)
    (Path(info.path) / filename).write_text(content)
    return await manager.commit(agent_id, f"Agent {agent_id}: update {filename}")


@pytest.mark.asyncio
async def test_provision_creates_isolated_worktree(git_repo):
    manager = WorktreeManager(git_repo)

    info = await manager.provision(1)

    expected = (git_repo / ".worktrees" / "agent-1").resolve()
    assert Path(info.path) == expected
    assert expected.is_dir()
    assert (expected / "README.md").exists()
    assert re.fullmatch(r"agent-1/work-\d+", info.branch)
    assert info.base_branch == "main"
    assert info.status == WorktreeStatus.ACTIVE
    assert gitpython_module.Repo(expected).active_branch.name == info.branch


@pytest.mark.asyncio
async def test_provision_is_idempotent(git_repo):
    manager = WorktreeManager(git_repo)

    first = await manager.provision(1)
    second = await manager.provision(1)

    assert second.path == first.path
    assert second.branch == first.branch
    assert len(manager.get_all_worktrees()) == 1


@pytest.mark.asyncio
async def test_per_task_branch_names(git_repo):
    manager = WorktreeManager(git_repo, branch_strategy="per-task")

    info = await manager.provision(3, task_id="mission_abc")

    assert info.branch == "agent-3/task-mission_abc"


@pytest.mark.asyncio
async def test_base_branch_falls_back_to_main(git_repo):
    manager = WorktreeManager(git_repo, base_branch="develop")

    assert manager.detect_base_branch() == "main"

    gitpython_module.Repo(git_repo).git.branch("develop")
    assert manager.detect_base_branch() == "develop"


@pytest.mark.asyncio
async def test_base_branch_falls_back_to_current_branch(git_repo):
    gitpython_module.Repo(git_repo).git.branch("-M", "trunk")
    manager = WorktreeManager(git_repo)

    assert manager.detect_base_branch() == "trunk"


@pytest.mark.asyncio
async def test_stale_directory_is_replaced(git_repo):
    stale = git_repo / ".worktrees" / "agent-2"
    stale.mkdir(parents=True)
    (stale / "leftover.txt").write_text("old run\n")
    manager = WorktreeManager(git_repo)

    info = await manager.provision(2)

    assert not (Path(info.path) / "leftover.txt").exists()
    assert (Path(info.path) / "README.md").exists()


@pytest.mark.asyncio
async def test_worktrees_are_excluded_from_main_status(git_repo):
    manager = WorktreeManager(git_repo)
    await manager.provision(1)

    exclude = (git_repo / ".git" / "info" / "exclude").read_text()
    assert "/.worktrees/" in exclude
    assert not gitpython_module.Repo(git_repo).is_dirty(untracked_files=True)

    # Reopening the manager doesn't duplicate the entry
    WorktreeManager(git_repo)
    assert (git_repo / ".git" / "info" / "exclude").read_text().count("/.worktrees/") == 1


@pytest.mark.asyncio
async def test_worktree_status_and_commit(git_repo):
    manager = WorktreeManager(git_repo)
    info = await manager.provision(1)

    assert (await manager.get_worktree_status(1)).clean

    (Path(info.path) / "feature.py").write_text("print('hi')\n")
    status = await manager.get_worktree_status(1)
    assert not status.clean
    assert status.changes == ["feature.py"]

    sha = await manager.commit(1, "Add feature", author_name="Agent One", author_email="one@example.com")

    worktree_repo = gitpython_module.Repo(info.path)
    assert worktree_repo.head.commit.hexsha == sha
    assert worktree_repo.head.commit.author.name == "Agent One"
    assert (await manager.get_worktree_status(1)).clean

    # Nothing left to commit
    assert await manager.commit(1, "Empty") == sha


@pytest.mark.asyncio
async def test_cleanup_after_merge_deletes_branch(git_repo):
    manager = WorktreeManager(git_repo)
    info = await manager.provision(1)
    await write_and_commit(manager, 1, "done.txt", "finished\n")

    result = await manager.merge(1)
    assert result.success
    await manager.cleanup(1)

    assert not Path(info.path).exists()
    assert not branch_exists(git_repo, info.branch)
    assert manager.get_worktree(1) is None


@pytest.mark.asyncio
async def test_cleanup_of_unmerged_work_keeps_branch(git_repo):
    manager = WorktreeManager(git_repo)
    info = await manager.provision(1)
    await write_and_commit(manager, 1, "wip.txt", "half done\n")

    await manager.cleanup(1)

    assert not Path(info.path).exists()
    assert branch_exists(git_repo, info.branch)
    assert gitpython_module.Repo(git_repo).git.worktree("list").count("\n") == 0


@pytest.mark.asyncio
async def test_cleanup_unknown_agent_is_noop(git_repo):
    manager = WorktreeManager(git_repo)

    await manager.cleanup(42)


@pytest.mark.asyncio
async def test_sync_with_base_brings_in_new_commits(git_repo):
    manager = WorktreeManager(git_repo)
    info = await manager.provision(1)
    await write_and_commit(manager, 1, "agent.txt", "agent work\n")

    repo = gitpython_module.Repo(git_repo)
    (git_repo / "upstream.txt").write_text("from base\n")
    repo.index.add(["upstream.txt"])
    repo.index.commit("Upstream change")

    assert await manager.sync_with_base(1, "rebase")
    assert (Path(info.path) / "upstream.txt").exists()
    assert (Path(info.path) / "agent.txt").exists()


@pytest.mark.asyncio
async def test_sync_with_merge_strategy(git_repo):
    manager = WorktreeManager(git_repo)
    info = await manager.provision(1)

    repo = gitpython_module.Repo(git_repo)
    (git_repo / "upstream.txt").write_text("from base\n")
    repo.index.add(["upstream.txt"])
    repo.index.commit("Upstream change")

    assert await manager.sync_with_base(1, "merge")
    assert (Path(info.path) / "upstream.txt").exists()


@pytest.mark.asyncio
async def test_sync_failures_return_false(git_repo):
    manager = WorktreeManager(git_repo)
    info = await manager.provision(1)
    await write_and_commit(manager, 1, "shared.txt", "agent version\n")

    repo = gitpython_module.Repo(git_repo)
    (git_repo / "shared.txt").write_text("base version\n")
    repo.index.add(["shared.txt"])
    repo.index.commit("Conflicting base change")

    assert not await manager.sync_with_base(1, "rebase")
    assert not await manager.sync_with_base(99, "rebase")

    # Failed rebase was aborted, work still there
    assert (Path(info.path) / "shared.txt").read_text() == "agent version\n"


@pytest.mark.asyncio
async def test_git_view_and_bookkeeping_can_diverge(git_repo):
    manager = WorktreeManager(git_repo)
    first = await manager.provision(1)
    await manager.provision(2)

    git_paths = {Path(w["path"]).resolve() for w in await manager.list_all_git_worktrees()}
    assert Path(first.path) in git_paths
    assert git_repo.resolve() in git_paths
    assert await manager.find_divergence() == {"untracked": [], "missing": []}

    # Someone removes a worktree behind the manager's back
    repo = gitpython_module.Repo(git_repo)
    repo.git.worktree("remove", "--force", first.path)

    divergence = await manager.find_divergence()
    assert divergence["missing"] == [str(Path(first.path).resolve())]
    assert len(manager.get_all_worktrees()) == 2


@pytest.mark.asyncio
async def test_shutdown_respects_cleanup_setting(git_repo):
    keeper = WorktreeManager(git_repo, cleanup_on_shutdown=False)
    info = await keeper.provision(1)
    await keeper.shutdown()
    assert Path(info.path).exists()

    cleaner = WorktreeManager(git_repo)
    info = await cleaner.provision(2)
    await cleaner.shutdown()
    assert not Path(info.path).exists()
    assert cleaner.get_all_worktrees() == []


@pytest.mark.asyncio
async def test_provision_after_directory_vanishes(git_repo):
    manager = WorktreeManager(git_repo)
    first = await manager.provision(1)
    shutil.rmtree(first.path)

    second = await manager.provision(1)

    assert Path(second.path).is_dir()
    assert (Path(second.path) / "README.md").exists()
