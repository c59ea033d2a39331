"""Shared fixtures: temporary git repositories, a tmux stand-in and an in-memory redis."""

import os
import subprocess
from pathlib import Path
from typing import Optional

import git as gitpython_module
import pytest
import pytest_asyncio

from orchestra.app.config import Settings
from orchestra.queue.scheduler import ManualClock, RetryScheduler
from orchestra.queue.store import SqlMissionStore


def init_repo(path: Path) -> gitpython_module.Repo:
    """Git repository on branch main with one commit."""
    path.mkdir(parents=True, exist_ok=True)
    repo = gitpython_module.Repo.init(path)

    with repo.config_writer() as config:
        config.set_value("user", "name", "Test Agent")
        config.set_value("user", "email", "agent@example.com")
        config.set_value("commit", "gpgsign", "false")

    readme = path / "README.md"
    readme.write_text("# Test Project\n")
    shared = path / "shared.txt"
    shared.write_text("line one\n")
    repo.index.add(["README.md", "shared.txt"])
    repo.index.commit("Initial commit")
    repo.git.branch("-M", "main")
    return repo


@pytest.fixture
def git_repo(tmp_path):
    """Path of a fresh repository with an initial commit on main."""
    project_path = tmp_path / "project"
    init_repo(project_path)
    return project_path


class FakeTmux:
    """
    Stands in for tmux: every pane is a real ``sleep`` process so pids,
    signals and psutil lookups behave like the real thing.
    """

    def __init__(self):
        self.sessions: dict[str, tuple[int, int]] = {}
        self.panes: dict[str, subprocess.Popen] = {}
        self.pane_info: dict[str, dict] = {}
        self.sent_keys: list[tuple[str, str]] = []
        self.unresponsive: set[str] = set()
        self._next_pane = 0

    def is_available(self) -> bool:
        return True

    def has_session(self, session: str) -> bool:
        return session in self.sessions

    def new_session(self, session: str, cols: int, rows: int) -> None:
        self.sessions[session] = (cols, rows)

    def split_window(self, session: str, cwd: Optional[str] = None,
                     env: Optional[dict[str, str]] = None, shell: Optional[str] = None) -> str:
        pane_id = f"%{self._next_pane}"
        self._next_pane += 1
        self.panes[pane_id] = subprocess.Popen(["sleep", "300"])
        self.pane_info[pane_id] = {"session": session, "cwd": cwd, "env": dict(env or {}), "shell": shell}
        return pane_id

    def select_layout(self, session: str, layout: str = "tiled") -> None:
        pass

    def send_keys(self, pane_id: str, keys: str, enter: bool = True) -> None:
        self.sent_keys.append((pane_id, keys))

    def pane_pid(self, pane_id: str) -> int:
        process = self.panes.get(pane_id)
        return process.pid if process else 0

    def capture_pane(self, pane_id: str) -> Optional[str]:
        process = self.panes.get(pane_id)
        if process is None or pane_id in self.unresponsive or process.poll() is not None:
            return None
        return ""

    def kill_pane(self, pane_id: str) -> None:
        process = self.panes.pop(pane_id, None)
        if process is not None:
            process.kill()
            process.wait()

    def kill_session(self, session: str) -> None:
        self.sessions.pop(session, None)
        for pane_id in list(self.panes):
            self.kill_pane(pane_id)

    def crash(self, pane_id: str) -> None:
        """Kill the pane's process but leave the pane registered."""
        process = self.panes[pane_id]
        process.kill()
        process.wait()

    def live_panes(self) -> list[str]:
        return [p for p, proc in self.panes.items() if proc.poll() is None]


@pytest.fixture
def fake_tmux():
    tmux = FakeTmux()
    yield tmux
    tmux.kill_session("all")


class FakeRedis:
    """In-memory subset of redis.asyncio used by the mission store."""

    def __init__(self):
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}
        self.closed = False

    async def ping(self) -> bool:
        return True

    async def exists(self, key: str) -> int:
        return int(key in self.hashes or key in self.sets)

    async def hset(self, key: str, mapping: dict[str, str]) -> int:
        current = self.hashes.setdefault(key, {})
        added = len(set(mapping) - set(current))
        current.update({k: str(v) for k, v in mapping.items()})
        return added

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def sadd(self, key: str, *members: str) -> int:
        current = self.sets.setdefault(key, set())
        added = len(set(members) - current)
        current.update(members)
        return added

    async def srem(self, key: str, *members: str) -> int:
        current = self.sets.get(key, set())
        removed = len(current & set(members))
        current.difference_update(members)
        return removed

    async def smembers(self, key: str) -> set[str]:
        return set(self.sets.get(key, set()))

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return ManualClock(0)


@pytest.fixture
def scheduler(clock):
    return RetryScheduler(clock)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'missions.db'}"


@pytest_asyncio.fixture
async def sql_store(database_url):
    store = SqlMissionStore(database_url)
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def settings(tmp_path, git_repo, database_url):
    """Settings pointing at temporary resources with short delays."""
    return Settings(
        _env_file=None,
        database_url=database_url,
        repo_path=str(git_repo),
        worktree_base_path=".worktrees",
        tmux_session_name=f"test-agents-{os.getpid()}",
        health_check_interval_ms=0,
        settle_delay_ms=50,
        restart_delay_ms=50,
        spawn_stagger_ms=0,
        retry_base_delay_ms=100,
        driver_poll_interval_ms=10,
    )
