"""Explicit wiring of the orchestrator components."""

import logging
from typing import Optional

from git import InvalidGitRepositoryError, NoSuchPathError

from orchestra.app.config import Settings
from orchestra.git.worktree_manager import WorktreeManager
from orchestra.orchestrator.spawner import AgentSpawner
from orchestra.process.pty_manager import PTYManager
from orchestra.process.tmux import TmuxClient
from orchestra.queue.mission_queue import MissionQueue
from orchestra.queue.redis_store import RedisMissionStore
from orchestra.queue.scheduler import RetryScheduler
from orchestra.queue.store import MissionStore, SqlMissionStore

logger = logging.getLogger(__name__)


class OrchestratorContext:
    """
    Every component of one orchestrator instance.

    Built once at startup and passed to the driver, the API and tests;
    several contexts can live in one process.
    """

    def __init__(
        self,
        settings: Settings,
        store: MissionStore,
        queue: MissionQueue,
        pty_manager: PTYManager,
        spawner: AgentSpawner,
        worktree_manager: Optional[WorktreeManager] = None
    ):
        self.settings = settings
        self.store = store
        self.queue = queue
        self.pty_manager = pty_manager
        self.spawner = spawner
        self.worktree_manager = worktree_manager

    async def shutdown(self) -> None:
        """Tear down in reverse construction order."""
        await self.spawner.shutdown()
        if self.worktree_manager is not None:
            await self.worktree_manager.shutdown()
        await self.store.close()
        logger.info("Orchestrator context shut down")


def create_store(settings: Settings) -> MissionStore:
    if settings.mission_store == "redis":
        return RedisMissionStore.from_url(settings.redis_url)
    return SqlMissionStore(settings.database_url)


async def build_context(
    settings: Settings,
    store: Optional[MissionStore] = None,
    tmux: Optional[TmuxClient] = None,
    scheduler: Optional[RetryScheduler] = None
) -> OrchestratorContext:
    """
    Construct and initialize all components.

    The mission store is initialized and pending missions are recovered
    into the queue. Worktree isolation is disabled when ``repo_path`` is
    not a git repository.

    Args:
        settings: Application settings
        store: Mission store (default: chosen by ``settings.mission_store``)
        tmux: tmux client (default: real tmux)
        scheduler: Retry scheduler (default: monotonic clock)

    Returns:
        Ready OrchestratorContext
    """
    store = store or create_store(settings)
    await store.init()

    queue = MissionQueue.from_settings(store, settings, scheduler=scheduler)
    await queue.load_from_store()

    try:
        worktree_manager = WorktreeManager.from_settings(settings)
    except (InvalidGitRepositoryError, NoSuchPathError):
        logger.warning(f"{settings.repo_path} is not a git repository, worktree isolation disabled")
        worktree_manager = None

    pty_manager = PTYManager.from_settings(settings, worktree_manager=worktree_manager, tmux=tmux)
    spawner = AgentSpawner(pty_manager, spawn_stagger_ms=settings.spawn_stagger_ms)

    logger.info(
        f"Orchestrator context ready: store={settings.mission_store}, "
        f"session={settings.tmux_session_name}, "
        f"worktrees={'on' if worktree_manager else 'off'}"
    )
    return OrchestratorContext(
        settings=settings,
        store=store,
        queue=queue,
        pty_manager=pty_manager,
        spawner=spawner,
        worktree_manager=worktree_manager,
    )
