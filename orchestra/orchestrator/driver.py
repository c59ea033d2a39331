"""Control loop connecting the mission queue to the agent pool."""

import asyncio
import logging
import time
import traceback
from typing import TYPE_CHECKING, Optional, Protocol, Union

from orchestra.orchestrator.roles import Task
from orchestra.orchestrator.spawner import Agent, AgentConfig
from orchestra.queue.mission_queue import MissionStateError
from orchestra.queue.models import ErrorCode, Mission, MissionError, MissionResult, is_recoverable

if TYPE_CHECKING:
    from orchestra.app.context import OrchestratorContext

logger = logging.getLogger(__name__)


class MissionExecutor(Protocol):
    """Runs one mission on one agent and returns its output."""

    async def __call__(self, agent: Agent, mission: Mission) -> Union[MissionResult, str]:
        ...


class MissionDriver:
    """
    Single control loop of the orchestrator.

    Each ``tick``:
    1. Moves elapsed retries back to queued
    2. Fails running missions past their timeout (recoverable)
    3. Hands ready missions to idle agents and runs the executor as a task

    Completions, failures and merges are reported from those tasks. Every
    mutation happens on this event loop; merges additionally hold a lock so
    two agents never merge into the base branch at once.
    """

    def __init__(
        self,
        context: "OrchestratorContext",
        executor: MissionExecutor,
        poll_interval_ms: Optional[int] = None,
        auto_merge: Optional[bool] = None
    ):
        """
        Initialize driver.

        Args:
            context: Orchestrator components
            executor: Coroutine function doing the actual work
            poll_interval_ms: Pause between ticks in run() (default: from settings)
            auto_merge: Merge an agent's worktree after success (default: from settings)
        """
        self.context = context
        self.executor = executor
        self.poll_interval_ms = (
            poll_interval_ms if poll_interval_ms is not None
            else context.settings.driver_poll_interval_ms
        )
        self.auto_merge = auto_merge if auto_merge is not None else context.settings.auto_merge

        self.running: dict[str, asyncio.Task] = {}
        self._merge_lock = asyncio.Lock()
        self._stop = asyncio.Event()

    async def ensure_agents(self, count: Optional[int] = None, template: Optional[AgentConfig] = None) -> int:
        """
        Spawn agents until the pool has ``count`` members.

        Returns:
            Number of agents spawned
        """
        count = count if count is not None else self.context.settings.max_agents
        missing = count - len(self.context.spawner.get_all_agents())
        if missing <= 0:
            return 0
        await self.context.spawner.spawn_pool(missing, template)
        return missing

    async def tick(self) -> list[str]:
        """
        Run one scheduling pass.

        Returns:
            Ids of missions started during this pass
        """
        queue = self.context.queue
        spawner = self.context.spawner

        await queue.process_due_retries()

        for mission in queue.expired_missions():
            await self._time_out(mission)

        started = []
        while spawner.get_available_agent() is not None:
            mission = queue.peek()
            if mission is None:
                break

            agent = await spawner.distribute_task(Task.from_mission(mission))
            dequeued = await queue.dequeue(agent.id)
            if dequeued is None or dequeued.id != mission.id:
                logger.error(f"Agent {agent.id} could not take mission {mission.id}")
                spawner.complete_task(mission.id, False)
                break

            self.running[dequeued.id] = asyncio.create_task(self._execute(agent, dequeued))
            started.append(dequeued.id)

        return started

    async def run(self) -> None:
        """Tick until stop() is called."""
        self._stop.clear()
        logger.info(f"Mission driver started (poll every {self.poll_interval_ms}ms)")

        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Driver tick failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval_ms / 1000)
            except asyncio.TimeoutError:
                pass

        logger.info("Mission driver stopped")

    def stop(self) -> None:
        self._stop.set()

    async def drain(self) -> None:
        """Wait for every running executor task to finish."""
        while self.running:
            await asyncio.gather(*list(self.running.values()), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self.running.values()):
            task.cancel()
        await asyncio.gather(*list(self.running.values()), return_exceptions=True)
        self.running.clear()

    async def _execute(self, agent: Agent, mission: Mission) -> None:
        queue = self.context.queue
        spawner = self.context.spawner
        started = time.monotonic()

        try:
            try:
                output = await self.executor(agent, mission)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = classify_error(e)
                logger.warning(f"Mission {mission.id} failed on agent {agent.id}: {error.message}")
                try:
                    await queue.fail(mission.id, error)
                except MissionStateError as state_error:
                    logger.info(f"Ignoring late failure of {mission.id}: {state_error}")
                spawner.complete_task(mission.id, False)
                return

            if isinstance(output, MissionResult):
                result = output
            else:
                result = MissionResult(
                    output=str(output),
                    duration_ms=int((time.monotonic() - started) * 1000),
                )

            try:
                await queue.complete(mission.id, result)
            except MissionStateError as state_error:
                # Timed out or cancelled while the executor was still running
                logger.info(f"Ignoring late completion of {mission.id}: {state_error}")
                spawner.complete_task(mission.id, False)
                return
            spawner.complete_task(mission.id, True)

            if self.auto_merge and agent.worktree_path and self.context.worktree_manager:
                await self._merge(agent)
        finally:
            self.running.pop(mission.id, None)

    async def _merge(self, agent: Agent) -> None:
        async with self._merge_lock:
            result = await self.context.worktree_manager.merge(agent.id)

        if result.success:
            logger.info(f"Merged work of agent {agent.id} ({result.commit_sha or 'no changes'})")
        else:
            logger.warning(
                f"Merge of agent {agent.id} failed: {result.error} {', '.join(result.conflict_files)}"
            )

    async def _time_out(self, mission: Mission) -> None:
        task = self.running.pop(mission.id, None)
        if task is not None:
            task.cancel()

        await self.context.queue.fail(
            mission.id,
            MissionError(
                code=ErrorCode.TIMEOUT,
                message=f"Mission exceeded timeout of {mission.timeout_ms}ms",
                recoverable=True,
            ),
        )
        self.context.spawner.complete_task(mission.id, False)


class MissionExecutionError(Exception):
    """Raised by executors to report a specific failure code."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.UNKNOWN,
                 retry_after_ms: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.retry_after_ms = retry_after_ms


def classify_error(exc: BaseException) -> MissionError:
    """Turn an executor exception into a MissionError."""
    retry_after_ms = None
    if isinstance(exc, MissionExecutionError):
        code = exc.code
        retry_after_ms = exc.retry_after_ms
    elif isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        code = ErrorCode.TIMEOUT
    elif isinstance(exc, PermissionError):
        code = ErrorCode.AUTH
    elif isinstance(exc, (MemoryError, OSError)):
        code = ErrorCode.RESOURCE
    elif isinstance(exc, ValueError):
        code = ErrorCode.VALIDATION
    else:
        code = ErrorCode.UNKNOWN

    return MissionError(
        code=code,
        message=str(exc) or exc.__class__.__name__,
        recoverable=is_recoverable(code),
        retry_after_ms=retry_after_ms,
        stack_trace="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    )
