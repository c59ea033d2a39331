"""Priority and dependency aware mission queue with retry/backoff."""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from orchestra.queue.dependency_graph import DependencyGraph
from orchestra.queue.models import (
    ErrorCode,
    Mission,
    MissionError,
    MissionResult,
    MissionSpec,
    MissionStatus,
    Priority,
    calculate_backoff,
    priority_rank,
)
from orchestra.queue.scheduler import RetryScheduler
from orchestra.queue.store import MissionStore

logger = logging.getLogger(__name__)

# Statuses that count towards queue depth (waiting for an agent)
WAITING_STATUSES = (
    MissionStatus.PENDING,
    MissionStatus.QUEUED,
    MissionStatus.BLOCKED,
    MissionStatus.RETRYING,
)


class MissionQueue:
    """
    Mission queue ordered by priority and creation time.

    State machine::

        blocked -> queued -> running -> completed
                                    -> retrying -> queued
                                    -> failed
        (any non-terminal) -> cancelled

    Every transition is written through to the mission store. Backoff
    delays live in a :class:`RetryScheduler`; the driver calls
    :meth:`process_due_retries` to move elapsed retries back to ``queued``.
    """

    def __init__(
        self,
        store: MissionStore,
        scheduler: Optional[RetryScheduler] = None,
        max_queue_size: int = 1000,
        default_timeout_ms: int = 300_000,
        default_max_retries: int = 3,
        retry_base_delay_ms: int = 1000,
        retry_max_delay_ms: int = 60_000,
        retry_jitter: float = 0.0,
        cascade_cancel_on_failure: bool = False,
    ):
        """
        Initialize mission queue.

        Args:
            store: Durable mission store
            scheduler: Retry scheduler (default: one on the monotonic clock)
            max_queue_size: Waiting missions allowed before enqueue is rejected
            default_timeout_ms: Timeout for missions that don't set one
            default_max_retries: Retry budget for missions that don't set one
            retry_base_delay_ms: Backoff base delay
            retry_max_delay_ms: Backoff ceiling
            retry_jitter: Backoff jitter as a fraction of the delay
            cascade_cancel_on_failure: Cancel blocked dependents when a mission fails or is cancelled
        """
        self.store = store
        self.scheduler = scheduler if scheduler is not None else RetryScheduler()
        self.max_queue_size = max_queue_size
        self.default_timeout_ms = default_timeout_ms
        self.default_max_retries = default_max_retries
        self.retry_base_delay_ms = retry_base_delay_ms
        self.retry_max_delay_ms = retry_max_delay_ms
        self.retry_jitter = retry_jitter
        self.cascade_cancel_on_failure = cascade_cancel_on_failure

        self.missions: dict[str, Mission] = {}
        # Status of dependencies known only from the store (evicted or never loaded)
        self._external_status: dict[str, MissionStatus] = {}
        self._sequence: dict[str, int] = {}
        self._next_sequence = 0
        self._wait_started: dict[str, float] = {}
        self._wait_total_ms = 0.0
        self._wait_count = 0

    @classmethod
    def from_settings(cls, store: MissionStore, settings, scheduler: Optional[RetryScheduler] = None) -> "MissionQueue":
        return cls(
            store,
            scheduler=scheduler,
            max_queue_size=settings.max_queue_size,
            default_timeout_ms=settings.default_timeout_ms,
            default_max_retries=settings.default_max_retries,
            retry_base_delay_ms=settings.retry_base_delay_ms,
            retry_max_delay_ms=settings.retry_max_delay_ms,
            retry_jitter=settings.retry_jitter,
            cascade_cancel_on_failure=settings.cascade_cancel_on_failure,
        )

    # Queue operations

    async def enqueue(self, spec: Union[MissionSpec, dict[str, Any]]) -> str:
        """
        Validate and add a mission.

        The mission starts ``blocked`` when any dependency has not completed,
        otherwise ``queued``.

        Args:
            spec: Mission description

        Returns:
            Mission ID

        Raises:
            MissionValidationError: Invalid limits, duplicate id or unknown dependency
            QueueFullError: Too many missions already waiting
        """
        if isinstance(spec, dict):
            spec = MissionSpec(**spec)

        if not spec.prompt or not spec.prompt.strip():
            raise MissionValidationError("Mission prompt must not be empty")
        if spec.timeout_ms is not None and spec.timeout_ms < 0:
            raise MissionValidationError(f"timeout_ms must be >= 0, got {spec.timeout_ms}")
        if spec.max_retries is not None and spec.max_retries < 0:
            raise MissionValidationError(f"max_retries must be >= 0, got {spec.max_retries}")

        depth = self.get_queue_length()
        if depth >= self.max_queue_size:
            logger.error(f"Queue full, rejecting mission (depth={depth}, max={self.max_queue_size})")
            raise QueueFullError(depth, self.max_queue_size)

        mission_id = spec.id or f"mission_{uuid.uuid4().hex[:8]}"
        if mission_id in self.missions or await self.store.get(mission_id) is not None:
            raise MissionValidationError(f"Mission {mission_id} already exists")

        depends_on = list(dict.fromkeys(spec.depends_on))
        if mission_id in depends_on:
            raise MissionValidationError(f"Mission {mission_id} cannot depend on itself")
        for dep_id in depends_on:
            if not await self._resolve_dependency(dep_id):
                raise MissionValidationError(f"Mission depends on unknown mission {dep_id}")

        mission = Mission(
            id=mission_id,
            prompt=spec.prompt,
            context=spec.context,
            type=spec.type,
            priority=spec.priority,
            timeout_ms=self.default_timeout_ms if spec.timeout_ms is None else spec.timeout_ms,
            max_retries=self.default_max_retries if spec.max_retries is None else spec.max_retries,
            depends_on=depends_on,
        )
        mission.status = (
            MissionStatus.QUEUED if self._dependencies_met(mission) else MissionStatus.BLOCKED
        )

        self._track(mission)
        if mission.status == MissionStatus.QUEUED:
            self._start_wait(mission_id)

        await self.store.save(mission)
        logger.info(
            f"Enqueued mission {mission_id} ({mission.priority.value}, {mission.status.value})"
        )
        return mission_id

    async def dequeue(self, agent_id: int) -> Optional[Mission]:
        """
        Hand the next ready mission to an agent.

        Picks the highest-priority ``queued`` mission whose dependencies have
        all completed, oldest first within a priority.

        Args:
            agent_id: Agent that will run the mission

        Returns:
            Running mission, or None if nothing is eligible (or the agent is
            still running another mission)
        """
        holding = self._running_for_agent(agent_id)
        if holding:
            logger.warning(f"Agent {agent_id} still holds mission {holding.id}, not dequeuing")
            return None

        mission = self._next_ready()
        if mission is None:
            return None

        mission.status = MissionStatus.RUNNING
        mission.assigned_to = agent_id
        mission.started_at = datetime.utcnow()
        self._finish_wait(mission.id)

        await self.store.save(mission)
        logger.info(f"Dequeued mission {mission.id} for agent {agent_id}")
        return mission

    def peek(self) -> Optional[Mission]:
        """Return the mission dequeue() would pick, without changing it."""
        return self._next_ready()

    # Completion

    async def complete(self, mission_id: str, result: Union[MissionResult, dict[str, Any]]) -> list[str]:
        """
        Mark running mission completed and unblock its dependents.

        Args:
            mission_id: Mission ID
            result: Mission output

        Returns:
            IDs of missions that moved from blocked to queued

        Raises:
            MissionNotFoundError: Unknown mission
            MissionStateError: Mission is not running
        """
        mission = self._require(mission_id)
        if mission.status != MissionStatus.RUNNING:
            raise MissionStateError(
                f"Cannot complete mission {mission_id} in status {mission.status.value}"
            )

        if isinstance(result, dict):
            result = MissionResult(**result)

        mission.status = MissionStatus.COMPLETED
        mission.result = result
        mission.completed_at = datetime.utcnow()
        mission.assigned_to = None
        self.scheduler.cancel(mission_id)

        await self.store.save(mission)
        logger.info(f"Mission {mission_id} completed")

        return await self._unblock_dependents(mission_id)

    async def fail(self, mission_id: str, error: Union[MissionError, dict[str, Any]]) -> MissionStatus:
        """
        Record a failed run.

        Recoverable errors with retry budget left move the mission to
        ``retrying`` and schedule its return to ``queued``; everything else
        is a permanent failure.

        Args:
            mission_id: Mission ID
            error: Failure details

        Returns:
            Resulting status (retrying or failed)

        Raises:
            MissionNotFoundError: Unknown mission
            MissionStateError: Mission is not running
        """
        mission = self._require(mission_id)
        if mission.status != MissionStatus.RUNNING:
            raise MissionStateError(
                f"Cannot fail mission {mission_id} in status {mission.status.value}"
            )

        if isinstance(error, dict):
            error = MissionError(**error)

        mission.error = error
        if error.recoverable and mission.retry_count < mission.max_retries:
            await self._schedule_retry(mission, error.message, error.retry_after_ms)
            return mission.status

        await self._mark_failed(mission, error)
        return mission.status

    async def retry(self, mission_id: str, reason: str) -> MissionStatus:
        """
        Force a mission into ``retrying`` regardless of how it failed.

        The retry budget still applies: a mission that already used every
        retry is failed permanently instead.

        Args:
            mission_id: Mission ID
            reason: Why the retry was requested (logged)

        Returns:
            Resulting status

        Raises:
            MissionNotFoundError: Unknown mission
            MissionStateError: Mission already finished
        """
        mission = self._require(mission_id)
        if mission.is_terminal:
            raise MissionStateError(
                f"Cannot retry mission {mission_id} in status {mission.status.value}"
            )

        logger.info(f"Manual retry requested for mission {mission_id}: {reason}")

        if mission.retry_count >= mission.max_retries:
            await self._mark_failed(mission, MissionError(
                code=ErrorCode.UNKNOWN,
                message=f"Max retries ({mission.max_retries}) exceeded: {reason}",
                recoverable=False,
            ))
            return mission.status

        await self._schedule_retry(mission, reason)
        return mission.status

    async def cancel(self, mission_id: str, reason: str = "cancelled") -> list[str]:
        """
        Cancel a mission that has not finished.

        Args:
            mission_id: Mission ID
            reason: Stored on the mission error

        Returns:
            IDs of every mission cancelled (including cascaded dependents)

        Raises:
            MissionNotFoundError: Unknown mission
            MissionStateError: Mission already finished
        """
        mission = self._require(mission_id)
        if mission.is_terminal:
            raise MissionStateError(
                f"Cannot cancel mission {mission_id} in status {mission.status.value}"
            )

        await self._mark_cancelled(mission, reason)
        cancelled = [mission_id]

        if self.cascade_cancel_on_failure:
            cancelled.extend(await self._cascade_cancel(mission_id))

        return cancelled

    async def process_due_retries(self) -> list[str]:
        """
        Move missions whose backoff has elapsed back to ``queued``.

        Returns:
            IDs of requeued missions
        """
        requeued = []
        for mission_id in self.scheduler.pop_due():
            mission = self.missions.get(mission_id)
            if mission is None or mission.status != MissionStatus.RETRYING:
                continue

            mission.status = (
                MissionStatus.QUEUED if self._dependencies_met(mission) else MissionStatus.BLOCKED
            )
            mission.assigned_to = None
            mission.started_at = None
            if mission.status == MissionStatus.QUEUED:
                self._start_wait(mission_id)

            await self.store.save(mission)
            logger.info(f"Mission {mission_id} back to {mission.status.value} after backoff")
            requeued.append(mission_id)

        return requeued

    # Priority

    async def set_priority(self, mission_id: str, priority: Union[Priority, str]) -> None:
        """
        Change mission priority in place.

        Running missions keep running; the new priority only matters for
        future dequeue decisions.
        """
        mission = self._require(mission_id)
        priority = Priority(priority)
        if mission.priority == priority:
            return

        old = mission.priority
        mission.priority = priority
        await self.store.update_priority(mission_id, priority)
        logger.info(f"Mission {mission_id} priority {old.value} -> {priority.value}")

    def get_by_priority(self, priority: Union[Priority, str]) -> list[Mission]:
        priority = Priority(priority)
        return [m for m in self.missions.values() if m.priority == priority]

    # Retry bookkeeping

    def get_retry_count(self, mission_id: str) -> int:
        mission = self.missions.get(mission_id)
        return mission.retry_count if mission else 0

    async def set_retry_delay(self, mission_id: str, delay_ms: int) -> None:
        """Override the computed backoff for this mission's next retries."""
        if delay_ms < 0:
            raise MissionValidationError(f"Retry delay must be >= 0, got {delay_ms}")
        mission = self._require(mission_id)
        mission.retry_delay_ms = delay_ms
        await self.store.save(mission)

    # Dependencies

    async def add_dependency(self, mission_id: str, dep_id: str) -> None:
        """
        Make a mission wait on another one.

        Raises:
            MissionNotFoundError: Unknown mission
            MissionValidationError: Unknown dependency or dependency cycle
        """
        mission = self._require(mission_id)
        if dep_id in mission.depends_on:
            return
        if not await self._resolve_dependency(dep_id):
            raise MissionValidationError(f"Mission depends on unknown mission {dep_id}")

        graph = self._graph()
        if graph.would_create_cycle(mission_id, dep_id):
            raise MissionValidationError(
                f"Adding dependency {mission_id} -> {dep_id} would create a cycle"
            )

        mission.depends_on.append(dep_id)
        if mission.status == MissionStatus.QUEUED and not self._dependencies_met(mission):
            mission.status = MissionStatus.BLOCKED
            self._wait_started.pop(mission_id, None)

        await self.store.save(mission)

    async def remove_dependency(self, mission_id: str, dep_id: str) -> None:
        mission = self._require(mission_id)
        if dep_id not in mission.depends_on:
            return

        mission.depends_on.remove(dep_id)
        if mission.status == MissionStatus.BLOCKED and self._dependencies_met(mission):
            mission.status = MissionStatus.QUEUED
            self._start_wait(mission_id)

        await self.store.save(mission)

    def is_ready(self, mission_id: str) -> bool:
        mission = self.missions.get(mission_id)
        if mission is None:
            return False
        return self._dependencies_met(mission)

    def get_blocked(self) -> list[Mission]:
        return self.get_by_status(MissionStatus.BLOCKED)

    def get_execution_order(self) -> list[list[str]]:
        """
        Unfinished missions grouped into levels that can run in parallel.

        Dependencies that already finished are left out.
        """
        unfinished = {m.id: m for m in self.missions.values() if not m.is_terminal}
        return DependencyGraph.from_pairs(
            (m.id, [d for d in m.depends_on if d in unfinished]) for m in unfinished.values()
        ).get_execution_order()

    # Status

    def get_mission(self, mission_id: str) -> Optional[Mission]:
        return self.missions.get(mission_id)

    def get_by_status(self, status: Union[MissionStatus, str]) -> list[Mission]:
        status = MissionStatus(status)
        return [m for m in self.missions.values() if m.status == status]

    def get_all_missions(self) -> list[Mission]:
        return list(self.missions.values())

    # Timeouts

    async def extend_timeout(self, mission_id: str, additional_ms: int) -> bool:
        mission = self.missions.get(mission_id)
        if mission is None:
            return False

        mission.timeout_ms += additional_ms
        await self.store.save(mission)
        logger.info(
            f"Extended timeout for {mission_id} by {additional_ms}ms (now {mission.timeout_ms}ms)"
        )
        return True

    def expired_missions(self, now: Optional[datetime] = None) -> list[Mission]:
        """
        Running missions past their deadline.

        Timeouts are advisory: the driver decides to fail these.
        """
        now = now or datetime.utcnow()
        return [
            m for m in self.missions.values()
            if m.status == MissionStatus.RUNNING
            and m.started_at is not None
            and now - m.started_at > timedelta(milliseconds=m.timeout_ms)
        ]

    # Recovery

    async def load_pending_missions(self) -> list[Mission]:
        """Missions the store reports as still needing work."""
        return await self.store.load_pending()

    async def load_from_store(self) -> int:
        """
        Rebuild in-memory state after a restart.

        Interrupted ``running`` missions and ``retrying`` missions whose
        backoff timer was lost go back to ``queued``.

        Returns:
            Number of missions loaded
        """
        loaded = 0
        for mission in await self.store.load_pending():
            if mission.id in self.missions:
                continue

            self._track(mission)
            loaded += 1

            if mission.status in (MissionStatus.RUNNING, MissionStatus.RETRYING):
                logger.info(f"Recovering interrupted mission {mission.id} ({mission.status.value})")
                mission.status = MissionStatus.QUEUED
                mission.assigned_to = None
                mission.started_at = None
                await self.store.save(mission)

        # Dependencies outside the pending set are looked up once
        for mission in list(self.missions.values()):
            for dep_id in mission.depends_on:
                await self._resolve_dependency(dep_id)

        for mission in list(self.missions.values()):
            if mission.status not in (
                MissionStatus.PENDING, MissionStatus.QUEUED, MissionStatus.BLOCKED
            ):
                continue

            status = (
                MissionStatus.QUEUED if self._dependencies_met(mission) else MissionStatus.BLOCKED
            )
            if status != mission.status:
                mission.status = status
                await self.store.save(mission)
            if status == MissionStatus.QUEUED:
                self._start_wait(mission.id)

        if loaded:
            logger.info(f"Recovered {loaded} missions from store")
        return loaded

    def evict_finished(self, older_than_ms: int = 3_600_000) -> int:
        """
        Drop finished missions from memory; their stored rows stay.

        Returns:
            Number of missions evicted
        """
        cutoff = datetime.utcnow() - timedelta(milliseconds=older_than_ms)
        evicted = 0
        for mission_id, mission in list(self.missions.items()):
            if mission.is_terminal and mission.completed_at and mission.completed_at < cutoff:
                self._external_status[mission_id] = mission.status
                del self.missions[mission_id]
                self._sequence.pop(mission_id, None)
                self._wait_started.pop(mission_id, None)
                evicted += 1
        return evicted

    # Metrics

    def get_queue_length(self) -> int:
        return sum(1 for m in self.missions.values() if m.status in WAITING_STATUSES)

    def get_average_wait_time(self) -> float:
        if not self._wait_count:
            return 0.0
        return self._wait_total_ms / self._wait_count

    def get_metrics(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        by_priority: dict[str, int] = {}
        for mission in self.missions.values():
            by_status[mission.status.value] = by_status.get(mission.status.value, 0) + 1
            by_priority[mission.priority.value] = by_priority.get(mission.priority.value, 0) + 1

        depth = self.get_queue_length()
        return {
            "queue_depth": depth,
            "max_queue_size": self.max_queue_size,
            "utilization": depth / self.max_queue_size if self.max_queue_size else 0.0,
            "by_status": by_status,
            "by_priority": by_priority,
            "pending_retries": len(self.scheduler),
            "average_wait_time_ms": self.get_average_wait_time(),
        }

    # Internal helpers

    def _require(self, mission_id: str) -> Mission:
        mission = self.missions.get(mission_id)
        if mission is None:
            raise MissionNotFoundError(f"Mission {mission_id} not found")
        return mission

    def _track(self, mission: Mission) -> None:
        self.missions[mission.id] = mission
        self._external_status.pop(mission.id, None)
        self._sequence[mission.id] = self._next_sequence
        self._next_sequence += 1

    def _next_ready(self) -> Optional[Mission]:
        candidates = [
            m for m in self.missions.values()
            if m.status == MissionStatus.QUEUED and self._dependencies_met(m)
        ]
        if not candidates:
            return None
        return min(
            candidates,
            key=lambda m: (priority_rank(m.priority), m.created_at, self._sequence.get(m.id, 0)),
        )

    def _running_for_agent(self, agent_id: int) -> Optional[Mission]:
        for mission in self.missions.values():
            if mission.status == MissionStatus.RUNNING and mission.assigned_to == agent_id:
                return mission
        return None

    def _status_of(self, mission_id: str) -> Optional[MissionStatus]:
        mission = self.missions.get(mission_id)
        if mission is not None:
            return mission.status
        return self._external_status.get(mission_id)

    def _dependencies_met(self, mission: Mission) -> bool:
        return all(
            self._status_of(dep_id) == MissionStatus.COMPLETED
            for dep_id in mission.depends_on
        )

    async def _resolve_dependency(self, dep_id: str) -> bool:
        """Make sure a dependency's status is known; False if it doesn't exist."""
        if self._status_of(dep_id) is not None:
            return True
        stored = await self.store.get(dep_id)
        if stored is None:
            return False
        self._external_status[dep_id] = stored.status
        return True

    def _graph(self) -> DependencyGraph:
        return DependencyGraph.from_pairs(
            (m.id, m.depends_on) for m in self.missions.values()
        )

    async def _schedule_retry(
        self,
        mission: Mission,
        reason: str,
        retry_after_ms: Optional[int] = None
    ) -> None:
        mission.retry_count += 1
        mission.status = MissionStatus.RETRYING

        if mission.retry_delay_ms is not None:
            delay = mission.retry_delay_ms
        elif retry_after_ms is not None:
            delay = retry_after_ms
        else:
            delay = calculate_backoff(
                mission.retry_count,
                self.retry_base_delay_ms,
                self.retry_max_delay_ms,
                self.retry_jitter,
            )

        self.scheduler.schedule(mission.id, delay)
        await self.store.save(mission)
        logger.warning(
            f"Mission {mission.id} retrying ({mission.retry_count}/{mission.max_retries}) "
            f"in {delay}ms: {reason}"
        )

    async def _mark_failed(self, mission: Mission, error: MissionError) -> None:
        mission.status = MissionStatus.FAILED
        mission.error = error
        mission.completed_at = datetime.utcnow()
        mission.assigned_to = None
        self.scheduler.cancel(mission.id)

        await self.store.save(mission)
        logger.error(f"Mission {mission.id} failed permanently: {error.message}")

        if self.cascade_cancel_on_failure:
            await self._cascade_cancel(mission.id)

    async def _mark_cancelled(self, mission: Mission, reason: str) -> None:
        mission.status = MissionStatus.CANCELLED
        mission.error = MissionError(code=ErrorCode.UNKNOWN, message=reason, recoverable=False)
        mission.completed_at = datetime.utcnow()
        mission.assigned_to = None
        self.scheduler.cancel(mission.id)
        self._wait_started.pop(mission.id, None)

        await self.store.save(mission)
        logger.info(f"Mission {mission.id} cancelled: {reason}")

    async def _cascade_cancel(self, root_id: str) -> list[str]:
        cancelled = []
        for dependent_id in sorted(self._graph().get_dependents(root_id)):
            dependent = self.missions.get(dependent_id)
            if dependent is None or dependent.status != MissionStatus.BLOCKED:
                continue
            await self._mark_cancelled(dependent, f"Dependency {root_id} did not complete")
            cancelled.append(dependent_id)
        return cancelled

    async def _unblock_dependents(self, completed_id: str) -> list[str]:
        unblocked = []
        for mission in self.missions.values():
            if mission.status != MissionStatus.BLOCKED or completed_id not in mission.depends_on:
                continue
            if not self._dependencies_met(mission):
                continue

            mission.status = MissionStatus.QUEUED
            self._start_wait(mission.id)
            unblocked.append(mission.id)

        for mission_id in unblocked:
            await self.store.save(self.missions[mission_id])
            logger.info(f"Mission {mission_id} unblocked by {completed_id}")

        return unblocked

    def _start_wait(self, mission_id: str) -> None:
        self._wait_started[mission_id] = self.scheduler.clock.now_ms()

    def _finish_wait(self, mission_id: str) -> None:
        started = self._wait_started.pop(mission_id, None)
        if started is not None:
            self._wait_total_ms += self.scheduler.clock.now_ms() - started
            self._wait_count += 1


class MissionValidationError(Exception):
    """Raised when a mission spec or dependency change is invalid."""
    pass


class MissionNotFoundError(Exception):
    """Raised when an operation names an unknown mission."""
    pass


class MissionStateError(Exception):
    """Raised when a transition is not allowed from the mission's status."""
    pass


class QueueFullError(Exception):
    """Raised when the queue rejects work to apply backpressure."""

    def __init__(self, queue_size: int, max_size: int):
        super().__init__(f"Queue full: {queue_size}/{max_size} missions. Apply backpressure.")
        self.queue_size = queue_size
        self.max_size = max_size
