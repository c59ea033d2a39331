"""
Process lifecycle manager.

Hosts every agent process in a pane of one shared tmux session, checks it
periodically and restarts it when it dies.
"""

import asyncio
import logging
import os
import signal as signals
import sys
from datetime import datetime
from enum import Enum
from typing import Literal, Optional

import psutil
from pydantic import BaseModel, Field

from orchestra.git.worktree_manager import WorktreeManager
from orchestra.process.events import AgentEvent, EventBus, EventType, Subscription
from orchestra.process.tmux import TmuxClient

logger = logging.getLogger(__name__)


class ProcessStatus(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"
    IDLE = "idle"
    BUSY = "busy"
    WORKING = "working"
    ERROR = "error"


class PTYConfig(BaseModel):
    """How to launch one agent process."""
    cwd: str = Field(default_factory=os.getcwd)
    env: dict[str, str] = {}
    shell: str = "/bin/bash"
    command: Optional[str] = None
    cols: int = 120
    rows: int = 30
    health_check_interval_ms: int = 5000
    auto_restart: bool = True
    use_worktree: bool = False
    task_id: Optional[str] = None


class PTYHandle(BaseModel):
    """A running agent process bound to a tmux pane."""
    agent_id: int
    pid: int
    pane_id: str
    status: ProcessStatus = ProcessStatus.STARTING
    started_at: datetime = Field(default_factory=datetime.utcnow)
    last_heartbeat: datetime = Field(default_factory=datetime.utcnow)
    worktree_path: Optional[str] = None
    worktree_branch: Optional[str] = None
    config: PTYConfig


class HealthStatus(BaseModel):
    """Result of one health check."""
    agent_id: int
    alive: bool
    responsive: bool
    last_heartbeat: Optional[datetime] = None
    memory_bytes: Optional[int] = None
    cpu_percent: Optional[float] = None
    idle_time_ms: int = 0


class PTYManager:
    """
    Starts, checks, restarts and stops agent processes.

    All mutation happens on the event loop; health checks, settle delays and
    crash restarts run as asyncio tasks owned by the manager.
    """

    def __init__(
        self,
        session_name: str,
        tmux: Optional[TmuxClient] = None,
        worktree_manager: Optional[WorktreeManager] = None,
        default_config: Optional[PTYConfig] = None,
        agent_command: str = "claude",
        settle_delay_ms: int = 2000,
        restart_delay_ms: int = 2000,
        restart_wait_ms: int = 1000
    ):
        """
        Initialize PTY manager.

        Args:
            session_name: tmux session shared by all agents
            tmux: tmux client (default: real tmux binary)
            worktree_manager: Used when a spawn asks for worktree isolation
            default_config: Base config merged under every spawn config
            agent_command: Command typed into the pane; may use {agent_id}, {role}, {model}
            settle_delay_ms: Time after spawn before a process counts as idle
            restart_delay_ms: Time after a detected crash before restarting
            restart_wait_ms: Pause between kill and respawn in restart()
        """
        self.session_name = session_name
        self.tmux = tmux or TmuxClient()
        self.worktree_manager = worktree_manager
        self.default_config = default_config or PTYConfig()
        self.agent_command = agent_command
        self.settle_delay_ms = settle_delay_ms
        self.restart_delay_ms = restart_delay_ms
        self.restart_wait_ms = restart_wait_ms

        self.handles: dict[int, PTYHandle] = {}
        self.events = EventBus()
        self._health_tasks: dict[int, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._processes: dict[int, psutil.Process] = {}

    @classmethod
    def from_settings(cls, settings, worktree_manager: Optional[WorktreeManager] = None,
                      tmux: Optional[TmuxClient] = None) -> "PTYManager":
        return cls(
            settings.tmux_session_name,
            tmux=tmux,
            worktree_manager=worktree_manager,
            default_config=PTYConfig(
                cwd=settings.repo_path,
                shell=settings.shell,
                cols=settings.pane_cols,
                rows=settings.pane_rows,
                health_check_interval_ms=settings.health_check_interval_ms,
                auto_restart=settings.auto_restart,
            ),
            agent_command=settings.agent_command,
            settle_delay_ms=settings.settle_delay_ms,
            restart_delay_ms=settings.restart_delay_ms,
        )

    def get_platform(self) -> str:
        if sys.platform.startswith("linux"):
            return "linux"
        return sys.platform

    def is_supported(self) -> bool:
        """POSIX signals plus a usable tmux."""
        return self.get_platform() in ("darwin", "linux") and self.tmux.is_available()

    async def spawn(self, agent_id: int, config: Optional[PTYConfig] = None) -> PTYHandle:
        """
        Launch an agent process in a new pane.

        Args:
            agent_id: Agent the process belongs to
            config: Launch settings; unset fields come from the default config

        Returns:
            PTYHandle in ``starting`` status

        Raises:
            WorktreeError: If worktree isolation was requested and provisioning failed
            CommandFailedError: If tmux could not create the pane
        """
        cfg = self._merge_config(config)

        worktree_path = None
        worktree_branch = None
        if cfg.use_worktree:
            if self.worktree_manager is None:
                raise ValueError("Worktree isolation requested without a worktree manager")
            info = await self.worktree_manager.provision(agent_id, cfg.task_id)
            worktree_path = info.path
            worktree_branch = info.branch

        pane_cwd = worktree_path or cfg.cwd
        try:
            self._ensure_session(cfg)
            pane_id = self.tmux.split_window(self.session_name, cwd=pane_cwd, env=cfg.env, shell=cfg.shell)
            self.tmux.select_layout(self.session_name, "tiled")
            self.tmux.send_keys(pane_id, self._format_command(agent_id, cfg))
        except Exception:
            if worktree_path:
                await self.worktree_manager.cleanup(agent_id)
            raise

        pid = self.tmux.pane_pid(pane_id)
        handle = PTYHandle(
            agent_id=agent_id,
            pid=pid,
            pane_id=pane_id,
            worktree_path=worktree_path,
            worktree_branch=worktree_branch,
            config=cfg,
        )
        self.handles[agent_id] = handle
        self._processes.pop(agent_id, None)

        self._emit(EventType.SPAWN, agent_id, {
            "pane_id": pane_id,
            "pid": pid,
            "worktree_path": worktree_path,
            "worktree_branch": worktree_branch,
        })
        logger.info(f"Spawned agent {agent_id} in pane {pane_id} (pid {pid})")

        if cfg.health_check_interval_ms > 0:
            self._start_health_check(agent_id, cfg.health_check_interval_ms)

        self._background_task(self._settle(handle))
        return handle

    async def kill(self, agent_id: int, signal: Literal["SIGTERM", "SIGKILL"] = "SIGTERM") -> None:
        """
        Stop an agent process and tear down its pane (and worktree).

        Returns after the signal is delivered and the pane is gone; does not
        wait for the process to exit.
        """
        handle = self.handles.get(agent_id)
        if handle is None:
            return

        # Stop probing first so an intentional stop is never seen as a crash
        self._stop_health_check(agent_id)
        handle.status = ProcessStatus.STOPPING

        if handle.pid > 0:
            try:
                psutil.Process(handle.pid).send_signal(getattr(signals, signal))
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.debug(f"Could not signal pid {handle.pid}: {e}")

        self.tmux.kill_pane(handle.pane_id)

        if handle.worktree_path and self.worktree_manager is not None:
            await self.worktree_manager.cleanup(agent_id)

        handle.status = ProcessStatus.STOPPED
        del self.handles[agent_id]
        self._processes.pop(agent_id, None)

        self._emit(EventType.KILL, agent_id, {"signal": signal})
        logger.info(f"Killed agent {agent_id} ({signal})")

    async def restart(self, agent_id: int) -> PTYHandle:
        """Kill with SIGTERM, pause, then spawn again with the same configuration."""
        handle = self.handles.get(agent_id)
        config = handle.config if handle else None

        await self.kill(agent_id, "SIGTERM")
        await asyncio.sleep(self.restart_wait_ms / 1000)

        self._emit(EventType.RESTART, agent_id)
        logger.info(f"Restarting agent {agent_id}")
        return await self.spawn(agent_id, config)

    async def health_check(self, agent_id: int) -> HealthStatus:
        """
        Check an agent process.

        A dead process that is not being stopped is marked ``crashed``; with
        auto-restart a restart is scheduled after ``restart_delay_ms``.

        Returns:
            HealthStatus (not alive for unknown agents)
        """
        handle = self.handles.get(agent_id)
        if handle is None:
            return HealthStatus(agent_id=agent_id, alive=False, responsive=False)

        alive, memory_bytes, cpu_percent = self._inspect_process(agent_id, handle.pid)
        responsive = alive and self.tmux.capture_pane(handle.pane_id) is not None

        now = datetime.utcnow()
        status = HealthStatus(
            agent_id=agent_id,
            alive=alive,
            responsive=responsive,
            last_heartbeat=handle.last_heartbeat,
            memory_bytes=memory_bytes,
            cpu_percent=cpu_percent,
            idle_time_ms=int((now - handle.last_heartbeat).total_seconds() * 1000),
        )

        if alive:
            handle.last_heartbeat = now

        self._emit(EventType.HEALTH, agent_id, status.model_dump(mode="json"))

        if not alive and handle.status not in (ProcessStatus.STOPPING, ProcessStatus.CRASHED):
            handle.status = ProcessStatus.CRASHED
            self._emit(EventType.CRASH, agent_id, {"pid": handle.pid})
            logger.warning(f"Agent {agent_id} (pid {handle.pid}) crashed")

            if handle.config.auto_restart:
                self._background_task(self._restart_later(agent_id, handle))

        return status

    def watch_all(self) -> Subscription:
        """
        Subscribe to lifecycle events.

        Each call returns an independent subscription that sees every event
        published after the call. Iteration ends on shutdown.
        """
        return self.events.subscribe()

    def get_handle(self, agent_id: int) -> Optional[PTYHandle]:
        return self.handles.get(agent_id)

    def get_all_handles(self) -> list[PTYHandle]:
        return list(self.handles.values())

    def set_status(self, agent_id: int, status: ProcessStatus) -> None:
        handle = self.handles.get(agent_id)
        if handle is not None:
            handle.status = status

    async def shutdown(self) -> None:
        """Kill every agent, the tmux session, and close event subscriptions."""
        for agent_id in list(self._health_tasks):
            self._stop_health_check(agent_id)

        for agent_id in list(self.handles):
            await self.kill(agent_id, "SIGTERM")

        current = asyncio.current_task()
        for task in list(self._background):
            if task is not current:
                task.cancel()

        self.tmux.kill_session(self.session_name)
        self.events.close()
        logger.info("PTY manager shut down")

    def _merge_config(self, config: Optional[PTYConfig]) -> PTYConfig:
        if config is None:
            return self.default_config.model_copy(deep=True)
        overrides = config.model_dump(exclude_unset=True)
        return self.default_config.model_copy(update=overrides, deep=True)

    def _ensure_session(self, cfg: PTYConfig) -> None:
        if not self.tmux.has_session(self.session_name):
            self.tmux.new_session(self.session_name, cfg.cols, cfg.rows)

    def _format_command(self, agent_id: int, cfg: PTYConfig) -> str:
        """Fill the known placeholders; any other braces are passed through as typed."""
        command = cfg.command or self.agent_command
        placeholders = {
            "{agent_id}": str(agent_id),
            "{role}": cfg.env.get("AGENT_ROLE", ""),
            "{model}": cfg.env.get("AGENT_MODEL", ""),
        }
        for placeholder, value in placeholders.items():
            command = command.replace(placeholder, value)
        return command

    def _inspect_process(self, agent_id: int, pid: int) -> tuple[bool, Optional[int], Optional[float]]:
        """Liveness, RSS and CPU percent; zombies count as dead."""
        if pid <= 0:
            return False, None, None

        process = self._processes.get(agent_id)
        try:
            if process is None or process.pid != pid:
                process = psutil.Process(pid)
                self._processes[agent_id] = process

            if process.status() == psutil.STATUS_ZOMBIE:
                return False, None, None

            with process.oneshot():
                return True, process.memory_info().rss, process.cpu_percent(interval=None)
        except psutil.NoSuchProcess:
            self._processes.pop(agent_id, None)
            return False, None, None
        except psutil.AccessDenied:
            return True, None, None

    def _start_health_check(self, agent_id: int, interval_ms: int) -> None:
        self._stop_health_check(agent_id)
        self._health_tasks[agent_id] = asyncio.create_task(
            self._health_loop(agent_id, interval_ms)
        )

    def _stop_health_check(self, agent_id: int) -> None:
        task = self._health_tasks.pop(agent_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _health_loop(self, agent_id: int, interval_ms: int) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            try:
                await self.health_check(agent_id)
            except Exception as e:
                logger.error(f"Health check for agent {agent_id} failed: {e}")

    async def _settle(self, handle: PTYHandle) -> None:
        await asyncio.sleep(self.settle_delay_ms / 1000)
        if self.handles.get(handle.agent_id) is handle and handle.status == ProcessStatus.STARTING:
            handle.status = ProcessStatus.IDLE

    async def _restart_later(self, agent_id: int, handle: PTYHandle) -> None:
        await asyncio.sleep(self.restart_delay_ms / 1000)
        # Someone else already killed or replaced it
        if self.handles.get(agent_id) is not handle:
            return
        try:
            await self.restart(agent_id)
        except Exception as e:
            logger.error(f"Restart of agent {agent_id} failed: {e}")

    def _background_task(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _emit(self, event_type: EventType, agent_id: int, data: Optional[dict] = None) -> None:
        self.events.publish(AgentEvent(type=event_type, agent_id=agent_id, data=data or {}))
