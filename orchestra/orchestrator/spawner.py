"""Role-based agent spawning and load balancing."""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field

from orchestra.orchestrator.roles import (
    ROLE_MODELS,
    ROLE_PROMPTS,
    AgentRole,
    ModelTier,
    Task,
    preferred_role,
    select_model,
)
from orchestra.process.pty_manager import PTYConfig, PTYHandle, PTYManager, ProcessStatus

logger = logging.getLogger(__name__)


class AgentStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    WORKING = "working"
    ERROR = "error"


class AgentConfig(BaseModel):
    """How to spawn an agent; unset process fields use the PTY manager defaults."""
    role: Optional[AgentRole] = None
    model: Optional[ModelTier] = None
    system_prompt: Optional[str] = None
    isolation_mode: Literal["shared", "worktree"] = "shared"
    task_id: Optional[str] = None
    env: dict[str, str] = {}
    cwd: Optional[str] = None
    shell: Optional[str] = None
    command: Optional[str] = None
    cols: Optional[int] = None
    rows: Optional[int] = None
    health_check_interval_ms: Optional[int] = None
    auto_restart: Optional[bool] = None


class Agent(BaseModel):
    """A logical worker bound to one process at a time."""
    id: int
    name: str
    role: AgentRole
    model: ModelTier
    status: AgentStatus = AgentStatus.IDLE
    current_task_id: Optional[str] = None
    tasks_completed: int = 0
    tasks_failed: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    pty_handle: Optional[PTYHandle] = None
    worktree_path: Optional[str] = None
    worktree_branch: Optional[str] = None


class TaskAssignment(BaseModel):
    task_id: str
    agent_id: int
    required_model: ModelTier
    assigned_at: datetime = Field(default_factory=datetime.utcnow)


_PROCESS_FIELDS = {
    "cwd", "shell", "command", "cols", "rows", "health_check_interval_ms", "auto_restart"
}


class AgentSpawner:
    """
    Creates agents on top of the PTY manager and hands tasks to them.

    The spawner is the only writer of agent status and counters.
    """

    def __init__(self, pty_manager: PTYManager, spawn_stagger_ms: int = 500):
        """
        Initialize spawner.

        Args:
            pty_manager: Process lifecycle manager hosting the agents
            spawn_stagger_ms: Pause between spawns in spawn_pool
        """
        self.pty_manager = pty_manager
        self.spawn_stagger_ms = spawn_stagger_ms

        self.agents: dict[int, Agent] = {}
        self.assignments: dict[str, TaskAssignment] = {}
        self._next_agent_id = 1

    async def spawn_agent(self, config: Optional[AgentConfig] = None) -> Agent:
        """
        Spawn one agent process.

        A role without an explicit model gets the role's default tier.

        Args:
            config: Role, model, isolation and process settings

        Returns:
            The new idle Agent

        Raises:
            AgentSpawnError: If the process (or its worktree) could not be created
        """
        cfg = config or AgentConfig()
        role = cfg.role or AgentRole.GENERALIST
        if cfg.model:
            model = cfg.model
        elif cfg.role:
            model = ROLE_MODELS[role]
        else:
            model = ModelTier.SONNET

        agent_id = self._next_agent_id
        self._next_agent_id += 1

        env = {
            **cfg.env,
            "AGENT_ID": str(agent_id),
            "AGENT_ROLE": role.value,
            "AGENT_MODEL": model.value,
            "AGENT_SYSTEM_PROMPT": cfg.system_prompt or ROLE_PROMPTS[role],
        }
        pty_config = PTYConfig(
            **cfg.model_dump(include=_PROCESS_FIELDS, exclude_none=True),
            env=env,
            use_worktree=cfg.isolation_mode == "worktree",
            task_id=cfg.task_id,
        )

        try:
            handle = await self.pty_manager.spawn(agent_id, pty_config)
        except Exception as e:
            logger.error(f"Failed to spawn agent {agent_id} ({role.value}): {e}")
            raise AgentSpawnError(f"Failed to spawn agent {agent_id}: {e}") from e

        agent = Agent(
            id=agent_id,
            name=f"agent-{agent_id}",
            role=role,
            model=model,
            pty_handle=handle,
            worktree_path=handle.worktree_path,
            worktree_branch=handle.worktree_branch,
        )
        self.agents[agent_id] = agent
        logger.info(f"Spawned {agent.name} as {role.value} on {model.value}")
        return agent

    async def spawn_pool(self, count: int, template: Optional[AgentConfig] = None) -> list[Agent]:
        """Spawn agents one after another, pausing between spawns."""
        agents = []
        for i in range(count):
            if i > 0 and self.spawn_stagger_ms > 0:
                await asyncio.sleep(self.spawn_stagger_ms / 1000)
            config = template.model_copy(deep=True) if template else None
            agents.append(await self.spawn_agent(config))
        return agents

    def assign_role(self, agent_id: int, role: AgentRole) -> None:
        agent = self.agents.get(agent_id)
        if agent:
            agent.role = AgentRole(role)

    def get_specialists(self, role: AgentRole) -> list[Agent]:
        return [a for a in self.agents.values() if a.role == role]

    def get_agents_by_model(self, model: ModelTier) -> list[Agent]:
        return [a for a in self.agents.values() if a.model == model]

    def get_available_agent(self, task_type: Optional[str] = None) -> Optional[Agent]:
        """
        Find an idle agent, preferring the specialist for ``task_type``.

        Returns:
            Matching specialist, else the first idle agent, else None
        """
        available = [
            a for a in self.agents.values()
            if a.status == AgentStatus.IDLE and not a.current_task_id
        ]
        if not available:
            return None

        role = preferred_role(task_type)
        if role:
            for agent in available:
                if agent.role == role:
                    return agent

        return available[0]

    def get_least_busy_agent(self) -> Optional[Agent]:
        """Idle agents first, then fewest tasks handled."""
        if not self.agents:
            return None

        return sorted(
            self.agents.values(),
            key=lambda a: (a.status != AgentStatus.IDLE, a.tasks_completed + a.tasks_failed),
        )[0]

    async def distribute_task(self, task: Task) -> Agent:
        """
        Assign a task to the best agent.

        Args:
            task: Task to run

        Returns:
            The agent, now busy with the task

        Raises:
            NoAgentsAvailableError: If no agent has been spawned
        """
        required_model = select_model(task)

        agent = self.get_available_agent(task.type) or self.get_least_busy_agent()
        if agent is None:
            raise NoAgentsAvailableError("No agents available for task distribution")

        agent.status = AgentStatus.BUSY
        agent.current_task_id = task.id
        self.assignments[task.id] = TaskAssignment(
            task_id=task.id,
            agent_id=agent.id,
            required_model=required_model,
        )
        self.pty_manager.set_status(agent.id, ProcessStatus.BUSY)

        if agent.model != required_model:
            logger.debug(f"Task {task.id} wants {required_model.value}, {agent.name} runs {agent.model.value}")
        logger.info(f"Assigned task {task.id} to {agent.name}")
        return agent

    def complete_task(self, task_id: str, success: bool) -> None:
        """Record the outcome of a task and free its agent; unknown tasks are ignored."""
        assignment = self.assignments.pop(task_id, None)
        if assignment is None:
            return

        agent = self.agents.get(assignment.agent_id)
        if agent is None:
            return

        if success:
            agent.tasks_completed += 1
        else:
            agent.tasks_failed += 1
        agent.status = AgentStatus.IDLE
        agent.current_task_id = None
        self.pty_manager.set_status(agent.id, ProcessStatus.IDLE)

    def get_assignment(self, task_id: str) -> Optional[TaskAssignment]:
        return self.assignments.get(task_id)

    def get_agent(self, agent_id: int) -> Optional[Agent]:
        agent = self.agents.get(agent_id)
        if agent is not None:
            # Restarts replace the handle
            agent.pty_handle = self.pty_manager.get_handle(agent_id) or agent.pty_handle
        return agent

    def get_all_agents(self) -> list[Agent]:
        return list(self.agents.values())

    def get_active_agents(self) -> list[Agent]:
        return [
            a for a in self.agents.values()
            if a.status in (AgentStatus.BUSY, AgentStatus.WORKING)
        ]

    async def shutdown(self) -> None:
        await self.pty_manager.shutdown()
        self.agents.clear()
        self.assignments.clear()
        logger.info("Agent spawner shut down")


class AgentSpawnError(Exception):
    """Raised when an agent process cannot be started."""
    pass


class NoAgentsAvailableError(Exception):
    """Raised when a task is distributed to an empty pool."""
    pass
