"""Agent spawning and the mission control loop."""

from orchestra.orchestrator.driver import (
    MissionDriver,
    MissionExecutionError,
    MissionExecutor,
    classify_error,
)
from orchestra.orchestrator.roles import (
    ROLE_MODELS,
    ROLE_PROMPTS,
    TASK_ROLE_MAP,
    AgentRole,
    ModelTier,
    Task,
    select_model,
)
from orchestra.orchestrator.spawner import (
    Agent,
    AgentConfig,
    AgentSpawnError,
    AgentSpawner,
    AgentStatus,
    NoAgentsAvailableError,
    TaskAssignment,
)

__all__ = [
    "MissionDriver",
    "MissionExecutionError",
    "MissionExecutor",
    "classify_error",
    "ROLE_MODELS",
    "ROLE_PROMPTS",
    "TASK_ROLE_MAP",
    "AgentRole",
    "ModelTier",
    "Task",
    "select_model",
    "Agent",
    "AgentConfig",
    "AgentSpawnError",
    "AgentSpawner",
    "AgentStatus",
    "NoAgentsAvailableError",
    "TaskAssignment",
]
