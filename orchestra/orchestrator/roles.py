"""Agent roles, model tiers and the task-to-model policy."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel

from orchestra.queue.models import Mission, MissionType, Priority


class AgentRole(str, Enum):
    CODER = "coder"
    TESTER = "tester"
    ANALYST = "analyst"
    REVIEWER = "reviewer"
    GENERALIST = "generalist"
    ORACLE = "oracle"
    ARCHITECT = "architect"
    DEBUGGER = "debugger"
    RESEARCHER = "researcher"
    SCRIBE = "scribe"


class ModelTier(str, Enum):
    HAIKU = "haiku"
    SONNET = "sonnet"
    OPUS = "opus"


# Default tier when an agent is spawned with a role but no model
ROLE_MODELS: dict[AgentRole, ModelTier] = {
    AgentRole.CODER: ModelTier.SONNET,
    AgentRole.TESTER: ModelTier.HAIKU,
    AgentRole.ANALYST: ModelTier.SONNET,
    AgentRole.REVIEWER: ModelTier.SONNET,
    AgentRole.GENERALIST: ModelTier.SONNET,
    AgentRole.ORACLE: ModelTier.OPUS,
    AgentRole.ARCHITECT: ModelTier.OPUS,
    AgentRole.DEBUGGER: ModelTier.SONNET,
    AgentRole.RESEARCHER: ModelTier.HAIKU,
    AgentRole.SCRIBE: ModelTier.HAIKU,
}

ROLE_PROMPTS: dict[AgentRole, str] = {
    AgentRole.CODER: "You are a coding specialist. Focus on implementation, best practices, and clean code.",
    AgentRole.TESTER: "You are a testing specialist. Focus on test coverage, edge cases, and quality assurance.",
    AgentRole.ANALYST: "You are an analysis specialist. Focus on understanding requirements and breaking down problems.",
    AgentRole.REVIEWER: "You are a code review specialist. Focus on improvements, bugs, and maintainability.",
    AgentRole.GENERALIST: "You are a general-purpose agent. Handle any task assigned to you.",
    AgentRole.ORACLE: "You are the orchestrator. Coordinate workflow and ensure mission alignment.",
    AgentRole.ARCHITECT: "You are a system design specialist. Focus on architecture and design decisions.",
    AgentRole.DEBUGGER: "You are a debugging specialist. Focus on finding and fixing issues.",
    AgentRole.RESEARCHER: "You are a research specialist. Focus on gathering information and analysis.",
    AgentRole.SCRIBE: "You are a documentation specialist. Focus on capturing learnings and documenting sessions.",
}

# Task type -> preferred specialist
TASK_ROLE_MAP: dict[str, AgentRole] = {
    "extraction": AgentRole.RESEARCHER,
    "analysis": AgentRole.ANALYST,
    "synthesis": AgentRole.ORACLE,
    "review": AgentRole.REVIEWER,
    "testing": AgentRole.TESTER,
    "coding": AgentRole.CODER,
    "debugging": AgentRole.DEBUGGER,
}


class Task(BaseModel):
    """Work handed to the spawner for distribution."""
    id: str
    prompt: str
    context: Optional[str] = None
    type: Optional[str] = None
    priority: Priority = Priority.NORMAL

    @classmethod
    def from_mission(cls, mission: Mission) -> "Task":
        return cls(
            id=mission.id,
            prompt=mission.prompt,
            context=mission.context,
            type=mission.type.value if mission.type else None,
            priority=mission.priority,
        )


def select_model(task: Task) -> ModelTier:
    """
    Pick the capability tier a task needs.

    Critical priority or synthesis work gets the highest tier, analysis and
    review the middle tier, everything else the lowest.
    """
    if task.priority == Priority.CRITICAL or task.type == MissionType.SYNTHESIS.value:
        return ModelTier.OPUS
    if task.type in (MissionType.ANALYSIS.value, MissionType.REVIEW.value):
        return ModelTier.SONNET
    return ModelTier.HAIKU


def preferred_role(task_type: Optional[str]) -> Optional[AgentRole]:
    if not task_type:
        return None
    return TASK_ROLE_MAP.get(task_type)
