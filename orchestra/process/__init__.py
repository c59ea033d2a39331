"""Agent process lifecycle inside tmux."""

from orchestra.process.commands import CommandFailedError, CommandOutput, run_advisory, run_required
from orchestra.process.events import AgentEvent, EventBus, EventType, Subscription
from orchestra.process.pty_manager import (
    HealthStatus,
    PTYConfig,
    PTYHandle,
    PTYManager,
    ProcessStatus,
)
from orchestra.process.tmux import TmuxClient

__all__ = [
    "CommandFailedError",
    "CommandOutput",
    "run_advisory",
    "run_required",
    "AgentEvent",
    "EventBus",
    "EventType",
    "Subscription",
    "HealthStatus",
    "PTYConfig",
    "PTYHandle",
    "PTYManager",
    "ProcessStatus",
    "TmuxClient",
]
