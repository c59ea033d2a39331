"""Mission queue with durable state."""

from orchestra.queue.models import (
    ErrorCode,
    Mission,
    MissionError,
    MissionResult,
    MissionSpec,
    MissionStatus,
    MissionType,
    Priority,
    TokenUsage,
    calculate_backoff,
    is_recoverable,
)
from orchestra.queue.mission_queue import (
    MissionQueue,
    MissionNotFoundError,
    MissionStateError,
    MissionValidationError,
    QueueFullError,
)
from orchestra.queue.scheduler import ManualClock, MonotonicClock, RetryScheduler
from orchestra.queue.store import MissionStore, SqlMissionStore
from orchestra.queue.redis_store import RedisMissionStore

__all__ = [
    "ErrorCode",
    "Mission",
    "MissionError",
    "MissionResult",
    "MissionSpec",
    "MissionStatus",
    "MissionType",
    "Priority",
    "TokenUsage",
    "calculate_backoff",
    "is_recoverable",
    "MissionQueue",
    "MissionNotFoundError",
    "MissionStateError",
    "MissionValidationError",
    "QueueFullError",
    "ManualClock",
    "MonotonicClock",
    "RetryScheduler",
    "MissionStore",
    "SqlMissionStore",
    "RedisMissionStore",
]
