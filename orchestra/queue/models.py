"""Mission models shared by the queue and its stores."""

import random
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class MissionStatus(str, Enum):
    """Mission lifecycle states."""
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class Priority(str, Enum):
    """Mission priority."""
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class MissionType(str, Enum):
    """Kind of work a mission carries."""
    EXTRACTION = "extraction"
    ANALYSIS = "analysis"
    SYNTHESIS = "synthesis"
    REVIEW = "review"
    GENERAL = "general"


class ErrorCode(str, Enum):
    """Failure categories reported by the driver."""
    TIMEOUT = "timeout"
    CRASH = "crash"
    VALIDATION = "validation"
    RESOURCE = "resource"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"


# Lower rank is dequeued first
PRIORITY_ORDER: dict[Priority, int] = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}

ACTIVE_STATUSES = frozenset({
    MissionStatus.PENDING,
    MissionStatus.QUEUED,
    MissionStatus.RUNNING,
    MissionStatus.RETRYING,
    MissionStatus.BLOCKED,
})

TERMINAL_STATUSES = frozenset({
    MissionStatus.COMPLETED,
    MissionStatus.FAILED,
    MissionStatus.CANCELLED,
})


class TokenUsage(BaseModel):
    """Token accounting for one mission run."""
    input: int = 0
    output: int = 0


class MissionResult(BaseModel):
    """Output of a successful mission."""
    output: str
    duration_ms: int = 0
    token_usage: Optional[TokenUsage] = None
    artifacts: list[str] = []


class MissionError(BaseModel):
    """Failure details attached to a mission."""
    code: ErrorCode = ErrorCode.UNKNOWN
    message: str
    recoverable: bool = False
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    retry_after_ms: Optional[int] = None
    stack_trace: Optional[str] = None


class MissionSpec(BaseModel):
    """Caller-supplied description of a mission to enqueue."""
    prompt: str
    id: Optional[str] = None
    context: Optional[str] = None
    type: Optional[MissionType] = None
    priority: Priority = Priority.NORMAL
    timeout_ms: Optional[int] = None
    max_retries: Optional[int] = None
    depends_on: list[str] = []


class Mission(BaseModel):
    """A queued unit of work."""
    id: str
    prompt: str
    context: Optional[str] = None
    type: Optional[MissionType] = None
    priority: Priority = Priority.NORMAL
    status: MissionStatus = MissionStatus.PENDING
    timeout_ms: int = 300_000
    max_retries: int = 3
    retry_count: int = 0
    retry_delay_ms: Optional[int] = None
    depends_on: list[str] = []
    assigned_to: Optional[int] = None
    result: Optional[MissionResult] = None
    error: Optional[MissionError] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def priority_rank(priority: Priority) -> int:
    """Rank used for ordering; critical sorts first."""
    return PRIORITY_ORDER[Priority(priority)]


def is_recoverable(code: ErrorCode) -> bool:
    """Whether failures with this code are worth retrying."""
    return ErrorCode(code) in (ErrorCode.TIMEOUT, ErrorCode.RATE_LIMIT, ErrorCode.RESOURCE)


def calculate_backoff(
    retry_count: int,
    base_delay_ms: int = 1000,
    max_delay_ms: int = 60_000,
    jitter: float = 0.0
) -> int:
    """
    Exponential backoff delay for a retry.

    Args:
        retry_count: Retry attempt number
        base_delay_ms: Delay for attempt zero
        max_delay_ms: Ceiling, also applied after jitter
        jitter: Random spread as a fraction of the delay (0 disables)

    Returns:
        Delay in milliseconds
    """
    delay = min(base_delay_ms * (2 ** retry_count), max_delay_ms)
    if jitter > 0:
        delay += delay * jitter * (random.random() * 2 - 1)
    return max(0, min(int(delay), max_delay_ms))
