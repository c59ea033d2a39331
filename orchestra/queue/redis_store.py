"""Redis-backed mission store."""

import json
import logging
from datetime import datetime
from typing import Optional

import redis.asyncio as redis

from orchestra.queue.models import (
    ACTIVE_STATUSES,
    Mission,
    MissionError,
    MissionResult,
    Priority,
    priority_rank,
)

logger = logging.getLogger(__name__)

ACTIVE_SET = "missions:active"

# Fields rewritten on every state transition; everything else is set once
MUTABLE_FIELDS = (
    "status",
    "timeout_ms",
    "depends_on",
    "retry_count",
    "retry_delay_ms",
    "assigned_to",
    "error",
    "result",
    "started_at",
    "completed_at",
)


class RedisMissionStore:
    """Mission store keeping one hash per mission plus an index of active ids."""

    def __init__(self, redis_client: redis.Redis):
        """
        Initialize Redis mission store.

        Args:
            redis_client: Redis async client
        """
        self.redis = redis_client

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisMissionStore":
        return cls(redis.from_url(redis_url))

    async def init(self) -> None:
        await self.redis.ping()

    async def save(self, mission: Mission) -> None:
        """
        Upsert mission hash keyed by id.

        Args:
            mission: Mission to persist
        """
        key = f"mission:{mission.id}"
        data = _encode(mission)

        if await self.redis.exists(key):
            data = {field: data[field] for field in MUTABLE_FIELDS}

        await self.redis.hset(key, mapping=data)

        if mission.status in ACTIVE_STATUSES:
            await self.redis.sadd(ACTIVE_SET, mission.id)
        else:
            await self.redis.srem(ACTIVE_SET, mission.id)

    async def update_priority(self, mission_id: str, priority: Priority) -> None:
        key = f"mission:{mission_id}"
        if await self.redis.exists(key):
            await self.redis.hset(key, mapping={"priority": Priority(priority).value})

    async def get(self, mission_id: str) -> Optional[Mission]:
        data = await self.redis.hgetall(f"mission:{mission_id}")
        if not data:
            return None
        return _decode(data)

    async def load_pending(self) -> list[Mission]:
        """
        Load every active mission.

        Returns:
            Missions ordered by priority (critical first) then creation time
        """
        missions = []
        for mission_id in await self.redis.smembers(ACTIVE_SET):
            if isinstance(mission_id, bytes):
                mission_id = mission_id.decode()
            mission = await self.get(mission_id)
            if mission is None:
                logger.warning(f"Active mission {mission_id} has no data, dropping from index")
                await self.redis.srem(ACTIVE_SET, mission_id)
                continue
            if mission.status in ACTIVE_STATUSES:
                missions.append(mission)

        missions.sort(key=lambda m: (priority_rank(m.priority), m.created_at))
        return missions

    async def close(self) -> None:
        await self.redis.aclose()


def _encode(mission: Mission) -> dict[str, str]:
    return {
        "id": mission.id,
        "prompt": mission.prompt,
        "context": mission.context or "",
        "priority": mission.priority.value,
        "type": mission.type.value if mission.type else "",
        "status": mission.status.value,
        "timeout_ms": str(mission.timeout_ms),
        "max_retries": str(mission.max_retries),
        "retry_count": str(mission.retry_count),
        "retry_delay_ms": "" if mission.retry_delay_ms is None else str(mission.retry_delay_ms),
        "depends_on": json.dumps(mission.depends_on),
        "assigned_to": "" if mission.assigned_to is None else str(mission.assigned_to),
        "error": mission.error.model_dump_json() if mission.error else "",
        "result": mission.result.model_dump_json() if mission.result else "",
        "created_at": mission.created_at.isoformat(),
        "started_at": mission.started_at.isoformat() if mission.started_at else "",
        "completed_at": mission.completed_at.isoformat() if mission.completed_at else "",
    }


def _decode(raw: dict) -> Mission:
    data = {
        (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
        for k, v in raw.items()
    }

    def optional_int(field: str) -> Optional[int]:
        return int(data[field]) if data.get(field) else None

    def optional_datetime(field: str) -> Optional[datetime]:
        return datetime.fromisoformat(data[field]) if data.get(field) else None

    return Mission(
        id=data["id"],
        prompt=data["prompt"],
        context=data.get("context") or None,
        priority=data["priority"],
        type=data.get("type") or None,
        status=data["status"],
        timeout_ms=int(data["timeout_ms"]),
        max_retries=int(data["max_retries"]),
        retry_count=int(data.get("retry_count", "0")),
        retry_delay_ms=optional_int("retry_delay_ms"),
        depends_on=json.loads(data.get("depends_on") or "[]"),
        assigned_to=optional_int("assigned_to"),
        error=MissionError.model_validate_json(data["error"]) if data.get("error") else None,
        result=MissionResult.model_validate_json(data["result"]) if data.get("result") else None,
        created_at=datetime.fromisoformat(data["created_at"]),
        started_at=optional_datetime("started_at"),
        completed_at=optional_datetime("completed_at"),
    )
