"""Durable mission storage backed by SQLAlchemy."""

import logging
from typing import Optional, Protocol

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncEngine

from orchestra.app.database import create_engine, create_session_factory, init_db
from orchestra.app.models.mission import MissionModel
from orchestra.queue.models import (
    ACTIVE_STATUSES,
    Mission,
    MissionError,
    MissionResult,
    Priority,
)

logger = logging.getLogger(__name__)


class MissionStore(Protocol):
    """Keyed mission table used by the queue for durability."""

    async def init(self) -> None:
        ...

    async def save(self, mission: Mission) -> None:
        ...

    async def update_priority(self, mission_id: str, priority: Priority) -> None:
        ...

    async def get(self, mission_id: str) -> Optional[Mission]:
        ...

    async def load_pending(self) -> list[Mission]:
        ...

    async def close(self) -> None:
        ...


class SqlMissionStore:
    """Mission store on any SQLAlchemy async database."""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[AsyncEngine] = None):
        """
        Initialize SQL mission store.

        Args:
            database_url: Async database URL, used when no engine is given
            engine: Existing async engine to share
        """
        if engine is None and database_url is None:
            raise ValueError("SqlMissionStore needs a database_url or an engine")
        self.engine = engine or create_engine(database_url)
        self._owns_engine = engine is None
        self.sessions = create_session_factory(self.engine)

    async def init(self) -> None:
        await init_db(self.engine)

    async def save(self, mission: Mission) -> None:
        """
        Upsert mission keyed by id.

        Inserts the full row when absent; otherwise updates only the fields
        that change over the mission lifecycle. Creation-time fields (prompt,
        context, priority, type, max_retries, created_at) are never
        overwritten here.

        Args:
            mission: Mission to persist
        """
        async with self.sessions() as session:
            async with session.begin():
                row = await session.get(MissionModel, mission.id)
                if row is None:
                    session.add(_to_row(mission))
                    return

                row.status = mission.status.value
                row.timeout_ms = mission.timeout_ms
                row.depends_on = list(mission.depends_on)
                row.retry_count = mission.retry_count
                row.retry_delay_ms = mission.retry_delay_ms
                row.assigned_to = mission.assigned_to
                row.error = mission.error.model_dump(mode="json") if mission.error else None
                row.result = mission.result.model_dump(mode="json") if mission.result else None
                row.started_at = mission.started_at
                row.completed_at = mission.completed_at

    async def update_priority(self, mission_id: str, priority: Priority) -> None:
        async with self.sessions() as session:
            async with session.begin():
                await session.execute(
                    update(MissionModel)
                    .where(MissionModel.id == mission_id)
                    .values(priority=Priority(priority).value)
                )

    async def get(self, mission_id: str) -> Optional[Mission]:
        async with self.sessions() as session:
            row = await session.get(MissionModel, mission_id)
            return _from_row(row) if row else None

    async def load_pending(self) -> list[Mission]:
        """
        Load every mission that still needs work.

        Returns:
            Missions in pending/queued/running/retrying/blocked status,
            ordered by priority (critical first) then creation time
        """
        rank = case(
            {p.value: i for i, p in enumerate(Priority)},
            value=MissionModel.priority,
            else_=len(Priority),
        )
        stmt = (
            select(MissionModel)
            .where(MissionModel.status.in_([s.value for s in ACTIVE_STATUSES]))
            .order_by(rank, MissionModel.created_at.asc())
        )
        async with self.sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_from_row(row) for row in rows]

    async def close(self) -> None:
        if self._owns_engine:
            await self.engine.dispose()


def _to_row(mission: Mission) -> MissionModel:
    return MissionModel(
        id=mission.id,
        prompt=mission.prompt,
        context=mission.context,
        priority=mission.priority.value,
        type=mission.type.value if mission.type else None,
        status=mission.status.value,
        timeout_ms=mission.timeout_ms,
        max_retries=mission.max_retries,
        retry_count=mission.retry_count,
        retry_delay_ms=mission.retry_delay_ms,
        depends_on=list(mission.depends_on),
        assigned_to=mission.assigned_to,
        error=mission.error.model_dump(mode="json") if mission.error else None,
        result=mission.result.model_dump(mode="json") if mission.result else None,
        created_at=mission.created_at,
        started_at=mission.started_at,
        completed_at=mission.completed_at,
    )


def _from_row(row: MissionModel) -> Mission:
    return Mission(
        id=row.id,
        prompt=row.prompt,
        context=row.context,
        priority=row.priority,
        type=row.type,
        status=row.status,
        timeout_ms=row.timeout_ms,
        max_retries=row.max_retries,
        retry_count=row.retry_count,
        retry_delay_ms=row.retry_delay_ms,
        depends_on=row.depends_on or [],
        assigned_to=row.assigned_to,
        error=MissionError.model_validate(row.error) if row.error else None,
        result=MissionResult.model_validate(row.result) if row.result else None,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )
