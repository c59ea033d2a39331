"""Lifecycle event fan-out with one queue per subscriber."""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SPAWN = "spawn"
    KILL = "kill"
    CRASH = "crash"
    RESTART = "restart"
    HEALTH = "health"


class AgentEvent(BaseModel):
    """Something that happened to an agent process."""
    type: EventType
    agent_id: int
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    data: dict[str, Any] = {}


_CLOSED = object()


class Subscription:
    """
    Receive side of one listener.

    Iterate with ``async for``; iteration ends once the bus is closed or the
    subscription is cancelled.
    """

    def __init__(self, bus: "EventBus"):
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue()
        self._done = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> AgentEvent:
        if self._done:
            raise StopAsyncIteration

        item = await self._queue.get()
        if item is _CLOSED:
            self._done = True
            raise StopAsyncIteration
        return item

    def pending(self) -> int:
        return self._queue.qsize()

    def cancel(self) -> None:
        """Stop listening; a waiting receiver is woken and finishes."""
        self._bus._unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    def _push(self, item: Any) -> None:
        self._queue.put_nowait(item)


class EventBus:
    """
    Unbounded multi-subscriber channel.

    Publishing never blocks: every subscriber owns an unbounded queue that
    the event is appended to.
    """

    def __init__(self):
        self._subscribers: list[Subscription] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        if self._closed:
            subscription._push(_CLOSED)
        else:
            self._subscribers.append(subscription)
        return subscription

    def publish(self, event: AgentEvent) -> None:
        if self._closed:
            return
        for subscription in list(self._subscribers):
            subscription._push(event)

    def close(self) -> None:
        """Close every subscription; later publishes are dropped."""
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscribers:
            subscription._push(_CLOSED)
        logger.debug(f"Event bus closed ({len(self._subscribers)} subscribers)")
        self._subscribers.clear()

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
