"""Deterministic retry scheduling.

Backoff delays are kept in a min-heap keyed by a monotonic deadline so the
queue can move missions from ``retrying`` back to ``queued`` when the driver
asks, and tests can fast-forward time with :class:`ManualClock`.
"""

import heapq
import itertools
import time
from typing import Optional, Protocol


class Clock(Protocol):
    """Monotonic time source in milliseconds."""

    def now_ms(self) -> float:
        ...


class MonotonicClock:
    """Wall-independent clock backed by ``time.monotonic``."""

    def now_ms(self) -> float:
        return time.monotonic() * 1000


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start_ms: float = 0.0):
        self._now = start_ms

    def now_ms(self) -> float:
        return self._now

    def advance(self, ms: float) -> None:
        self._now += ms


class RetryScheduler:
    """Min-heap of pending ``retrying -> queued`` transitions."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or MonotonicClock()
        self._heap: list[tuple[float, int, str]] = []
        self._deadlines: dict[str, float] = {}
        self._counter = itertools.count()

    def schedule(self, mission_id: str, delay_ms: float) -> float:
        """
        Schedule a mission to become due after ``delay_ms``.

        Rescheduling a mission replaces its previous deadline.

        Returns:
            The absolute deadline in clock milliseconds
        """
        deadline = self.clock.now_ms() + max(0.0, delay_ms)
        self._deadlines[mission_id] = deadline
        heapq.heappush(self._heap, (deadline, next(self._counter), mission_id))
        return deadline

    def cancel(self, mission_id: str) -> None:
        # Stale heap entries are skipped lazily in pop_due()
        self._deadlines.pop(mission_id, None)

    def pop_due(self) -> list[str]:
        """Remove and return every mission whose deadline has passed, earliest first."""
        now = self.clock.now_ms()
        due = []
        while self._heap and self._heap[0][0] <= now:
            deadline, _, mission_id = heapq.heappop(self._heap)
            if self._deadlines.get(mission_id) != deadline:
                continue
            del self._deadlines[mission_id]
            due.append(mission_id)
        return due

    def next_deadline(self) -> Optional[float]:
        while self._heap and self._deadlines.get(self._heap[0][2]) != self._heap[0][0]:
            heapq.heappop(self._heap)
        return self._heap[0][0] if self._heap else None

    def is_scheduled(self, mission_id: str) -> bool:
        return mission_id in self._deadlines

    def __len__(self) -> int:
        return len(self._deadlines)
