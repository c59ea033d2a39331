"""Tests for RetryScheduler and backoff helpers."""

from orchestra.queue import models as models_module
from orchestra.queue.models import ErrorCode, calculate_backoff, is_recoverable
from orchestra.queue.scheduler import ManualClock, RetryScheduler


def test_pop_due_returns_missions_in_deadline_order():
    clock = ManualClock(0)
    scheduler = RetryScheduler(clock)

    scheduler.schedule("late", 300)
    scheduler.schedule("early", 100)
    scheduler.schedule("middle", 200)

    assert scheduler.pop_due() == []

    clock.advance(250)
    assert scheduler.pop_due() == ["early", "middle"]
    assert len(scheduler) == 1

    clock.advance(100)
    assert scheduler.pop_due() == ["late"]
    assert scheduler.next_deadline() is None


def test_reschedule_replaces_previous_deadline():
    clock = ManualClock(0)
    scheduler = RetryScheduler(clock)

    scheduler.schedule("m1", 100)
    scheduler.schedule("m1", 500)

    clock.advance(200)
    assert scheduler.pop_due() == []
    assert scheduler.next_deadline() == 500

    clock.advance(300)
    assert scheduler.pop_due() == ["m1"]


def test_cancel_drops_pending_transition():
    clock = ManualClock(0)
    scheduler = RetryScheduler(clock)

    scheduler.schedule("m1", 100)
    scheduler.cancel("m1")
    assert not scheduler.is_scheduled("m1")

    clock.advance(1000)
    assert scheduler.pop_due() == []


def test_backoff_doubles_and_caps():
    assert calculate_backoff(0, 1000, 60_000) == 1000
    assert calculate_backoff(1, 1000, 60_000) == 2000
    assert calculate_backoff(3, 1000, 60_000) == 8000
    assert calculate_backoff(10, 1000, 60_000) == 60_000


def test_backoff_jitter_stays_within_fraction():
    for _ in range(50):
        delay = calculate_backoff(2, 1000, 60_000, jitter=0.25)
        assert 3000 <= delay <= 5000


def test_backoff_jitter_never_exceeds_ceiling(monkeypatch):
    monkeypatch.setattr(models_module.random, "random", lambda: 1.0)

    assert calculate_backoff(10, 1000, 5000, jitter=0.5) == 5000
    assert calculate_backoff(1, 1000, 5000, jitter=0.5) == 3000


def test_recoverable_codes():
    assert is_recoverable(ErrorCode.TIMEOUT)
    assert is_recoverable(ErrorCode.RATE_LIMIT)
    assert is_recoverable(ErrorCode.RESOURCE)
    assert not is_recoverable(ErrorCode.VALIDATION)
    assert not is_recoverable(ErrorCode.AUTH)
    assert not is_recoverable("crash")
