"""End-to-end tests of the driver loop over a real queue, spawner and worktrees."""

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from orchestra.app.context import build_context
from orchestra.git.worktree_manager import WorktreeStatus
from orchestra.orchestrator.driver import MissionDriver, MissionExecutionError, classify_error
from orchestra.orchestrator.spawner import AgentConfig, AgentStatus
from orchestra.queue.models import ErrorCode, MissionResult, MissionStatus, TokenUsage


@pytest_asyncio.fixture
async def context(settings, fake_tmux, scheduler):
    ctx = await build_context(settings, tmux=fake_tmux, scheduler=scheduler)
    yield ctx
    await ctx.shutdown()


class RecordingExecutor:
    """Executor that records what ran where and can be told to fail."""

    def __init__(self):
        self.calls: list[tuple[int, str]] = []
        self.failures: dict[str, list[Exception]] = {}

    async def __call__(self, agent, mission):
        self.calls.append((agent.id, mission.id))
        pending = self.failures.get(mission.id)
        if pending:
            raise pending.pop(0)
        return f"done {mission.id}"

    @property
    def order(self) -> list[str]:
        return [mission_id for _, mission_id in self.calls]


async def run_until_idle(driver: MissionDriver, rounds: int = 10) -> None:
    for _ in range(rounds):
        started = await driver.tick()
        await driver.drain()
        if not started:
            return


@pytest.mark.asyncio
async def test_missions_run_on_agents(context):
    executor = RecordingExecutor()
    driver = MissionDriver(context, executor)
    assert await driver.ensure_agents(2) == 2
    assert await driver.ensure_agents(2) == 0

    first = await context.queue.enqueue({"prompt": "write the parser"})
    second = await context.queue.enqueue({"prompt": "write the tests"})

    started = await driver.tick()
    assert sorted(started) == sorted([first, second])
    await driver.drain()

    for mission_id in (first, second):
        mission = context.queue.get_mission(mission_id)
        assert mission.status == MissionStatus.COMPLETED
        assert mission.result.output == f"done {mission_id}"
        assert mission.assigned_to is None

    agents = context.spawner.get_all_agents()
    assert sorted(agent.tasks_completed for agent in agents) == [1, 1]
    assert all(agent.status == AgentStatus.IDLE for agent in agents)


@pytest.mark.asyncio
async def test_priority_order_with_single_agent(context):
    executor = RecordingExecutor()
    driver = MissionDriver(context, executor)
    await driver.ensure_agents(1)

    await context.queue.enqueue({"id": "low", "prompt": "p", "priority": "low"})
    await context.queue.enqueue({"id": "critical", "prompt": "p", "priority": "critical"})
    await context.queue.enqueue({"id": "high", "prompt": "p", "priority": "high"})

    await run_until_idle(driver)

    assert executor.order == ["critical", "high", "low"]


@pytest.mark.asyncio
async def test_dependent_waits_for_dependency(context):
    executor = RecordingExecutor()
    driver = MissionDriver(context, executor)
    await driver.ensure_agents(2)

    await context.queue.enqueue({"id": "design", "prompt": "design it"})
    await context.queue.enqueue({"id": "build", "prompt": "build it", "depends_on": ["design"]})

    assert await driver.tick() == ["design"]
    await driver.drain()
    assert await driver.tick() == ["build"]
    await driver.drain()

    assert executor.order == ["design", "build"]
    assert context.queue.get_mission("build").status == MissionStatus.COMPLETED


@pytest.mark.asyncio
async def test_context_uses_given_scheduler(context, scheduler):
    assert context.queue.scheduler is scheduler


@pytest.mark.asyncio
async def test_recoverable_failure_is_retried_after_backoff(context, clock):
    executor = RecordingExecutor()
    executor.failures["flaky"] = [MissionExecutionError("slow down", ErrorCode.RATE_LIMIT)]
    driver = MissionDriver(context, executor)
    await driver.ensure_agents(1)
    await context.queue.enqueue({"id": "flaky", "prompt": "p"})

    await driver.tick()
    await driver.drain()

    mission = context.queue.get_mission("flaky")
    assert mission.status == MissionStatus.RETRYING
    assert mission.retry_count == 1
    assert mission.error.code == ErrorCode.RATE_LIMIT
    assert context.spawner.get_all_agents()[0].tasks_failed == 1

    # First retry waits base * 2
    clock.advance(199)
    assert await driver.tick() == []
    clock.advance(1)
    assert await driver.tick() == ["flaky"]
    await driver.drain()

    assert mission.status == MissionStatus.COMPLETED


@pytest.mark.asyncio
async def test_unrecoverable_failure_is_permanent(context):
    executor = RecordingExecutor()
    executor.failures["bad"] = [ValueError("prompt makes no sense")]
    driver = MissionDriver(context, executor)
    await driver.ensure_agents(1)
    await context.queue.enqueue({"id": "bad", "prompt": "p"})

    await run_until_idle(driver)

    mission = context.queue.get_mission("bad")
    assert mission.status == MissionStatus.FAILED
    assert mission.error.code == ErrorCode.VALIDATION
    assert "ValueError" in mission.error.stack_trace
    assert executor.order == ["bad"]


@pytest.mark.asyncio
async def test_structured_result_is_kept(context):
    async def executor(agent, mission):
        return MissionResult(output="report", duration_ms=42, token_usage=TokenUsage(input=1, output=2))

    driver = MissionDriver(context, executor)
    await driver.ensure_agents(1)
    mission_id = await context.queue.enqueue({"prompt": "p"})

    await run_until_idle(driver)

    result = context.queue.get_mission(mission_id).result
    assert result.duration_ms == 42
    assert result.token_usage.output == 2


@pytest.mark.asyncio
async def test_timed_out_mission_is_failed_and_agent_freed(context):
    release = asyncio.Event()

    async def executor(agent, mission):
        await release.wait()
        return "too late"

    driver = MissionDriver(context, executor)
    await driver.ensure_agents(1)
    await context.queue.enqueue({"id": "slow", "prompt": "p", "timeout_ms": 20})

    assert await driver.tick() == ["slow"]
    await asyncio.sleep(0.1)
    await driver.tick()

    mission = context.queue.get_mission("slow")
    assert mission.status == MissionStatus.RETRYING
    assert mission.error.code == ErrorCode.TIMEOUT
    assert driver.running == {}
    assert context.spawner.get_available_agent() is not None


@pytest.mark.asyncio
async def test_cancelled_mission_frees_agent_on_late_completion(context):
    release = asyncio.Event()

    async def executor(agent, mission):
        await release.wait()
        return "finished anyway"

    driver = MissionDriver(context, executor)
    await driver.ensure_agents(1)
    await context.queue.enqueue({"id": "doomed", "prompt": "p"})
    await driver.tick()

    await context.queue.cancel("doomed", "no longer needed")
    release.set()
    await driver.drain()

    assert context.queue.get_mission("doomed").status == MissionStatus.CANCELLED
    assert context.spawner.get_available_agent() is not None


@pytest.mark.asyncio
async def test_auto_merge_of_isolated_agents(context, git_repo):
    worktrees = context.worktree_manager

    async def executor(agent, mission):
        (Path(agent.worktree_path) / f"{mission.id}.txt").write_text(mission.prompt + "\n")
        await worktrees.commit(agent.id, f"Work for {mission.id}")
        return "committed"

    driver = MissionDriver(context, executor, auto_merge=True)
    await driver.ensure_agents(2, AgentConfig(isolation_mode="worktree"))
    await context.queue.enqueue({"id": "ui", "prompt": "frontend"})
    await context.queue.enqueue({"id": "api", "prompt": "backend"})

    await run_until_idle(driver)

    assert (git_repo / "ui.txt").read_text() == "frontend\n"
    assert (git_repo / "api.txt").read_text() == "backend\n"
    assert {info.status for info in worktrees.get_all_worktrees()} == {WorktreeStatus.MERGED}


@pytest.mark.asyncio
async def test_run_loop_until_stopped(context):
    executor = RecordingExecutor()
    driver = MissionDriver(context, executor)
    await driver.ensure_agents(1)
    mission_id = await context.queue.enqueue({"prompt": "p"})

    loop_task = asyncio.create_task(driver.run())
    for _ in range(100):
        if context.queue.get_mission(mission_id).status == MissionStatus.COMPLETED:
            break
        await asyncio.sleep(0.01)

    driver.stop()
    await asyncio.wait_for(loop_task, 1)

    assert context.queue.get_mission(mission_id).status == MissionStatus.COMPLETED


@pytest.mark.parametrize("exc,code,recoverable", [
    (MissionExecutionError("quota", ErrorCode.RATE_LIMIT, retry_after_ms=500), ErrorCode.RATE_LIMIT, True),
    (asyncio.TimeoutError(), ErrorCode.TIMEOUT, True),
    (PermissionError("denied"), ErrorCode.AUTH, False),
    (OSError("disk full"), ErrorCode.RESOURCE, True),
    (ValueError("bad input"), ErrorCode.VALIDATION, False),
    (RuntimeError("boom"), ErrorCode.UNKNOWN, False),
])
def test_classify_error(exc, code, recoverable):
    error = classify_error(exc)

    assert error.code == code
    assert error.recoverable is recoverable
    assert error.message


def test_classify_error_keeps_retry_after():
    error = classify_error(MissionExecutionError("quota", ErrorCode.RATE_LIMIT, retry_after_ms=500))

    assert error.retry_after_ms == 500
    assert error.message == "quota"


@pytest.mark.asyncio
async def test_shutdown_keeps_only_unowned_worktrees_when_cleanup_disabled(settings, fake_tmux, scheduler):
    keep_settings = settings.model_copy(update={"cleanup_on_shutdown": False})
    ctx = await build_context(keep_settings, tmux=fake_tmux, scheduler=scheduler)
    agent = await ctx.spawner.spawn_agent(AgentConfig(isolation_mode="worktree"))
    unowned = await ctx.worktree_manager.provision(99)

    await ctx.shutdown()

    assert not Path(agent.worktree_path).exists()
    assert Path(unowned.path).exists()
