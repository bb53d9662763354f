import asyncio
from datetime import timedelta

import pytest

from agentmem.models import utcnow
from agentmem.services.decay_scheduler import DecayScheduler


async def _aged_memory(store, agent_id, content, days, strength=100.0, emotional_weight=0.0):
    start = utcnow() - timedelta(days=days)
    return await store.add_memory(
        agent_id,
        content,
        "observation",
        strength=strength,
        emotional_weight=emotional_weight,
        created_at=start,
        last_recalled_at=start,
    )


async def test_run_decay_sweeps_every_agent(runtime):
    store = runtime.storage.agent_memory
    await _aged_memory(store, "agent-a", "user likes tea", days=2)
    await _aged_memory(store, "agent-b", "user once mentioned a podcast", days=10, strength=20)

    results = await runtime.scheduler.run_decay()

    by_agent = {result.agent_id: result for result in results}
    assert set(by_agent) == {"agent-a", "agent-b"}
    assert by_agent["agent-a"].decayed == 1
    assert by_agent["agent-b"].removed == 1
    assert (by_agent["agent-b"].memories_before, by_agent["agent-b"].memories_after) == (1, 0)

    stats = runtime.scheduler.get_stats()
    assert stats.total_decay_runs == 1
    assert stats.total_memories_removed == 1
    assert stats.last_decay_at is not None


async def test_agent_failure_does_not_stop_sweep(runtime):
    store = runtime.storage.agent_memory
    await _aged_memory(store, "agent-a", "user likes tea", days=1)

    scheduler = DecayScheduler(store, lambda: [{"id": "agent-a", "name": "A"}, {"id": "ghost"}])
    original = store.decay_memories

    def flaky(agent_id, now=None):
        if agent_id == "ghost":
            raise RuntimeError("database locked")
        return original(agent_id, now)

    store.decay_memories = flaky
    results = await scheduler.run_decay()

    assert [result.agent_id for result in results] == ["agent-a", "ghost"]
    assert results[0].error is None
    assert results[1].error == "database locked"


async def test_async_agent_directory_is_supported(runtime):
    async def list_agents():
        return ["agent-a"]

    scheduler = DecayScheduler(runtime.storage.agent_memory, list_agents)
    results = await scheduler.run_decay()
    assert [result.agent_id for result in results] == ["agent-a"]


async def test_start_stop_and_interval_clamping(runtime):
    scheduler = runtime.scheduler
    assert scheduler.interval_seconds == 4 * 60 * 60

    await scheduler.start(run_on_start=True)
    try:
        assert scheduler.is_running
        stats = scheduler.get_stats().to_dict()
        assert stats["total_decay_runs"] == 1
        assert stats["is_running"] is True

        assert await scheduler.set_decay_interval(10) == 60 * 60
        assert scheduler.is_running
        assert await scheduler.set_decay_interval(10 ** 7) == 24 * 60 * 60
    finally:
        await scheduler.stop()

    assert not scheduler.is_running
    assert scheduler.get_stats().next_decay_at is None


async def test_force_decay_counts_runs(runtime):
    await runtime.scheduler.force_decay()
    await runtime.scheduler.force_decay()
    assert runtime.scheduler.get_stats().total_decay_runs == 2
    assert runtime.scheduler.get_stats().to_dict()["last_decay_at"] is not None


@pytest.mark.parametrize("seconds, expected", [(0, 3600), (7200, 7200), (100000, 86400)])
def test_constructor_clamps_interval(runtime, seconds, expected):
    scheduler = DecayScheduler(runtime.storage.agent_memory, list, interval_seconds=seconds)
    assert scheduler.interval_seconds == expected


async def test_concurrent_start_spawns_one_loop(runtime):
    scheduler = runtime.scheduler
    try:
        await asyncio.gather(scheduler.start(run_on_start=True), scheduler.start(run_on_start=True))
        assert scheduler.get_stats().total_decay_runs == 1
        assert scheduler.is_running
    finally:
        await scheduler.stop()


async def test_unchanged_interval_still_runs_immediately(runtime):
    scheduler = runtime.scheduler
    interval = scheduler.interval_seconds
    assert await scheduler.set_decay_interval(interval, run_immediately=True) == interval
    assert scheduler.get_stats().total_decay_runs == 1
    assert not scheduler.is_running
