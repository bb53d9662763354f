"""
Periodic memory decay across every known agent.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import agentmem.config as config
from agentmem.models import utcnow
from agentmem.services.agent_locks import AgentLocks
from agentmem.services.agent_memory_store import AgentMemoryStore

logger = config.logger

AgentLister = Callable[[], Any]  # returns [{"id", "name"}], sync or awaitable


@dataclass
class DecayResult:
    agent_id: str
    memories_before: int
    memories_after: int
    decayed: int
    removed: int
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SchedulerStats:
    is_running: bool
    interval_seconds: float
    last_decay_at: Optional[datetime]
    next_decay_at: Optional[datetime]
    total_decay_runs: int
    total_memories_decayed: int
    total_memories_removed: int

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("last_decay_at", "next_decay_at"):
            data[key] = data[key].isoformat() if data[key] else None
        return data


class DecayScheduler:
    """Background loop calling ``decay_memories`` for each agent once per tick.

    The interval defaults to four hours and is clamped to [1h, 24h]. A failing
    agent is reported in its own ``DecayResult`` and the sweep carries on.
    """

    def __init__(
        self,
        store: AgentMemoryStore,
        list_agents: AgentLister,
        locks: Optional[AgentLocks] = None,
        interval_seconds: Optional[float] = None,
    ):
        self._store = store
        self._list_agents = list_agents
        self._locks = locks or AgentLocks()
        self._interval = config.clamp_decay_interval(
            interval_seconds if interval_seconds is not None else config.DECAY_INTERVAL_SECONDS
        )
        self._task: Optional[asyncio.Task] = None
        self._starting = False
        self._run_lock = asyncio.Lock()
        self._last_decay_at: Optional[datetime] = None
        self._next_decay_at: Optional[datetime] = None
        self._total_runs = 0
        self._total_decayed = 0
        self._total_removed = 0

    @property
    def is_running(self) -> bool:
        return self._starting or (self._task is not None and not self._task.done())

    @property
    def interval_seconds(self) -> float:
        return self._interval

    async def start(self, run_on_start: bool = True) -> None:
        if self.is_running:
            return
        self._starting = True
        try:
            logger.info("decay_scheduler_started", extra={"interval_seconds": self._interval})
            if run_on_start:
                await self.run_decay()
            self._task = asyncio.create_task(self._loop())
        finally:
            self._starting = False

    async def stop(self) -> None:
        task = self._task
        self._task = None
        self._next_decay_at = None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("decay_scheduler_stopped")

    async def _loop(self) -> None:
        while True:
            self._next_decay_at = utcnow() + timedelta(seconds=self._interval)
            await asyncio.sleep(self._interval)
            try:
                await self.run_decay()
            except Exception as exc:
                logger.warning("decay_loop_failed", extra={"detail": str(exc)})

    async def _agent_ids(self) -> list[str]:
        agents = self._list_agents()
        if inspect.isawaitable(agents):
            agents = await agents
        ids = []
        for agent in agents or []:
            agent_id = agent.get("id") if isinstance(agent, dict) else agent
            if agent_id:
                ids.append(str(agent_id))
        return ids

    def _decay_agent(self, agent_id: str) -> DecayResult:
        before = len(self._store.list_memories(agent_id))
        outcome = self._store.decay_memories(agent_id)
        after = len(self._store.list_memories(agent_id))
        return DecayResult(
            agent_id=agent_id,
            memories_before=before,
            memories_after=after,
            decayed=outcome["decayed"],
            removed=outcome["removed"],
        )

    async def run_decay(self) -> list[DecayResult]:
        """One sweep over every agent."""
        async with self._run_lock:
            results = []
            for agent_id in await self._agent_ids():
                try:
                    async with self._locks.for_agent(agent_id):
                        result = await asyncio.to_thread(self._decay_agent, agent_id)
                except Exception as exc:
                    logger.warning(
                        "agent_decay_failed",
                        extra={"agent_id": agent_id, "detail": str(exc)},
                    )
                    result = DecayResult(
                        agent_id=agent_id,
                        memories_before=0,
                        memories_after=0,
                        decayed=0,
                        removed=0,
                        error=str(exc),
                    )
                results.append(result)

            self._total_runs += 1
            self._total_decayed += sum(result.decayed for result in results)
            self._total_removed += sum(result.removed for result in results)
            self._last_decay_at = utcnow()
            logger.info(
                "decay_sweep_complete",
                extra={
                    "agents": len(results),
                    "decayed": sum(result.decayed for result in results),
                    "removed": sum(result.removed for result in results),
                    "failed": sum(1 for result in results if result.error),
                },
            )
            return results

    async def force_decay(self) -> list[DecayResult]:
        logger.info("decay_forced")
        return await self.run_decay()

    def get_stats(self) -> SchedulerStats:
        return SchedulerStats(
            is_running=self.is_running,
            interval_seconds=self._interval,
            last_decay_at=self._last_decay_at,
            next_decay_at=self._next_decay_at if self.is_running else None,
            total_decay_runs=self._total_runs,
            total_memories_decayed=self._total_decayed,
            total_memories_removed=self._total_removed,
        )

    async def set_decay_interval(self, seconds: float, run_immediately: bool = False) -> float:
        """Change the interval, restarting the loop when it is running."""
        clamped = config.clamp_decay_interval(seconds)
        changed = clamped != self._interval
        self._interval = clamped
        if changed and self.is_running:
            await self.stop()
            await self.start(run_on_start=run_immediately)
        elif run_immediately:
            await self.run_decay()
        if changed:
            logger.info("decay_interval_updated", extra={"interval_seconds": clamped})
        return clamped
