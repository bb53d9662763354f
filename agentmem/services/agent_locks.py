"""
Per-agent write serialisation shared by the memory manager and the decay loop.
"""

from __future__ import annotations

import asyncio

PROFILE_SCOPE = "__user_profile__"


class AgentLocks:
    """Lazily created ``asyncio.Lock`` per agent, plus one for the user profile."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def for_scope(self, scope: str) -> asyncio.Lock:
        lock = self._locks.get(scope)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[scope] = lock
        return lock

    def for_agent(self, agent_id: str) -> asyncio.Lock:
        return self.for_scope(f"agent:{agent_id}")

    def for_profile(self) -> asyncio.Lock:
        return self.for_scope(PROFILE_SCOPE)
