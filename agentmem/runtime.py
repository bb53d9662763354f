"""
Process-wide wiring of the memory engine's collaborators.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import agentmem.config as config
from agentmem.config import EmbeddingSettings
from agentmem.services.agent_locks import AgentLocks
from agentmem.services.agent_memory_store import AgentMemoryStore
from agentmem.services.conflict_resolver import ConflictResolver
from agentmem.services.decay_scheduler import DecayScheduler
from agentmem.services.embeddings import HybridEmbeddingService
from agentmem.services.llm_client import ChatFunction, generate_chat_response
from agentmem.services.memory_linker import MemoryLinker
from agentmem.services.memory_manager import MemoryManager
from agentmem.services.storage import MemoryStorage, create_storage


class StoreAgentDirectory:
    """Agent directory backed by the relationship table."""

    def __init__(self, store: AgentMemoryStore):
        self._store = store

    def list_agents(self) -> list[dict]:
        return [{"id": agent_id, "name": agent_id} for agent_id in self._store.list_agent_ids()]


@dataclass
class MemoryRuntime:
    embedder: HybridEmbeddingService
    storage: MemoryStorage
    locks: AgentLocks
    linker: MemoryLinker
    resolver: ConflictResolver
    manager: MemoryManager
    scheduler: DecayScheduler


def build_runtime(
    session_factory,
    embedder: Optional[HybridEmbeddingService] = None,
    chat_fn: Optional[ChatFunction] = generate_chat_response,
    list_agents=None,
    decay_interval_seconds: Optional[float] = None,
) -> MemoryRuntime:
    """Assemble every service around one session factory and one embedder."""
    embedder = embedder or HybridEmbeddingService(EmbeddingSettings.from_env())
    storage = create_storage(session_factory, embedder)
    locks = AgentLocks()
    linker = MemoryLinker(storage)
    if list_agents is None:
        list_agents = StoreAgentDirectory(storage.agent_memory).list_agents
    runtime = MemoryRuntime(
        embedder=embedder,
        storage=storage,
        locks=locks,
        linker=linker,
        resolver=ConflictResolver(storage, embedder),
        manager=MemoryManager(storage, embedder, locks=locks, chat_fn=chat_fn, linker=linker),
        scheduler=DecayScheduler(
            storage.agent_memory,
            list_agents,
            locks=locks,
            interval_seconds=decay_interval_seconds,
        ),
    )
    config.logger.info(
        "memory_runtime_ready",
        extra={"embedding_provider": embedder.settings.provider, "dimension": embedder.dimension},
    )
    return runtime


class Runtime:
    """Runtime holder populated by the application lifespan."""

    current: Optional[MemoryRuntime] = None


def get_runtime() -> MemoryRuntime:
    if Runtime.current is None:
        raise RuntimeError("Memory runtime is not initialized")
    return Runtime.current
