"""
Storage container pairing the user-profile and agent-memory stores.
"""

from __future__ import annotations

from dataclasses import dataclass

from agentmem.services.agent_memory_store import AgentMemoryStore
from agentmem.services.embeddings import HybridEmbeddingService
from agentmem.services.user_profile_store import UserProfileStore


@dataclass
class MemoryStorage:
    user_profile: UserProfileStore
    agent_memory: AgentMemoryStore


def create_storage(session_factory, embedder: HybridEmbeddingService) -> MemoryStorage:
    return MemoryStorage(
        user_profile=UserProfileStore(session_factory, embedder),
        agent_memory=AgentMemoryStore(session_factory, embedder),
    )
