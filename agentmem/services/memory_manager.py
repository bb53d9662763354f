"""
Memory manager: the public workflows for new user facts and agent memories.

Each workflow embeds the candidate, shortlists similar stored items, skips
the judge entirely when nothing is similar, and otherwise executes the judge's
ADD / UPDATE / DELETE / NOOP verdict against the store. Writes for one scope
(an agent, or the user profile) are serialised through ``AgentLocks``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import agentmem.config as config
from agentmem.errors import EmbeddingProviderError, MemoryStorageCancelledError
from agentmem.models import FactCategory, LinkType, MemoryCategory, Vividness
from agentmem.services.agent_locks import AgentLocks
from agentmem.services.embeddings import EmbeddingResult, HybridEmbeddingService
from agentmem.services.llm_client import ChatFunction, ProviderConfig, generate_chat_response
from agentmem.services.memory_decision import (
    AddDecision,
    Decision,
    DeleteDecision,
    NoopDecision,
    UpdateDecision,
    decide_operation,
    decision_to_dict,
    find_similar_items,
)
from agentmem.services.memory_linker import MemoryLinker
from agentmem.services.storage import MemoryStorage
from agentmem.validators import (
    validate_choice,
    validate_limit,
    validate_required_text,
    validate_similarity,
)

logger = config.logger

EXISTING_MEMORY_LIMIT = 100


@dataclass
class ProcessResult:
    action: str  # added, updated, deleted_and_added, skipped
    decision: Decision
    item_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "item_id": self.item_id,
            "decision": decision_to_dict(self.decision),
        }


@dataclass
class NewFact:
    content: str
    category: str
    confidence: float = 80.0


@dataclass
class NewMemory:
    content: str
    category: str
    emotional_weight: float = 5.0


class MemoryManager:
    def __init__(
        self,
        storage: MemoryStorage,
        embedder: HybridEmbeddingService,
        locks: Optional[AgentLocks] = None,
        chat_fn: Optional[ChatFunction] = generate_chat_response,
        linker: Optional[MemoryLinker] = None,
        auto_link: Optional[bool] = None,
    ):
        self.storage = storage
        self.embedder = embedder
        self.locks = locks or AgentLocks()
        self.chat_fn = chat_fn
        self.linker = linker or MemoryLinker(storage)
        self.auto_link = config.MEMORY_AUTO_LINK if auto_link is None else auto_link

    async def _embed_candidate(self, content: str) -> EmbeddingResult:
        try:
            embedded = await self.embedder.embed(content)
        except EmbeddingProviderError as exc:
            logger.error("candidate_embedding_failed", extra={"preview": content[:50], "detail": str(exc)})
            raise MemoryStorageCancelledError() from exc
        return embedded

    # -------------------------------------------------------------------------
    # User facts
    # -------------------------------------------------------------------------

    async def process_user_fact(
        self,
        provider_id: Optional[str],
        provider_config: Optional[ProviderConfig],
        new_fact: NewFact,
        source_agent_id: Optional[str] = None,
    ) -> ProcessResult:
        validate_required_text(new_fact.content, "content", config.MAX_TEXT_LENGTH)
        category = validate_choice(new_fact.category, "category", FactCategory)
        store = self.storage.user_profile

        async with self.locks.for_profile():
            embedded = await self._embed_candidate(new_fact.content)
            existing = store.list_facts(include_embedding=True)
            similar = find_similar_items(embedded.vector, existing, target_category=category)

            if not similar:
                fact = await store.add_fact(
                    new_fact.content, category, new_fact.confidence, source_agent_id, embedding=embedded
                )
                logger.info("fact_added_no_similar", extra={"fact_id": fact["id"]})
                return ProcessResult(
                    action="added",
                    item_id=fact["id"],
                    decision=AddDecision(reason="No similar facts found"),
                )

            decision = await decide_operation(
                self.chat_fn, provider_id, provider_config, new_fact.content, similar
            )
            logger.info(
                "fact_decision",
                extra={"operation": decision.operation.value, "reason": decision.reason},
            )

            if isinstance(decision, UpdateDecision):
                updated = await store.update_fact(
                    decision.target_id,
                    content=decision.merged_content,
                    confidence=max(new_fact.confidence, 80.0),
                )
                if updated:
                    if source_agent_id:
                        store.add_fact_source(updated["id"], source_agent_id)
                    return ProcessResult(action="updated", item_id=updated["id"], decision=decision)

            if isinstance(decision, DeleteDecision):
                fact = await store.add_fact(
                    new_fact.content, category, new_fact.confidence, source_agent_id, embedding=embedded
                )
                store.delete_fact(decision.target_id)
                return ProcessResult(action="deleted_and_added", item_id=fact["id"], decision=decision)

            if isinstance(decision, NoopDecision):
                if source_agent_id:
                    store.add_fact_source(similar[0].id, source_agent_id)
                return ProcessResult(action="skipped", item_id=similar[0].id, decision=decision)

            fact = await store.add_fact(
                new_fact.content, category, new_fact.confidence, source_agent_id, embedding=embedded
            )
            return ProcessResult(action="added", item_id=fact["id"], decision=decision)

    # -------------------------------------------------------------------------
    # Agent memories
    # -------------------------------------------------------------------------

    async def _add_agent_memory(
        self,
        agent_id: str,
        content: str,
        new_memory: NewMemory,
        category: str,
        supersedes: Optional[str] = None,
        embedding: Optional[EmbeddingResult] = None,
    ) -> dict:
        memory = await self.storage.agent_memory.add_memory(
            agent_id,
            content,
            category,
            strength=100.0,
            emotional_weight=new_memory.emotional_weight,
            vividness=Vividness.vivid.value,
            recall_count=0,
            embedding=embedding,
        )
        if supersedes:
            self._supersede(supersedes, memory["id"])
        if self.auto_link:
            try:
                self.linker.link_new_memory(agent_id, memory["id"])
            except Exception as exc:
                logger.warning(
                    "memory_auto_link_failed",
                    extra={"agent_id": agent_id, "memory_id": memory["id"], "detail": str(exc)},
                )
        return memory

    def _supersede(self, old_id: str, new_id: str) -> None:
        store = self.storage.agent_memory
        if store.mark_superseded(old_id, new_id):
            store.add_memory_link(new_id, old_id, LinkType.updates.value, 1.0)

    async def process_agent_memory(
        self,
        provider_id: Optional[str],
        provider_config: Optional[ProviderConfig],
        agent_id: str,
        new_memory: NewMemory,
    ) -> ProcessResult:
        validate_required_text(agent_id, "agent_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_required_text(new_memory.content, "content", config.MAX_TEXT_LENGTH)
        category = validate_choice(new_memory.category, "category", MemoryCategory)
        store = self.storage.agent_memory

        async with self.locks.for_agent(agent_id):
            embedded = await self._embed_candidate(new_memory.content)
            existing = store.get_active_memories(
                agent_id, limit=EXISTING_MEMORY_LIMIT, include_embedding=True
            )
            similar = find_similar_items(embedded.vector, existing, target_category=category)

            if not similar:
                memory = await self._add_agent_memory(
                    agent_id, new_memory.content, new_memory, category, embedding=embedded
                )
                logger.info("memory_added_no_similar", extra={"agent_id": agent_id, "memory_id": memory["id"]})
                return ProcessResult(
                    action="added",
                    item_id=memory["id"],
                    decision=AddDecision(reason="No similar memories found"),
                )

            decision = await decide_operation(
                self.chat_fn, provider_id, provider_config, new_memory.content, similar
            )
            logger.info(
                "memory_decision",
                extra={"agent_id": agent_id, "operation": decision.operation.value, "reason": decision.reason},
            )

            if isinstance(decision, UpdateDecision):
                memory = await self._add_agent_memory(
                    agent_id, decision.merged_content, new_memory, category, supersedes=decision.target_id
                )
                return ProcessResult(action="updated", item_id=memory["id"], decision=decision)

            if isinstance(decision, DeleteDecision):
                memory = await self._add_agent_memory(
                    agent_id,
                    new_memory.content,
                    new_memory,
                    category,
                    supersedes=decision.target_id,
                    embedding=embedded,
                )
                return ProcessResult(action="deleted_and_added", item_id=memory["id"], decision=decision)

            if isinstance(decision, NoopDecision):
                return ProcessResult(action="skipped", item_id=similar[0].id, decision=decision)

            memory = await self._add_agent_memory(
                agent_id, new_memory.content, new_memory, category, embedding=embedded
            )
            return ProcessResult(action="added", item_id=memory["id"], decision=decision)

    # -------------------------------------------------------------------------
    # Retrieval for prompt construction
    # -------------------------------------------------------------------------

    async def retrieve_relevant_facts(
        self,
        query: str,
        limit: int = 10,
        min_similarity: float = 0.3,
    ) -> list[dict]:
        validate_required_text(query, "query", config.MAX_TEXT_LENGTH)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        validate_similarity(min_similarity, "min_similarity")
        try:
            embedded = await self.embedder.embed(query)
        except EmbeddingProviderError as exc:
            logger.warning("fact_retrieval_embedding_failed", extra={"detail": str(exc)})
            return []
        return self.storage.user_profile.search_facts_by_similarity(
            embedded.vector,
            limit=limit,
            min_similarity=min_similarity,
            expand_by_category=True,
            max_expansion=config.FACT_CATEGORY_MAX_EXPANSION,
        )

    async def retrieve_relevant_memories(
        self,
        agent_id: str,
        query: str,
        limit: int = 10,
        min_similarity: float = 0.3,
    ) -> list[dict]:
        validate_required_text(agent_id, "agent_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_required_text(query, "query", config.MAX_TEXT_LENGTH)
        validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
        validate_similarity(min_similarity, "min_similarity")
        try:
            return await self.storage.agent_memory.hybrid_retrieve_memories(
                agent_id, query, limit=limit, min_similarity=min_similarity
            )
        except EmbeddingProviderError as exc:
            logger.warning("memory_retrieval_embedding_failed", extra={"agent_id": agent_id, "detail": str(exc)})
            return []
