"""
Agent memory storage.

Covers the per-agent relationship aggregate, the memories it owns, the
knowledge-graph links between them, and the strength/vividness model:

- recall adds 5 strength (capped at 100) and upgrades vividness by recall count
- decay removes ``max(2, 5 - emotional_weight * 0.03)`` strength per day since
  the last recall and recomputes vividness from the resulting strength
- superseded memories stay in the table for direct lookup and traversal but
  are invisible to active queries and similarity search
"""

from __future__ import annotations

from collections import deque
from datetime import datetime
from typing import Optional

from sqlalchemy import or_

import agentmem.config as config
from agentmem.errors import EmbeddingProviderError, MemoryStorageCancelledError
from agentmem.models import (
    AgentMemory,
    AgentRelationship,
    LinkType,
    MemoryCategory,
    MemoryLink,
    Mood,
    Vividness,
    utcnow,
)
from agentmem.services.embeddings import EmbeddingResult, HybridEmbeddingService
from agentmem.services.similarity import find_top_k_similar, safe_similarity
from agentmem.validators import (
    validate_choice,
    validate_limit,
    validate_optional_text,
    validate_percentage,
    validate_required_text,
)

logger = config.logger

SECONDS_PER_DAY = 24 * 60 * 60
ACTIVE_STRENGTH_FLOOR = 10.0
RECALL_STRENGTH_BOOST = 5.0
MAX_STRENGTH = 100.0


def vividness_for_strength(strength: float, current: str) -> str:
    """Decay-driven vividness: thresholds on strength, unchanged at 80 and above."""
    if strength < 20:
        return Vividness.fragment.value
    if strength < 50:
        return Vividness.hazy.value
    if strength < 80:
        return Vividness.clear.value
    return current


def vividness_after_recall(current: str, recall_count: int) -> str:
    """Recall-driven vividness: upgrades follow recall count, not strength."""
    if current == Vividness.fragment.value and recall_count > 3:
        return Vividness.hazy.value
    if current == Vividness.hazy.value and recall_count > 5:
        return Vividness.clear.value
    return current


def decay_rate(emotional_weight: float) -> float:
    return max(2.0, 5.0 - (emotional_weight or 0.0) * 0.03)


def serialize_memory(row: AgentMemory, include_embedding: bool = False) -> dict:
    data = {
        "id": row.id,
        "agent_id": row.agent_id,
        "content": row.content,
        "category": row.category,
        "strength": row.strength,
        "emotional_weight": row.emotional_weight,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "last_recalled_at": row.last_recalled_at.isoformat() if row.last_recalled_at else None,
        "recall_count": row.recall_count,
        "linked_memories": list(row.linked_memories or []),
        "vividness": row.vividness,
        "embedding_model": row.embedding_model,
        "superseded_by": row.superseded_by,
        "superseded_at": row.superseded_at.isoformat() if row.superseded_at else None,
    }
    if include_embedding:
        data["embedding"] = row.embedding
    return data


def serialize_link(row: MemoryLink) -> dict:
    return {
        "id": row.id,
        "source_id": row.source_id,
        "target_id": row.target_id,
        "relationship": row.link_type,
        "similarity": row.similarity,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


def serialize_relationship(row: AgentRelationship, observations: list[dict]) -> dict:
    return {
        "agent_id": row.agent_id,
        "relationship": {
            "trust_level": row.trust_level,
            "familiarity": row.familiarity,
            "last_interaction": row.last_interaction.isoformat() if row.last_interaction else None,
            "total_interactions": row.total_interactions,
        },
        "agent_feelings": {
            "current_mood": row.current_mood,
            "notes": row.mood_notes or "",
        },
        "observations": observations,
        "domain_memory": dict(row.domain_memory or {}),
    }


def _clamp_percentage(value: float) -> float:
    return max(0.0, min(100.0, value))


class AgentMemoryStore:
    def __init__(self, session_factory, embedder: HybridEmbeddingService):
        self._session_factory = session_factory
        self._embedder = embedder

    # -------------------------------------------------------------------------
    # Relationship aggregate
    # -------------------------------------------------------------------------

    def _ensure_relationship(self, db, agent_id: str) -> AgentRelationship:
        relationship = db.get(AgentRelationship, agent_id)
        if relationship is None:
            now = utcnow()
            relationship = AgentRelationship(
                agent_id=agent_id,
                trust_level=50.0,
                familiarity=0.0,
                last_interaction=now,
                total_interactions=0,
                current_mood=Mood.neutral.value,
                mood_notes="",
                domain_memory={},
                created_at=now,
                updated_at=now,
            )
            db.add(relationship)
            db.flush()
            logger.info("agent_relationship_created", extra={"agent_id": agent_id})
        return relationship

    def _active_query(self, db, agent_id: str):
        return (
            db.query(AgentMemory)
            .filter(AgentMemory.agent_id == agent_id)
            .filter(AgentMemory.strength > ACTIVE_STRENGTH_FLOOR)
            .filter(AgentMemory.superseded_by.is_(None))
            .order_by(AgentMemory.strength.desc())
        )

    def get_relationship(self, agent_id: str) -> Optional[dict]:
        db = self._session_factory()
        try:
            relationship = db.get(AgentRelationship, agent_id)
            if relationship is None:
                return None
            observations = [serialize_memory(row) for row in self._active_query(db, agent_id).all()]
            return serialize_relationship(relationship, observations)
        finally:
            db.close()

    def list_agent_ids(self) -> list[str]:
        db = self._session_factory()
        try:
            rows = db.query(AgentRelationship.agent_id).order_by(AgentRelationship.agent_id).all()
            return [row[0] for row in rows]
        finally:
            db.close()

    def record_interaction(self, agent_id: str) -> dict:
        """Bump interaction count and familiarity (+0.5, capped at 100)."""
        validate_required_text(agent_id, "agent_id", config.MAX_SHORT_TEXT_LENGTH)
        db = self._session_factory()
        try:
            relationship = self._ensure_relationship(db, agent_id)
            now = utcnow()
            relationship.familiarity = min(100.0, (relationship.familiarity or 0.0) + 0.5)
            relationship.total_interactions = (relationship.total_interactions or 0) + 1
            relationship.last_interaction = now
            relationship.updated_at = now
            db.commit()
            observations = [serialize_memory(row) for row in self._active_query(db, agent_id).all()]
            return serialize_relationship(relationship, observations)
        finally:
            db.close()

    def update_relationship(
        self,
        agent_id: str,
        trust_level: Optional[float] = None,
        familiarity: Optional[float] = None,
        mood: Optional[str] = None,
        mood_notes: Optional[str] = None,
    ) -> dict:
        validate_required_text(agent_id, "agent_id", config.MAX_SHORT_TEXT_LENGTH)
        mood_value = validate_choice(mood, "mood", Mood) if mood is not None else None
        validate_optional_text(mood_notes, "mood_notes", config.MAX_TEXT_LENGTH)

        db = self._session_factory()
        try:
            relationship = self._ensure_relationship(db, agent_id)
            if trust_level is not None:
                relationship.trust_level = _clamp_percentage(trust_level)
            if familiarity is not None:
                relationship.familiarity = _clamp_percentage(familiarity)
            if mood_value is not None:
                relationship.current_mood = mood_value
            if mood_notes is not None:
                relationship.mood_notes = mood_notes
            relationship.updated_at = utcnow()
            db.commit()
            observations = [serialize_memory(row) for row in self._active_query(db, agent_id).all()]
            return serialize_relationship(relationship, observations)
        finally:
            db.close()

    def update_domain_memory(self, agent_id: str, updates: dict) -> dict:
        """Merge keys into the agent's free-form domain memory map."""
        db = self._session_factory()
        try:
            relationship = self._ensure_relationship(db, agent_id)
            merged = dict(relationship.domain_memory or {})
            merged.update(updates)
            relationship.domain_memory = merged
            relationship.updated_at = utcnow()
            db.commit()
            return dict(merged)
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # Memories
    # -------------------------------------------------------------------------

    async def add_memory(
        self,
        agent_id: str,
        content: str,
        category: str,
        strength: float = 100.0,
        emotional_weight: float = 5.0,
        vividness: str = Vividness.vivid.value,
        recall_count: int = 0,
        linked_memories: Optional[list[str]] = None,
        created_at: Optional[datetime] = None,
        last_recalled_at: Optional[datetime] = None,
        embedding: Optional[EmbeddingResult] = None,
    ) -> dict:
        """Embed and persist a memory, creating the relationship row on first use."""
        validate_required_text(agent_id, "agent_id", config.MAX_SHORT_TEXT_LENGTH)
        validate_required_text(content, "content", config.MAX_TEXT_LENGTH)
        category_value = validate_choice(category, "category", MemoryCategory)
        vividness_value = validate_choice(vividness, "vividness", Vividness)
        validate_percentage(strength, "strength")

        embedded = embedding
        if embedded is None:
            try:
                embedded = await self._embedder.embed(content)
            except EmbeddingProviderError as exc:
                logger.error(
                    "memory_embedding_failed",
                    extra={"agent_id": agent_id, "preview": content[:50], "detail": str(exc)},
                )
                raise MemoryStorageCancelledError() from exc

        db = self._session_factory()
        try:
            self._ensure_relationship(db, agent_id)
            now = utcnow()
            memory = AgentMemory(
                agent_id=agent_id,
                content=content,
                category=category_value,
                strength=float(strength),
                emotional_weight=float(emotional_weight),
                created_at=created_at or now,
                last_recalled_at=last_recalled_at or created_at or now,
                recall_count=recall_count,
                linked_memories=list(linked_memories or []),
                vividness=vividness_value,
                embedding=embedded.vector,
                embedding_model=embedded.model,
            )
            db.add(memory)
            db.commit()
            db.refresh(memory)
            logger.info(
                "memory_added",
                extra={"agent_id": agent_id, "memory_id": memory.id, "source": embedded.source},
            )
            return serialize_memory(memory)
        finally:
            db.close()

    def get_memory(self, memory_id: str, include_embedding: bool = False) -> Optional[dict]:
        """Direct lookup, superseded memories included."""
        db = self._session_factory()
        try:
            memory = db.get(AgentMemory, memory_id)
            return serialize_memory(memory, include_embedding=include_embedding) if memory else None
        finally:
            db.close()

    def recall_memory(self, agent_id: str, memory_id: str) -> Optional[dict]:
        db = self._session_factory()
        try:
            memory = (
                db.query(AgentMemory)
                .filter(AgentMemory.id == memory_id)
                .filter(AgentMemory.agent_id == agent_id)
                .first()
            )
            if not memory:
                return None
            memory.recall_count = (memory.recall_count or 0) + 1
            memory.strength = min(MAX_STRENGTH, memory.strength + RECALL_STRENGTH_BOOST)
            memory.last_recalled_at = utcnow()
            memory.vividness = vividness_after_recall(memory.vividness, memory.recall_count)
            db.commit()
            db.refresh(memory)
            return serialize_memory(memory)
        finally:
            db.close()

    def get_active_memories(
        self,
        agent_id: str,
        limit: int = 10,
        include_embedding: bool = False,
    ) -> list[dict]:
        """Memories above the strength floor that have not been superseded."""
        validate_limit(limit, "limit", 10_000)
        db = self._session_factory()
        try:
            rows = self._active_query(db, agent_id).limit(limit).all()
            return [serialize_memory(row, include_embedding=include_embedding) for row in rows]
        finally:
            db.close()

    def list_memories(self, agent_id: str, include_superseded: bool = False) -> list[dict]:
        db = self._session_factory()
        try:
            query = db.query(AgentMemory).filter(AgentMemory.agent_id == agent_id)
            if not include_superseded:
                query = query.filter(AgentMemory.superseded_by.is_(None))
            rows = query.order_by(AgentMemory.created_at.asc()).all()
            return [serialize_memory(row) for row in rows]
        finally:
            db.close()

    def _searchable_rows(self, agent_id: str) -> list[AgentMemory]:
        db = self._session_factory()
        try:
            return (
                db.query(AgentMemory)
                .filter(AgentMemory.agent_id == agent_id)
                .filter(AgentMemory.embedding.isnot(None))
                .filter(AgentMemory.superseded_by.is_(None))
                .all()
            )
        finally:
            db.close()

    def search_memories_by_similarity(
        self,
        agent_id: str,
        query_embedding: list[float],
        limit: int = 10,
        min_similarity: float = 0.3,
    ) -> list[dict]:
        rows = self._searchable_rows(agent_id)
        matches = find_top_k_similar(
            query_embedding,
            [(row, row.embedding) for row in rows],
            k=limit,
            min_similarity=min_similarity,
        )
        results = []
        for match in matches:
            data = serialize_memory(match.item)
            data["similarity"] = match.similarity
            results.append(data)
        return results

    async def hybrid_retrieve_memories(
        self,
        agent_id: str,
        query: str,
        limit: int = 10,
        similarity_weight: float = 0.6,
        strength_weight: float = 0.4,
        min_similarity: float = 0.3,
    ) -> list[dict]:
        """Blend similarity with strength.

        The threshold applies to raw similarity; ordering uses the hybrid score.
        """
        validate_required_text(query, "query", config.MAX_TEXT_LENGTH)
        embedded = await self._embedder.embed(query)

        scored = []
        for row in self._searchable_rows(agent_id):
            similarity = safe_similarity(embedded.vector, row.embedding)
            if similarity is None or similarity < min_similarity:
                continue
            hybrid_score = similarity * similarity_weight + (row.strength / 100.0) * strength_weight
            scored.append((row, similarity, hybrid_score))

        scored.sort(key=lambda item: item[2], reverse=True)
        results = []
        for row, similarity, hybrid_score in scored[:limit]:
            data = serialize_memory(row)
            data["similarity"] = similarity
            data["hybrid_score"] = hybrid_score
            results.append(data)
        return results

    def decay_memories(self, agent_id: str, now: Optional[datetime] = None) -> dict:
        """Age every non-superseded memory of one agent; commits once."""
        now = now or utcnow()
        db = self._session_factory()
        try:
            rows = (
                db.query(AgentMemory)
                .filter(AgentMemory.agent_id == agent_id)
                .filter(AgentMemory.superseded_by.is_(None))
                .all()
            )
            decayed = 0
            removed_ids = []
            for memory in rows:
                days = max(0.0, (now - memory.last_recalled_at).total_seconds() / SECONDS_PER_DAY)
                decay = decay_rate(memory.emotional_weight) * days
                new_strength = max(0.0, memory.strength - decay)
                if new_strength <= 0:
                    removed_ids.append(memory.id)
                    continue
                if decay > 0:
                    decayed += 1
                memory.strength = new_strength
                memory.vividness = vividness_for_strength(new_strength, memory.vividness)

            if removed_ids:
                self._delete_links(db, removed_ids)
                db.query(AgentMemory).filter(AgentMemory.id.in_(removed_ids)).delete(
                    synchronize_session=False
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if decayed or removed_ids:
            logger.info(
                "memory_decay_applied",
                extra={"agent_id": agent_id, "decayed": decayed, "removed": len(removed_ids)},
            )
        return {"decayed": decayed, "removed": len(removed_ids)}

    def mark_superseded(self, old_id: str, new_id: str) -> bool:
        db = self._session_factory()
        try:
            memory = db.get(AgentMemory, old_id)
            if not memory:
                return False
            memory.superseded_by = new_id
            memory.superseded_at = utcnow()
            db.commit()
            logger.info("memory_superseded", extra={"old_id": old_id, "new_id": new_id})
            return True
        finally:
            db.close()

    def delete_memory(self, memory_id: str) -> bool:
        """Explicit removal of a memory together with its links."""
        db = self._session_factory()
        try:
            self._delete_links(db, [memory_id])
            deleted = db.query(AgentMemory).filter(AgentMemory.id == memory_id).delete(
                synchronize_session=False
            )
            db.commit()
            return deleted > 0
        finally:
            db.close()

    # -------------------------------------------------------------------------
    # Knowledge graph
    # -------------------------------------------------------------------------

    @staticmethod
    def _delete_links(db, memory_ids: list[str]) -> None:
        db.query(MemoryLink).filter(
            or_(MemoryLink.source_id.in_(memory_ids), MemoryLink.target_id.in_(memory_ids))
        ).delete(synchronize_session=False)

    def add_memory_link(
        self,
        source_id: str,
        target_id: str,
        relationship: str,
        similarity: float,
    ) -> dict:
        """Insert a directed edge and record the target on the source memory."""
        link_type = validate_choice(relationship, "relationship", LinkType)
        db = self._session_factory()
        try:
            link = MemoryLink(
                source_id=source_id,
                target_id=target_id,
                link_type=link_type,
                similarity=float(similarity),
                created_at=utcnow(),
            )
            db.add(link)
            source = db.get(AgentMemory, source_id)
            if source is not None:
                linked = list(source.linked_memories or [])
                if target_id not in linked:
                    linked.append(target_id)
                    source.linked_memories = linked
            db.commit()
            db.refresh(link)
            return serialize_link(link)
        finally:
            db.close()

    def get_memory_links(self, memory_id: str) -> list[dict]:
        db = self._session_factory()
        try:
            rows = (
                db.query(MemoryLink)
                .filter(or_(MemoryLink.source_id == memory_id, MemoryLink.target_id == memory_id))
                .order_by(MemoryLink.similarity.desc())
                .all()
            )
            return [serialize_link(row) for row in rows]
        finally:
            db.close()

    def find_related_memories(
        self,
        memory_id: str,
        max_hops: int = 2,
        include_superseded: bool = False,
    ) -> list[dict]:
        """Breadth-first walk over links in both directions.

        Superseded nodes are always walked through; they are only part of the
        result when ``include_superseded`` is set.
        """
        visited = {memory_id}
        results = []
        db = self._session_factory()
        try:
            frontier = deque([memory_id])
            for hop in range(1, max_hops + 1):
                next_frontier = deque()
                while frontier:
                    current = frontier.popleft()
                    links = (
                        db.query(MemoryLink)
                        .filter(or_(MemoryLink.source_id == current, MemoryLink.target_id == current))
                        .order_by(MemoryLink.similarity.desc())
                        .all()
                    )
                    for link in links:
                        neighbour = link.target_id if link.source_id == current else link.source_id
                        if neighbour in visited:
                            continue
                        visited.add(neighbour)
                        next_frontier.append(neighbour)
                        memory = db.get(AgentMemory, neighbour)
                        if memory is None:
                            continue
                        if memory.superseded_by and not include_superseded:
                            continue
                        results.append({"memory": serialize_memory(memory), "distance": hop})
                frontier = next_frontier
                if not frontier:
                    break
            return results
        finally:
            db.close()

    def count_links(self, agent_id: str) -> dict:
        """Link counts by type for one agent's memories."""
        db = self._session_factory()
        try:
            rows = (
                db.query(MemoryLink)
                .join(AgentMemory, AgentMemory.id == MemoryLink.source_id)
                .filter(AgentMemory.agent_id == agent_id)
                .all()
            )
            counts = {link_type.value: 0 for link_type in LinkType}
            for row in rows:
                counts[row.link_type] = counts.get(row.link_type, 0) + 1
            return counts
        finally:
            db.close()
