"""
User profile storage: the single, global set of deduplicated user facts.
"""

from __future__ import annotations

from typing import Optional

import agentmem.config as config
from agentmem.errors import EmbeddingProviderError, MemoryStorageCancelledError
from agentmem.models import FactCategory, UserFact, utcnow
from agentmem.services.embeddings import EmbeddingResult, HybridEmbeddingService
from agentmem.services.similarity import find_top_k_similar
from agentmem.validators import (
    validate_choice,
    validate_optional_text,
    validate_percentage,
    validate_required_text,
)

logger = config.logger


def serialize_fact(row: UserFact, include_embedding: bool = False) -> dict:
    data = {
        "id": row.id,
        "content": row.content,
        "category": row.category,
        "confidence": row.confidence,
        "sources": list(row.sources or []),
        "embedding_model": row.embedding_model,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }
    if include_embedding:
        data["embedding"] = row.embedding
    return data


class UserProfileStore:
    def __init__(self, session_factory, embedder: HybridEmbeddingService):
        self._session_factory = session_factory
        self._embedder = embedder

    async def _embed_for_write(self, content: str, operation: str):
        try:
            return await self._embedder.embed(content)
        except EmbeddingProviderError as exc:
            logger.error(
                "fact_embedding_failed",
                extra={"operation": operation, "preview": content[:50], "detail": str(exc)},
            )
            raise MemoryStorageCancelledError() from exc

    async def add_fact(
        self,
        content: str,
        category: str,
        confidence: float = 80.0,
        source_agent_id: Optional[str] = None,
        embedding: Optional[EmbeddingResult] = None,
    ) -> dict:
        """Embed and persist a new fact. Nothing is stored when embedding fails.

        A precomputed ``embedding`` of ``content`` is stored as is.
        """
        validate_required_text(content, "content", config.MAX_TEXT_LENGTH)
        category_value = validate_choice(category, "category", FactCategory)
        validate_percentage(confidence, "confidence")

        embedded = embedding or await self._embed_for_write(content, "add_fact")

        db = self._session_factory()
        try:
            now = utcnow()
            fact = UserFact(
                content=content,
                category=category_value,
                confidence=float(confidence),
                sources=[source_agent_id] if source_agent_id else [],
                embedding=embedded.vector,
                embedding_model=embedded.model,
                created_at=now,
                updated_at=now,
            )
            db.add(fact)
            db.commit()
            db.refresh(fact)
            logger.info(
                "fact_added",
                extra={"fact_id": fact.id, "category": category_value, "source": embedded.source},
            )
            return serialize_fact(fact)
        finally:
            db.close()

    async def update_fact(
        self,
        fact_id: str,
        content: Optional[str] = None,
        category: Optional[str] = None,
        confidence: Optional[float] = None,
        embedding: Optional[EmbeddingResult] = None,
    ) -> Optional[dict]:
        """Apply a partial update; re-embeds only when the content changed."""
        validate_optional_text(content, "content", config.MAX_TEXT_LENGTH)
        category_value = validate_choice(category, "category", FactCategory) if category else None
        if confidence is not None:
            validate_percentage(confidence, "confidence")

        db = self._session_factory()
        try:
            fact = db.query(UserFact).filter(UserFact.id == fact_id).first()
            if not fact:
                return None

            if content and content != fact.content:
                embedded = embedding or await self._embed_for_write(content, "update_fact")
                fact.content = content
                fact.embedding = embedded.vector
                fact.embedding_model = embedded.model
            if category_value:
                fact.category = category_value
            if confidence is not None:
                fact.confidence = float(confidence)
            fact.updated_at = utcnow()
            db.commit()
            db.refresh(fact)
            return serialize_fact(fact)
        finally:
            db.close()

    def delete_fact(self, fact_id: str) -> bool:
        db = self._session_factory()
        try:
            deleted = db.query(UserFact).filter(UserFact.id == fact_id).delete()
            db.commit()
            return deleted > 0
        finally:
            db.close()

    def get_fact(self, fact_id: str) -> Optional[dict]:
        db = self._session_factory()
        try:
            fact = db.query(UserFact).filter(UserFact.id == fact_id).first()
            return serialize_fact(fact) if fact else None
        finally:
            db.close()

    def list_facts(self, include_embedding: bool = False) -> list[dict]:
        db = self._session_factory()
        try:
            rows = db.query(UserFact).order_by(UserFact.created_at.asc()).all()
            return [serialize_fact(row, include_embedding=include_embedding) for row in rows]
        finally:
            db.close()

    def get_facts_by_category(self, category: str) -> list[dict]:
        category_value = validate_choice(category, "category", FactCategory)
        db = self._session_factory()
        try:
            rows = (
                db.query(UserFact)
                .filter(UserFact.category == category_value)
                .order_by(UserFact.created_at.desc())
                .all()
            )
            return [serialize_fact(row) for row in rows]
        finally:
            db.close()

    def add_fact_source(self, fact_id: str, agent_id: str) -> Optional[dict]:
        """Record that another agent reported an existing fact."""
        db = self._session_factory()
        try:
            fact = db.query(UserFact).filter(UserFact.id == fact_id).first()
            if not fact:
                return None
            sources = list(fact.sources or [])
            if agent_id not in sources:
                sources.append(agent_id)
                fact.sources = sources
                fact.updated_at = utcnow()
                db.commit()
                db.refresh(fact)
            return serialize_fact(fact)
        finally:
            db.close()

    def search_facts_by_similarity(
        self,
        query_embedding: list[float],
        limit: int = 10,
        min_similarity: float = 0.3,
        expand_by_category: bool = False,
        max_expansion: int = 5,
    ) -> list[dict]:
        """Rank facts by cosine similarity, optionally widened by category.

        Expansion appends up to ``max_expansion`` facts that share a category
        with a similarity hit, ranked by confidence. Those entries carry
        ``similarity=None`` and ``expanded=True``.
        """
        db = self._session_factory()
        try:
            rows = db.query(UserFact).filter(UserFact.embedding.isnot(None)).all()
        finally:
            db.close()

        matches = find_top_k_similar(
            query_embedding,
            [(row, row.embedding) for row in rows],
            k=limit,
            min_similarity=min_similarity,
        )
        results = []
        for match in matches:
            data = serialize_fact(match.item)
            data["similarity"] = match.similarity
            data["expanded"] = False
            results.append(data)

        if expand_by_category and results and max_expansion > 0:
            matched_categories = {item["category"] for item in results}
            matched_ids = {item["id"] for item in results}
            extra = [
                row for row in rows
                if row.category in matched_categories and row.id not in matched_ids
            ]
            extra.sort(key=lambda row: row.confidence, reverse=True)
            for row in extra[:max_expansion]:
                data = serialize_fact(row)
                data["similarity"] = None
                data["expanded"] = True
                results.append(data)
            if extra:
                logger.debug(
                    "fact_category_expansion",
                    extra={"added": min(len(extra), max_expansion), "categories": sorted(matched_categories)},
                )
        return results

    def search_facts_by_keyword(self, query: str, limit: Optional[int] = None) -> list[dict]:
        db = self._session_factory()
        try:
            q = (
                db.query(UserFact)
                .filter(UserFact.content.ilike(f"%{query}%"))
                .order_by(UserFact.created_at.desc())
            )
            if limit:
                q = q.limit(limit)
            return [serialize_fact(row) for row in q.all()]
        finally:
            db.close()

    async def search_facts(self, query: str) -> list[dict]:
        """Semantic search with category expansion, keyword search when embedding is down."""
        validate_required_text(query, "query", config.MAX_TEXT_LENGTH)
        try:
            embedded = await self._embedder.embed(query)
        except EmbeddingProviderError:
            logger.warning("fact_search_keyword_fallback", extra={"preview": query[:50]})
            return self.search_facts_by_keyword(query)
        return self.search_facts_by_similarity(
            embedded.vector,
            limit=config.FACT_SEARCH_LIMIT,
            min_similarity=config.FACT_SEARCH_MIN_SIMILARITY,
            expand_by_category=True,
            max_expansion=config.FACT_CATEGORY_MAX_EXPANSION,
        )
