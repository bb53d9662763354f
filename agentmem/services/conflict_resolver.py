"""
Heuristic conflict detection and resolution (no language model involved).

Detection only classifies; resolution is a separate step that executes the
chosen strategy against the store. Conflict types:

- duplicate: identical text, or Jaccard word overlap above 0.9
- direct_contradiction: opposing positive/negative markers (English and
  Chinese), or a negation present on one side only
- partial_update: both sides mention the same frequently-updated topic
  (career, location, age, relationship status), or nothing more specific
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

import agentmem.config as config
from agentmem.errors import EmbeddingProviderError, ValidationIssue
from agentmem.models import LinkType
from agentmem.services.embeddings import HybridEmbeddingService
from agentmem.services.similarity import safe_similarity
from agentmem.services.storage import MemoryStorage

logger = config.logger

CONTRADICTION_PAIRS = [
    (re.compile(r"\b(like|love|enjoy)\b", re.I), re.compile(r"\b(hate|dislike|don't like|don't enjoy)\b", re.I)),
    (re.compile(r"\b(is|am|are)\b", re.I), re.compile(r"\b(isn't|is not|am not|aren't|are not)\b", re.I)),
    (re.compile(r"\b(can|able)\b", re.I), re.compile(r"\b(can't|cannot|unable)\b", re.I)),
    (re.compile(r"\b(want|prefer)\b", re.I), re.compile(r"\b(don't want|don't prefer|refuse)\b", re.I)),
    (re.compile(r"\b(always|usually)\b", re.I), re.compile(r"\b(never|rarely|seldom)\b", re.I)),
    (re.compile(r"喜欢"), re.compile(r"不喜欢|讨厌|厌恶")),
    (re.compile(r"是"), re.compile(r"不是|并非")),
    (re.compile(r"想要"), re.compile(r"不想|不要")),
    (re.compile(r"经常|总是"), re.compile(r"从不|很少|几乎不")),
]

NEGATION_MARKER = re.compile(r"\bnot\b|\bno longer\b|\bnever\b|n't\b|不|没", re.I)

UPDATE_TOPICS = [
    re.compile(r"\b(work|job|company|employer)\b", re.I),
    re.compile(r"\b(live|home|address|location)\b", re.I),
    re.compile(r"\b(age|birthday|born)\b", re.I),
    re.compile(r"\b(status|relationship|married|single)\b", re.I),
    re.compile(r"工作|公司|职位"),
    re.compile(r"住|地址|位置"),
    re.compile(r"年龄|生日"),
    re.compile(r"状态|关系"),
]

RESOLUTIONS = {"keep_new", "keep_old", "merge", "ask_user", "none"}


@dataclass
class ConflictAnalysis:
    conflict_type: str
    resolution: str
    confidence: float
    reason: str


@dataclass
class ConflictResult:
    has_conflict: bool
    conflict_type: str
    conflicting_items: list[dict]
    resolution: str
    confidence: float
    reason: str

    def to_dict(self) -> dict:
        return {
            "has_conflict": self.has_conflict,
            "conflict_type": self.conflict_type,
            "conflicting_ids": [item["id"] for item in self.conflicting_items],
            "resolution": self.resolution,
            "confidence": self.confidence,
            "reason": self.reason,
        }


@dataclass
class ResolvedConflict:
    action: str  # created, updated, superseded, merged, skipped, pending
    new_item_id: Optional[str] = None
    superseded_ids: list[str] = field(default_factory=list)
    merged_content: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "new_item_id": self.new_item_id,
            "superseded_ids": list(self.superseded_ids),
            "merged_content": self.merged_content,
        }


def _strategy(resolution: Optional[str], conflict: ConflictResult) -> str:
    strategy = resolution or conflict.resolution
    if strategy not in RESOLUTIONS:
        raise ValidationIssue(
            f"resolution must be one of: {', '.join(sorted(RESOLUTIONS))}",
            field="resolution",
            error_type="invalid_choice",
        )
    return strategy


def _no_conflict(reason: str, confidence: float) -> ConflictResult:
    return ConflictResult(
        has_conflict=False,
        conflict_type="none",
        conflicting_items=[],
        resolution="none",
        confidence=confidence,
        reason=reason,
    )


def jaccard_similarity(left: str, right: str) -> float:
    words_left = set(left.lower().split())
    words_right = set(right.lower().split())
    union = words_left | words_right
    if not union:
        return 0.0
    return len(words_left & words_right) / len(union)


def is_direct_contradiction(new_content: str, existing_content: str) -> bool:
    for positive, negative in CONTRADICTION_PAIRS:
        new_pos = bool(positive.search(new_content))
        new_neg = bool(negative.search(new_content))
        old_pos = bool(positive.search(existing_content))
        old_neg = bool(negative.search(existing_content))
        if (new_pos and old_neg) or (new_neg and old_pos):
            return True
    return bool(NEGATION_MARKER.search(new_content)) != bool(NEGATION_MARKER.search(existing_content))


def shares_update_topic(new_content: str, existing_content: str) -> bool:
    return any(
        pattern.search(new_content) and pattern.search(existing_content)
        for pattern in UPDATE_TOPICS
    )


def analyze_conflict_type(new_content: str, existing_content: str) -> ConflictAnalysis:
    if new_content.strip().lower() == existing_content.strip().lower():
        return ConflictAnalysis("duplicate", "keep_old", 1.0, "Exact duplicate content")

    if jaccard_similarity(new_content, existing_content) > 0.9:
        return ConflictAnalysis("duplicate", "keep_new", 0.85, "Near-duplicate content")

    if is_direct_contradiction(new_content, existing_content):
        return ConflictAnalysis(
            "direct_contradiction", "keep_new", 0.75, "Detected opposing sentiment/statement"
        )

    if shares_update_topic(new_content, existing_content):
        return ConflictAnalysis(
            "partial_update", "keep_new", 0.7, "Same topic with potentially updated information"
        )

    return ConflictAnalysis("partial_update", "keep_new", 0.5, "Similar content that may be an update")


class ConflictResolver:
    """Detects conflicts above a similarity threshold and executes resolutions."""

    def __init__(
        self,
        storage: MemoryStorage,
        embedder: HybridEmbeddingService,
        threshold: Optional[float] = None,
    ):
        self.storage = storage
        self.embedder = embedder
        self.threshold = config.CONFLICT_SIMILARITY_THRESHOLD if threshold is None else threshold

    async def _detect(self, new_content: str, existing: list[dict], label: str) -> ConflictResult:
        if not existing:
            return _no_conflict(f"No existing {label} to compare", 1.0)

        try:
            embedded = await self.embedder.embed(new_content)
        except EmbeddingProviderError as exc:
            logger.warning("conflict_embedding_failed", extra={"detail": str(exc)})
            return _no_conflict("Failed to generate embedding", 0.3)

        scored = []
        for item in existing:
            similarity = safe_similarity(embedded.vector, item.get("embedding"))
            if similarity is not None and similarity >= self.threshold:
                scored.append((similarity, item))

        if not scored:
            return _no_conflict(f"No similar {label} found", 0.9)

        scored.sort(key=lambda pair: pair[0], reverse=True)
        conflicting = [item for _, item in scored]
        analysis = analyze_conflict_type(new_content, conflicting[0]["content"])
        logger.info(
            "conflict_detected",
            extra={
                "kind": label,
                "conflict_type": analysis.conflict_type,
                "resolution": analysis.resolution,
                "count": len(conflicting),
            },
        )
        return ConflictResult(
            has_conflict=True,
            conflict_type=analysis.conflict_type,
            conflicting_items=conflicting,
            resolution=analysis.resolution,
            confidence=analysis.confidence,
            reason=analysis.reason,
        )

    async def detect_memory_conflict(
        self,
        agent_id: str,
        new_content: str,
        existing_memories: Optional[list[dict]] = None,
    ) -> ConflictResult:
        if existing_memories is None:
            existing_memories = self.storage.agent_memory.get_active_memories(
                agent_id, limit=100, include_embedding=True
            )
        return await self._detect(new_content, existing_memories, "memories")

    async def detect_fact_conflict(
        self,
        new_content: str,
        existing_facts: Optional[list[dict]] = None,
    ) -> ConflictResult:
        if existing_facts is None:
            existing_facts = self.storage.user_profile.list_facts(include_embedding=True)
        return await self._detect(new_content, existing_facts, "facts")

    def _supersede_and_relink(self, old_items: list[dict], new_id: str) -> list[str]:
        store = self.storage.agent_memory
        superseded = []
        for old in old_items:
            if store.mark_superseded(old["id"], new_id):
                store.add_memory_link(new_id, old["id"], LinkType.updates.value, 1.0)
                superseded.append(old["id"])
        return superseded

    async def resolve_memory_conflict(
        self,
        agent_id: str,
        new_memory: dict,
        conflict: ConflictResult,
        resolution: Optional[str] = None,
    ) -> ResolvedConflict:
        """Execute a strategy for a memory; ``resolution`` overrides the suggested one."""
        strategy = _strategy(resolution, conflict)
        store = self.storage.agent_memory

        if strategy == "keep_old":
            return ResolvedConflict(action="skipped")
        if strategy == "ask_user":
            return ResolvedConflict(action="pending")

        if strategy == "keep_new" and conflict.conflicting_items:
            added = await store.add_memory(agent_id, **new_memory)
            superseded = self._supersede_and_relink(conflict.conflicting_items, added["id"])
            return ResolvedConflict(action="superseded", new_item_id=added["id"], superseded_ids=superseded)

        if strategy == "merge" and conflict.conflicting_items:
            primary = conflict.conflicting_items[0]
            merged_content = f"{primary['content']}\n\n[Updated]: {new_memory['content']}"
            payload = dict(new_memory)
            payload["content"] = merged_content
            payload["strength"] = max(
                float(new_memory.get("strength", 100.0)),
                float(primary.get("strength") or 0.0),
            )
            added = await store.add_memory(agent_id, **payload)
            superseded = self._supersede_and_relink(conflict.conflicting_items, added["id"])
            return ResolvedConflict(
                action="merged",
                new_item_id=added["id"],
                superseded_ids=superseded,
                merged_content=merged_content,
            )

        added = await store.add_memory(agent_id, **new_memory)
        return ResolvedConflict(action="created", new_item_id=added["id"])

    async def resolve_fact_conflict(
        self,
        new_fact: dict,
        conflict: ConflictResult,
        resolution: Optional[str] = None,
    ) -> ResolvedConflict:
        strategy = _strategy(resolution, conflict)
        store = self.storage.user_profile
        confidence = float(new_fact.get("confidence", 80.0))

        if strategy == "keep_old":
            return ResolvedConflict(action="skipped")
        if strategy == "ask_user":
            return ResolvedConflict(action="pending")

        primary = conflict.conflicting_items[0] if conflict.conflicting_items else None
        if strategy == "keep_new" and primary:
            updated = await store.update_fact(primary["id"], content=new_fact["content"], confidence=confidence)
            if updated:
                return ResolvedConflict(action="updated", new_item_id=updated["id"])

        if strategy == "merge" and primary:
            merged_content = f"{primary['content']} (also: {new_fact['content']})"
            updated = await store.update_fact(
                primary["id"],
                content=merged_content,
                confidence=max(confidence, float(primary.get("confidence") or 0.0)),
            )
            if updated:
                return ResolvedConflict(
                    action="merged",
                    new_item_id=updated["id"],
                    merged_content=merged_content,
                )

        added = await store.add_fact(
            new_fact["content"],
            new_fact["category"],
            confidence,
            source_agent_id=new_fact.get("source_agent_id"),
        )
        return ResolvedConflict(action="created", new_item_id=added["id"])

    async def add_memory_with_conflict_resolution(self, agent_id: str, memory: dict) -> dict:
        """Detect, resolve, and return the resulting memory with both reports."""
        conflict = await self.detect_memory_conflict(agent_id, memory["content"])
        resolved = await self.resolve_memory_conflict(agent_id, memory, conflict)
        final_memory = (
            self.storage.agent_memory.get_memory(resolved.new_item_id)
            if resolved.new_item_id
            else None
        )
        return {
            "memory": final_memory,
            "conflict": conflict.to_dict(),
            "resolution": resolved.to_dict(),
        }
