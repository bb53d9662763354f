"""
Knowledge-graph construction over agent memories.

New memories are compared with the agent's active memories using their stored
vectors: at 0.85 and above a link is classified as contradicts, updates or
similar from wording cues; between 0.6 and 0.85 it is a plain ``related`` edge.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass

import agentmem.config as config
from agentmem.models import LinkType
from agentmem.services.similarity import safe_similarity
from agentmem.services.storage import MemoryStorage

logger = config.logger

CONTRADICTION_CUES = [
    re.compile(r"不(再|是|喜欢|想)"),
    re.compile(r"changed.*mind", re.I),
    re.compile(r"no longer", re.I),
    re.compile(r"stopped", re.I),
    re.compile(r"quit", re.I),
    re.compile(r"don't.*anymore", re.I),
    re.compile(r"hate.*now", re.I),
    re.compile(r"dislike.*now", re.I),
]

UPDATE_CUES = [
    re.compile(r"now", re.I),
    re.compile(r"recently", re.I),
    re.compile(r"started", re.I),
    re.compile(r"began", re.I),
    re.compile(r"新"),
    re.compile(r"最近"),
    re.compile(r"开始"),
]

GRAPH_DISTANCE_DECAY = 0.8


@dataclass
class LinkingStats:
    memories_processed: int = 0
    links_created: int = 0
    similar_links: int = 0
    related_links: int = 0
    updates_links: int = 0
    contradicts_links: int = 0

    def record(self, link_type: str) -> None:
        self.links_created += 1
        attr = f"{link_type}_links"
        setattr(self, attr, getattr(self, attr) + 1)

    def to_dict(self) -> dict:
        return asdict(self)


def classify_high_similarity(new_content: str, existing_content: str) -> str:
    if any(cue.search(new_content) or cue.search(existing_content) for cue in CONTRADICTION_CUES):
        return LinkType.contradicts.value
    if any(cue.search(new_content) for cue in UPDATE_CUES):
        return LinkType.updates.value
    return LinkType.similar.value


def classify_link(similarity: float, new_content: str, existing_content: str):
    if similarity >= config.LINK_SIMILARITY_THRESHOLD:
        return classify_high_similarity(new_content, existing_content)
    if similarity >= config.RELATED_SIMILARITY_THRESHOLD:
        return LinkType.related.value
    return None


class MemoryLinker:
    def __init__(self, storage: MemoryStorage):
        self.storage = storage

    def link_new_memory(self, agent_id: str, memory_id: str) -> list[dict]:
        """Create edges from ``memory_id`` to sufficiently similar active memories."""
        store = self.storage.agent_memory
        memory = store.get_memory(memory_id, include_embedding=True)
        if memory is None:
            return []

        existing = store.get_active_memories(
            agent_id, limit=config.LINK_CANDIDATE_LIMIT, include_embedding=True
        )
        links = []
        for other in existing:
            if other["id"] == memory_id:
                continue
            similarity = safe_similarity(memory["embedding"], other["embedding"])
            if similarity is None:
                continue
            link_type = classify_link(similarity, memory["content"], other["content"])
            if link_type is None:
                continue
            links.append(store.add_memory_link(memory_id, other["id"], link_type, similarity))

        if links:
            logger.info(
                "memory_links_created",
                extra={"agent_id": agent_id, "memory_id": memory_id, "count": len(links)},
            )
        return links

    def build_memory_graph(self, agent_id: str) -> LinkingStats:
        """Pairwise linking pass over every active memory; existing pairs are kept as-is."""
        store = self.storage.agent_memory
        stats = LinkingStats()
        memories = store.get_active_memories(agent_id, limit=1000, include_embedding=True)
        if len(memories) < 2:
            return stats

        for index, first in enumerate(memories):
            if not first.get("embedding"):
                continue
            stats.memories_processed += 1
            linked = {
                link["target_id"] if link["source_id"] == first["id"] else link["source_id"]
                for link in store.get_memory_links(first["id"])
            }
            for second in memories[index + 1:]:
                if second["id"] in linked:
                    continue
                similarity = safe_similarity(first["embedding"], second.get("embedding"))
                if similarity is None:
                    continue
                link_type = classify_link(similarity, first["content"], second["content"])
                if link_type is None:
                    continue
                store.add_memory_link(first["id"], second["id"], link_type, similarity)
                stats.record(link_type)

        logger.info("memory_graph_built", extra={"agent_id": agent_id, **stats.to_dict()})
        return stats

    async def find_related_memories_via_graph(
        self,
        agent_id: str,
        query: str,
        limit: int = 10,
        include_hops: int = 1,
        min_similarity: float = 0.5,
    ) -> list[dict]:
        """Hybrid hits at distance 0 plus graph neighbours scored by ``0.8 ** distance``."""
        store = self.storage.agent_memory
        direct = await store.hybrid_retrieve_memories(
            agent_id,
            query,
            limit=max(1, -(-limit // 2)),
            min_similarity=min_similarity,
        )
        included = {match["id"] for match in direct}
        results = []
        for match in direct:
            entry = dict(match)
            entry["relevance_score"] = match["hybrid_score"]
            entry["distance"] = 0
            results.append(entry)

        if include_hops > 0:
            for match in direct:
                for related in store.find_related_memories(match["id"], max_hops=include_hops):
                    memory = related["memory"]
                    if memory["id"] in included:
                        continue
                    included.add(memory["id"])
                    entry = dict(memory)
                    entry["relevance_score"] = match["hybrid_score"] * (
                        GRAPH_DISTANCE_DECAY ** related["distance"]
                    )
                    entry["distance"] = related["distance"]
                    results.append(entry)

        results.sort(key=lambda entry: entry["relevance_score"], reverse=True)
        return results[:limit]

    def get_memory_graph_stats(self, agent_id: str) -> dict:
        store = self.storage.agent_memory
        total_memories = len(store.get_active_memories(agent_id, limit=10_000))
        links_by_type = store.count_links(agent_id)
        total_links = sum(links_by_type.values())
        return {
            "total_memories": total_memories,
            "total_links": total_links,
            "avg_links_per_memory": total_links / total_memories if total_memories else 0.0,
            "links_by_type": links_by_type,
        }
