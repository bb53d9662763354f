import pytest

from agentmem.services.memory_linker import classify_high_similarity, classify_link

AGENT = "agent-a"


def test_link_classification():
    assert classify_high_similarity("user no longer eats meat", "user eats meat") == "contradicts"
    assert classify_high_similarity("user recently moved to Rome", "user lives in Rome") == "updates"
    assert classify_high_similarity("user reads sci-fi", "user reads fantasy") == "similar"
    assert classify_link(0.7, "a", "b") == "related"
    assert classify_link(0.5, "a", "b") is None


async def test_link_new_memory_creates_typed_edges(storage, runtime):
    store = storage.agent_memory
    base = await store.add_memory(AGENT, "user likes jazz piano", "observation")
    loose = await store.add_memory(AGENT, "user likes jazz", "observation")
    new = await store.add_memory(AGENT, "user likes jazz piano music", "observation")

    links = runtime.linker.link_new_memory(AGENT, new["id"])

    by_target = {link["target_id"]: link for link in links}
    assert by_target[base["id"]]["relationship"] == "similar"
    assert by_target[loose["id"]]["relationship"] == "related"
    assert runtime.linker.link_new_memory(AGENT, "missing") == []


async def test_build_memory_graph_skips_linked_pairs(storage, runtime):
    store = storage.agent_memory
    await store.add_memory(AGENT, "user likes jazz piano", "observation")
    await store.add_memory(AGENT, "user likes jazz piano music", "observation")
    await store.add_memory(AGENT, "user collects stamps", "observation")

    first = runtime.linker.build_memory_graph(AGENT)
    assert first.links_created == 1
    assert first.similar_links == 1
    second = runtime.linker.build_memory_graph(AGENT)
    assert second.links_created == 0

    stats = runtime.linker.get_memory_graph_stats(AGENT)
    assert stats["total_links"] == 1
    assert stats["avg_links_per_memory"] == pytest.approx(1 / 3)


async def test_graph_retrieval_scores_neighbours(storage, runtime):
    store = storage.agent_memory
    direct = await store.add_memory(AGENT, "user plays tennis", "observation")
    neighbour = await store.add_memory(AGENT, "user bought a new racket", "observation")
    store.add_memory_link(direct["id"], neighbour["id"], "related", 0.65)

    results = await runtime.linker.find_related_memories_via_graph(
        AGENT, "tennis", limit=5, include_hops=1, min_similarity=0.3
    )

    assert [item["id"] for item in results] == [direct["id"], neighbour["id"]]
    assert results[0]["distance"] == 0
    assert results[1]["distance"] == 1
    assert results[1]["relevance_score"] == pytest.approx(results[0]["relevance_score"] * 0.8)
