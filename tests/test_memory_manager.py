import json

import pytest

from agentmem.errors import MemoryStorageCancelledError, ValidationIssue
from agentmem.services.llm_client import ChatProviderError, ProviderConfig
from agentmem.services.memory_manager import NewFact, NewMemory

PROVIDER = ProviderConfig(api_key="sk-test", model="judge-model")
AGENT = "agent-a"


def _reply(**payload) -> str:
    return "```json\n" + json.dumps(payload) + "\n```"


async def test_fact_update_rewrites_existing_row(runtime, chat):
    store = runtime.storage.user_profile
    existing = await store.add_fact("likes coffee", "preference", confidence=70)
    chat.queue(
        _reply(
            operation="UPDATE",
            reason="adds detail",
            target_id=existing["id"],
            merged_content="likes coffee, especially loves espresso",
        )
    )

    result = await runtime.manager.process_user_fact(
        "openai", PROVIDER, NewFact(content="loves coffee, especially espresso", category="preference")
    )

    assert result.action == "updated"
    assert result.item_id == existing["id"]
    facts = store.list_facts()
    assert [item["content"] for item in facts] == ["likes coffee, especially loves espresso"]
    assert facts[0]["confidence"] == 80
    assert "[ID: " + existing["id"] + "]" in chat.calls[0]["prompt"]


async def test_fact_negation_deletes_and_adds(runtime):
    store = runtime.storage.user_profile
    existing = await store.add_fact("allergic to peanuts", "personal")

    result = await runtime.manager.process_user_fact(
        None, None, NewFact(content="not allergic to peanuts anymore", category="personal")
    )

    assert result.action == "deleted_and_added"
    assert result.decision.target_id == existing["id"]
    assert store.get_fact(existing["id"]) is None
    assert [item["content"] for item in store.list_facts()] == ["not allergic to peanuts anymore"]


async def test_first_memory_short_circuits_judge(runtime, chat):
    result = await runtime.manager.process_agent_memory(
        "openai",
        PROVIDER,
        AGENT,
        NewMemory(content="user mentioned their dog Rex", category="observation"),
    )

    assert result.action == "added"
    assert chat.calls == []
    memory = runtime.storage.agent_memory.get_memory(result.item_id)
    assert memory["strength"] == 100.0
    assert memory["vividness"] == "vivid"
    assert memory["recall_count"] == 0


async def test_noop_is_idempotent_and_records_source(runtime, chat):
    store = runtime.storage.user_profile
    existing = await store.add_fact("likes coffee", "preference", source_agent_id="agent-a")
    chat.queue(_reply(operation="NOOP", reason="already known"))

    result = await runtime.manager.process_user_fact(
        "openai", PROVIDER, NewFact(content="likes coffee", category="preference"), source_agent_id="agent-b"
    )

    assert result.action == "skipped"
    facts = store.list_facts()
    assert len(facts) == 1
    assert facts[0]["sources"] == ["agent-a", "agent-b"]
    assert result.item_id == existing["id"]


async def test_memory_noop_keeps_row_count(runtime, chat):
    manager = runtime.manager
    memory = NewMemory(content="user drinks oat milk", category="observation")
    await manager.process_agent_memory("openai", PROVIDER, AGENT, memory)
    chat.queue(_reply(operation="NOOP", reason="duplicate"))
    result = await manager.process_agent_memory("openai", PROVIDER, AGENT, memory)

    assert result.action == "skipped"
    assert len(runtime.storage.agent_memory.list_memories(AGENT, include_superseded=True)) == 1


async def test_memory_update_supersedes_and_links(runtime, chat):
    store = runtime.storage.agent_memory
    first = await runtime.manager.process_agent_memory(
        "openai", PROVIDER, AGENT, NewMemory(content="user adopted a dog named Rex", category="event")
    )
    chat.queue(
        _reply(
            operation="UPDATE",
            target_id=first.item_id,
            merged_content="user adopted a dog named Rex last spring",
        )
    )

    result = await runtime.manager.process_agent_memory(
        "openai", PROVIDER, AGENT, NewMemory(content="Rex was adopted last spring", category="event")
    )

    assert result.action == "updated"
    new_memory = store.get_memory(result.item_id)
    assert new_memory["content"] == "user adopted a dog named Rex last spring"
    assert store.get_memory(first.item_id)["superseded_by"] == result.item_id
    assert [item["id"] for item in store.get_active_memories(AGENT)] == [result.item_id]
    links = store.get_memory_links(result.item_id)
    assert [(link["target_id"], link["relationship"]) for link in links] == [(first.item_id, "updates")]


async def test_memory_delete_supersedes_target(runtime, chat):
    store = runtime.storage.agent_memory
    first = await runtime.manager.process_agent_memory(
        "openai", PROVIDER, AGENT, NewMemory(content="user is vegetarian", category="observation")
    )
    chat.queue(_reply(operation="DELETE", target_id=first.item_id, reason="contradiction"))

    result = await runtime.manager.process_agent_memory(
        "openai", PROVIDER, AGENT, NewMemory(content="user is not vegetarian anymore", category="observation")
    )

    assert result.action == "deleted_and_added"
    assert store.get_memory(result.item_id)["content"] == "user is not vegetarian anymore"
    assert store.get_memory(first.item_id)["superseded_by"] == result.item_id


async def test_new_memories_are_linked_into_graph(runtime, chat):
    manager = runtime.manager
    await manager.process_agent_memory(
        "openai", PROVIDER, AGENT, NewMemory(content="user likes jazz piano", category="observation")
    )
    chat.queue(_reply(operation="ADD", reason="distinct enough"))
    await manager.process_agent_memory(
        "openai", PROVIDER, AGENT, NewMemory(content="user likes jazz piano music", category="observation")
    )

    stats = runtime.linker.get_memory_graph_stats(AGENT)
    assert stats["total_memories"] == 2
    assert stats["links_by_type"]["similar"] == 1


async def test_judge_failure_uses_rule_based_decision(runtime, chat):
    store = runtime.storage.user_profile
    await store.add_fact("likes coffee", "preference")
    chat.queue(ChatProviderError("provider down"))

    result = await runtime.manager.process_user_fact(
        "openai", PROVIDER, NewFact(content="Likes coffee", category="preference")
    )
    assert result.action == "skipped"
    assert len(store.list_facts()) == 1


async def test_embedding_failure_cancels_processing(runtime, backend):
    backend.fail = True
    with pytest.raises(MemoryStorageCancelledError):
        await runtime.manager.process_agent_memory(
            None, None, AGENT, NewMemory(content="user moved to Oslo", category="event")
        )
    assert runtime.storage.agent_memory.list_agent_ids() == []


async def test_retrieval_returns_empty_when_embedding_is_down(runtime, backend):
    await runtime.storage.user_profile.add_fact("likes coffee", "preference")
    backend.fail = True
    assert await runtime.manager.retrieve_relevant_facts("coffee") == []
    assert await runtime.manager.retrieve_relevant_memories(AGENT, "coffee") == []


async def test_retrieve_relevant_facts_and_memories(runtime):
    await runtime.storage.user_profile.add_fact("likes coffee", "preference")
    await runtime.storage.user_profile.add_fact("enjoys hiking", "preference")
    await runtime.storage.agent_memory.add_memory(AGENT, "user brewed coffee at dawn", "event")

    facts = await runtime.manager.retrieve_relevant_facts("coffee")
    assert [(item["content"], item["expanded"]) for item in facts] == [
        ("likes coffee", False),
        ("enjoys hiking", True),
    ]
    memories = await runtime.manager.retrieve_relevant_memories(AGENT, "coffee", min_similarity=0.2)
    assert [item["content"] for item in memories] == ["user brewed coffee at dawn"]


async def test_invalid_category_is_rejected(runtime):
    with pytest.raises(ValidationIssue):
        await runtime.manager.process_user_fact(None, None, NewFact(content="likes tea", category="hobby"))


async def test_delete_keeps_data_when_embedding_goes_down_mid_decision(runtime, chat, backend):
    store = runtime.storage.user_profile
    existing = await store.add_fact("allergic to peanuts", "personal")

    def judge_then_fail(prompt):
        backend.fail = True
        return _reply(operation="DELETE", target_id=existing["id"], reason="contradiction")

    chat.queue(judge_then_fail)
    result = await runtime.manager.process_user_fact(
        "openai", PROVIDER, NewFact(content="not allergic to peanuts anymore", category="personal")
    )

    assert result.action == "deleted_and_added"
    assert store.get_fact(existing["id"]) is None
    assert [item["content"] for item in store.list_facts()] == ["not allergic to peanuts anymore"]


async def test_candidate_is_embedded_once(runtime, backend):
    await runtime.manager.process_user_fact(None, None, NewFact(content="likes coffee", category="preference"))
    await runtime.manager.process_agent_memory(
        None, None, AGENT, NewMemory(content="user adopted a cat", category="event")
    )
    assert backend.calls == 2

    stored = runtime.storage.agent_memory.list_memories(AGENT)[0]
    assert stored["embedding_model"] == backend.model


async def test_old_facts_are_still_deduplicated(runtime):
    store = runtime.storage.user_profile
    original = await store.add_fact("likes coffee", "preference")
    for index in range(101):
        await store.add_fact(f"collects item{index}", "goal")

    result = await runtime.manager.process_user_fact(
        None, None, NewFact(content="likes coffee", category="preference")
    )

    assert result.action == "skipped"
    assert result.item_id == original["id"]
    assert [item["content"] for item in store.list_facts()].count("likes coffee") == 1
