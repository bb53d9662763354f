from agentmem.services.llm_client import ChatProviderError, ProviderConfig
from agentmem.services.memory_decision import (
    AddDecision,
    DeleteDecision,
    NoopDecision,
    SimilarItem,
    UpdateDecision,
    decide_operation,
    extract_json_object,
    find_similar_items,
    format_decision_prompt,
    parse_decision,
    rule_based_decision,
)

PROVIDER = ProviderConfig(api_key="sk", model="judge-model")


def test_extract_json_prefers_fenced_block():
    text = 'Sure! {not json}\n```json\n{"operation": "NOOP", "reason": "same"}\n```'
    assert extract_json_object(text) == {"operation": "NOOP", "reason": "same"}
    assert extract_json_object('noise {"operation": "ADD"} trailing') == {"operation": "ADD"}
    assert extract_json_object("nothing here") is None


def test_parse_decision_variants():
    update = parse_decision(
        '{"operation":"update","reason":"richer","targetId":"f1","mergedContent":"likes espresso"}',
        allowed_ids=["f1"],
    )
    assert update == UpdateDecision(
        target_id="f1",
        merged_content="likes espresso",
        reason="richer",
        raw=update.raw,
    )
    assert isinstance(parse_decision('{"operation":"DELETE","target_id":"f1"}', ["f1"]), DeleteDecision)
    assert isinstance(parse_decision('{"operation":"NOOP"}', ["f1"]), NoopDecision)


def test_parse_decision_fails_closed_to_add():
    assert isinstance(parse_decision("I think you should update it"), AddDecision)
    assert isinstance(parse_decision('{"operation":"MERGE"}'), AddDecision)
    assert isinstance(parse_decision('{"operation":"UPDATE","target_id":"f1"}', ["f1"]), AddDecision)
    assert isinstance(parse_decision('{"operation":"DELETE"}', ["f1"]), AddDecision)
    unknown = parse_decision('{"operation":"DELETE","target_id":"ghost"}', ["f1"])
    assert isinstance(unknown, AddDecision)
    assert "ghost" in unknown.reason


def test_find_similar_items_uses_lower_same_category_bar():
    items = [
        {"id": "a", "content": "x", "category": "preference", "embedding": [1.0, 1.0, 0.0, 0.0]},
        {"id": "b", "content": "y", "category": "goal", "embedding": [1.0, 1.0, 0.0, 0.0]},
        {"id": "c", "content": "z", "category": "goal", "embedding": [1.0, 0.0]},
    ]
    # cosine 0.289 sits between the two thresholds
    query = [1.0, 0.0, 1.0, 2.0]
    shortlist = find_similar_items(query, items, target_category="preference")
    assert [item.id for item in shortlist] == ["a"]
    everything = find_similar_items(query, items, threshold=0.2)
    assert [item.id for item in everything] == ["a", "b"]


def test_format_prompt_lists_candidates():
    prompt = format_decision_prompt(
        "loves coffee",
        [SimilarItem(id="f1", content="likes coffee", similarity=0.87)],
    )
    assert "[ID: f1] likes coffee (similarity: 87%)" in prompt
    assert "loves coffee" in prompt
    assert '{"operation":"ADD/UPDATE/DELETE/NOOP"' in prompt


def test_rule_based_judge():
    duplicate = [SimilarItem(id="f1", content="Likes coffee", similarity=1.0)]
    assert isinstance(rule_based_decision("likes coffee", duplicate), NoopDecision)

    negated = [SimilarItem(id="f1", content="allergic to peanuts", similarity=0.77)]
    decision = rule_based_decision("not allergic to peanuts anymore", negated)
    assert isinstance(decision, DeleteDecision)
    assert decision.target_id == "f1"

    job = [SimilarItem(id="f2", content="has a job at a bank", similarity=0.85)]
    update = rule_based_decision("has a job at a bank in Paris", job)
    assert isinstance(update, UpdateDecision)
    assert update.merged_content == "has a job at a bank in Paris"

    loose = [SimilarItem(id="f3", content="likes coffee", similarity=0.35)]
    assert isinstance(rule_based_decision("loves coffee, especially espresso", loose), AddDecision)


async def test_decide_operation_calls_judge(chat):
    chat.queue('{"operation":"NOOP","reason":"already known"}')
    similar = [SimilarItem(id="f1", content="likes coffee", similarity=0.9)]
    decision = await decide_operation(chat, "openai", PROVIDER, "likes coffee a lot", similar)
    assert isinstance(decision, NoopDecision)
    assert chat.calls[0]["temperature"] == 0.1
    assert chat.calls[0]["max_tokens"] == 800
    assert "[ID: f1]" in chat.calls[0]["prompt"]


async def test_decide_operation_short_circuits_and_falls_back(chat):
    assert isinstance(await decide_operation(chat, "openai", PROVIDER, "new", []), AddDecision)
    assert chat.calls == []

    chat.queue(ChatProviderError("timeout"))
    similar = [SimilarItem(id="f1", content="likes coffee", similarity=1.0)]
    decision = await decide_operation(chat, "openai", PROVIDER, "likes coffee", similar)
    assert isinstance(decision, NoopDecision)
    assert decision.reason.startswith("Rule-based")

    no_provider = await decide_operation(None, None, None, "likes coffee", similar)
    assert isinstance(no_provider, NoopDecision)
