"""
Memory decision engine.

Given a candidate and a shortlist of similar stored items, choose one of
ADD / UPDATE / DELETE / NOOP. A language model judges when a chat provider is
available; a rule-based judge built on the conflict heuristics covers the rest.
Decisions are validated where the model output is parsed: anything malformed
fails closed to ADD so information is never silently dropped.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union

import agentmem.config as config
from agentmem.services.conflict_resolver import analyze_conflict_type
from agentmem.services.llm_client import ChatFunction, ProviderConfig
from agentmem.services.similarity import safe_similarity

logger = config.logger

MEMORY_DECISION_PROMPT = """You are a smart memory manager. Decide what operation to perform based on new information and existing memories.

## New Information
{new_content}

## Existing Related Memories
{existing_memories}

## Operations

1. **ADD**: New information contains completely new content not in any existing memory
2. **UPDATE**: New information enriches or complements existing memory. Keep the version with more details.
   - Example: Existing "likes basketball" + New "likes playing basketball with friends" -> UPDATE to "likes playing basketball with friends"
   - Example: Existing "born in 2000" + New "birthday is November 28 (lunar calendar)" -> UPDATE to "born in 2000, birthday is November 28 (lunar calendar)"
3. **DELETE**: New information directly contradicts existing memory
   - Example: Existing "likes spicy food" + New "doesn't eat spicy food" -> DELETE old memory
4. **NOOP**: New information is already contained in existing memory, or expresses the same meaning

## Important Rules
- For UPDATE: Preserve ALL original information and ADD new details
- Do NOT infer or add information not explicitly mentioned
- Keep the merged content in the SAME LANGUAGE as the input

Return JSON only:
{{"operation":"ADD/UPDATE/DELETE/NOOP","reason":"brief reason","target_id":"memory ID if UPDATE/DELETE","merged_content":"full merged content if UPDATE"}}"""

FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.I)
RULE_UPDATE_MIN_SIMILARITY = 0.8


class DecisionOperation(str, Enum):
    add = "ADD"
    update = "UPDATE"
    delete = "DELETE"
    noop = "NOOP"


@dataclass(frozen=True)
class AddDecision:
    reason: str = ""
    raw: Optional[str] = None
    operation = DecisionOperation.add


@dataclass(frozen=True)
class UpdateDecision:
    target_id: str
    merged_content: str
    reason: str = ""
    raw: Optional[str] = None
    operation = DecisionOperation.update


@dataclass(frozen=True)
class DeleteDecision:
    target_id: str
    reason: str = ""
    raw: Optional[str] = None
    operation = DecisionOperation.delete


@dataclass(frozen=True)
class NoopDecision:
    reason: str = ""
    raw: Optional[str] = None
    operation = DecisionOperation.noop


Decision = Union[AddDecision, UpdateDecision, DeleteDecision, NoopDecision]


def decision_to_dict(decision: Decision) -> dict:
    data = {"operation": decision.operation.value, "reason": decision.reason}
    if isinstance(decision, (UpdateDecision, DeleteDecision)):
        data["target_id"] = decision.target_id
    if isinstance(decision, UpdateDecision):
        data["merged_content"] = decision.merged_content
    return data


@dataclass
class SimilarItem:
    id: str
    content: str
    similarity: float
    category: Optional[str] = None


def find_similar_items(
    new_embedding: list[float],
    items: Iterable[dict],
    target_category: Optional[str] = None,
    threshold: Optional[float] = None,
    same_category_threshold: Optional[float] = None,
) -> list[SimilarItem]:
    """Shortlist stored items, with a lower bar for items in the same category."""
    threshold = config.SIMILARITY_THRESHOLD if threshold is None else threshold
    same_category_threshold = (
        config.SAME_CATEGORY_THRESHOLD if same_category_threshold is None else same_category_threshold
    )
    shortlist = []
    for item in items:
        similarity = safe_similarity(new_embedding, item.get("embedding"))
        if similarity is None:
            logger.debug("similarity_skipped_dimension_mismatch", extra={"item_id": item.get("id")})
            continue
        same_category = bool(target_category) and item.get("category") == target_category
        if similarity >= (same_category_threshold if same_category else threshold):
            shortlist.append(
                SimilarItem(
                    id=item["id"],
                    content=item["content"],
                    similarity=similarity,
                    category=item.get("category"),
                )
            )
    shortlist.sort(key=lambda entry: entry.similarity, reverse=True)
    return shortlist


def format_decision_prompt(new_content: str, similar_items: list[SimilarItem]) -> str:
    if similar_items:
        existing = "\n".join(
            f"[ID: {item.id}] {item.content} (similarity: {item.similarity * 100:.0f}%)"
            for item in similar_items
        )
    else:
        existing = "(no related memories)"
    return MEMORY_DECISION_PROMPT.format(new_content=new_content, existing_memories=existing)


def extract_json_object(text: str) -> Optional[dict]:
    """First JSON object found in ``text``, looking inside fenced blocks first."""
    if not text:
        return None
    candidates = [match.group(1) for match in FENCED_JSON.finditer(text)]
    candidates.append(text)
    decoder = json.JSONDecoder()
    for candidate in candidates:
        for start in (idx for idx, char in enumerate(candidate) if char == "{"):
            try:
                value, _ = decoder.raw_decode(candidate[start:])
            except ValueError:
                continue
            if isinstance(value, dict):
                return value
    return None


def _first_str(payload: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, (str, int)) and str(value).strip():
            return str(value).strip()
    return None


def parse_decision(raw: str, allowed_ids: Optional[Iterable[str]] = None) -> Decision:
    """Turn model output into a validated decision.

    UPDATE needs a target and merged content, DELETE needs a target, and any
    target must come from the shortlist; otherwise the result is ADD.
    """
    payload = extract_json_object(raw)
    if payload is None:
        logger.warning("decision_parse_failed", extra={"raw": (raw or "")[:500]})
        return AddDecision(reason="LLM response parsing failed", raw=raw)

    operation = str(payload.get("operation") or "").strip().upper()
    reason = str(payload.get("reason") or "").strip()
    if operation not in {op.value for op in DecisionOperation}:
        logger.warning("decision_invalid_operation", extra={"operation": operation, "raw": raw[:500]})
        return AddDecision(reason="Invalid operation, defaulting to ADD", raw=raw)

    allowed = set(allowed_ids) if allowed_ids is not None else None
    target_id = _first_str(payload, "target_id", "targetId")
    if target_id and allowed is not None and target_id not in allowed:
        logger.warning("decision_unknown_target", extra={"target_id": target_id})
        return AddDecision(reason=f"Unknown target {target_id}, defaulting to ADD", raw=raw)

    if operation == DecisionOperation.update.value:
        merged = _first_str(payload, "merged_content", "mergedContent")
        if not target_id or not merged:
            return AddDecision(reason=reason or "UPDATE missing target or merged content", raw=raw)
        return UpdateDecision(target_id=target_id, merged_content=merged, reason=reason, raw=raw)

    if operation == DecisionOperation.delete.value:
        if not target_id:
            return AddDecision(reason=reason or "DELETE missing target", raw=raw)
        return DeleteDecision(target_id=target_id, reason=reason, raw=raw)

    if operation == DecisionOperation.noop.value:
        return NoopDecision(reason=reason, raw=raw)

    return AddDecision(reason=reason, raw=raw)


def rule_based_decision(new_content: str, similar_items: list[SimilarItem]) -> Decision:
    """Heuristic judge over the most similar shortlisted item."""
    if not similar_items:
        return AddDecision(reason="No similar items found")

    top = similar_items[0]
    analysis = analyze_conflict_type(new_content, top.content)
    if analysis.conflict_type == "duplicate":
        return NoopDecision(reason=f"Rule-based: {analysis.reason}")
    if analysis.conflict_type == "direct_contradiction":
        return DeleteDecision(target_id=top.id, reason=f"Rule-based: {analysis.reason}")
    if analysis.confidence >= 0.7 and top.similarity >= RULE_UPDATE_MIN_SIMILARITY:
        return UpdateDecision(
            target_id=top.id,
            merged_content=new_content,
            reason=f"Rule-based: {analysis.reason}",
        )
    return AddDecision(reason="Rule-based: no decisive overlap")


async def decide_operation(
    chat_fn: Optional[ChatFunction],
    provider_id: Optional[str],
    provider_config: Optional[ProviderConfig],
    new_content: str,
    similar_items: list[SimilarItem],
) -> Decision:
    """Ask the language model, or the rule-based judge when none is usable."""
    if not similar_items:
        return AddDecision(reason="No similar items found")
    if chat_fn is None or not provider_id or provider_config is None:
        return rule_based_decision(new_content, similar_items)

    prompt = format_decision_prompt(new_content, similar_items)
    try:
        raw = await chat_fn(
            provider_id,
            provider_config,
            [{"role": "user", "content": prompt}],
            config.DECISION_TEMPERATURE,
            config.DECISION_MAX_TOKENS,
        )
    except Exception as exc:
        logger.warning(
            "decision_llm_failed",
            extra={"provider": provider_id, "detail": str(exc)},
        )
        return rule_based_decision(new_content, similar_items)

    return parse_decision(raw, allowed_ids=[item.id for item in similar_items])
