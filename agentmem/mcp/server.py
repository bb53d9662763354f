"""
MCP server wiring and tool registration.
"""

from __future__ import annotations

from functools import wraps
from typing import Awaitable, Callable, Optional

from fastmcp import FastMCP

import agentmem.config as config
from agentmem.errors import MemoryStorageCancelledError, ValidationIssue
from agentmem.runtime import get_runtime
from agentmem.services.llm_client import provider_from_env
from agentmem.services.memory_manager import NewFact, NewMemory
from agentmem.validators import validate_limit, validate_required_text

READ_ONLY_TOOL_ANNOTATIONS = {"readOnlyHint": True}
DESTRUCTIVE_TOOL_ANNOTATIONS = {"destructiveHint": True}

mcp = FastMCP("agentmem")

ToolFn = Callable[..., Awaitable[dict]]


def _tool_error_payload(tool_name: str, exc: ValidationIssue) -> dict:
    return {
        "status": "error",
        "error_type": exc.error_type,
        "tool": tool_name,
        "field": exc.field,
        "message": str(exc),
    }


def _log_validation_issue(tool_name: str, exc: ValidationIssue, warn: bool = False) -> None:
    payload = {
        "tool": tool_name,
        "field": exc.field,
        "error_type": exc.error_type,
    }
    if warn:
        config.logger.warning("tool_validation_error", extra=payload)
    else:
        config.logger.info("tool_validation_error", extra=payload)


def service_tool(fn: ToolFn) -> ToolFn:
    """Convert validation and embedding failures into structured tool errors."""
    @wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except ValidationIssue as exc:
            _log_validation_issue(fn.__name__, exc, warn=False)
            return _tool_error_payload(fn.__name__, exc)
        except MemoryStorageCancelledError as exc:
            issue = ValidationIssue(str(exc), field="content", error_type="embedding_unavailable")
            _log_validation_issue(fn.__name__, issue, warn=True)
            return _tool_error_payload(fn.__name__, issue)
        except ValueError as exc:
            issue = ValidationIssue(str(exc), field="unknown", error_type="value_error")
            _log_validation_issue(fn.__name__, issue, warn=True)
            return _tool_error_payload(fn.__name__, issue)
    return wrapper


def mcp_tool(*args, **kwargs):
    """Register an error-wrapped tool with FastMCP."""
    def decorator(fn: ToolFn):
        wrapped = service_tool(fn)
        mcp.tool(*args, **kwargs)(wrapped)
        return wrapped
    return decorator


# =============================================================================
# Retrieval
# =============================================================================

@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
async def retrieve_user_facts(query: str, limit: int = 10, min_similarity: float = 0.3) -> dict:
    """User facts relevant to ``query``, expanded with same-category facts."""
    facts = await get_runtime().manager.retrieve_relevant_facts(
        query, limit=limit, min_similarity=min_similarity
    )
    return {"status": "ok", "count": len(facts), "facts": facts}


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
async def retrieve_agent_memories(
    agent_id: str,
    query: str,
    limit: int = 10,
    min_similarity: float = 0.3,
) -> dict:
    """Agent memories ranked by similarity blended with strength."""
    memories = await get_runtime().manager.retrieve_relevant_memories(
        agent_id, query, limit=limit, min_similarity=min_similarity
    )
    return {"status": "ok", "count": len(memories), "memories": memories}


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
async def find_related_memories(
    agent_id: str,
    query: str,
    limit: int = 10,
    include_hops: int = 1,
) -> dict:
    """Hybrid matches plus their knowledge-graph neighbours."""
    validate_required_text(agent_id, "agent_id", config.MAX_SHORT_TEXT_LENGTH)
    validate_required_text(query, "query", config.MAX_TEXT_LENGTH)
    validate_limit(limit, "limit", config.MAX_RESULT_LIMIT)
    memories = await get_runtime().linker.find_related_memories_via_graph(
        agent_id, query, limit=limit, include_hops=include_hops
    )
    return {"status": "ok", "count": len(memories), "memories": memories}


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
async def get_agent_relationship(agent_id: str) -> dict:
    validate_required_text(agent_id, "agent_id", config.MAX_SHORT_TEXT_LENGTH)
    relationship = get_runtime().storage.agent_memory.get_relationship(agent_id)
    if relationship is None:
        return {"status": "not_found", "agent_id": agent_id}
    return {"status": "ok", **relationship}


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
async def memory_graph_stats(agent_id: str) -> dict:
    validate_required_text(agent_id, "agent_id", config.MAX_SHORT_TEXT_LENGTH)
    return {"status": "ok", **get_runtime().linker.get_memory_graph_stats(agent_id)}


# =============================================================================
# Writes
# =============================================================================

@mcp_tool()
async def remember_user_fact(
    content: str,
    category: str,
    confidence: float = 80.0,
    source_agent_id: Optional[str] = None,
) -> dict:
    """Store a user fact through the ADD / UPDATE / DELETE / NOOP judge."""
    provider_id, provider_config = provider_from_env()
    result = await get_runtime().manager.process_user_fact(
        provider_id,
        provider_config,
        NewFact(content=content, category=category, confidence=confidence),
        source_agent_id=source_agent_id,
    )
    return {"status": "ok", **result.to_dict()}


@mcp_tool()
async def remember_agent_memory(
    agent_id: str,
    content: str,
    category: str,
    emotional_weight: float = 5.0,
) -> dict:
    """Store an agent memory through the ADD / UPDATE / DELETE / NOOP judge."""
    provider_id, provider_config = provider_from_env()
    result = await get_runtime().manager.process_agent_memory(
        provider_id,
        provider_config,
        agent_id,
        NewMemory(content=content, category=category, emotional_weight=emotional_weight),
    )
    return {"status": "ok", **result.to_dict()}


@mcp_tool()
async def recall_agent_memory(agent_id: str, memory_id: str) -> dict:
    """Strengthen a memory that was just used in conversation."""
    validate_required_text(agent_id, "agent_id", config.MAX_SHORT_TEXT_LENGTH)
    validate_required_text(memory_id, "memory_id", config.MAX_SHORT_TEXT_LENGTH)
    runtime = get_runtime()
    async with runtime.locks.for_agent(agent_id):
        memory = runtime.storage.agent_memory.recall_memory(agent_id, memory_id)
    if memory is None:
        return {"status": "not_found", "memory_id": memory_id}
    return {"status": "ok", "memory": memory}


@mcp_tool()
async def build_memory_graph(agent_id: str) -> dict:
    validate_required_text(agent_id, "agent_id", config.MAX_SHORT_TEXT_LENGTH)
    runtime = get_runtime()
    async with runtime.locks.for_agent(agent_id):
        stats = runtime.linker.build_memory_graph(agent_id)
    return {"status": "ok", **stats.to_dict()}


# =============================================================================
# Decay scheduler
# =============================================================================

@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
async def decay_status() -> dict:
    return {"status": "ok", **get_runtime().scheduler.get_stats().to_dict()}


@mcp_tool(annotations=DESTRUCTIVE_TOOL_ANNOTATIONS)
async def force_decay() -> dict:
    """Run one decay sweep now; weak memories may be evicted."""
    results = await get_runtime().scheduler.force_decay()
    return {"status": "ok", "results": [result.to_dict() for result in results]}


@mcp_tool()
async def set_decay_interval(seconds: float, run_immediately: bool = False) -> dict:
    interval = await get_runtime().scheduler.set_decay_interval(seconds, run_immediately=run_immediately)
    return {"status": "ok", "interval_seconds": interval}


mcp_stream_app = mcp.http_app(
    path="/",
    transport="streamable-http",
    stateless_http=True,
    json_response=True,
)
