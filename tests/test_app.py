import pytest
from fastapi.testclient import TestClient

import agentmem.config as config
from agentmem.db import DB, get_schema_revisions, init_db
from agentmem.mcp import server as mcp_server
from agentmem.runtime import Runtime


@pytest.fixture
def migrated_db(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DATABASE_URL", f"sqlite:///{tmp_path / 'app.sqlite'}")
    monkeypatch.setattr(config, "AUTO_MIGRATE_ON_STARTUP", True)
    previous_engine, previous_session = DB.engine, DB.SessionLocal
    try:
        yield
    finally:
        if DB.engine is not None and DB.engine is not previous_engine:
            DB.engine.dispose()
        DB.engine, DB.SessionLocal = previous_engine, previous_session


@pytest.fixture
def active_runtime(runtime):
    previous = Runtime.current
    Runtime.current = runtime
    try:
        yield runtime
    finally:
        Runtime.current = previous


def test_init_db_migrates_to_head(migrated_db):
    init_db()
    current, head = get_schema_revisions(DB.engine)
    assert current == head == "0001_initial_memory_schema"


def test_app_routes(migrated_db):
    from app.main import app

    with TestClient(app) as client:
        root = client.get("/").json()
        assert root["endpoints"]["mcp"] == "/mcp"

        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["database"]["schema_up_to_date"] is True

        stats = client.get("/scheduler/stats").json()
        assert stats["interval_seconds"] == config.clamp_decay_interval(config.DECAY_INTERVAL_SECONDS)

        swept = client.post("/scheduler/decay").json()
        assert swept["status"] == "ok"
        assert swept["stats"]["total_decay_runs"] >= 1

        changed = client.post("/scheduler/decay", json={"interval_seconds": 60}).json()
        assert changed["interval_seconds"] == 3600

        assert client.post("/scheduler/decay", json={"interval_seconds": -5}).status_code == 422

    assert Runtime.current is None


async def test_mcp_tools_round_trip(active_runtime):
    stored = await mcp_server.remember_agent_memory(
        agent_id="agent-a", content="user mentioned their dog Rex", category="observation"
    )
    assert stored["status"] == "ok"
    assert stored["action"] == "added"

    recalled = await mcp_server.recall_agent_memory(agent_id="agent-a", memory_id=stored["item_id"])
    assert recalled["memory"]["recall_count"] == 1

    found = await mcp_server.retrieve_agent_memories(agent_id="agent-a", query="dog Rex", min_similarity=0.2)
    assert found["count"] == 1

    relationship = await mcp_server.get_agent_relationship(agent_id="agent-a")
    assert relationship["status"] == "ok"
    assert len(relationship["observations"]) == 1

    fact = await mcp_server.remember_user_fact(content="likes coffee", category="preference")
    assert fact["decision"]["operation"] == "ADD"
    facts = await mcp_server.retrieve_user_facts(query="coffee")
    assert facts["count"] == 1

    status = await mcp_server.decay_status()
    assert status["is_running"] is False


async def test_mcp_tools_return_structured_errors(active_runtime, backend):
    invalid = await mcp_server.remember_user_fact(content="likes tea", category="hobby")
    assert invalid["status"] == "error"
    assert invalid["field"] == "category"
    assert invalid["tool"] == "remember_user_fact"

    backend.fail = True
    cancelled = await mcp_server.remember_agent_memory(
        agent_id="agent-a", content="user moved to Oslo", category="event"
    )
    assert cancelled["status"] == "error"
    assert cancelled["error_type"] == "embedding_unavailable"

    missing = await mcp_server.recall_agent_memory(agent_id="agent-a", memory_id="nope")
    assert missing["status"] == "not_found"
