"""
Health and dependency endpoints.
"""

from __future__ import annotations

import time

from fastapi import APIRouter, HTTPException
from sqlalchemy import text

import agentmem.config as config
from agentmem.db import DB, get_schema_revisions
from agentmem.errors import EmbeddingProviderError
from agentmem.runtime import Runtime


router = APIRouter()


def _check_db_health() -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        return {"ok": False, "error": str(exc)}

    current_rev, head_rev = get_schema_revisions(DB.engine)
    schema_ok = head_rev is None or current_rev == head_rev
    return {
        "ok": schema_ok,
        "schema_revision": current_rev,
        "schema_expected": head_rev,
        "schema_up_to_date": schema_ok,
    }


async def _check_embedding_health(check_external: bool) -> dict:
    runtime = Runtime.current
    if runtime is None:
        return {"status": "not_initialized", "provider": config.EMBEDDING_PROVIDER, "checked": False}

    embedder = runtime.embedder
    embedding_status = {
        "status": "unknown",
        "provider": embedder.settings.provider,
        "dimension": embedder.dimension,
        "ready": embedder.is_ready(),
        "circuit_breaker": embedder.breaker_status(),
        "checked": False,
    }

    if check_external and config.EMBEDDING_HEALTHCHECK_ENABLED:
        embedding_status["checked"] = True
        start = time.time()
        try:
            result = await embedder.embed("healthcheck")
            embedding_status["status"] = "ok"
            embedding_status["source"] = result.source
            embedding_status["latency_ms"] = int((time.time() - start) * 1000)
        except EmbeddingProviderError as exc:
            embedding_status["status"] = "error"
            embedding_status["error"] = str(exc)
        return embedding_status

    if embedding_status["circuit_breaker"].get("open"):
        embedding_status["status"] = "cooldown"
        return embedding_status

    embedding_status["status"] = "skipped" if check_external else "ready"
    return embedding_status


@router.get("/health")
async def health():
    """Health check endpoint."""
    db_health = _check_db_health()
    embedding_status = await _check_embedding_health(check_external=False)
    if not db_health.get("ok"):
        raise HTTPException(
            status_code=503,
            detail={"database": db_health, "embedding_provider": embedding_status},
        )

    return {
        "status": "healthy",
        "service": "agentmem",
        "version": "0.1.0",
        "database": db_health,
        "embedding_provider": embedding_status,
    }


@router.get("/health/deps")
async def health_deps():
    """Dependency health checks (optional embedding provider probe)."""
    db_health = _check_db_health()
    if not db_health.get("ok"):
        raise HTTPException(status_code=503, detail={"database": db_health})

    embedding_status = await _check_embedding_health(check_external=True)

    return {
        "status": "healthy",
        "service": "agentmem",
        "database": db_health,
        "embedding_provider": embedding_status,
    }
