"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import agentmem.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "agentmem",
        "version": "0.1.0",
        "description": "Long-term memory for a desktop AI chat client",
        "embedding_provider": config.EMBEDDING_PROVIDER,
        "endpoints": {
            "health": "/health",
            "health_deps": "/health/deps",
            "scheduler_stats": "/scheduler/stats",
            "scheduler_decay": "/scheduler/decay",
            "mcp": "/mcp",
        },
    }
