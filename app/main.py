"""
Standalone FastAPI app wiring for the agent memory engine.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

import agentmem.config as config
from agentmem.db import DB, init_db
from agentmem.mcp import mcp_stream_app
from agentmem.runtime import Runtime, build_runtime
from app.routes.health import router as health_router
from app.routes.root import router as root_router
from app.routes.scheduler import router as scheduler_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    init_db()
    runtime = build_runtime(DB.SessionLocal)
    Runtime.current = runtime
    if config.DECAY_ENABLED:
        await runtime.scheduler.start(run_on_start=config.DECAY_RUN_ON_START)
    try:
        async with mcp_stream_app.lifespan(mcp_stream_app):
            yield
    finally:
        await runtime.scheduler.stop()
        Runtime.current = None
        if DB.engine:
            DB.engine.dispose()


app = FastAPI(title="agentmem", redirect_slashes=False, lifespan=lifespan)

app.include_router(health_router)
app.include_router(root_router)
app.include_router(scheduler_router)

app.mount("/mcp", mcp_stream_app)


if __name__ == "__main__":
    uvicorn.run(app, host=config.SERVER_HOST, port=config.SERVER_PORT)
