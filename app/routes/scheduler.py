"""
Decay scheduler controls.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from agentmem.runtime import Runtime


router = APIRouter(prefix="/scheduler")


class DecayRequest(BaseModel):
    interval_seconds: Optional[float] = None
    run_immediately: bool = False


def _scheduler():
    if Runtime.current is None:
        raise HTTPException(status_code=503, detail={"error": "runtime_not_initialized"})
    return Runtime.current.scheduler


@router.get("/stats")
async def scheduler_stats():
    return _scheduler().get_stats().to_dict()


@router.post("/decay")
async def scheduler_decay(request: Optional[DecayRequest] = None):
    """Change the interval when one is given, otherwise run a sweep now."""
    scheduler = _scheduler()
    if request is not None and request.interval_seconds is not None:
        if request.interval_seconds <= 0:
            raise HTTPException(status_code=422, detail={"error": "interval_seconds must be positive"})
        interval = await scheduler.set_decay_interval(
            request.interval_seconds, run_immediately=request.run_immediately
        )
        return {"status": "ok", "interval_seconds": interval, "stats": scheduler.get_stats().to_dict()}

    results = await scheduler.force_decay()
    return {
        "status": "ok",
        "results": [result.to_dict() for result in results],
        "stats": scheduler.get_stats().to_dict(),
    }
