"""Health check endpoint."""

from __future__ import annotations

import time

from fastapi import APIRouter, Request

router = APIRouter()

_start_time = time.time()


@router.get("/health")
async def health(request: Request) -> dict:
    """Liveness plus a connector count; no credentials or peers are exposed."""
    registry = getattr(request.app.state, "connectors", None)
    statuses = registry.statuses() if registry is not None else []
    return {
        "status": "ok",
        "version": "1.0.0",
        "uptime_seconds": round(time.time() - _start_time, 1),
        "connectors": len(statuses),
        "healthy_connectors": sum(1 for s in statuses if s.healthy),
    }
