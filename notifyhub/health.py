"""Health endpoint for notifyhub.

  GET /health   503 before app.state.ready, 200 afterwards

The body reports each dependency separately. A failing counter store only
degrades the service (quotas fail open); a failing key store makes it
unhealthy, since every validation would then be refused.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> Any:
    """Response body (200 / 503 once started):
        {
          "status": "ok" | "degraded" | "unhealthy",
          "key_store": "ok" | "error",
          "counter_store": "ok" | "error",
          "audit": "ok" | "error",
          "audit_dropped_events": 0
        }
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"status": "starting", "message": "notifyhub is starting up."},
        )

    state = request.app.state
    key_store_ok = await state.key_manager.store.health_check()
    counter_ok = await state.rate_limiter.store.health_check()
    audit_ok = await state.audit_sink.backend.health_check()

    if not key_store_ok:
        status = "unhealthy"
    elif counter_ok and audit_ok:
        status = "ok"
    else:
        status = "degraded"

    body = {
        "status": status,
        "key_store": "ok" if key_store_ok else "error",
        "counter_store": "ok" if counter_ok else "error",
        "audit": "ok" if audit_ok else "error",
        "audit_dropped_events": state.audit_sink.dropped_events,
    }
    return JSONResponse(status_code=200 if key_store_ok else 503, content=body)
