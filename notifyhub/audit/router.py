"""Audit query endpoints (read side of the security event trail).

  GET /admin/audit/events       newest events, optionally filtered by type
  GET /admin/audit/keys/{id}    events for one key
  GET /admin/audit/suspicious   counts of hostile-looking events in a window

Event listings only show events tagged with the calling key's organization.
The suspicious-activity summary returns bare counts across all tenants.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from notifyhub.audit.models import SecurityEventType
from notifyhub.audit.sink import AuditSink
from notifyhub.auth.limiter import ADMIN_RATE_LIMIT, limiter
from notifyhub.auth.middleware import require_api_key
from notifyhub.auth.models import SanitizedKey

router = APIRouter(prefix="/admin/audit", tags=["audit"])

SCOPE_AUDIT_READ = "audit:read"


def _sink(request: Request) -> AuditSink:
    return request.app.state.audit_sink


@router.get("/events")
@limiter.limit(ADMIN_RATE_LIMIT)
async def recent_events(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    event_type: Optional[list[str]] = Query(default=None),
    caller: SanitizedKey = Depends(require_api_key(SCOPE_AUDIT_READ)),
) -> dict[str, Any]:
    event_types: Optional[list[SecurityEventType]] = None
    if event_type:
        try:
            event_types = [SecurityEventType(value.upper()) for value in event_type]
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"event_type must be one of {[t.value for t in SecurityEventType]}",
            )
    events = await _sink(request).recent(
        limit=limit,
        event_types=event_types,
        organization_id=caller.organization_id,
        scope_to_organization=True,
    )
    return {"events": [event.to_dict() for event in events]}


@router.get("/keys/{key_id}")
@limiter.limit(ADMIN_RATE_LIMIT)
async def events_for_key(
    request: Request,
    key_id: str,
    limit: int = Query(default=50, ge=1, le=1000),
    caller: SanitizedKey = Depends(require_api_key(SCOPE_AUDIT_READ)),
) -> dict[str, Any]:
    summary = await request.app.state.key_manager.get_summary(key_id)
    if summary is None or summary.organization_id != caller.organization_id:
        raise HTTPException(status_code=404, detail="API key not found")
    events = await _sink(request).by_key(key_id, limit=limit)
    return {"key_id": key_id, "events": [event.to_dict() for event in events]}


@router.get("/suspicious")
@limiter.limit(ADMIN_RATE_LIMIT)
async def suspicious_activity(
    request: Request,
    window_hours: int = Query(default=24, ge=1, le=24 * 90),
    caller: SanitizedKey = Depends(require_api_key(SCOPE_AUDIT_READ)),
) -> dict[str, Any]:
    summary = await _sink(request).suspicious_activity_summary(window_hours=window_hours)
    return summary.to_dict()
