"""Key management endpoints.

Provides:
  POST   /admin/keys                  create a key (plaintext returned once)
  GET    /admin/keys                  list the caller's organization's keys (digest-free)
  DELETE /admin/keys/{key_id}         soft-deactivate a key
  POST   /admin/keys/cleanup          deactivate every expired key now
  GET    /admin/keys/{key_id}/usage   per-day usage counters

Each route declares its scope through require_api_key() and is throttled per
client IP by the shared slowapi limiter. The acting key's id is recorded as
the actor on lifecycle audit events.

Every route is confined to the calling key's organization. The organization
is never taken from the request body or query string, and a key id that
belongs to another organization is answered with 404, exactly like an
unknown id.
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from notifyhub.auth.keys import KeyManager, KeyNotFoundError, KeyValidationError
from notifyhub.auth.limiter import ADMIN_RATE_LIMIT, RateLimiter, limiter
from notifyhub.auth.middleware import require_api_key
from notifyhub.auth.models import KeySummary, RateLimit, SanitizedKey
from notifyhub.config import Config
from notifyhub.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/admin/keys", tags=["api-keys"])

SCOPE_KEYS_READ = "keys:read"
SCOPE_KEYS_WRITE = "keys:write"


# ─── Request Models ───────────────────────────────────────────────────────────


class RateLimitBody(BaseModel):
    hourly: int
    daily: int


class CreateKeyRequest(BaseModel):
    """Request body for POST /admin/keys.

    There is no organization_id field: new keys always belong to the calling
    key's organization. rate_limit defaults to the configured per-key defaults.
    """

    name: str
    scopes: list[str]
    rate_limit: Optional[RateLimitBody] = None
    expires_at: Optional[datetime] = None


def _key_manager(request: Request) -> KeyManager:
    return request.app.state.key_manager


async def _owned_summary(request: Request, key_id: str, caller: SanitizedKey) -> KeySummary:
    """The key's summary if it belongs to the caller's organization, else 404."""
    summary = await _key_manager(request).get_summary(key_id)
    if summary is None or summary.organization_id != caller.organization_id:
        raise HTTPException(status_code=404, detail="API key not found")
    return summary


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", status_code=201)
@limiter.limit(ADMIN_RATE_LIMIT)
async def create_key(
    request: Request,
    body: CreateKeyRequest,
    caller: SanitizedKey = Depends(require_api_key(SCOPE_KEYS_WRITE)),
) -> dict[str, Any]:
    """Create a key. The ``key`` field is the only time the plaintext is shown."""
    config: Config = request.app.state.config
    rate_limit = (
        RateLimit(hourly=body.rate_limit.hourly, daily=body.rate_limit.daily)
        if body.rate_limit is not None
        else RateLimit(
            hourly=config.rate_limit.default_hourly,
            daily=config.rate_limit.default_daily,
        )
    )
    try:
        record, plaintext = await _key_manager(request).create(
            name=body.name,
            scopes=body.scopes,
            rate_limit=rate_limit,
            expires_at=body.expires_at,
            organization_id=caller.organization_id,
            created_by_user_id=caller.id,
        )
    except KeyValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"error": "Bad Request", "code": exc.code, "message": exc.message},
        )

    return {
        "key": plaintext,
        "warning": "Store this key now. It cannot be retrieved again.",
        **record.summary().to_dict(),
    }


@router.get("")
@limiter.limit(ADMIN_RATE_LIMIT)
async def list_keys(
    request: Request,
    caller: SanitizedKey = Depends(require_api_key(SCOPE_KEYS_READ)),
) -> dict[str, Any]:
    summaries = await _key_manager(request).list_by_organization(caller.organization_id)
    return {"keys": [summary.to_dict() for summary in summaries]}


@router.post("/cleanup")
@limiter.limit(ADMIN_RATE_LIMIT)
async def cleanup_expired_keys(
    request: Request,
    caller: SanitizedKey = Depends(require_api_key(SCOPE_KEYS_WRITE)),
) -> dict[str, int]:
    count = await _key_manager(request).cleanup_expired()
    return {"deactivated": count}


@router.delete("/{key_id}")
@limiter.limit(ADMIN_RATE_LIMIT)
async def deactivate_key(
    request: Request,
    key_id: str,
    caller: SanitizedKey = Depends(require_api_key(SCOPE_KEYS_WRITE)),
) -> dict[str, Any]:
    await _owned_summary(request, key_id, caller)
    try:
        changed = await _key_manager(request).deactivate(key_id, actor_id=caller.id)
    except KeyNotFoundError:
        raise HTTPException(status_code=404, detail="API key not found")
    return {"id": key_id, "deactivated": changed}


@router.get("/{key_id}/usage")
@limiter.limit(ADMIN_RATE_LIMIT)
async def key_usage(
    request: Request,
    key_id: str,
    days: int = Query(default=7, ge=1, le=31),
    caller: SanitizedKey = Depends(require_api_key(SCOPE_KEYS_READ)),
) -> dict[str, Any]:
    await _owned_summary(request, key_id, caller)
    rate_limiter: RateLimiter = request.app.state.rate_limiter
    stats = await rate_limiter.usage_stats(key_id, days=days)
    return {"id": key_id, **stats}
