"""Boundary adapter: HTTP request → ValidationPipeline → HTTP response.

Provides ``require_api_key(required_scope)``, a factory for FastAPI
Depends()-compatible dependencies. Every protected route declares its scope
right where it is registered:

    @router.post("/notifications")
    async def send(key: SanitizedKey = Depends(require_api_key("notifications:create"))):
        ...

Credential extraction precedence:
  1. X-API-Key: <credential>            (preferred)
  2. Authorization: Bearer <credential> (fallback)
  3. ?api_key=<credential>              (least trusted, logged at WARNING)

Client IP precedence:
  1. first entry of X-Forwarded-For
  2. X-Real-IP
  3. the socket peer address
  4. "unknown"

Auth control:
  - NOTIFYHUB_AUTH_REQUIRED=true  → credentials enforced (default)
  - NOTIFYHUB_AUTH_REQUIRED=false → bypassed, anonymous principal (dev/tests only)

Failures raise AuthError, rendered by ``auth_error_handler`` as
``{"error", "code", "message"}`` with a stable code. Messages are fixed
strings; nothing from an internal exception ever reaches the client.
"""

from __future__ import annotations

import math
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from notifyhub.auth.models import (
    FailureReason,
    RateLimitInfo,
    RateLimitSnapshot,
    SanitizedKey,
)
from notifyhub.constants import (
    API_KEY_HEADER,
    API_KEY_QUERY_PARAM,
    FORWARDED_FOR_HEADER,
    REAL_IP_HEADER,
    REQUEST_ID_HEADER,
    UNKNOWN_CLIENT,
)
from notifyhub.utils.logger import get_logger, set_request_id
from notifyhub.utils.ulid import generate_request_id

logger = get_logger(__name__)

_BEARER_RE = re.compile(r"^Bearer\s+(\S+)$", re.IGNORECASE)

ANONYMOUS_KEY = SanitizedKey(
    id="anonymous",
    name="anonymous",
    scopes=[],
    organization_id=None,
    rate_limit=RateLimitSnapshot(limit=0, current=0, remaining=0),
)


# ─── Error mapping ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ErrorSpec:
    code: str
    status_code: int
    error: str
    message: str


MISSING_CREDENTIAL = ErrorSpec(
    "MISSING_CREDENTIAL", 401, "Unauthorized",
    "API key is required. Provide it via the X-API-Key header.",
)
AUTH_ERROR = ErrorSpec(
    "AUTH_ERROR", 401, "Unauthorized", "Authentication failed."
)

ERROR_SPECS: dict[FailureReason, ErrorSpec] = {
    FailureReason.MISSING_CREDENTIAL: MISSING_CREDENTIAL,
    FailureReason.INVALID_FORMAT: ErrorSpec(
        "INVALID_FORMAT", 401, "Unauthorized", "API key format is invalid."
    ),
    FailureReason.INVALID_KEY: ErrorSpec(
        "INVALID_CREDENTIAL", 401, "Unauthorized", "API key is invalid or has been revoked."
    ),
    FailureReason.EXPIRED: ErrorSpec(
        "CREDENTIAL_EXPIRED", 401, "Unauthorized", "API key has expired."
    ),
    FailureReason.INSUFFICIENT_PERMISSIONS: ErrorSpec(
        "INSUFFICIENT_SCOPE", 403, "Forbidden",
        "API key does not have the scope required for this operation.",
    ),
    FailureReason.RATE_LIMIT_EXCEEDED: ErrorSpec(
        "RATE_LIMIT_EXCEEDED", 429, "Too Many Requests",
        "Rate limit exceeded. Retry after the reset time.",
    ),
    FailureReason.INTERNAL_VALIDATION_ERROR: AUTH_ERROR,
}


class AuthError(Exception):
    """Raised by the API key dependency; rendered by auth_error_handler."""

    def __init__(
        self,
        spec: ErrorSpec,
        rate_limit_info: Optional[RateLimitInfo] = None,
    ) -> None:
        super().__init__(spec.message)
        self.spec = spec
        self.rate_limit_info = rate_limit_info

    @property
    def code(self) -> str:
        return self.spec.code

    @property
    def status_code(self) -> int:
        return self.spec.status_code

    @classmethod
    def from_reason(
        cls, reason: Optional[FailureReason], rate_limit_info: Optional[RateLimitInfo] = None
    ) -> "AuthError":
        return cls(ERROR_SPECS.get(reason, AUTH_ERROR) if reason else AUTH_ERROR, rate_limit_info)

    def headers(self, now: Optional[datetime] = None) -> dict[str, str]:
        info = self.rate_limit_info
        if self.spec.status_code != 429 or info is None:
            return {}
        headers = rate_limit_headers(info)
        if info.reset_time is not None:
            current = now or datetime.now(timezone.utc)
            wait = math.ceil((info.reset_time - current).total_seconds())
            headers["Retry-After"] = str(max(1, wait))
        return headers

    def body(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.spec.error,
            "code": self.spec.code,
            "message": self.spec.message,
        }
        if self.spec.status_code == 429 and self.rate_limit_info is not None:
            info = self.rate_limit_info
            payload["rateLimitInfo"] = {
                "limit": info.limit,
                "current": info.current,
                "remaining": info.remaining,
                "resetTime": info.reset_time.isoformat() if info.reset_time else None,
                "window": info.window,
            }
        return payload


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Registered on the app via add_exception_handler(AuthError, ...)."""
    return JSONResponse(status_code=exc.status_code, content=exc.body(), headers=exc.headers())


def rate_limit_headers(info: RateLimitInfo) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(info.limit),
        "X-RateLimit-Remaining": str(info.remaining),
    }
    if info.reset_time is not None:
        headers["X-RateLimit-Reset"] = str(int(info.reset_time.timestamp()))
    return headers


# ─── Request metadata ─────────────────────────────────────────────────────────


def _is_auth_required() -> bool:
    """Read NOTIFYHUB_AUTH_REQUIRED per request so tests can monkeypatch it."""
    return os.environ.get("NOTIFYHUB_AUTH_REQUIRED", "true").lower() == "true"


def _extract_bearer(authorization: str) -> Optional[str]:
    if not authorization:
        return None
    m = _BEARER_RE.match(authorization.strip())
    return m.group(1) if m else None


def extract_credential(request: Request) -> tuple[Optional[str], Optional[str]]:
    """Return (credential, source) where source is "header", "bearer", "query" or None."""
    header_value = request.headers.get(API_KEY_HEADER)
    if header_value:
        return header_value.strip(), "header"

    bearer = _extract_bearer(request.headers.get("Authorization", ""))
    if bearer:
        return bearer, "bearer"

    query_value = request.query_params.get(API_KEY_QUERY_PARAM)
    if query_value:
        logger.warning(
            "api_key_from_query_param",
            path=str(request.url.path),
            note="query strings end up in access logs; use the X-API-Key header",
        )
        return query_value, "query"

    return None, None


def client_ip(request: Request) -> str:
    forwarded = request.headers.get(FORWARDED_FOR_HEADER)
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get(REAL_IP_HEADER)
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host

    return UNKNOWN_CLIENT


def request_id(request: Request) -> str:
    """Caller-supplied X-Request-ID, else a generated one. Cached on request.state."""
    existing = getattr(request.state, "request_id", None)
    if existing:
        return existing
    value = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
    request.state.request_id = value
    set_request_id(value)
    return value


# ─── Dependency factory ───────────────────────────────────────────────────────


def require_api_key(
    required_scope: Optional[str] = None,
) -> Callable[[Request, Response], Awaitable[SanitizedKey]]:
    """Build a dependency that authenticates the request for ``required_scope``.

    On success the SanitizedKey is returned, stored at request.state.api_key
    and X-RateLimit-* headers are set on the response.

    Raises:
        AuthError: On any refusal. Never any other exception.
    """

    async def dependency(request: Request, response: Response) -> SanitizedKey:
        rid = request_id(request)

        if not _is_auth_required():
            request.state.api_key = ANONYMOUS_KEY
            return ANONYMOUS_KEY

        credential, source = extract_credential(request)
        if not credential:
            logger.warning(
                "Authentication failed: no API key",
                path=str(request.url.path),
                method=request.method,
            )
            raise AuthError(MISSING_CREDENTIAL)

        pipeline = getattr(request.app.state, "pipeline", None)
        if pipeline is None:
            logger.error("Authentication failed: pipeline not initialised")
            raise AuthError(AUTH_ERROR)

        result = await pipeline.validate(
            credential,
            client_ip=client_ip(request),
            user_agent=request.headers.get("User-Agent", ""),
            request_id=rid,
            endpoint=f"{request.method} {request.url.path}",
            required_scope=required_scope,
        )

        if not result.valid or result.key is None:
            raise AuthError.from_reason(result.reason, result.rate_limit_info)

        if result.rate_limit_info is not None:
            for name, value in rate_limit_headers(result.rate_limit_info).items():
                response.headers[name] = value

        request.state.api_key = result.key
        logger.debug(
            "Authenticated",
            key_id=result.key.id,
            source=source,
            required_scope=required_scope,
        )
        return result.key

    return dependency
