"""ValidationPipeline: one authorization decision per presented credential.

Stages run in order and the first failure ends the run:

  1. format      → InvalidFormat            INVALID_ATTEMPT (sentinel digest)
  2. lookup      → InvalidKey               INVALID_ATTEMPT (real digest)
  3. expiry      → Expired                  EXPIRED
  4. scope       → InsufficientPermissions  SUSPICIOUS
  5. rate limit  → RateLimitExceeded        RATE_LIMIT_EXCEEDED
  6. success     → valid                    USED

Every terminal outcome above records exactly one audit event. Anything else
that goes wrong is caught at the top, logged with its traceback and returned
as InternalValidationError; callers never see the exception.

Dependency policy:
  - record store failure  → exception → InternalValidationError (fail closed)
  - counter store failure → absorbed inside RateLimiter, request allowed (fail open)
  - audit failure         → absorbed inside AuditSink, decision unchanged
"""

from __future__ import annotations

import asyncio
from typing import Optional

from notifyhub.audit.models import SecurityEvent
from notifyhub.audit.sink import AuditSink
from notifyhub.auth.crypto import INVALID_FORMAT_SENTINEL, hash_secret, is_valid_format
from notifyhub.auth.keys import KeyManager
from notifyhub.auth.limiter import RateLimiter
from notifyhub.auth.models import (
    FailureReason,
    RateLimitInfo,
    SanitizedKey,
    ValidationResult,
    utcnow,
)
from notifyhub.utils.logger import digest_prefix, get_logger

logger = get_logger(__name__)


class ValidationPipeline:
    def __init__(self, keys: KeyManager, limiter: RateLimiter, audit: AuditSink) -> None:
        self._keys = keys
        self._limiter = limiter
        self._audit = audit
        self._background: set[asyncio.Task] = set()

    async def validate(
        self,
        plaintext: Optional[str],
        client_ip: str,
        user_agent: str,
        request_id: str,
        endpoint: str,
        required_scope: Optional[str] = None,
    ) -> ValidationResult:
        """Run every stage for one credential. Never raises."""
        try:
            return await self._run(
                plaintext, client_ip, user_agent, request_id, endpoint, required_scope
            )
        except Exception:
            logger.exception(
                "api_key_validation_error",
                endpoint=endpoint,
                ip_address=client_ip,
            )
            return ValidationResult.failure(FailureReason.INTERNAL_VALIDATION_ERROR)

    async def _run(
        self,
        plaintext: Optional[str],
        client_ip: str,
        user_agent: str,
        request_id: str,
        endpoint: str,
        required_scope: Optional[str],
    ) -> ValidationResult:
        # ── 1. Format ─────────────────────────────────────────────────────────
        if not is_valid_format(plaintext):
            self._audit.record(
                SecurityEvent.invalid_attempt(
                    hashed_secret=INVALID_FORMAT_SENTINEL,
                    ip_address=client_ip,
                    user_agent=user_agent,
                    request_id=request_id,
                    endpoint=endpoint,
                )
            )
            logger.warning("api_key_invalid_format", endpoint=endpoint, ip_address=client_ip)
            return ValidationResult.failure(FailureReason.INVALID_FORMAT)

        # ── 2. Lookup (store errors propagate: fail closed) ───────────────────
        digest = hash_secret(plaintext)
        record = await self._keys.find_active_by_hash(digest)
        if record is None:
            self._audit.record(
                SecurityEvent.invalid_attempt(
                    hashed_secret=digest,
                    ip_address=client_ip,
                    user_agent=user_agent,
                    request_id=request_id,
                    endpoint=endpoint,
                )
            )
            logger.warning(
                "api_key_not_found",
                digest=digest_prefix(digest),
                endpoint=endpoint,
                ip_address=client_ip,
            )
            return ValidationResult.failure(FailureReason.INVALID_KEY)

        # ── 3. Expiry ─────────────────────────────────────────────────────────
        if record.is_expired(utcnow()):
            self._audit.record(
                SecurityEvent.expired_attempt(
                    key_id=record.id,
                    ip_address=client_ip,
                    user_agent=user_agent,
                    request_id=request_id,
                    endpoint=endpoint,
                    organization_id=record.organization_id,
                )
            )
            logger.warning("api_key_expired", key_id=record.id, endpoint=endpoint)
            return ValidationResult.failure(FailureReason.EXPIRED)

        # ── 4. Scope ──────────────────────────────────────────────────────────
        if required_scope is not None and not record.has_scope(required_scope):
            self._audit.record(
                SecurityEvent.scope_violation(
                    key_id=record.id,
                    ip_address=client_ip,
                    user_agent=user_agent,
                    request_id=request_id,
                    endpoint=endpoint,
                    required_scope=required_scope,
                    available_scopes=record.scopes,
                    organization_id=record.organization_id,
                )
            )
            logger.warning(
                "api_key_scope_violation",
                key_id=record.id,
                required_scope=required_scope,
                endpoint=endpoint,
            )
            return ValidationResult.failure(FailureReason.INSUFFICIENT_PERMISSIONS)

        # ── 5. Rate limit (counter store errors fail open inside the limiter) ─
        windows = await self._limiter.check_all(record)
        exceeded = next((info for info in windows if info.exceeded), None)
        if exceeded is not None:
            self._audit.record(
                SecurityEvent.rate_limit_exceeded(
                    key_id=record.id,
                    ip_address=client_ip,
                    user_agent=user_agent,
                    request_id=request_id,
                    endpoint=endpoint,
                    info=exceeded,
                    organization_id=record.organization_id,
                )
            )
            logger.warning(
                "api_key_rate_limited",
                key_id=record.id,
                window=exceeded.window,
                current=exceeded.current,
                limit=exceeded.limit,
            )
            return ValidationResult.failure(FailureReason.RATE_LIMIT_EXCEEDED, exceeded)

        # ── 6. Success ────────────────────────────────────────────────────────
        self._keys.touch_last_used(record.id)
        self._spawn(self._limiter.record_usage(record.id))
        self._audit.record(
            SecurityEvent.key_used(
                key_id=record.id,
                ip_address=client_ip,
                user_agent=user_agent,
                request_id=request_id,
                endpoint=endpoint,
                organization_id=record.organization_id,
            )
        )
        info = _tightest(windows)
        return ValidationResult.success(SanitizedKey.from_record(record, info), info)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


def _tightest(windows: list[RateLimitInfo]) -> Optional[RateLimitInfo]:
    """The window with the least headroom; hourly wins ties."""
    if not windows:
        return None
    return min(windows, key=lambda info: info.remaining)
