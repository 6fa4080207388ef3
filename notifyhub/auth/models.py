"""Key record, rate-limit and validation-result types.

``KeyRecord`` is the full persisted row and never leaves the auth package.
Callers outside it only ever see one of two projections:

  - ``KeySummary``    administrative listing; everything except the digest.
  - ``SanitizedKey``  attached to an authenticated request; id, name, scopes,
                      organization and a rate-limit snapshot only. No digest,
                      no raw timestamps, no active flag.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Rate limits ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RateLimit:
    """Per-key request ceilings for the hourly and daily windows."""

    hourly: int
    daily: int

    def to_dict(self) -> dict[str, int]:
        return {"hourly": self.hourly, "daily": self.daily}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "RateLimit":
        return cls(hourly=int(raw["hourly"]), daily=int(raw["daily"]))


@dataclass(frozen=True)
class RateLimitInfo:
    """Outcome of one fixed-window counter check.

    ``reset_time`` is None when the counter store was unavailable and the
    check failed open (``current`` is then 0).
    """

    limit: int
    current: int
    window_ms: int
    reset_time: Optional[datetime] = None
    window: str = "hourly"

    @property
    def exceeded(self) -> bool:
        return self.current > self.limit

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current)

    def to_dict(self) -> dict[str, Any]:
        return {
            "limit": self.limit,
            "current": self.current,
            "windowMs": self.window_ms,
            "resetTime": self.reset_time.isoformat() if self.reset_time else None,
            "window": self.window,
        }


@dataclass(frozen=True)
class RateLimitSnapshot:
    limit: int
    current: int
    remaining: int
    reset_time: Optional[datetime] = None

    @classmethod
    def from_info(cls, info: Optional[RateLimitInfo]) -> "RateLimitSnapshot":
        if info is None:
            return cls(limit=0, current=0, remaining=0)
        return cls(
            limit=info.limit,
            current=info.current,
            remaining=info.remaining,
            reset_time=info.reset_time,
        )


# ─── Key records ──────────────────────────────────────────────────────────────


@dataclass
class KeyRecord:
    """Full persisted key record. The plaintext credential is never a field."""

    id: str
    hashed_secret: str
    name: str
    scopes: list[str]
    rate_limit: RateLimit
    is_active: bool = True
    last_used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    organization_id: Optional[str] = None
    created_by_user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    def summary(self) -> "KeySummary":
        return KeySummary(
            id=self.id,
            name=self.name,
            scopes=list(self.scopes),
            rate_limit=self.rate_limit,
            is_active=self.is_active,
            last_used_at=self.last_used_at,
            expires_at=self.expires_at,
            organization_id=self.organization_id,
            created_by_user_id=self.created_by_user_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class KeySummary:
    """Digest-free projection for administrative listings."""

    id: str
    name: str
    scopes: list[str]
    rate_limit: RateLimit
    is_active: bool
    last_used_at: Optional[datetime]
    expires_at: Optional[datetime]
    organization_id: Optional[str]
    created_by_user_id: Optional[str]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "name": self.name,
            "scopes": list(self.scopes),
            "rate_limit": self.rate_limit.to_dict(),
            "is_active": self.is_active,
            "last_used_at": _iso(self.last_used_at),
            "expires_at": _iso(self.expires_at),
            "organization_id": self.organization_id,
            "created_by_user_id": self.created_by_user_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class SanitizedKey:
    """What downstream handlers learn about the authenticated credential."""

    id: str
    name: str
    scopes: list[str]
    organization_id: Optional[str]
    rate_limit: RateLimitSnapshot

    @classmethod
    def from_record(
        cls, record: KeyRecord, info: Optional[RateLimitInfo]
    ) -> "SanitizedKey":
        return cls(
            id=record.id,
            name=record.name,
            scopes=list(record.scopes),
            organization_id=record.organization_id,
            rate_limit=RateLimitSnapshot.from_info(info),
        )


# ─── Validation result ────────────────────────────────────────────────────────


class FailureReason(str, Enum):
    """Why a credential was refused. Each value maps to one error code."""

    MISSING_CREDENTIAL = "MissingCredential"
    INVALID_FORMAT = "InvalidFormat"
    INVALID_KEY = "InvalidKey"
    EXPIRED = "Expired"
    INSUFFICIENT_PERMISSIONS = "InsufficientPermissions"
    RATE_LIMIT_EXCEEDED = "RateLimitExceeded"
    INTERNAL_VALIDATION_ERROR = "InternalValidationError"


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    key: Optional[SanitizedKey] = None
    reason: Optional[FailureReason] = None
    rate_limit_info: Optional[RateLimitInfo] = None

    @classmethod
    def success(cls, key: SanitizedKey, info: Optional[RateLimitInfo]) -> "ValidationResult":
        return cls(valid=True, key=key, rate_limit_info=info)

    @classmethod
    def failure(
        cls, reason: FailureReason, info: Optional[RateLimitInfo] = None
    ) -> "ValidationResult":
        return cls(valid=False, reason=reason, rate_limit_info=info)
