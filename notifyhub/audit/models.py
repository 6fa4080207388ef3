"""SecurityEvent dataclass, event types and query filter types.

Every authentication outcome and every key lifecycle change becomes exactly
one SecurityEvent. Events are immutable once built and the backend never
updates or deletes them.

IMPORTANT: no field may ever hold a plaintext credential. ``hashed_secret``
holds either a real SHA-256 digest (for attempts that never resolved to a
record) or the ``invalid_format`` sentinel for input that failed the format
check and was never hashed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from notifyhub.constants import AUDIT_MESSAGE_MAX, AUDIT_USER_AGENT_MAX
from notifyhub.utils.ulid import generate_ulid

if TYPE_CHECKING:
    from notifyhub.auth.models import RateLimitInfo


class SecurityEventType(str, Enum):
    CREATED = "CREATED"
    DELETED = "DELETED"
    USED = "USED"
    INVALID_ATTEMPT = "INVALID_ATTEMPT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    EXPIRED = "EXPIRED"
    SUSPICIOUS = "SUSPICIOUS"


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    return value[:limit]


# ─── SecurityEvent ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SecurityEvent:
    """One append-only audit record.

    Build events through the classmethod constructors below so message text
    and metadata keys stay consistent across call sites.
    """

    event_type: SecurityEventType
    key_id: Optional[str] = None
    hashed_secret: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_id: Optional[str] = None
    organization_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None
    id: str = field(default_factory=generate_ulid)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        object.__setattr__(self, "user_agent", _clip(self.user_agent, AUDIT_USER_AGENT_MAX))
        object.__setattr__(self, "message", _clip(self.message, AUDIT_MESSAGE_MAX))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type.value,
            "key_id": self.key_id,
            "hashed_secret": self.hashed_secret,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "request_id": self.request_id,
            "organization_id": self.organization_id,
            "metadata": dict(self.metadata),
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }

    # ── Validation outcomes ───────────────────────────────────────────────────

    @classmethod
    def key_used(
        cls,
        key_id: str,
        ip_address: str,
        user_agent: str,
        request_id: str,
        endpoint: str,
        organization_id: Optional[str] = None,
    ) -> "SecurityEvent":
        return cls(
            event_type=SecurityEventType.USED,
            key_id=key_id,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
            organization_id=organization_id,
            metadata={"endpoint": endpoint},
            message=f"API key used for {endpoint}",
        )

    @classmethod
    def invalid_attempt(
        cls,
        hashed_secret: str,
        ip_address: str,
        user_agent: str,
        request_id: str,
        endpoint: str,
    ) -> "SecurityEvent":
        return cls(
            event_type=SecurityEventType.INVALID_ATTEMPT,
            hashed_secret=hashed_secret,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
            metadata={"endpoint": endpoint},
            message=f"Invalid API key attempt from {ip_address} for {endpoint}",
        )

    @classmethod
    def expired_attempt(
        cls,
        key_id: str,
        ip_address: str,
        user_agent: str,
        request_id: str,
        endpoint: str,
        organization_id: Optional[str] = None,
    ) -> "SecurityEvent":
        return cls(
            event_type=SecurityEventType.EXPIRED,
            key_id=key_id,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
            organization_id=organization_id,
            metadata={"endpoint": endpoint},
            message=f"Expired API key attempt for {endpoint}",
        )

    @classmethod
    def scope_violation(
        cls,
        key_id: str,
        ip_address: str,
        user_agent: str,
        request_id: str,
        endpoint: str,
        required_scope: str,
        available_scopes: list[str],
        organization_id: Optional[str] = None,
    ) -> "SecurityEvent":
        return cls(
            event_type=SecurityEventType.SUSPICIOUS,
            key_id=key_id,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
            organization_id=organization_id,
            metadata={
                "endpoint": endpoint,
                "requiredScope": required_scope,
                "availableScopes": list(available_scopes),
            },
            message=(
                f"API key attempted to access {endpoint} "
                f"without required scope: {required_scope}"
            ),
        )

    @classmethod
    def rate_limit_exceeded(
        cls,
        key_id: str,
        ip_address: str,
        user_agent: str,
        request_id: str,
        endpoint: str,
        info: "RateLimitInfo",
        organization_id: Optional[str] = None,
    ) -> "SecurityEvent":
        return cls(
            event_type=SecurityEventType.RATE_LIMIT_EXCEEDED,
            key_id=key_id,
            ip_address=ip_address,
            user_agent=user_agent,
            request_id=request_id,
            organization_id=organization_id,
            metadata={"endpoint": endpoint, "rateLimitInfo": info.to_dict()},
            message=(
                f"Rate limit exceeded: {info.current}/{info.limit} requests "
                f"in {info.window_ms}ms window"
            ),
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @classmethod
    def key_created(
        cls,
        key_id: str,
        name: str,
        scopes: list[str],
        created_by_user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> "SecurityEvent":
        return cls(
            event_type=SecurityEventType.CREATED,
            key_id=key_id,
            organization_id=organization_id,
            metadata={
                "name": name,
                "scopes": list(scopes),
                "createdByUserId": created_by_user_id,
            },
            message=f"API key '{name}' created with scopes: {', '.join(scopes)}",
        )

    @classmethod
    def key_deleted(
        cls,
        key_id: str,
        name: str,
        deleted_by_user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> "SecurityEvent":
        return cls(
            event_type=SecurityEventType.DELETED,
            key_id=key_id,
            organization_id=organization_id,
            metadata={"name": name, "deletedByUserId": deleted_by_user_id},
            message=f"API key '{name}' deleted",
        )


# ─── Query types ──────────────────────────────────────────────────────────────


@dataclass
class EventFilters:
    """Query filters for AuditBackend reads.

    All fields are optional. An empty EventFilters() returns the newest 50 events.
    """

    event_types: Optional[list[SecurityEventType]] = None
    key_id: Optional[str] = None
    ip_address: Optional[str] = None
    organization_id: Optional[str] = None
    scope_to_organization: bool = False
    """When True, only events whose organization_id equals ``organization_id``
    match. None then selects events with no organization."""
    since: Optional[datetime] = None
    """Include events with timestamp >= since."""
    until: Optional[datetime] = None
    """Include events with timestamp <= until."""
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True)
class SuspiciousActivitySummary:
    invalid_attempts: int
    rate_limit_exceeded: int
    expired_attempts: int
    unique_ip_count: int
    window_hours: int = 24

    def to_dict(self) -> dict[str, int]:
        return {
            "invalid_attempts": self.invalid_attempts,
            "rate_limit_exceeded": self.rate_limit_exceeded,
            "expired_attempts": self.expired_attempts,
            "unique_ip_count": self.unique_ip_count,
            "window_hours": self.window_hours,
        }
