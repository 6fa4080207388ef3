"""AuditBackend Protocol + NullAuditBackend.

SecurityEvent and EventFilters live in notifyhub/audit/models.py. This module
defines the pluggable storage interface behind AuditSink.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from notifyhub.audit.models import EventFilters, SecurityEvent
from notifyhub.utils.logger import get_logger

logger = get_logger(__name__)


@runtime_checkable
class AuditBackend(Protocol):
    """Append-only security event storage.

    Implementations: LocalSQLiteBackend (default), NullAuditBackend.
    Selection via create_audit_backend() (audit/factory.py).

    log_event() is only ever called from AuditSink, off the request path.
    There is deliberately no update or delete method.
    """

    async def log_event(self, event: SecurityEvent) -> None:
        """Persist one event. Must NEVER raise."""
        ...

    async def query_events(self, filters: EventFilters) -> list[SecurityEvent]:
        """Events matching filters, newest first."""
        ...

    async def count_events(self, filters: EventFilters) -> int:
        """COUNT(*) of matching events; ignores limit/offset."""
        ...

    async def count_distinct_ips(self, filters: EventFilters) -> int:
        """Number of distinct non-null ip_address values among matching events."""
        ...

    async def health_check(self) -> bool:
        """Returns True if the backend is operational. Must not raise."""
        ...

    async def close(self) -> None:
        ...


class NullAuditBackend:
    """No-op AuditBackend, used in tests and when auditing is disabled."""

    async def log_event(self, event: SecurityEvent) -> None:
        logger.debug("NullAuditBackend.log_event", event_id=event.id)

    async def query_events(self, filters: EventFilters) -> list[SecurityEvent]:
        return []

    async def count_events(self, filters: EventFilters) -> int:
        return 0

    async def count_distinct_ips(self, filters: EventFilters) -> int:
        return 0

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        logger.debug("NullAuditBackend.close")


# Catches protocol drift at import time
assert isinstance(NullAuditBackend(), AuditBackend), (
    "NullAuditBackend does not satisfy AuditBackend protocol"
)
