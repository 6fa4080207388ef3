"""notifyhub security audit package.

    from notifyhub.audit import AuditSink, SecurityEvent, SecurityEventType

Layout:
    models.py          SecurityEvent, SecurityEventType, EventFilters, SuspiciousActivitySummary
    protocol.py        AuditBackend Protocol + NullAuditBackend
    sqlite_backend.py  LocalSQLiteBackend (aiosqlite, WAL mode, PRAGMA version guard)
    sink.py            AuditSink (bounded queue, never raises into the caller)
    factory.py         create_audit_backend()
"""

from notifyhub.audit.models import (
    EventFilters,
    SecurityEvent,
    SecurityEventType,
    SuspiciousActivitySummary,
)
from notifyhub.audit.protocol import AuditBackend, NullAuditBackend
from notifyhub.audit.sink import AuditSink

__all__ = [
    "SecurityEvent",
    "SecurityEventType",
    "EventFilters",
    "SuspiciousActivitySummary",
    "AuditBackend",
    "NullAuditBackend",
    "AuditSink",
]
