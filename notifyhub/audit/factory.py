"""Audit backend factory: backend selection and initialization.

  1. audit.enabled is false      → NullAuditBackend
  2. otherwise                   → LocalSQLiteBackend at audit.path

LocalSQLiteBackend.initialize() raises RuntimeError on a schema version
mismatch; it propagates to the lifespan and startup is refused.
"""

from __future__ import annotations

from notifyhub.audit.protocol import AuditBackend, NullAuditBackend
from notifyhub.config import AuditConfig
from notifyhub.utils.logger import get_logger

logger = get_logger(__name__)


async def create_audit_backend(config: AuditConfig) -> AuditBackend:
    """Create and initialize the configured audit backend."""
    if not config.enabled:
        logger.warning("audit_backend_selected", backend="NullAuditBackend")
        return NullAuditBackend()

    from notifyhub.audit.sqlite_backend import LocalSQLiteBackend

    backend = LocalSQLiteBackend(db_path=config.path)
    await backend.initialize()

    logger.info(
        "audit_backend_selected",
        backend="LocalSQLiteBackend",
        db_path=config.path,
    )
    return backend
