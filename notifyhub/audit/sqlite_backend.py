"""LocalSQLiteBackend: aiosqlite-based append-only security event store.

  - WAL mode: PRAGMA journal_mode=WAL
  - Schema version guard: PRAGMA user_version=1, RuntimeError on mismatch
  - Long-lived connection: opened in initialize(), closed in close()
  - Idempotent writes: INSERT OR IGNORE on the event id
  - No UPDATE or DELETE statement ever touches security_events
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Optional

import aiosqlite

from notifyhub.audit.models import EventFilters, SecurityEvent, SecurityEventType
from notifyhub.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Schema DDL ───────────────────────────────────────────────────────────────

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS security_events (
    id                  TEXT PRIMARY KEY,
    event_type          TEXT NOT NULL CHECK(event_type IN (
                            'CREATED', 'DELETED', 'USED', 'INVALID_ATTEMPT',
                            'RATE_LIMIT_EXCEEDED', 'EXPIRED', 'SUSPICIOUS')),
    key_id              TEXT,
    hashed_secret       TEXT,
    ip_address          TEXT,
    user_agent          TEXT,
    request_id          TEXT,
    organization_id     TEXT,
    metadata            TEXT NOT NULL DEFAULT '{}',
    message             TEXT,
    timestamp           TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_security_events_timestamp
    ON security_events(timestamp DESC);

CREATE INDEX IF NOT EXISTS idx_security_events_type_timestamp
    ON security_events(event_type, timestamp DESC);

CREATE INDEX IF NOT EXISTS idx_security_events_key_id
    ON security_events(key_id, timestamp DESC);
"""

_SCHEMA_VERSION = 1


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


# ─── Row deserialiser ─────────────────────────────────────────────────────────


def _row_to_event(row: aiosqlite.Row) -> SecurityEvent:
    return SecurityEvent(
        id=row["id"],
        event_type=SecurityEventType(row["event_type"]),
        key_id=row["key_id"],
        hashed_secret=row["hashed_secret"],
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        request_id=row["request_id"],
        organization_id=row["organization_id"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        message=row["message"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
    )


# ─── LocalSQLiteBackend ───────────────────────────────────────────────────────


class LocalSQLiteBackend:
    """Async SQLite audit backend.

    Default path: ~/.notifyhub/audit.db
    Override via NOTIFYHUB_AUDIT_DB_PATH or pass db_path explicitly (tests).

    Usage:
        backend = LocalSQLiteBackend()
        await backend.initialize()
        await backend.log_event(event)
        events = await backend.query_events(EventFilters(key_id="01H..."))
        await backend.close()
    """

    def __init__(self, db_path: str = "~/.notifyhub/audit.db") -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the SQLite connection, enable WAL mode, and create/verify schema.

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1.
                          The lifespan lets this propagate and startup is refused.
        """
        parent_dir = os.path.dirname(self._db_path)
        if parent_dir:
            os.makedirs(parent_dir, exist_ok=True)

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL;")

        cursor = await self._db.execute("PRAGMA user_version;")
        row = await cursor.fetchone()
        current_version: int = row[0] if row else 0

        if current_version == 0:
            await self._db.executescript(_CREATE_SCHEMA_SQL)
            # executescript may not honour PRAGMA in all SQLite builds
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info(
                "audit_db_schema_created",
                db_path=self._db_path,
                schema_version=_SCHEMA_VERSION,
            )
        elif current_version == _SCHEMA_VERSION:
            logger.info(
                "audit_db_schema_ok",
                db_path=self._db_path,
                schema_version=current_version,
            )
        else:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported audit database schema version: {current_version}. "
                f"Delete {self._db_path} to reset."
            )

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("audit_db_closed", db_path=self._db_path)

    # ── AuditBackend Protocol Methods ─────────────────────────────────────────

    async def log_event(self, event: SecurityEvent) -> None:
        """Persist one event. Catches ALL exceptions and never re-raises."""
        try:
            assert self._db is not None, "Database not initialized, call initialize() first"
            await self._db.execute(
                """INSERT OR IGNORE INTO security_events
                   (id, event_type, key_id, hashed_secret, ip_address, user_agent,
                    request_id, organization_id, metadata, message, timestamp)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?)""",
                (
                    event.id,
                    event.event_type.value,
                    event.key_id,
                    event.hashed_secret,
                    event.ip_address,
                    event.user_agent,
                    event.request_id,
                    event.organization_id,
                    json.dumps(event.metadata, default=str),
                    event.message,
                    _iso(event.timestamp),
                ),
            )
            await self._db.commit()
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                event_id=event.id,
                event_type=event.event_type.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def query_events(self, filters: EventFilters) -> list[SecurityEvent]:
        """Newest first. All filter values are bound parameters."""
        assert self._db is not None, "Database not initialized"
        sql, params = _build_select_sql(filters, select="*")
        cursor = await self._db.execute(sql, params)
        rows = await cursor.fetchall()
        return [_row_to_event(row) for row in rows]

    async def count_events(self, filters: EventFilters) -> int:
        assert self._db is not None, "Database not initialized"
        sql, params = _build_select_sql(filters, select="COUNT(*)")
        cursor = await self._db.execute(sql, params)
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def count_distinct_ips(self, filters: EventFilters) -> int:
        assert self._db is not None, "Database not initialized"
        sql, params = _build_select_sql(filters, select="COUNT(DISTINCT ip_address)")
        cursor = await self._db.execute(sql, params)
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def health_check(self) -> bool:
        try:
            assert self._db is not None
            await self._db.execute("SELECT 1")
            return True
        except Exception:
            return False


# ─── SQL Builder Helper ───────────────────────────────────────────────────────


def _build_select_sql(filters: EventFilters, *, select: str) -> tuple[str, list[Any]]:
    """Build a parameterized SELECT over security_events.

    Only ``select == "*"`` gets ORDER BY / LIMIT / OFFSET; aggregate selects
    count every matching row.
    """
    sql = f"SELECT {select} FROM security_events"

    conditions: list[str] = []
    params: list[Any] = []

    if filters.event_types:
        placeholders = ",".join("?" for _ in filters.event_types)
        conditions.append(f"event_type IN ({placeholders})")
        params.extend(SecurityEventType(t).value for t in filters.event_types)

    if filters.key_id is not None:
        conditions.append("key_id = ?")
        params.append(filters.key_id)

    if filters.ip_address is not None:
        conditions.append("ip_address = ?")
        params.append(filters.ip_address)

    if filters.scope_to_organization:
        if filters.organization_id is None:
            conditions.append("organization_id IS NULL")
        else:
            conditions.append("organization_id = ?")
            params.append(filters.organization_id)

    if filters.since is not None:
        conditions.append("timestamp >= ?")
        params.append(_iso(filters.since))

    if filters.until is not None:
        conditions.append("timestamp <= ?")
        params.append(_iso(filters.until))

    if conditions:
        sql += " WHERE " + " AND ".join(conditions)

    if select == "*":
        sql += " ORDER BY timestamp DESC, id DESC"
        sql += f" LIMIT {int(filters.limit)} OFFSET {int(filters.offset)}"

    return sql, params
