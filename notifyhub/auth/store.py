"""Key record persistence: the KeyStore Protocol and its SQLite backend.

The record store contract is an exact-match lookup by
digest plus a handful of single-field updates. Any persistent store with a
unique index can satisfy it.

LocalSQLiteKeyStore:
  - aiosqlite only, one long-lived connection opened in initialize()
  - WAL mode, PRAGMA user_version schema guard (0 = fresh, 1 = ok, else refuse)
  - UNIQUE index on hashed_secret; the plaintext credential is never a column
  - file mode 0600 set on every initialize()
  - rows are never deleted; deactivation flips is_active
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Optional, Protocol, runtime_checkable

import aiosqlite

from notifyhub.auth.models import KeyRecord, RateLimit
from notifyhub.utils.logger import get_logger

logger = get_logger(__name__)

_SCHEMA_VERSION = 1

_CREATE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS api_keys (
    id                  TEXT PRIMARY KEY,
    hashed_secret       TEXT NOT NULL,
    name                TEXT NOT NULL,
    scopes              TEXT NOT NULL,
    rate_limit          TEXT NOT NULL,
    is_active           INTEGER NOT NULL DEFAULT 1,
    last_used_at        TEXT,
    expires_at          TEXT,
    organization_id     TEXT,
    created_by_user_id  TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_api_keys_hashed_secret
    ON api_keys(hashed_secret);

CREATE INDEX IF NOT EXISTS idx_api_keys_is_active
    ON api_keys(is_active);

CREATE INDEX IF NOT EXISTS idx_api_keys_organization
    ON api_keys(organization_id, created_at DESC);

CREATE INDEX IF NOT EXISTS idx_api_keys_expiry
    ON api_keys(is_active, expires_at);
"""


# ─── Timestamp helpers ────────────────────────────────────────────────────────
# Fixed-width UTC ISO strings so lexical order in SQL equals time order.


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_record(row: aiosqlite.Row) -> KeyRecord:
    return KeyRecord(
        id=row["id"],
        hashed_secret=row["hashed_secret"],
        name=row["name"],
        scopes=json.loads(row["scopes"]),
        rate_limit=RateLimit.from_dict(json.loads(row["rate_limit"])),
        is_active=bool(row["is_active"]),
        last_used_at=from_db_time(row["last_used_at"]),
        expires_at=from_db_time(row["expires_at"]),
        organization_id=row["organization_id"],
        created_by_user_id=row["created_by_user_id"],
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


# ─── KeyStore Protocol ────────────────────────────────────────────────────────


@runtime_checkable
class KeyStore(Protocol):
    """Record store contract consumed by KeyManager.

    find_active_by_hash() MUST return None for inactive rows: callers cannot
    tell "never existed" from "deactivated".
    """

    async def initialize(self) -> None: ...

    async def insert(self, record: KeyRecord) -> None: ...

    async def get(self, key_id: str) -> Optional[KeyRecord]: ...

    async def find_active_by_hash(self, digest: str) -> Optional[KeyRecord]: ...

    async def touch_last_used(self, key_id: str, when: datetime) -> None: ...

    async def deactivate(self, key_id: str, when: datetime) -> bool: ...

    async def cleanup_expired(self, now: datetime) -> int: ...

    async def list_by_organization(self, organization_id: Optional[str]) -> list[KeyRecord]: ...

    async def health_check(self) -> bool: ...

    async def close(self) -> None: ...


# ─── LocalSQLiteKeyStore ──────────────────────────────────────────────────────


class LocalSQLiteKeyStore:
    """aiosqlite-backed KeyStore.

    Usage:
        store = LocalSQLiteKeyStore("~/.notifyhub/keys.db")
        await store.initialize()
        record = await store.find_active_by_hash(digest)
        await store.close()
    """

    def __init__(self, db_path: str = "~/.notifyhub/keys.db") -> None:
        self._db_path: str = os.path.expanduser(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    @property
    def db_path(self) -> str:
        return self._db_path

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Open the connection, enable WAL, create or verify the schema.

        Raises:
            RuntimeError: If PRAGMA user_version is neither 0 nor 1.
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
            await self._db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION};")
            await self._db.commit()
            logger.info("key_store_schema_created", db_path=self._db_path)
        elif current_version != _SCHEMA_VERSION:
            await self._db.close()
            self._db = None
            raise RuntimeError(
                f"Unsupported key store schema version: {current_version}. "
                f"Expected {_SCHEMA_VERSION}."
            )

        os.chmod(self._db_path, 0o600)
        logger.debug("key_store_ready", db_path=self._db_path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("key_store_closed", db_path=self._db_path)

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Key store not initialized, call initialize() first")
        return self._db

    # ── Writes ────────────────────────────────────────────────────────────────

    async def insert(self, record: KeyRecord) -> None:
        db = self._conn()
        await db.execute(
            """INSERT INTO api_keys
               (id, hashed_secret, name, scopes, rate_limit, is_active,
                last_used_at, expires_at, organization_id, created_by_user_id,
                created_at, updated_at)
               VALUES (?,?,?,?,?,?,?,?,?,?,?,?)""",
            (
                record.id,
                record.hashed_secret,
                record.name,
                json.dumps(record.scopes),
                json.dumps(record.rate_limit.to_dict()),
                int(record.is_active),
                to_db_time(record.last_used_at),
                to_db_time(record.expires_at),
                record.organization_id,
                record.created_by_user_id,
                to_db_time(record.created_at),
                to_db_time(record.updated_at),
            ),
        )
        await db.commit()

    async def touch_last_used(self, key_id: str, when: datetime) -> None:
        # last writer wins; updated_at is left alone since this is usage, not a change
        db = self._conn()
        await db.execute(
            "UPDATE api_keys SET last_used_at = ? WHERE id = ?",
            (to_db_time(when), key_id),
        )
        await db.commit()

    async def deactivate(self, key_id: str, when: datetime) -> bool:
        """Flip is_active off. Returns False if the row was already inactive or absent."""
        db = self._conn()
        cursor = await db.execute(
            "UPDATE api_keys SET is_active = 0, updated_at = ? "
            "WHERE id = ? AND is_active = 1",
            (to_db_time(when), key_id),
        )
        await db.commit()
        return (cursor.rowcount or 0) > 0

    async def cleanup_expired(self, now: datetime) -> int:
        db = self._conn()
        stamp = to_db_time(now)
        cursor = await db.execute(
            "UPDATE api_keys SET is_active = 0, updated_at = ? "
            "WHERE is_active = 1 AND expires_at IS NOT NULL AND expires_at < ?",
            (stamp, stamp),
        )
        await db.commit()
        return cursor.rowcount or 0

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get(self, key_id: str) -> Optional[KeyRecord]:
        cursor = await self._conn().execute(
            "SELECT * FROM api_keys WHERE id = ?", (key_id,)
        )
        row = await cursor.fetchone()
        return _row_to_record(row) if row is not None else None

    async def find_active_by_hash(self, digest: str) -> Optional[KeyRecord]:
        cursor = await self._conn().execute(
            "SELECT * FROM api_keys WHERE hashed_secret = ? AND is_active = 1",
            (digest,),
        )
        row = await cursor.fetchone()
        return _row_to_record(row) if row is not None else None

    async def list_by_organization(self, organization_id: Optional[str]) -> list[KeyRecord]:
        if organization_id is None:
            sql = "SELECT * FROM api_keys WHERE organization_id IS NULL ORDER BY created_at DESC"
            params: tuple = ()
        else:
            sql = "SELECT * FROM api_keys WHERE organization_id = ? ORDER BY created_at DESC"
            params = (organization_id,)
        cursor = await self._conn().execute(sql, params)
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows]

    async def health_check(self) -> bool:
        try:
            await self._conn().execute("SELECT 1")
            return True
        except Exception:
            return False
