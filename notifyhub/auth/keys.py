"""KeyManager: API key lifecycle on top of a KeyStore.

Plaintext credentials exist only inside create(): they are generated, hashed,
handed back to the caller exactly once and never stored or logged. Every
other operation works on ids or digests.

Lifecycle changes (create, deactivate) each emit one audit event through the
AuditSink. Audit problems never fail the operation.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

from notifyhub.audit.models import SecurityEvent
from notifyhub.audit.sink import AuditSink
from notifyhub.auth.crypto import constant_time_equal, generate_secret, hash_secret
from notifyhub.auth.models import KeyRecord, KeySummary, RateLimit, utcnow
from notifyhub.auth.store import KeyStore
from notifyhub.constants import MAX_KEY_NAME_LENGTH
from notifyhub.utils.logger import digest_prefix, get_logger
from notifyhub.utils.ulid import generate_ulid

logger = get_logger(__name__)


# ─── Exceptions ───────────────────────────────────────────────────────────────


class KeyValidationError(Exception):
    """Raised when create() input is unusable.

    HTTP mapping: 400 Bad Request with code='key_validation_error'
    """

    code: str = "key_validation_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class KeyNotFoundError(Exception):
    """Raised when an operation references a key id that does not exist.

    HTTP mapping: 404 Not Found
    """

    def __init__(self, message: str = "API key not found") -> None:
        super().__init__(message)
        self.message = message


def _validate_create_input(
    name: str,
    scopes: list[str],
    rate_limit: RateLimit,
    expires_at: Optional[datetime],
    now: datetime,
) -> list[str]:
    if not isinstance(name, str) or not name.strip():
        raise KeyValidationError("name must not be empty")
    if len(name) > MAX_KEY_NAME_LENGTH:
        raise KeyValidationError(f"name must be at most {MAX_KEY_NAME_LENGTH} characters")

    cleaned: list[str] = []
    for scope in scopes or []:
        if not isinstance(scope, str) or not scope.strip():
            raise KeyValidationError("scopes must be non-empty strings")
        if scope not in cleaned:
            cleaned.append(scope)
    if not cleaned:
        raise KeyValidationError("at least one scope is required")

    if rate_limit.hourly <= 0 or rate_limit.daily <= 0:
        raise KeyValidationError("rate limits must be positive integers")

    if expires_at is not None:
        if expires_at.tzinfo is None:
            raise KeyValidationError("expires_at must be timezone-aware")
        if expires_at <= now:
            raise KeyValidationError("expires_at must be in the future")
    return cleaned


# ─── KeyManager ───────────────────────────────────────────────────────────────


class KeyManager:
    """Usage:
        manager = KeyManager(store, audit_sink)
        record, plaintext = await manager.create("billing", ["notifications:send"], RateLimit(1000, 10000))
        record = await manager.find_active_by_hash(hash_secret(plaintext))
    """

    def __init__(self, store: KeyStore, audit: AuditSink) -> None:
        self._store = store
        self._audit = audit
        self._background: set[asyncio.Task] = set()

    @property
    def store(self) -> KeyStore:
        return self._store

    async def create(
        self,
        name: str,
        scopes: list[str],
        rate_limit: RateLimit,
        expires_at: Optional[datetime] = None,
        organization_id: Optional[str] = None,
        created_by_user_id: Optional[str] = None,
    ) -> tuple[KeyRecord, str]:
        """Create a key. Returns (record, plaintext); the plaintext is not retrievable later.

        Raises:
            KeyValidationError: On empty/oversized name, no scopes,
                                non-positive limits or a past expiry.
        """
        now = utcnow()
        cleaned_scopes = _validate_create_input(name, scopes, rate_limit, expires_at, now)

        plaintext = generate_secret()
        record = KeyRecord(
            id=generate_ulid(),
            hashed_secret=hash_secret(plaintext),
            name=name,
            scopes=cleaned_scopes,
            rate_limit=rate_limit,
            expires_at=expires_at,
            organization_id=organization_id,
            created_by_user_id=created_by_user_id,
            created_at=now,
            updated_at=now,
        )
        await self._store.insert(record)

        self._audit.record(
            SecurityEvent.key_created(
                key_id=record.id,
                name=record.name,
                scopes=record.scopes,
                created_by_user_id=created_by_user_id,
                organization_id=organization_id,
            )
        )
        logger.info(
            "api_key_created",
            key_id=record.id,
            organization_id=organization_id,
            scopes=record.scopes,
        )
        return record, plaintext

    async def find_active_by_hash(self, digest: str) -> Optional[KeyRecord]:
        """Active record whose digest equals ``digest``, else None.

        Store errors propagate; the validation pipeline turns them into a
        fail-closed refusal.
        """
        record = await self._store.find_active_by_hash(digest)
        if record is None:
            return None
        if not constant_time_equal(record.hashed_secret, digest):
            logger.error("key_store_digest_mismatch", key_id=record.id, digest=digest_prefix(digest))
            return None
        return record

    def touch_last_used(self, key_id: str) -> asyncio.Task:
        """Schedule a last_used_at update without waiting for it."""
        task = asyncio.create_task(self._touch_last_used(key_id, utcnow()))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _touch_last_used(self, key_id: str, when: datetime) -> None:
        try:
            await self._store.touch_last_used(key_id, when)
        except Exception as exc:
            logger.debug("Failed to update last_used_at", key_id=key_id, error=str(exc))

    async def deactivate(self, key_id: str, actor_id: Optional[str] = None) -> bool:
        """Soft-delete a key. The row stays for audit history.

        Returns False (and emits nothing) if the key was already inactive.

        Raises:
            KeyNotFoundError: If no key with ``key_id`` exists.
        """
        record = await self._store.get(key_id)
        if record is None:
            raise KeyNotFoundError()

        changed = await self._store.deactivate(key_id, utcnow())
        if not changed:
            logger.debug("deactivate: key already inactive", key_id=key_id)
            return False

        self._audit.record(
            SecurityEvent.key_deleted(
                key_id=record.id,
                name=record.name,
                deleted_by_user_id=actor_id,
                organization_id=record.organization_id,
            )
        )
        logger.info("api_key_deactivated", key_id=key_id, actor_id=actor_id)
        return True

    async def cleanup_expired(self) -> int:
        """Deactivate every active key whose expiry has passed. Idempotent."""
        count = await self._store.cleanup_expired(utcnow())
        logger.info("expired_keys_cleaned_up", count=count)
        return count

    async def list_by_organization(self, organization_id: Optional[str]) -> list[KeySummary]:
        records = await self._store.list_by_organization(organization_id)
        return [record.summary() for record in records]

    async def get_summary(self, key_id: str) -> Optional[KeySummary]:
        record = await self._store.get(key_id)
        return record.summary() if record is not None else None

    async def wait_background(self) -> None:
        """Await outstanding last_used_at updates (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


# ─── Background Expiry Sweeper ────────────────────────────────────────────────


async def run_expiry_sweeper(manager: KeyManager, interval_seconds: int) -> None:
    """Background asyncio task: cleanup_expired() every ``interval_seconds``.

    Registered with asyncio.create_task() during lifespan startup and
    cancelled on shutdown. Errors are logged and the loop continues.
    """
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await manager.cleanup_expired()
        except asyncio.CancelledError:
            logger.info("expiry_sweeper_cancelled")
            raise
        except Exception as exc:
            logger.error(
                "expiry_sweep_error",
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=interval_seconds,
            )
