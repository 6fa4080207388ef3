"""Root test configuration for notifyhub.

Every test runs with NOTIFYHUB_AUTH_REQUIRED=true (the production default),
no config file, and database paths under pytest's tmp_path so nothing touches
~/.notifyhub. The in-memory counter store is used unless a test builds its own.

Shared fixtures build the real service graph bottom-up:

    key_store ─┐
    audit_backend → audit_sink ─┬→ key_manager ─┐
    counter_store → rate_limiter ┴──────────────┴→ pipeline
"""

from __future__ import annotations

from typing import Any, AsyncGenerator

import pytest

from notifyhub.audit.models import EventFilters, SecurityEvent, SecurityEventType
from notifyhub.audit.sink import AuditSink
from notifyhub.auth.keys import KeyManager
from notifyhub.auth.limiter import InMemoryCounterStore, RateLimiter
from notifyhub.auth.pipeline import ValidationPipeline
from notifyhub.auth.store import LocalSQLiteKeyStore


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> None:
    """Pin auth on and point every store at tmp_path."""
    monkeypatch.setenv("NOTIFYHUB_AUTH_REQUIRED", "true")
    monkeypatch.setenv("NOTIFYHUB_CONFIG", str(tmp_path / "absent-config.yaml"))
    monkeypatch.setenv("NOTIFYHUB_KEYS_DB_PATH", str(tmp_path / "keys.db"))
    monkeypatch.setenv("NOTIFYHUB_AUDIT_DB_PATH", str(tmp_path / "audit.db"))
    monkeypatch.setenv("NOTIFYHUB_REDIS_URL", "")
    monkeypatch.chdir(tmp_path)


@pytest.fixture(autouse=True)
def reset_admin_throttle() -> None:
    """Reset the slowapi storage so admin-route tests never trip 30/minute."""
    from notifyhub.auth.limiter import limiter

    try:
        limiter._storage.reset()
    except Exception:
        pass  # Storage may not support reset in all backends


# ─── Recording audit backend ──────────────────────────────────────────────────


class RecordingAuditBackend:
    """AuditBackend that keeps events in a list. Set ``fail = True`` to make writes raise."""

    def __init__(self) -> None:
        self.events: list[SecurityEvent] = []
        self.fail = False

    async def log_event(self, event: SecurityEvent) -> None:
        if self.fail:
            raise RuntimeError("audit store offline")
        self.events.append(event)

    def _match(self, filters: EventFilters) -> list[SecurityEvent]:
        matched = [
            e
            for e in self.events
            if (not filters.event_types or e.event_type in filters.event_types)
            and (filters.key_id is None or e.key_id == filters.key_id)
            and (
                not filters.scope_to_organization
                or e.organization_id == filters.organization_id
            )
            and (filters.since is None or e.timestamp >= filters.since)
        ]
        return sorted(matched, key=lambda e: e.timestamp, reverse=True)

    async def query_events(self, filters: EventFilters) -> list[SecurityEvent]:
        return self._match(filters)[filters.offset : filters.offset + filters.limit]

    async def count_events(self, filters: EventFilters) -> int:
        return len(self._match(filters))

    async def count_distinct_ips(self, filters: EventFilters) -> int:
        return len({e.ip_address for e in self._match(filters) if e.ip_address})

    async def health_check(self) -> bool:
        return not self.fail

    async def close(self) -> None:
        pass

    def of_type(self, event_type: SecurityEventType) -> list[SecurityEvent]:
        return [e for e in self.events if e.event_type == event_type]


# ─── Service graph ────────────────────────────────────────────────────────────


@pytest.fixture
async def key_store(tmp_path: Any) -> AsyncGenerator[LocalSQLiteKeyStore, None]:
    store = LocalSQLiteKeyStore(db_path=str(tmp_path / "keys.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def audit_backend() -> RecordingAuditBackend:
    return RecordingAuditBackend()


@pytest.fixture
def audit_sink(audit_backend: RecordingAuditBackend) -> AuditSink:
    return AuditSink(audit_backend)


@pytest.fixture
def counter_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def rate_limiter(counter_store: InMemoryCounterStore) -> RateLimiter:
    return RateLimiter(counter_store)


@pytest.fixture
async def key_manager(
    key_store: LocalSQLiteKeyStore, audit_sink: AuditSink
) -> AsyncGenerator[KeyManager, None]:
    manager = KeyManager(key_store, audit_sink)
    yield manager
    await manager.wait_background()
    await audit_sink.flush()


@pytest.fixture
async def pipeline(
    key_manager: KeyManager, rate_limiter: RateLimiter, audit_sink: AuditSink
) -> AsyncGenerator[ValidationPipeline, None]:
    pipe = ValidationPipeline(key_manager, rate_limiter, audit_sink)
    yield pipe
    await pipe.wait_background()
