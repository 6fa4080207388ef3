"""Unit tests for ValidationPipeline: stage order, audit events, dependency policies."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from notifyhub.audit.models import SecurityEventType
from notifyhub.auth.crypto import INVALID_FORMAT_SENTINEL, generate_secret, hash_secret
from notifyhub.auth.keys import KeyManager
from notifyhub.auth.limiter import InMemoryCounterStore, RateLimiter
from notifyhub.auth.models import FailureReason, RateLimit
from notifyhub.auth.pipeline import ValidationPipeline

_CALLER = dict(client_ip="10.1.2.3", user_agent="pytest", request_id="req_test", endpoint="POST /notifications")


async def _validate(pipeline: ValidationPipeline, plaintext, required_scope=None):
    return await pipeline.validate(plaintext, required_scope=required_scope, **_CALLER)


async def _settle(pipeline: ValidationPipeline, key_manager: KeyManager, audit_sink) -> None:
    await pipeline.wait_background()
    await key_manager.wait_background()
    await audit_sink.flush()


# ─── Format stage ─────────────────────────────────────────────────────────────


class TestFormatStage:
    @pytest.mark.parametrize("plaintext", ["", "nope", "A" * 44, "A" * 42 + "!", None])
    async def test_malformed_never_touches_store(
        self, pipeline, key_manager, audit_sink, audit_backend, plaintext
    ) -> None:
        with patch.object(key_manager.store, "find_active_by_hash", AsyncMock()) as lookup:
            result = await _validate(pipeline, plaintext)
        await _settle(pipeline, key_manager, audit_sink)

        assert result.valid is False
        assert result.reason is FailureReason.INVALID_FORMAT
        lookup.assert_not_called()
        assert len(audit_backend.events) == 1
        event = audit_backend.events[0]
        assert event.event_type is SecurityEventType.INVALID_ATTEMPT
        assert event.hashed_secret == INVALID_FORMAT_SENTINEL
        assert event.ip_address == "10.1.2.3"

    async def test_malformed_is_not_hashed(self, pipeline) -> None:
        with patch("notifyhub.auth.pipeline.hash_secret") as hasher:
            await _validate(pipeline, "garbage")
        hasher.assert_not_called()


# ─── Lookup / expiry / scope ──────────────────────────────────────────────────


class TestLookupStage:
    async def test_unknown_key(self, pipeline, key_manager, audit_sink, audit_backend) -> None:
        plaintext = generate_secret()
        result = await _validate(pipeline, plaintext)
        await _settle(pipeline, key_manager, audit_sink)

        assert result.reason is FailureReason.INVALID_KEY
        [event] = audit_backend.events
        assert event.event_type is SecurityEventType.INVALID_ATTEMPT
        assert event.hashed_secret == hash_secret(plaintext)
        assert plaintext not in repr(event)

    async def test_deactivated_key_looks_unknown(
        self, pipeline, key_manager, audit_sink, audit_backend
    ) -> None:
        record, plaintext = await key_manager.create("svc", ["a"], RateLimit(10, 100))
        await key_manager.deactivate(record.id)
        result = await _validate(pipeline, plaintext)
        assert result.reason is FailureReason.INVALID_KEY


class TestExpiryStage:
    async def test_expired_key(self, pipeline, key_manager, audit_sink, audit_backend) -> None:
        record, plaintext = await key_manager.create(
            "svc",
            ["a"],
            RateLimit(10, 100),
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        later = datetime.now(timezone.utc) + timedelta(hours=2)
        with patch("notifyhub.auth.pipeline.utcnow", return_value=later):
            result = await _validate(pipeline, plaintext)
        await _settle(pipeline, key_manager, audit_sink)

        assert result.reason is FailureReason.EXPIRED
        [event] = audit_backend.of_type(SecurityEventType.EXPIRED)
        assert event.key_id == record.id
        assert audit_backend.of_type(SecurityEventType.USED) == []


class TestScopeStage:
    async def test_missing_scope_is_suspicious(
        self, pipeline, key_manager, audit_sink, audit_backend
    ) -> None:
        record, plaintext = await key_manager.create("svc", ["A", "B"], RateLimit(10, 100))
        result = await _validate(pipeline, plaintext, required_scope="C")
        await _settle(pipeline, key_manager, audit_sink)

        assert result.valid is False
        assert result.reason is FailureReason.INSUFFICIENT_PERMISSIONS
        [event] = audit_backend.of_type(SecurityEventType.SUSPICIOUS)
        assert event.metadata["requiredScope"] == "C"
        assert set(event.metadata["availableScopes"]) == {"A", "B"}

    async def test_scope_failure_does_not_consume_quota(
        self, pipeline, key_manager, counter_store
    ) -> None:
        record, plaintext = await key_manager.create("svc", ["A"], RateLimit(10, 100))
        await _validate(pipeline, plaintext, required_scope="C")
        assert counter_store._counters == {}


# ─── Rate limit stage ─────────────────────────────────────────────────────────


class TestRateLimitStage:
    async def test_limit_1000_call_1001_rejected(
        self, key_manager, audit_sink, audit_backend, counter_store
    ) -> None:
        fixed = 1_893_456_000.0 + 60
        pipeline = ValidationPipeline(
            key_manager, RateLimiter(counter_store, clock=lambda: fixed), audit_sink
        )
        record, plaintext = await key_manager.create("svc", ["a"], RateLimit(1000, 100_000))

        for call in range(1, 1001):
            result = await _validate(pipeline, plaintext)
            assert result.valid, f"call {call} rejected"

        result = await _validate(pipeline, plaintext)
        await _settle(pipeline, key_manager, audit_sink)

        assert result.valid is False
        assert result.reason is FailureReason.RATE_LIMIT_EXCEEDED
        assert result.rate_limit_info is not None
        assert result.rate_limit_info.current == 1001
        [event] = audit_backend.of_type(SecurityEventType.RATE_LIMIT_EXCEEDED)
        info = event.metadata["rateLimitInfo"]
        assert info["current"] == 1001
        assert info["limit"] == 1000
        assert info["windowMs"] == 3_600_000
        assert info["resetTime"] is not None
        assert len(audit_backend.of_type(SecurityEventType.USED)) == 1000

    async def test_daily_window_enforced(
        self, key_manager, audit_sink, audit_backend, counter_store
    ) -> None:
        clock = {"now": 1_893_456_000.0 + 60}
        pipeline = ValidationPipeline(
            key_manager, RateLimiter(counter_store, clock=lambda: clock["now"]), audit_sink
        )
        record, plaintext = await key_manager.create("svc", ["a"], RateLimit(hourly=5, daily=2))

        assert (await _validate(pipeline, plaintext)).valid
        clock["now"] += 3600
        assert (await _validate(pipeline, plaintext)).valid
        clock["now"] += 3600
        result = await _validate(pipeline, plaintext)
        await _settle(pipeline, key_manager, audit_sink)

        assert result.reason is FailureReason.RATE_LIMIT_EXCEEDED
        assert result.rate_limit_info.window == "daily"
        [event] = audit_backend.of_type(SecurityEventType.RATE_LIMIT_EXCEEDED)
        assert event.metadata["rateLimitInfo"]["window"] == "daily"

    async def test_counter_store_down_fails_open(
        self, key_manager, audit_sink, audit_backend
    ) -> None:
        broken = AsyncMock(spec=InMemoryCounterStore)
        broken.increment_and_expire.side_effect = ConnectionError("redis unreachable")
        broken.get.side_effect = ConnectionError("redis unreachable")
        pipeline = ValidationPipeline(key_manager, RateLimiter(broken), audit_sink)
        record, plaintext = await key_manager.create("svc", ["a"], RateLimit(1, 1))

        for _ in range(3):
            result = await _validate(pipeline, plaintext)
            assert result.valid is True
            assert result.rate_limit_info is not None
            assert result.rate_limit_info.current == 0
        await _settle(pipeline, key_manager, audit_sink)
        assert len(audit_backend.of_type(SecurityEventType.USED)) == 3


# ─── Success ──────────────────────────────────────────────────────────────────


class TestSuccess:
    async def test_success_emits_used_and_touches(
        self, pipeline, key_manager, audit_sink, audit_backend
    ) -> None:
        record, plaintext = await key_manager.create(
            "svc", ["notifications:create"], RateLimit(100, 1000), organization_id="org-1"
        )
        with patch.object(key_manager, "touch_last_used", wraps=key_manager.touch_last_used) as touch:
            result = await _validate(pipeline, plaintext, required_scope="notifications:create")
        await _settle(pipeline, key_manager, audit_sink)

        assert result.valid is True
        assert result.reason is None
        touch.assert_called_once_with(record.id)
        used = audit_backend.of_type(SecurityEventType.USED)
        assert len(used) == 1
        assert used[0].key_id == record.id
        assert used[0].metadata == {"endpoint": "POST /notifications"}
        stored = await key_manager.store.get(record.id)
        assert stored is not None and stored.last_used_at is not None

    async def test_result_is_sanitized(self, pipeline, key_manager) -> None:
        record, plaintext = await key_manager.create(
            "svc", ["notifications:create"], RateLimit(100, 1000), organization_id="org-1"
        )
        result = await _validate(pipeline, plaintext)

        projection = asdict(result.key)
        assert set(projection) == {"id", "name", "scopes", "organization_id", "rate_limit"}
        for forbidden in ("hashed_secret", "created_at", "updated_at", "is_active"):
            assert forbidden not in projection
        assert record.hashed_secret not in repr(result)
        assert result.key.rate_limit.limit == 100
        assert result.key.rate_limit.current == 1
        assert result.key.rate_limit.remaining == 99

    async def test_usage_counter_incremented(self, pipeline, key_manager, rate_limiter) -> None:
        record, plaintext = await key_manager.create("svc", ["a"], RateLimit(100, 1000))
        await _validate(pipeline, plaintext)
        await _validate(pipeline, plaintext)
        await pipeline.wait_background()
        stats = await rate_limiter.usage_stats(record.id, days=1)
        assert stats["total_requests"] == 2

    async def test_end_to_end_scenario(self, pipeline, key_manager) -> None:
        record, plaintext = await key_manager.create(
            "svc-a", ["notifications:create"], RateLimit(hourly=100, daily=1000)
        )
        assert record.hashed_secret == hash_secret(plaintext)

        ok = await _validate(pipeline, plaintext)
        assert ok.valid and ok.key.scopes == ["notifications:create"]

        denied = await _validate(pipeline, plaintext, required_scope="admin:delete")
        assert denied.reason is FailureReason.INSUFFICIENT_PERMISSIONS


# ─── Dependency failure policies ──────────────────────────────────────────────


class TestFailurePolicies:
    async def test_record_store_down_fails_closed(
        self, pipeline, key_manager, audit_sink, audit_backend
    ) -> None:
        record, plaintext = await key_manager.create("svc", ["a"], RateLimit(100, 1000))
        await audit_sink.flush()
        audit_backend.events.clear()

        with patch.object(
            key_manager.store,
            "find_active_by_hash",
            AsyncMock(side_effect=OSError("disk I/O error at /var/lib/keys.db")),
        ):
            result = await _validate(pipeline, plaintext)
        await _settle(pipeline, key_manager, audit_sink)

        assert result.valid is False
        assert result.reason is FailureReason.INTERNAL_VALIDATION_ERROR
        assert result.key is None
        assert "disk" not in repr(result)
        assert audit_backend.of_type(SecurityEventType.USED) == []

    async def test_audit_failure_does_not_change_result(
        self, pipeline, key_manager, audit_sink, audit_backend
    ) -> None:
        record, plaintext = await key_manager.create("svc", ["a"], RateLimit(100, 1000))
        audit_backend.fail = True

        ok = await _validate(pipeline, plaintext)
        bad = await _validate(pipeline, generate_secret())
        await _settle(pipeline, key_manager, audit_sink)

        assert ok.valid is True
        assert bad.reason is FailureReason.INVALID_KEY

    async def test_touch_failure_does_not_change_result(self, pipeline, key_manager) -> None:
        record, plaintext = await key_manager.create("svc", ["a"], RateLimit(100, 1000))
        with patch.object(
            key_manager.store, "touch_last_used", AsyncMock(side_effect=RuntimeError("locked"))
        ):
            result = await _validate(pipeline, plaintext)
            await key_manager.wait_background()
        assert result.valid is True

    async def test_exactly_one_event_per_outcome(
        self, pipeline, key_manager, audit_sink, audit_backend
    ) -> None:
        record, plaintext = await key_manager.create("svc", ["a"], RateLimit(100, 1000))
        await audit_sink.flush()
        audit_backend.events.clear()

        await _validate(pipeline, "bad")
        await _validate(pipeline, generate_secret())
        await _validate(pipeline, plaintext, required_scope="b")
        await _validate(pipeline, plaintext)
        await _settle(pipeline, key_manager, audit_sink)

        assert sorted(e.event_type.value for e in audit_backend.events) == sorted(
            t.value
            for t in (
                SecurityEventType.INVALID_ATTEMPT,
                SecurityEventType.INVALID_ATTEMPT,
                SecurityEventType.SUSPICIOUS,
                SecurityEventType.USED,
            )
        )
