"""Unit tests for notifyhub/auth/middleware.py.

Verifies:
  - credential extraction precedence (X-API-Key > Bearer > ?api_key=)
  - client IP precedence (X-Forwarded-For > X-Real-IP > peer > "unknown")
  - FailureReason → status/code mapping and the JSON error body
  - X-RateLimit-* and Retry-After headers on 429
  - require_api_key(): missing key, pipeline refusal, success, auth bypass
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Optional
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import Response
from starlette.requests import Request

from notifyhub.auth.middleware import (
    ANONYMOUS_KEY,
    AUTH_ERROR,
    ERROR_SPECS,
    MISSING_CREDENTIAL,
    AuthError,
    auth_error_handler,
    client_ip,
    extract_credential,
    request_id,
    require_api_key,
)
from notifyhub.auth.models import (
    FailureReason,
    RateLimitInfo,
    RateLimitSnapshot,
    SanitizedKey,
    ValidationResult,
)

_KEY = "k" * 43


def make_request(
    headers: Optional[dict[str, str]] = None,
    query: str = "",
    client: Optional[tuple[str, int]] = ("192.0.2.10", 5555),
    pipeline: object = None,
    path: str = "/notifications",
    method: str = "POST",
) -> Request:
    """A real Starlette Request over a hand-built ASGI scope."""
    app = SimpleNamespace(state=SimpleNamespace(pipeline=pipeline))
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "query_string": query.encode(),
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
        "server": ("testserver", 80),
        "scheme": "http",
        "app": app,
    }
    return Request(scope)


def _info(current: int, limit: int = 10, reset_in: Optional[float] = 90.5) -> RateLimitInfo:
    reset = datetime.now(timezone.utc) + timedelta(seconds=reset_in) if reset_in is not None else None
    return RateLimitInfo(limit=limit, current=current, window_ms=3_600_000, reset_time=reset)


def _sanitized() -> SanitizedKey:
    return SanitizedKey(
        id="key_1",
        name="svc",
        scopes=["notifications:create"],
        organization_id="org-1",
        rate_limit=RateLimitSnapshot(limit=10, current=1, remaining=9),
    )


# ─── Credential extraction ────────────────────────────────────────────────────


class TestExtractCredential:
    def test_header_wins_over_bearer_and_query(self) -> None:
        request = make_request(
            headers={"X-API-Key": "from-header", "Authorization": "Bearer from-bearer"},
            query="api_key=from-query",
        )
        assert extract_credential(request) == ("from-header", "header")

    def test_bearer_when_no_header(self) -> None:
        request = make_request(headers={"Authorization": "Bearer from-bearer"}, query="api_key=q")
        assert extract_credential(request) == ("from-bearer", "bearer")

    def test_bearer_is_case_insensitive(self) -> None:
        request = make_request(headers={"Authorization": "bearer tok"})
        assert extract_credential(request) == ("tok", "bearer")

    def test_non_bearer_authorization_ignored(self) -> None:
        request = make_request(headers={"Authorization": "Basic dXNlcjpwYXNz"})
        assert extract_credential(request) == (None, None)

    def test_query_param_last_and_logged(self) -> None:
        request = make_request(query="api_key=from-query")
        with patch("notifyhub.auth.middleware.logger") as mock_logger:
            assert extract_credential(request) == ("from-query", "query")
        assert mock_logger.warning.call_args.args[0] == "api_key_from_query_param"

    def test_nothing_presented(self) -> None:
        assert extract_credential(make_request()) == (None, None)

    def test_header_value_is_stripped(self) -> None:
        request = make_request(headers={"X-API-Key": "  padded  "})
        assert extract_credential(request) == ("padded", "header")


# ─── Client IP ────────────────────────────────────────────────────────────────


class TestClientIp:
    def test_forwarded_for_first_entry(self) -> None:
        request = make_request(
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "X-Real-IP": "198.51.100.2"}
        )
        assert client_ip(request) == "203.0.113.7"

    def test_real_ip_when_no_forwarded_for(self) -> None:
        request = make_request(headers={"X-Real-IP": "198.51.100.2"})
        assert client_ip(request) == "198.51.100.2"

    def test_peer_address(self) -> None:
        assert client_ip(make_request()) == "192.0.2.10"

    def test_unknown_without_peer(self) -> None:
        assert client_ip(make_request(client=None)) == "unknown"

    def test_blank_forwarded_for_falls_through(self) -> None:
        request = make_request(headers={"X-Forwarded-For": " , 10.0.0.1"})
        assert client_ip(request) == "192.0.2.10"


class TestRequestId:
    def test_caller_supplied_id_is_kept(self) -> None:
        request = make_request(headers={"X-Request-ID": "req_from_caller"})
        assert request_id(request) == "req_from_caller"

    def test_generated_once_and_cached(self) -> None:
        request = make_request()
        first = request_id(request)
        assert first
        assert request_id(request) == first

    def test_state_set_by_outer_middleware_wins(self) -> None:
        request = make_request(headers={"X-Request-ID": "req_from_header"})
        request.state.request_id = "req_from_state"
        assert request_id(request) == "req_from_state"


# ─── Error mapping ────────────────────────────────────────────────────────────


class TestErrorMapping:
    @pytest.mark.parametrize(
        "reason, status, code",
        [
            (FailureReason.MISSING_CREDENTIAL, 401, "MISSING_CREDENTIAL"),
            (FailureReason.INVALID_FORMAT, 401, "INVALID_FORMAT"),
            (FailureReason.INVALID_KEY, 401, "INVALID_CREDENTIAL"),
            (FailureReason.EXPIRED, 401, "CREDENTIAL_EXPIRED"),
            (FailureReason.INSUFFICIENT_PERMISSIONS, 403, "INSUFFICIENT_SCOPE"),
            (FailureReason.RATE_LIMIT_EXCEEDED, 429, "RATE_LIMIT_EXCEEDED"),
            (FailureReason.INTERNAL_VALIDATION_ERROR, 401, "AUTH_ERROR"),
        ],
    )
    def test_reason_maps_to_status_and_code(self, reason, status, code) -> None:
        error = AuthError.from_reason(reason)
        assert error.status_code == status
        assert error.code == code

    def test_every_reason_is_mapped(self) -> None:
        assert set(ERROR_SPECS) == set(FailureReason)

    def test_unknown_reason_is_generic(self) -> None:
        assert AuthError.from_reason(None).spec is AUTH_ERROR

    def test_body_shape(self) -> None:
        body = AuthError(MISSING_CREDENTIAL).body()
        assert body == {
            "error": "Unauthorized",
            "code": "MISSING_CREDENTIAL",
            "message": MISSING_CREDENTIAL.message,
        }

    def test_429_body_and_headers(self) -> None:
        now = datetime.now(timezone.utc)
        info = RateLimitInfo(
            limit=10, current=11, window_ms=3_600_000, reset_time=now + timedelta(seconds=90.2)
        )
        error = AuthError.from_reason(FailureReason.RATE_LIMIT_EXCEEDED, info)

        body = error.body()
        assert body["rateLimitInfo"]["limit"] == 10
        assert body["rateLimitInfo"]["current"] == 11
        assert body["rateLimitInfo"]["remaining"] == 0

        headers = error.headers(now=now)
        assert headers["X-RateLimit-Limit"] == "10"
        assert headers["X-RateLimit-Remaining"] == "0"
        assert headers["X-RateLimit-Reset"] == str(int(info.reset_time.timestamp()))
        assert headers["Retry-After"] == "91"

    def test_retry_after_at_least_one_second(self) -> None:
        now = datetime.now(timezone.utc)
        info = RateLimitInfo(limit=1, current=2, window_ms=1000, reset_time=now - timedelta(seconds=5))
        headers = AuthError.from_reason(FailureReason.RATE_LIMIT_EXCEEDED, info).headers(now=now)
        assert headers["Retry-After"] == "1"

    def test_non_429_has_no_rate_headers(self) -> None:
        error = AuthError.from_reason(FailureReason.INVALID_KEY, _info(current=3))
        assert error.headers() == {}
        assert "rateLimitInfo" not in error.body()

    async def test_handler_renders_json(self) -> None:
        error = AuthError.from_reason(FailureReason.INSUFFICIENT_PERMISSIONS)
        response = await auth_error_handler(make_request(), error)
        assert response.status_code == 403
        assert json.loads(response.body)["code"] == "INSUFFICIENT_SCOPE"


# ─── require_api_key ──────────────────────────────────────────────────────────


class TestRequireApiKey:
    async def test_missing_credential_never_reaches_pipeline(self) -> None:
        pipeline = SimpleNamespace(validate=AsyncMock())
        dependency = require_api_key("notifications:create")
        with pytest.raises(AuthError) as exc_info:
            await dependency(make_request(pipeline=pipeline), Response())
        assert exc_info.value.code == "MISSING_CREDENTIAL"
        pipeline.validate.assert_not_called()

    async def test_refusal_raises_mapped_error(self) -> None:
        pipeline = SimpleNamespace(
            validate=AsyncMock(return_value=ValidationResult.failure(FailureReason.EXPIRED))
        )
        dependency = require_api_key()
        with pytest.raises(AuthError) as exc_info:
            await dependency(make_request(headers={"X-API-Key": _KEY}, pipeline=pipeline), Response())
        assert exc_info.value.status_code == 401
        assert exc_info.value.code == "CREDENTIAL_EXPIRED"

    async def test_success_passes_request_context(self) -> None:
        info = _info(current=1)
        pipeline = SimpleNamespace(
            validate=AsyncMock(return_value=ValidationResult.success(_sanitized(), info))
        )
        request = make_request(
            headers={
                "X-API-Key": _KEY,
                "X-Forwarded-For": "203.0.113.7",
                "User-Agent": "svc-a/1.0",
                "X-Request-ID": "req_abc",
            },
            pipeline=pipeline,
        )
        response = Response()

        key = await require_api_key("notifications:create")(request, response)

        assert key.id == "key_1"
        assert request.state.api_key is key
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "9"
        pipeline.validate.assert_awaited_once_with(
            _KEY,
            client_ip="203.0.113.7",
            user_agent="svc-a/1.0",
            request_id="req_abc",
            endpoint="POST /notifications",
            required_scope="notifications:create",
        )

    async def test_missing_pipeline_is_generic_error(self) -> None:
        with pytest.raises(AuthError) as exc_info:
            await require_api_key()(make_request(headers={"X-API-Key": _KEY}), Response())
        assert exc_info.value.spec is AUTH_ERROR

    async def test_bypass_returns_anonymous(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NOTIFYHUB_AUTH_REQUIRED", "false")
        pipeline = SimpleNamespace(validate=AsyncMock())
        key = await require_api_key("anything")(make_request(pipeline=pipeline), Response())
        assert key is ANONYMOUS_KEY
        pipeline.validate.assert_not_called()
