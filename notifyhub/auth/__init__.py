"""notifyhub API key package.

Public API:
  - generate_secret() / hash_secret() / is_valid_format()   credential primitives
  - KeyManager                 create / deactivate / list / cleanup over a KeyStore
  - LocalSQLiteKeyStore        default aiosqlite record store
  - RateLimiter                fixed-window quotas over a CounterStore (fails open)
  - ValidationPipeline         one authorization decision per credential
  - require_api_key()          FastAPI Depends() factory with a static required scope
  - KeyValidationError         bad create() input
  - KeyNotFoundError           unknown key id
"""

from __future__ import annotations

from notifyhub.auth.crypto import generate_secret, hash_secret, is_valid_format
from notifyhub.auth.keys import KeyManager, KeyNotFoundError, KeyValidationError
from notifyhub.auth.limiter import RateLimiter
from notifyhub.auth.middleware import AuthError, require_api_key
from notifyhub.auth.models import FailureReason, RateLimit, SanitizedKey, ValidationResult
from notifyhub.auth.pipeline import ValidationPipeline
from notifyhub.auth.store import LocalSQLiteKeyStore

__all__ = [
    "generate_secret",
    "hash_secret",
    "is_valid_format",
    "KeyManager",
    "KeyNotFoundError",
    "KeyValidationError",
    "LocalSQLiteKeyStore",
    "RateLimiter",
    "ValidationPipeline",
    "require_api_key",
    "AuthError",
    "FailureReason",
    "RateLimit",
    "SanitizedKey",
    "ValidationResult",
]
