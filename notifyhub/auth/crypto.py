"""Credential primitives: generation, hashing, format check, comparison.

Credentials are 32 random bytes encoded as unpadded URL-safe base64, which
always yields 43 characters from ``[A-Za-z0-9_-]``. They are persisted only
as an unsalted SHA-256 hex digest so that lookup is a single exact-match
index probe. With 256 bits of entropy per secret an offline dictionary attack
against the digest is not a practical concern, so the salt is omitted.

``is_valid_format`` runs before anything else touches a presented credential:
garbage is rejected without hashing attacker-controlled input and without
any storage I/O.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets

from notifyhub.constants import INVALID_FORMAT_SENTINEL, SECRET_BYTES, SECRET_LENGTH

__all__ = [
    "INVALID_FORMAT_SENTINEL",
    "constant_time_equal",
    "generate_secret",
    "hash_secret",
    "is_valid_format",
]

_SECRET_RE = re.compile(r"[A-Za-z0-9_-]{%d}" % SECRET_LENGTH)


def generate_secret() -> str:
    """Return a new plaintext credential (43 URL-safe characters)."""
    return secrets.token_urlsafe(SECRET_BYTES)


def hash_secret(plaintext: str) -> str:
    """Deterministic SHA-256 hex digest of a credential."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


def is_valid_format(candidate: object) -> bool:
    """Cheap syntactic check: exact length and URL-safe alphabet.

    The length test comes first so oversized input is rejected before the
    regex engine sees it.
    """
    if not isinstance(candidate, str) or len(candidate) != SECRET_LENGTH:
        return False
    return _SECRET_RE.fullmatch(candidate) is not None


def constant_time_equal(a: str, b: str) -> bool:
    """Compare two digests without leaking the mismatch position.

    Returns False for mismatched lengths or non-string input; never raises.
    """
    if not isinstance(a, str) or not isinstance(b, str):
        return False
    a_bytes = a.encode("utf-8")
    b_bytes = b.encode("utf-8")
    if len(a_bytes) != len(b_bytes):
        return False
    return hmac.compare_digest(a_bytes, b_bytes)
