"""Shared constants for notifyhub.

Credential geometry, window lengths, header names and default quotas used
across modules are defined here. Import from here rather than repeating
literals in other modules.
"""

# ─── Credential format ───────────────────────────────────────────────────────

# Random bytes drawn for every new credential.
SECRET_BYTES: int = 32

# Length of the URL-safe base64 encoding of SECRET_BYTES with padding stripped.
SECRET_LENGTH: int = 43

# Placeholder stored in INVALID_ATTEMPT events whose input never reached hashing.
INVALID_FORMAT_SENTINEL: str = "invalid_format"

# Length of a hex SHA-256 digest.
DIGEST_LENGTH: int = 64

# ─── Key records ─────────────────────────────────────────────────────────────

MAX_KEY_NAME_LENGTH: int = 100

DEFAULT_HOURLY_LIMIT: int = 1_000
DEFAULT_DAILY_LIMIT: int = 10_000

# ─── Rate-limit windows (seconds) ────────────────────────────────────────────

HOUR_SECONDS: int = 3_600
DAY_SECONDS: int = 86_400

# Per-day usage counters are kept for this long.
USAGE_RETENTION_SECONDS: int = 31 * DAY_SECONDS

# ─── Audit sink ──────────────────────────────────────────────────────────────

# Bounded queue between the validation path and the audit backend.
AUDIT_QUEUE_MAXSIZE: int = 10_000

# Truncation limits mirrored from the audit table columns.
AUDIT_USER_AGENT_MAX: int = 500
AUDIT_MESSAGE_MAX: int = 1_000

# ─── Boundary adapter ────────────────────────────────────────────────────────

API_KEY_HEADER: str = "X-API-Key"
REQUEST_ID_HEADER: str = "X-Request-ID"
FORWARDED_FOR_HEADER: str = "X-Forwarded-For"
REAL_IP_HEADER: str = "X-Real-IP"
API_KEY_QUERY_PARAM: str = "api_key"
UNKNOWN_CLIENT: str = "unknown"

# ─── Expiry sweeper ──────────────────────────────────────────────────────────

EXPIRY_SWEEP_INTERVAL_SECONDS: int = 3_600
