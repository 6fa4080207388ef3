"""Config loading for notifyhub.

Reads ``.notifyhub/config.yaml`` (or ``~/.notifyhub/config.yaml``).
Raises SystemExit on parse errors or a missing ``version`` field.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. ``config_path`` argument (explicit override, used by tests)
  2. NOTIFYHUB_CONFIG environment variable (if set)
  3. ``.notifyhub/config.yaml`` (working directory)
  4. ``~/.notifyhub/config.yaml`` (home directory)

Environment variable overrides (applied after the file):
  NOTIFYHUB_PORT           → server.port
  NOTIFYHUB_REDIS_URL      → rate_limit.redis_url
  NOTIFYHUB_KEYS_DB_PATH   → keys.path
  NOTIFYHUB_AUDIT_DB_PATH  → audit.path

Example::

    version: 1
    server:
      host: 127.0.0.1
      port: 8080
    keys:
      path: ~/.notifyhub/keys.db
      sweep_interval_seconds: 3600
    rate_limit:
      redis_url: redis://localhost:6379/0
      default_hourly: 1000
      default_daily: 10000
    audit:
      path: ~/.notifyhub/audit.db
      queue_size: 10000
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Optional

import yaml

from notifyhub.constants import (
    AUDIT_QUEUE_MAXSIZE,
    DEFAULT_DAILY_LIMIT,
    DEFAULT_HOURLY_LIMIT,
    EXPIRY_SWEEP_INTERVAL_SECONDS,
)
from notifyhub.utils.logger import get_logger

logger = get_logger(__name__)

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# NOTIFYHUB_CONFIG is prepended at runtime
DEFAULT_CONFIG_PATHS = [
    ".notifyhub/config.yaml",
    os.path.expanduser("~/.notifyhub/config.yaml"),
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """HTTP binding configuration."""

    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class KeyStoreConfig:
    """Key record store configuration."""

    path: str = "~/.notifyhub/keys.db"
    sweep_interval_seconds: int = EXPIRY_SWEEP_INTERVAL_SECONDS


@dataclass
class RateLimitConfig:
    """Counter store + default quota configuration.

    An empty redis_url selects the in-process counter store, which is only
    correct for a single worker process.
    """

    redis_url: Optional[str] = None
    default_hourly: int = DEFAULT_HOURLY_LIMIT
    default_daily: int = DEFAULT_DAILY_LIMIT


@dataclass
class AuditConfig:
    """Audit backend configuration."""

    path: str = "~/.notifyhub/audit.db"
    queue_size: int = AUDIT_QUEUE_MAXSIZE
    enabled: bool = True


@dataclass
class Config:
    """Root configuration object populated from .notifyhub/config.yaml.

    All fields have safe defaults, so the service can start without a file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    keys: KeyStoreConfig = field(default_factory=KeyStoreConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are ignored.

        Raises:
            SystemExit(1): On non-positive quota defaults or queue size.
        """
        server_raw = raw.get("server") or {}
        server = ServerConfig(
            host=server_raw.get("host", "127.0.0.1"),
            port=server_raw.get("port", 8080),
        )

        keys_raw = raw.get("keys") or {}
        keys = KeyStoreConfig(
            path=keys_raw.get("path", "~/.notifyhub/keys.db"),
            sweep_interval_seconds=keys_raw.get(
                "sweep_interval_seconds", EXPIRY_SWEEP_INTERVAL_SECONDS
            ),
        )

        rl_raw = raw.get("rate_limit") or {}
        rate_limit = RateLimitConfig(
            redis_url=rl_raw.get("redis_url") or None,
            default_hourly=rl_raw.get("default_hourly", DEFAULT_HOURLY_LIMIT),
            default_daily=rl_raw.get("default_daily", DEFAULT_DAILY_LIMIT),
        )
        for name in ("default_hourly", "default_daily"):
            value = getattr(rate_limit, name)
            if not isinstance(value, int) or value <= 0:
                _fail(f"rate_limit.{name} must be a positive integer, got {value!r}.")

        audit_raw = raw.get("audit") or {}
        audit = AuditConfig(
            path=audit_raw.get("path", "~/.notifyhub/audit.db"),
            queue_size=audit_raw.get("queue_size", AUDIT_QUEUE_MAXSIZE),
            enabled=audit_raw.get("enabled", True),
        )
        if not isinstance(audit.queue_size, int) or audit.queue_size <= 0:
            _fail(f"audit.queue_size must be a positive integer, got {audit.queue_size!r}.")

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=server,
            keys=keys,
            rate_limit=rate_limit,
            audit=audit,
            path=path,
        )


def _fail(message: str) -> None:
    print(f"CONFIG ERROR: {message}", file=sys.stderr)
    raise SystemExit(1)


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate notifyhub configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes the error to stderr and raises SystemExit(1).
    Environment overrides are applied in both cases.

    Raises:
        SystemExit(1): On YAML parse error, missing or unsupported ``version``,
                       invalid values, or an invalid ``NOTIFYHUB_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("NOTIFYHUB_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found, using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(f"Failed to parse {found_path}: {exc}")
    except OSError as exc:
        _fail(f"Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"{found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(f"{found_path} is not a valid YAML mapping.")

    version = raw.get("version")
    if version is None:
        _fail(
            f"{found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.server.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: notifyhub is configured to bind on all interfaces. "
            "Put it behind a proxy that sets X-Forwarded-For, or client IPs in "
            "the audit trail can be spoofed."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        counter_store="redis" if config.rate_limit.redis_url else "memory",
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If NOTIFYHUB_PORT is set but not a valid integer.
    """
    env_port = os.environ.get("NOTIFYHUB_PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            _fail(f"NOTIFYHUB_PORT environment variable is not a valid integer: '{env_port}'")

    env_redis = os.environ.get("NOTIFYHUB_REDIS_URL")
    if env_redis is not None:
        config.rate_limit.redis_url = env_redis or None

    env_keys = os.environ.get("NOTIFYHUB_KEYS_DB_PATH")
    if env_keys:
        config.keys.path = env_keys

    env_audit = os.environ.get("NOTIFYHUB_AUDIT_DB_PATH")
    if env_audit:
        config.audit.path = env_audit
