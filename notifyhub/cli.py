"""notifyhub-keys: key administration without the HTTP API.

Used to mint the first administrative key (the HTTP endpoints themselves
require a key with keys:write) and for scripted maintenance.

Usage:
    notifyhub-keys create --name admin --scope keys:read --scope keys:write --scope audit:read
    notifyhub-keys list [--organization-id ORG]
    notifyhub-keys deactivate KEY_ID [--actor-id ID]
    notifyhub-keys cleanup

Works directly against the configured key store and audit database.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime
from typing import Optional

from notifyhub.audit.factory import create_audit_backend
from notifyhub.audit.sink import AuditSink
from notifyhub.auth.keys import KeyManager, KeyNotFoundError, KeyValidationError
from notifyhub.auth.models import RateLimit
from notifyhub.auth.store import LocalSQLiteKeyStore
from notifyhub.config import Config, load_config
from notifyhub.utils.logger import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="notifyhub-keys", description="notifyhub API key administration")
    parser.add_argument("--config", help="Path to config.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create a key and print its plaintext once")
    create.add_argument("--name", required=True)
    create.add_argument("--scope", dest="scopes", action="append", required=True)
    create.add_argument("--hourly", type=int, help="Hourly request limit (default from config)")
    create.add_argument("--daily", type=int, help="Daily request limit (default from config)")
    create.add_argument("--expires-at", help="ISO 8601 timestamp with timezone")
    create.add_argument("--organization-id")
    create.add_argument("--created-by")

    listing = sub.add_parser("list", help="List keys for an organization (no digests)")
    listing.add_argument("--organization-id")

    deactivate = sub.add_parser("deactivate", help="Soft-deactivate a key")
    deactivate.add_argument("key_id")
    deactivate.add_argument("--actor-id", default="cli")

    sub.add_parser("cleanup", help="Deactivate all expired keys")
    return parser


def _parse_expiry(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        raise KeyValidationError(f"--expires-at is not an ISO 8601 timestamp: {raw!r}")


async def _run(args: argparse.Namespace, config: Config) -> int:
    store = LocalSQLiteKeyStore(db_path=config.keys.path)
    await store.initialize()
    backend = await create_audit_backend(config.audit)
    sink = AuditSink(backend)
    manager = KeyManager(store, sink)

    try:
        if args.command == "create":
            # an explicit 0 must reach validation, not fall back to the default
            hourly = args.hourly if args.hourly is not None else config.rate_limit.default_hourly
            daily = args.daily if args.daily is not None else config.rate_limit.default_daily
            record, plaintext = await manager.create(
                name=args.name,
                scopes=args.scopes,
                rate_limit=RateLimit(hourly=hourly, daily=daily),
                expires_at=_parse_expiry(args.expires_at),
                organization_id=args.organization_id,
                created_by_user_id=args.created_by,
            )
            print(json.dumps({"key": plaintext, **record.summary().to_dict()}, indent=2))
            print("Store this key now. It cannot be retrieved again.", file=sys.stderr)
        elif args.command == "list":
            summaries = await manager.list_by_organization(args.organization_id)
            print(json.dumps([s.to_dict() for s in summaries], indent=2))
        elif args.command == "deactivate":
            changed = await manager.deactivate(args.key_id, actor_id=args.actor_id)
            print(json.dumps({"id": args.key_id, "deactivated": changed}))
        elif args.command == "cleanup":
            count = await manager.cleanup_expired()
            print(json.dumps({"deactivated": count}))
        return 0
    except KeyValidationError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 2
    except KeyNotFoundError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return 1
    finally:
        await sink.flush()
        await backend.close()
        await store.close()


def main(argv: Optional[list[str]] = None) -> int:
    # stdout carries the JSON result; log lines go to stderr
    configure_logging(log_level=os.getenv("LOG_LEVEL", "WARNING"), stream=sys.stderr)
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    return asyncio.run(_run(args, config))


if __name__ == "__main__":
    sys.exit(main())
