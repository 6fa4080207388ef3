"""Programmatic uvicorn entry point for notifyhub.

Reads host and port from the loaded config (127.0.0.1:8080 by default) and
starts uvicorn with hardened defaults:

  --limit-concurrency 100  HTTP 503 once 100 connections are open
  --backlog 50             OS connection queue depth
  --timeout-keep-alive 5   short keep-alive window against slow clients

Usage:
    python -m notifyhub.run
    notifyhub                  # via pyproject.toml [project.scripts]
"""

from __future__ import annotations

import uvicorn

from notifyhub.config import load_config

UVICORN_LIMIT_CONCURRENCY: int = 100

UVICORN_BACKLOG: int = 50

UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main() -> None:
    """Start the notifyhub server.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config()

    uvicorn.run(
        "notifyhub.main:app",
        host=config.server.host,
        port=config.server.port,
        limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
        backlog=UVICORN_BACKLOG,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
    )


if __name__ == "__main__":
    main()
