"""notifyhub FastAPI application factory + lifespan lifecycle.

Startup sequence:
  1. load_config()                 → app.state.config
  2. LocalSQLiteKeyStore           → opened, schema verified
  3. create_counter_store()        → Redis, or in-memory without rate_limit.redis_url
  4. create_audit_backend()        → AuditSink(backend).start() → app.state.audit_sink
  5. KeyManager, RateLimiter, ValidationPipeline → app.state
  6. run_expiry_sweeper()          → background task
  7. app.state.ready = True

Shutdown sequence (reverse):
  ready = False → cancel sweeper → drain background writes → stop audit sink →
  close audit backend → close counter store → close key store

Uvicorn is started from notifyhub/run.py with hardened defaults.
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from notifyhub.audit.factory import create_audit_backend
from notifyhub.audit.router import router as audit_router
from notifyhub.audit.sink import AuditSink
from notifyhub.auth.keys import KeyManager, run_expiry_sweeper
from notifyhub.auth.limiter import RateLimiter, create_counter_store, limiter
from notifyhub.auth.middleware import AuthError, auth_error_handler, request_id
from notifyhub.auth.pipeline import ValidationPipeline
from notifyhub.auth.router import router as keys_router
from notifyhub.auth.store import LocalSQLiteKeyStore
from notifyhub.config import Config, load_config
from notifyhub.constants import REQUEST_ID_HEADER
from notifyhub.health import router as health_router
from notifyhub.utils.logger import clear_request_id, configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("notifyhub starting up...")

    # ── Step 1: Load configuration (SystemExit on invalid file) ───────────────
    config: Config = load_config()
    app.state.config = config

    # ── Step 2: Key store (RuntimeError on schema mismatch refuses startup) ──
    key_store = LocalSQLiteKeyStore(db_path=config.keys.path)
    await key_store.initialize()

    # ── Step 3: Counter store ─────────────────────────────────────────────────
    counter_store = create_counter_store(config.rate_limit)

    # ── Step 4: Audit backend + sink worker ───────────────────────────────────
    audit_backend = await create_audit_backend(config.audit)
    audit_sink = AuditSink(audit_backend, maxsize=config.audit.queue_size)
    audit_sink.start()
    app.state.audit_sink = audit_sink

    # ── Step 5: Services ──────────────────────────────────────────────────────
    key_manager = KeyManager(key_store, audit_sink)
    rate_limiter = RateLimiter(counter_store)
    app.state.key_manager = key_manager
    app.state.rate_limiter = rate_limiter
    app.state.pipeline = ValidationPipeline(key_manager, rate_limiter, audit_sink)

    # ── Step 6: Expiry sweeper ────────────────────────────────────────────────
    sweeper_task: asyncio.Task[None] = asyncio.create_task(
        run_expiry_sweeper(key_manager, config.keys.sweep_interval_seconds)
    )

    # ── Step 7: Mark as ready ─────────────────────────────────────────────────
    app.state.ready = True
    logger.info(
        "notifyhub ready",
        keys_db=key_store.db_path,
        counter_store=type(counter_store).__name__,
        audit_backend=type(audit_backend).__name__,
    )

    yield

    # ── Shutdown (reverse order) ──────────────────────────────────────────────
    logger.info("notifyhub shutting down...")
    app.state.ready = False

    if not sweeper_task.done():
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass

    await app.state.pipeline.wait_background()
    await key_manager.wait_background()
    await audit_sink.stop()
    await audit_backend.close()

    try:
        await counter_store.close()
    except Exception as exc:
        logger.warning("Counter store close error (non-fatal)", error=str(exc))

    await key_store.close()
    logger.info("notifyhub shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the notifyhub FastAPI application.

    Call this directly in tests to get an isolated app instance. Tests that
    skip the lifespan set app.state.pipeline / key_manager / audit_sink
    themselves.
    """
    # Swagger UI and ReDoc only with DEBUG=true
    _debug = os.getenv("DEBUG", "false").lower() == "true"

    application = FastAPI(
        title="notifyhub",
        description="API key authentication, quotas and security audit for the notification API",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    # /health returns 503 until the lifespan finishes startup
    application.state.ready = False

    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    application.add_exception_handler(AuthError, auth_error_handler)
    application.add_middleware(SlowAPIMiddleware)

    @application.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        rid = request_id(request)
        try:
            response = await call_next(request)
        finally:
            clear_request_id()
        response.headers[REQUEST_ID_HEADER] = rid
        return response

    application.include_router(health_router)
    application.include_router(keys_router)
    application.include_router(audit_router)

    @application.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return application


app = create_app()
