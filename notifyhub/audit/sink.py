"""AuditSink: the only path from the request pipeline to the audit backend.

``record()`` is synchronous and never raises. Events go onto a bounded
asyncio.Queue that a single worker task drains into the backend. If the queue
is full the event is dropped and a CRITICAL line is logged: the authentication
decision never waits on, or fails because of, the audit trail.

Before ``start()`` (and after ``stop()``) there is no worker; ``record()``
then writes through a fire-and-forget task instead, so callers that skip the
lifecycle (CLI, tests) still persist their events.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from notifyhub.audit.models import (
    EventFilters,
    SecurityEvent,
    SecurityEventType,
    SuspiciousActivitySummary,
)
from notifyhub.audit.protocol import AuditBackend
from notifyhub.constants import AUDIT_QUEUE_MAXSIZE
from notifyhub.utils.logger import digest_prefix, get_logger

logger = get_logger(__name__)

_STOP_DRAIN_TIMEOUT_SECONDS = 5.0


class AuditSink:
    """Non-blocking, append-only writer plus the read-side queries."""

    def __init__(self, backend: AuditBackend, maxsize: int = AUDIT_QUEUE_MAXSIZE) -> None:
        self._backend = backend
        self._queue: asyncio.Queue[SecurityEvent] = asyncio.Queue(maxsize=maxsize)
        self._worker: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()
        self.dropped_events = 0

    @property
    def backend(self) -> AuditBackend:
        return self._backend

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._drain(), name="audit-sink-worker")
        logger.info("audit_sink_started", queue_maxsize=self._queue.maxsize)

    async def stop(self) -> None:
        """Drain what is queued (bounded wait), then cancel the worker."""
        if self._worker is None:
            await self._wait_pending()
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=_STOP_DRAIN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error("audit_sink_drain_timeout", remaining=self._queue.qsize())
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        await self._wait_pending()
        logger.info("audit_sink_stopped", dropped_events=self.dropped_events)

    async def flush(self) -> None:
        """Wait until every event recorded so far has reached the backend."""
        if self.running:
            await self._queue.join()
        await self._wait_pending()

    async def _wait_pending(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Write path ────────────────────────────────────────────────────────────

    def record(self, event: SecurityEvent) -> None:
        """Hand an event to the backend without blocking. Never raises."""
        try:
            logger.info(
                "security_event",
                event_type=event.event_type.value,
                key_id=event.key_id,
                hashed_secret=digest_prefix(event.hashed_secret),
                ip_address=event.ip_address,
                event_request_id=event.request_id,
            )
            if not self.running:
                loop = asyncio.get_running_loop()
                task = loop.create_task(self._write(event))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
                return
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped_events += 1
            logger.critical(
                "audit_queue_full_event_dropped",
                event_id=event.id,
                event_type=event.event_type.value,
                key_id=event.key_id,
                dropped_events=self.dropped_events,
            )
        except Exception as exc:
            logger.critical(
                "audit_record_failed",
                event_id=event.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._write(event)
            finally:
                self._queue.task_done()

    async def _write(self, event: SecurityEvent) -> None:
        try:
            await self._backend.log_event(event)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                event_id=event.id,
                event_type=event.event_type.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    # ── Read path ─────────────────────────────────────────────────────────────

    async def recent(
        self,
        limit: int = 100,
        event_types: Optional[list[SecurityEventType]] = None,
        *,
        organization_id: Optional[str] = None,
        scope_to_organization: bool = False,
    ) -> list[SecurityEvent]:
        return await self._backend.query_events(
            EventFilters(
                event_types=event_types,
                organization_id=organization_id,
                scope_to_organization=scope_to_organization,
                limit=limit,
            )
        )

    async def by_key(self, key_id: str, limit: int = 50) -> list[SecurityEvent]:
        return await self._backend.query_events(EventFilters(key_id=key_id, limit=limit))

    async def suspicious_activity_summary(self, window_hours: int = 24) -> SuspiciousActivitySummary:
        """Counts of hostile-looking events over the trailing window.

        Distinct IPs are counted across invalid attempts and rate-limit hits.
        """
        since = datetime.now(timezone.utc) - timedelta(hours=window_hours)

        def _filters(*types: SecurityEventType) -> EventFilters:
            return EventFilters(event_types=list(types), since=since)

        invalid, limited, expired, unique_ips = await asyncio.gather(
            self._backend.count_events(_filters(SecurityEventType.INVALID_ATTEMPT)),
            self._backend.count_events(_filters(SecurityEventType.RATE_LIMIT_EXCEEDED)),
            self._backend.count_events(_filters(SecurityEventType.EXPIRED)),
            self._backend.count_distinct_ips(
                _filters(
                    SecurityEventType.INVALID_ATTEMPT,
                    SecurityEventType.RATE_LIMIT_EXCEEDED,
                )
            ),
        )
        return SuspiciousActivitySummary(
            invalid_attempts=invalid,
            rate_limit_exceeded=limited,
            expired_attempts=expired,
            unique_ip_count=unique_ips,
            window_hours=window_hours,
        )
