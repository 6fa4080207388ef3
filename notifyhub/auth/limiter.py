"""Per-key fixed-window quotas, usage counters and the admin endpoint throttle.

Each (key, window, bucket) triple owns one counter in the counter store:

    rate_limit:{key_id}:{window}:{floor(now / window_seconds)}

The counter is incremented and given its TTL in one atomic step, so N
concurrent requests in a bucket observe N distinct values 1..N and exactly
``limit`` of them are admitted. Fixed windows admit up to twice the limit
across a bucket boundary; that is accepted.

The counter store is a soft dependency. Any failure (connection error,
timeout, a reply that is not an integer) FAILS OPEN: the request is admitted
with ``current=0`` and a WARNING is logged. This is the opposite of the
record store, which fails closed in the validation pipeline.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from redis.asyncio import from_url as redis_from_url
from slowapi import Limiter
from slowapi.util import get_remote_address

from notifyhub.auth.models import KeyRecord, RateLimitInfo
from notifyhub.config import RateLimitConfig
from notifyhub.constants import DAY_SECONDS, HOUR_SECONDS, USAGE_RETENTION_SECONDS
from notifyhub.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateWindow:
    name: str
    seconds: int

    @property
    def milliseconds(self) -> int:
        return self.seconds * 1000


HOURLY = RateWindow("hourly", HOUR_SECONDS)
DAILY = RateWindow("daily", DAY_SECONDS)


def rate_limit_counter_key(key_id: str, window: RateWindow, bucket: int) -> str:
    return f"rate_limit:{key_id}:{window.name}:{bucket}"


def usage_counter_key(key_id: str, day: str) -> str:
    return f"usage:{key_id}:{day}"


# ─── Counter stores ───────────────────────────────────────────────────────────


@runtime_checkable
class CounterStore(Protocol):
    """Shared counters with TTL.

    increment_and_expire() is the only atomic primitive the limiter relies on.
    """

    async def increment_and_expire(self, key: str, ttl_seconds: int) -> int: ...

    async def get(self, key: str) -> int: ...

    async def health_check(self) -> bool: ...

    async def close(self) -> None: ...


class RedisCounterStore:
    """redis.asyncio counters: INCR and EXPIRE NX inside one MULTI/EXEC.

    EXPIRE NX needs Redis >= 7.0; it sets the TTL only on the first
    increment of a bucket so later hits never extend it.
    """

    def __init__(self, client: Any) -> None:
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        return cls(redis_from_url(url, decode_responses=True))

    async def increment_and_expire(self, key: str, ttl_seconds: int) -> int:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, ttl_seconds, nx=True)
            count, _ = await pipe.execute()
        return count

    async def get(self, key: str) -> int:
        raw = await self._redis.get(key)
        return int(raw) if raw is not None else 0

    async def health_check(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryCounterStore:
    """Single-process counters for development and tests.

    There is no await between the read and the write in
    increment_and_expire(), so it is atomic with respect to other coroutines
    on the same event loop. It is NOT shared between worker processes.

    Window keys change every bucket, so an old key is usually never read
    again. Expired entries are swept from increment_and_expire() at most once
    per ``sweep_interval`` seconds, which bounds the map to the keys live in
    the current windows plus one sweep interval of stragglers.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 60.0,
    ) -> None:
        self._clock = clock
        self._counters: dict[str, tuple[int, float]] = {}
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def _live(self, key: str) -> Optional[tuple[int, float]]:
        entry = self._counters.get(key)
        if entry is not None and entry[1] <= self._clock():
            del self._counters[key]
            return None
        return entry

    def _sweep(self) -> None:
        now = self._clock()
        if now < self._next_sweep:
            return
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]
        self._next_sweep = now + self._sweep_interval
        if expired:
            logger.debug("counter_sweep", evicted=len(expired), remaining=len(self._counters))

    async def increment_and_expire(self, key: str, ttl_seconds: int) -> int:
        self._sweep()
        entry = self._live(key)
        if entry is None:
            count, expires_at = 1, self._clock() + ttl_seconds
        else:
            count, expires_at = entry[0] + 1, entry[1]
        self._counters[key] = (count, expires_at)
        return count

    async def get(self, key: str) -> int:
        entry = self._live(key)
        return entry[0] if entry else 0

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self._counters.clear()


def create_counter_store(config: RateLimitConfig) -> CounterStore:
    if config.redis_url:
        logger.info("counter_store_selected", backend="RedisCounterStore")
        return RedisCounterStore.from_url(config.redis_url)
    logger.warning(
        "counter_store_selected",
        backend="InMemoryCounterStore",
        note="quotas are per process; configure rate_limit.redis_url for multiple workers",
    )
    return InMemoryCounterStore()


# ─── RateLimiter ──────────────────────────────────────────────────────────────


class RateLimiter:
    """Fixed-window quota checks over a CounterStore."""

    def __init__(self, store: CounterStore, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    @property
    def store(self) -> CounterStore:
        return self._store

    async def check_and_increment(
        self,
        key_id: str,
        window: RateWindow,
        limit: int,
        now: Optional[float] = None,
    ) -> RateLimitInfo:
        """Count one request against (key_id, window) and report where it landed.

        ``now`` is epoch seconds; it defaults to the limiter's clock.
        """
        ts = self._clock() if now is None else now
        bucket = int(ts // window.seconds)
        counter_key = rate_limit_counter_key(key_id, window, bucket)

        try:
            current = await self._store.increment_and_expire(counter_key, window.seconds)
            if isinstance(current, bool) or not isinstance(current, int):
                raise TypeError(f"counter store returned {type(current).__name__}, expected int")
        except Exception as exc:
            logger.warning(
                "rate_limit_store_unavailable",
                key_id=key_id,
                window=window.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return RateLimitInfo(
                limit=limit,
                current=0,
                window_ms=window.milliseconds,
                reset_time=None,
                window=window.name,
            )

        reset_time = datetime.fromtimestamp((bucket + 1) * window.seconds, tz=timezone.utc)
        return RateLimitInfo(
            limit=limit,
            current=current,
            window_ms=window.milliseconds,
            reset_time=reset_time,
            window=window.name,
        )

    async def check_all(self, record: KeyRecord, now: Optional[float] = None) -> list[RateLimitInfo]:
        """Hourly first, then daily. Stops at the first exceeded window.

        A request rejected by the hourly window is therefore not counted
        against the daily quota.
        """
        results: list[RateLimitInfo] = []
        for window, limit in (
            (HOURLY, record.rate_limit.hourly),
            (DAILY, record.rate_limit.daily),
        ):
            info = await self.check_and_increment(record.id, window, limit, now=now)
            results.append(info)
            if info.exceeded:
                break
        return results

    # ── Usage counters ────────────────────────────────────────────────────────

    def _day(self, ts: float) -> datetime:
        return datetime.fromtimestamp(ts, tz=timezone.utc)

    async def record_usage(self, key_id: str, now: Optional[float] = None) -> None:
        """Bump today's usage counter. Never raises."""
        day = self._day(self._clock() if now is None else now).strftime("%Y-%m-%d")
        try:
            await self._store.increment_and_expire(
                usage_counter_key(key_id, day), USAGE_RETENTION_SECONDS
            )
        except Exception as exc:
            logger.warning(
                "usage_counter_update_failed",
                key_id=key_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def usage_stats(self, key_id: str, days: int = 7, now: Optional[float] = None) -> dict[str, Any]:
        """Per-day request counts for the last ``days`` days, newest first.

        Days the store cannot answer for are reported as zero.
        """
        today = self._day(self._clock() if now is None else now)
        breakdown: list[dict[str, Any]] = []
        for offset in range(days):
            day = (today - timedelta(days=offset)).strftime("%Y-%m-%d")
            try:
                count = int(await self._store.get(usage_counter_key(key_id, day)))
            except Exception as exc:
                logger.warning(
                    "usage_counter_read_failed",
                    key_id=key_id,
                    day=day,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                count = 0
            breakdown.append({"date": day, "requests": count})
        return {
            "total_requests": sum(entry["requests"] for entry in breakdown),
            "daily_breakdown": breakdown,
        }


# ─── Admin endpoint throttle ──────────────────────────────────────────────────
# Per client IP, independent of the per-key quotas above. Shared between
# auth/router.py, audit/router.py (route decorators) and main.py (app.state).

limiter = Limiter(key_func=get_remote_address)

ADMIN_RATE_LIMIT = "30/minute"
