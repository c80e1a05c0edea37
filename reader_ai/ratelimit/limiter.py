from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from reader_ai.config import RateLimitSettings, StoreSettings
from reader_ai.errors import RateLimitStoreError
from reader_ai.ratelimit.store import InMemoryRateLimitStore, RateLimitEntry, RateLimitStore, UpstashRedisStore


logger = logging.getLogger("reader_ai.ratelimit")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    # Epoch seconds.
    reset_at: float
    limit: int

    def retry_after(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(1, math.ceil(self.reset_at - now))

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at * 1000)),
        }


class RateLimiter:
    """Fixed-window request counter per subject.

    `check` reads the entry and writes it back with a TTL equal to the rest of the
    window. The two steps are not atomic, so concurrent requests from one subject
    can overshoot the ceiling slightly on the distributed store.
    """

    def __init__(
        self,
        store: RateLimitStore,
        *,
        limit: int = 5,
        window_seconds: int = 3600,
        key_prefix: str = "ratelimit:summarize:",
        fallback: Optional[InMemoryRateLimitStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.fallback = fallback if fallback is not None else InMemoryRateLimitStore()
        self.limit = limit
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix
        self._clock = clock

    def _key(self, subject: str) -> str:
        return f"{self.key_prefix}{subject}"

    def _fresh(self, now: float) -> RateLimitEntry:
        return RateLimitEntry(count=1, reset_at=now + self.window_seconds)

    async def _check_on(self, store: RateLimitStore, key: str, now: float) -> RateLimitDecision:
        entry = await store.get(key)
        if entry is None or entry.expired(now):
            entry = self._fresh(now)
        elif entry.count < self.limit:
            entry = RateLimitEntry(count=entry.count + 1, reset_at=entry.reset_at)
        else:
            return RateLimitDecision(False, 0, entry.reset_at, self.limit)

        await store.set(key, entry, ttl_seconds=math.ceil(entry.reset_at - now))
        return RateLimitDecision(True, self.limit - entry.count, entry.reset_at, self.limit)

    async def _peek_on(self, store: RateLimitStore, key: str, now: float) -> RateLimitDecision:
        entry = await store.get(key)
        if entry is None or entry.expired(now):
            return RateLimitDecision(True, self.limit, now + self.window_seconds, self.limit)
        remaining = max(0, self.limit - entry.count)
        return RateLimitDecision(remaining > 0, remaining, entry.reset_at, self.limit)

    async def check(self, subject: str) -> RateLimitDecision:
        """Count one request for `subject` and say whether it is allowed."""
        key, now = self._key(subject), self._clock()
        try:
            return await self._check_on(self.store, key, now)
        except RateLimitStoreError as e:
            logger.warning("Rate limit store failed (%s); using in-memory limiter for this request", e)
            return await self._check_on(self.fallback, key, now)

    async def peek(self, subject: str) -> RateLimitDecision:
        """Current decision for `subject` without counting a request."""
        key, now = self._key(subject), self._clock()
        try:
            return await self._peek_on(self.store, key, now)
        except RateLimitStoreError as e:
            logger.warning("Rate limit store failed (%s); reading in-memory limiter", e)
            return await self._peek_on(self.fallback, key, now)

    async def sweep(self) -> int:
        now = self._clock()
        removed = await self.store.sweep(now)
        if self.fallback is not self.store:
            removed += await self.fallback.sweep(now)
        if removed:
            logger.debug("Swept %d expired rate limit entries", removed)
        return removed

    async def aclose(self) -> None:
        await self.store.aclose()


def build_rate_limiter(
    rate_limit: RateLimitSettings,
    store: StoreSettings,
    *,
    clock: Callable[[], float] = time.time,
) -> RateLimiter:
    """Pick the backing store once: Upstash when both URL and token are set, else in-process."""
    if store.distributed:
        backend: RateLimitStore = UpstashRedisStore(
            store.redis_rest_url or "",
            store.redis_rest_token or "",
            timeout=store.timeout_seconds,
        )
        logger.info("Rate limiter using Upstash Redis")
    else:
        backend = InMemoryRateLimitStore()
        logger.info("Rate limiter using in-memory store (UPSTASH_REDIS_REST_URL/TOKEN not set)")
    fallback = backend if isinstance(backend, InMemoryRateLimitStore) else InMemoryRateLimitStore()
    return RateLimiter(
        backend,
        limit=rate_limit.requests,
        window_seconds=rate_limit.window_seconds,
        key_prefix=rate_limit.key_prefix,
        fallback=fallback,
        clock=clock,
    )


async def sweep_periodically(limiter: RateLimiter, interval_seconds: float = 600.0) -> None:
    """Run until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await limiter.sweep()
        except RateLimitStoreError as e:
            logger.warning("Rate limit sweep failed: %s", e)


__all__ = [
    "RateLimitDecision",
    "RateLimiter",
    "build_rate_limiter",
    "sweep_periodically",
]
