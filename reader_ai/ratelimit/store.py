from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from reader_ai.errors import RateLimitStoreError


logger = logging.getLogger("reader_ai.ratelimit.store")


@dataclass(frozen=True)
class RateLimitEntry:
    count: int
    # Epoch seconds at which the window closes.
    reset_at: float

    def expired(self, now: float) -> bool:
        return self.reset_at <= now

    def to_json(self) -> str:
        return json.dumps({"count": self.count, "resetAt": int(self.reset_at * 1000)})

    @classmethod
    def from_json(cls, raw: Any) -> "RateLimitEntry":
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        if not isinstance(data, dict):
            raise ValueError(f"not an object: {data!r}")
        return cls(count=int(data["count"]), reset_at=float(data["resetAt"]) / 1000.0)


class RateLimitStore(ABC):
    name: str = "store"

    @abstractmethod
    async def get(self, key: str) -> Optional[RateLimitEntry]:
        ...

    @abstractmethod
    async def set(self, key: str, entry: RateLimitEntry, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def sweep(self, now: float) -> int:
        """Drop expired entries; return how many were removed."""

    async def aclose(self) -> None:
        return None


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local fallback. Entries only disappear when swept or overwritten."""

    name = "memory"

    def __init__(self) -> None:
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Optional[RateLimitEntry]:
        return self._entries.get(key)

    async def set(self, key: str, entry: RateLimitEntry, ttl_seconds: int) -> None:
        self._entries[key] = entry

    async def sweep(self, now: float) -> int:
        async with self._lock:
            expired = [k for k, e in self._entries.items() if e.expired(now)]
            for k in expired:
                del self._entries[k]
        return len(expired)


class UpstashRedisStore(RateLimitStore):
    """Upstash Redis over its REST API: each command is a JSON array POSTed to the base URL."""

    name = "upstash"

    def __init__(
        self,
        url: str,
        token: str,
        *,
        timeout: float = 2.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"}
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def _command(self, *args: Any) -> Any:
        try:
            resp = await self._client.post(self._url, json=[str(a) for a in args], headers=self._headers)
        except httpx.HTTPError as e:
            raise RateLimitStoreError(f"Upstash request failed: {e}") from e
        try:
            body = resp.json()
        except ValueError as e:
            raise RateLimitStoreError(f"Upstash returned non-JSON (HTTP {resp.status_code})") from e
        if not isinstance(body, dict):
            raise RateLimitStoreError(f"Upstash returned unexpected payload: {body!r}")
        if resp.status_code >= 400 or "error" in body:
            raise RateLimitStoreError(f"Upstash error (HTTP {resp.status_code}): {body.get('error')}")
        return body.get("result")

    async def get(self, key: str) -> Optional[RateLimitEntry]:
        raw = await self._command("GET", key)
        if raw is None:
            return None
        try:
            return RateLimitEntry.from_json(raw)
        except (KeyError, TypeError, ValueError) as e:
            raise RateLimitStoreError(f"Malformed rate limit entry for {key}: {raw!r}") from e

    async def set(self, key: str, entry: RateLimitEntry, ttl_seconds: int) -> None:
        await self._command("SET", key, entry.to_json(), "EX", max(1, int(ttl_seconds)))

    async def sweep(self, now: float) -> int:
        # Redis expires keys itself.
        return 0

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "RateLimitEntry",
    "RateLimitStore",
    "InMemoryRateLimitStore",
    "UpstashRedisStore",
]
