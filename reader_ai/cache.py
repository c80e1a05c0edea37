from __future__ import annotations

import asyncio
from typing import Optional, Protocol, runtime_checkable

from reader_ai.types import InferenceResult, Task, TaskParameters


@runtime_checkable
class ResultCache(Protocol):
    """Where finished results live, usually next to the stored article."""

    async def get_cached_result(self, content_id: str, task: Task, params: TaskParameters) -> Optional[InferenceResult]:
        ...

    async def store_result(self, content_id: str, task: Task, params: TaskParameters, result: InferenceResult) -> None:
        ...


CacheKey = tuple[str, Task, TaskParameters]


class InMemoryResultCache:
    """Process-local cache used when no article store is wired in."""

    def __init__(self) -> None:
        self._results: dict[CacheKey, InferenceResult] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._results)

    async def get_cached_result(self, content_id: str, task: Task, params: TaskParameters) -> Optional[InferenceResult]:
        async with self._lock:
            return self._results.get((content_id, task, params))

    async def store_result(self, content_id: str, task: Task, params: TaskParameters, result: InferenceResult) -> None:
        async with self._lock:
            self._results[(content_id, task, params)] = result


__all__ = ["ResultCache", "InMemoryResultCache"]
