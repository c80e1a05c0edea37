from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Mapping, Optional, Sequence

from reader_ai.providers.base import Provider
from reader_ai.types import (
    DEFAULT_PROVIDER_ORDER,
    Availability,
    ProviderCapability,
    ProviderId,
    Task,
    TaskParameters,
)


logger = logging.getLogger("reader_ai.prober")


class CapabilityProber:
    """Asks every provider whether it can serve a task right now.

    Nothing is remembered between calls: a model finishing its download or a key
    being added shows up on the next probe.
    """

    def __init__(self, providers: Iterable[Provider], order: Optional[Sequence[ProviderId]] = None) -> None:
        self.providers: Mapping[ProviderId, Provider] = {p.id: p for p in providers}
        self.order: tuple[ProviderId, ...] = tuple(order or DEFAULT_PROVIDER_ORDER)
        # Anything left out of a custom order still gets reported, last.
        self.order += tuple(pid for pid in DEFAULT_PROVIDER_ORDER if pid not in self.order)

    async def _check(self, pid: ProviderId, task: Task, params: TaskParameters) -> ProviderCapability:
        provider = self.providers.get(pid)
        if provider is None:
            return ProviderCapability(pid, Availability.NOT_SUPPORTED, "not configured")
        try:
            return ProviderCapability(pid, await provider.availability(task, params))
        except Exception as e:
            logger.warning("Availability check for %s failed: %s", pid.value, e, exc_info=True)
            return ProviderCapability(pid, Availability.NOT_SUPPORTED, str(e))

    async def probe(self, task: Task, params: TaskParameters) -> list[ProviderCapability]:
        caps = await asyncio.gather(*(self._check(pid, task, params) for pid in self.order))
        logger.debug("Capabilities for %s: %s", task.value, ", ".join(f"{c.id.value}={c.availability.value}" for c in caps))
        return list(caps)


__all__ = ["CapabilityProber"]
