from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from reader_ai.types import Availability, InferenceRequest, InferenceResult, ProviderId, Task, TaskParameters
from reader_ai.worker.progress import ProgressCallback


class Provider(ABC):
    """One inference backend behind a common call shape.

    `run` either returns an InferenceResult or raises InferenceFailure; the
    orchestrator never looks further inside.
    """

    id: ProviderId

    @abstractmethod
    async def availability(self, task: Task, params: TaskParameters) -> Availability:
        """Cheap check, answered fresh on every call."""

    @abstractmethod
    async def run(self, request: InferenceRequest, on_progress: Optional[ProgressCallback] = None) -> InferenceResult:
        ...

    async def aclose(self) -> None:
        return None


def unchanged_translation(request: InferenceRequest, provider: ProviderId) -> InferenceResult:
    return InferenceResult(output=request.text, provider_used=provider, tokens_or_bytes_used=0)
