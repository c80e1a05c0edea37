from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence

from reader_ai.cache import InMemoryResultCache, ResultCache
from reader_ai.cloud.keys import ApiKeyStore
from reader_ai.config import Settings
from reader_ai.errors import ErrorKind, InferenceFailure
from reader_ai.native.ollama import OllamaBridge
from reader_ai.preprocessing.cleaning import extract_text_for_summary
from reader_ai.prober import CapabilityProber
from reader_ai.providers import (
    CloudDirectProvider,
    CloudProxyProvider,
    OnDeviceWorkerProvider,
    PlatformNativeProvider,
    Provider,
)
from reader_ai.types import (
    Availability,
    InferenceRequest,
    InferenceResult,
    ProviderCapability,
    ProviderId,
    Task,
    TaskParameters,
)
from reader_ai.worker.host import InferenceWorkerHost
from reader_ai.worker.progress import ProgressCallback, ProgressEvent, ProgressStatus
from reader_ai.worker.runtime import TransformersLoader


logger = logging.getLogger("reader_ai.orchestrator")


class OrchestratorState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    DOWNLOADING = "downloading"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    UNAVAILABLE = "unavailable"


StateCallback = Callable[[OrchestratorState], None]

_PENDING = (Availability.DOWNLOADABLE, Availability.DOWNLOADING)


@dataclass(frozen=True)
class InferenceOutcome:
    state: OrchestratorState
    result: Optional[InferenceResult] = None
    failure: Optional[InferenceFailure] = None
    capabilities: tuple[ProviderCapability, ...] = field(default_factory=tuple)
    cached: bool = False
    provider: Optional[ProviderId] = None

    @property
    def ok(self) -> bool:
        return self.state is OrchestratorState.COMPLETED


def select_provider(
    capabilities: Sequence[ProviderCapability],
    requested: Optional[ProviderId] = None,
) -> Optional[ProviderCapability]:
    """Requested provider if usable, else first available, else first that can download."""
    if requested is not None:
        for cap in capabilities:
            if cap.id is requested and cap.usable:
                return cap
    for cap in capabilities:
        if cap.availability is Availability.AVAILABLE:
            return cap
    for cap in capabilities:
        if cap.availability in _PENDING:
            return cap
    return None


def request_from_article(
    content_id: str,
    html: str,
    task: Task,
    params: TaskParameters,
    requested_provider: Optional[ProviderId] = None,
) -> InferenceRequest:
    return InferenceRequest(
        text=extract_text_for_summary(html),
        task=task,
        parameters=params,
        requested_provider=requested_provider,
        content_id=content_id,
    )


class ProviderOrchestrator:
    """Picks one provider per request and runs it.

    A failure is reported as-is; the next provider in line is never tried
    behind the caller's back, since each one needs its own consent or setup
    (a model download, a local daemon, an API key).
    """

    def __init__(self, prober: CapabilityProber, cache: Optional[ResultCache] = None) -> None:
        self.prober = prober
        self.cache = cache

    async def _cached(self, request: InferenceRequest) -> Optional[InferenceResult]:
        if self.cache is None:
            return None
        try:
            return await self.cache.get_cached_result(request.content_identity, request.task, request.parameters)
        except Exception as e:
            logger.warning("Result cache lookup failed: %s", e)
            return None

    async def _store(self, request: InferenceRequest, result: InferenceResult) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.store_result(request.content_identity, request.task, request.parameters, result)
        except Exception as e:
            logger.warning("Could not store result for %s: %s", request.content_identity[:16], e)

    async def run(
        self,
        request: InferenceRequest,
        on_state: Optional[StateCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
        force_refresh: bool = False,
    ) -> InferenceOutcome:
        def emit(state: OrchestratorState) -> None:
            if on_state is not None:
                on_state(state)

        emit(OrchestratorState.CHECKING)

        if not force_refresh:
            hit = await self._cached(request)
            if hit is not None:
                logger.debug("Cache hit for %s/%s", request.task.value, request.content_identity[:16])
                emit(OrchestratorState.COMPLETED)
                return InferenceOutcome(OrchestratorState.COMPLETED, result=hit, cached=True, provider=hit.provider_used)

        capabilities = tuple(await self.prober.probe(request.task, request.parameters))
        choice = select_provider(capabilities, request.requested_provider)
        if choice is None:
            logger.info("No provider available for %s", request.task.value)
            emit(OrchestratorState.UNAVAILABLE)
            failure = InferenceFailure(ErrorKind.UNAVAILABLE, "No AI provider is available for this task on this device")
            return InferenceOutcome(OrchestratorState.UNAVAILABLE, failure=failure, capabilities=capabilities)

        provider = self.prober.providers[choice.id]
        if request.requested_provider is not None and choice.id is not request.requested_provider:
            logger.info("Requested provider %s not usable; using %s", request.requested_provider.value, choice.id.value)

        running = False

        def progress(event: ProgressEvent) -> None:
            nonlocal running
            if on_progress is not None:
                on_progress(event)
            if not running and event.status in (ProgressStatus.READY, ProgressStatus.DONE):
                running = True
                emit(OrchestratorState.RUNNING)

        if choice.availability in _PENDING:
            emit(OrchestratorState.DOWNLOADING)
        else:
            running = True
            emit(OrchestratorState.RUNNING)

        logger.info("Running %s on %s", request.task.value, choice.id.value)
        try:
            result = await provider.run(request, progress)
        except InferenceFailure as e:
            e.with_provider(choice.id)
            logger.warning("%s failed on %s: %s (%s)", request.task.value, choice.id.value, e.message, e.kind.value)
            emit(OrchestratorState.ERROR)
            return InferenceOutcome(OrchestratorState.ERROR, failure=e, capabilities=capabilities, provider=choice.id)
        except Exception as e:
            logger.exception("Unexpected error from %s", choice.id.value)
            failure = InferenceFailure(ErrorKind.PROVIDER_FAILURE, f"Unexpected error: {e}", provider=choice.id)
            emit(OrchestratorState.ERROR)
            return InferenceOutcome(OrchestratorState.ERROR, failure=failure, capabilities=capabilities, provider=choice.id)

        await self._store(request, result)
        emit(OrchestratorState.COMPLETED)
        return InferenceOutcome(
            OrchestratorState.COMPLETED,
            result=result,
            capabilities=capabilities,
            provider=choice.id,
        )

    async def aclose(self) -> None:
        for provider in self.prober.providers.values():
            await provider.aclose()


def build_orchestrator(
    settings: Settings,
    *,
    host: Optional[InferenceWorkerHost] = None,
    cache: Optional[ResultCache] = None,
) -> ProviderOrchestrator:
    """Wire every provider the settings allow into one orchestrator."""
    host = host or InferenceWorkerHost(
        TransformersLoader(
            device=settings.worker.device,
            cache_dir=settings.worker.cache_dir,
            model_dir=settings.worker.model_dir,
            max_input_tokens=settings.worker.max_input_tokens,
        )
    )
    fallback_source = settings.worker.default_source_language
    providers: list[Provider] = [
        OnDeviceWorkerProvider(host, settings.worker),
        CloudProxyProvider(settings.client.proxy_url, timeout=settings.client.proxy_timeout_seconds),
        CloudDirectProvider(ApiKeyStore(settings.client.key_file), settings.cloud, fallback_source_language=fallback_source),
    ]
    if settings.native.enabled:
        providers.append(
            PlatformNativeProvider(
                OllamaBridge(settings.native),
                default_output_language=settings.cloud.output_language,
                fallback_source_language=fallback_source,
            )
        )
    prober = CapabilityProber(providers, settings.client.provider_order)
    return ProviderOrchestrator(prober, cache if cache is not None else InMemoryResultCache())


__all__ = [
    "build_orchestrator",
    "InferenceOutcome",
    "OrchestratorState",
    "ProviderOrchestrator",
    "request_from_article",
    "select_provider",
]
