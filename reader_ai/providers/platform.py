from __future__ import annotations

from typing import Optional

from reader_ai.errors import InferenceFailure
from reader_ai.native.ollama import OllamaBridge
from reader_ai.preprocessing.language import resolve_source_language
from reader_ai.prompts import build_summary_prompt, build_translation_prompt
from reader_ai.providers.base import Provider, unchanged_translation
from reader_ai.types import (
    Availability,
    InferenceRequest,
    InferenceResult,
    ProviderId,
    SummarizeParams,
    Task,
    TaskParameters,
    TranslateParams,
)
from reader_ai.worker.progress import ProgressCallback, ProgressTracker


class PlatformNativeProvider(Provider):
    """The machine's own model runtime (a local Ollama daemon)."""

    id = ProviderId.PLATFORM_NATIVE

    def __init__(self, bridge: OllamaBridge, *, default_output_language: str = "es", fallback_source_language: str = "en") -> None:
        self.bridge = bridge
        self.default_output_language = default_output_language
        self.fallback_source_language = fallback_source_language

    def _language(self, params: TaskParameters) -> str:
        if isinstance(params, SummarizeParams):
            return params.output_language or self.default_output_language
        return params.target_language

    async def availability(self, task: Task, params: TaskParameters) -> Availability:
        return await self.bridge.availability(self._language(params))

    async def run(self, request: InferenceRequest, on_progress: Optional[ProgressCallback] = None) -> InferenceResult:
        params = request.parameters
        if isinstance(params, TranslateParams):
            source = resolve_source_language(request.text, params.source_language, self.fallback_source_language)
            if source == params.target_language.lower():
                return unchanged_translation(request, self.id)
            prompt = build_translation_prompt(request.text, params.target_language, source)
        else:
            prompt = build_summary_prompt(
                request.text,
                params.length,
                output_language=self._language(params),
                style=params.style,
            )

        try:
            await self.bridge.ensure_model(ProgressTracker(on_progress) if on_progress else None)
            text, tokens = await self.bridge.generate(prompt)
        except InferenceFailure as e:
            raise e.with_provider(self.id)
        return InferenceResult(output=text, provider_used=self.id, tokens_or_bytes_used=tokens, model=self.bridge.model)

    async def aclose(self) -> None:
        await self.bridge.aclose()
