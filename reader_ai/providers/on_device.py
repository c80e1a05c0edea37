from __future__ import annotations

import asyncio
import logging
from typing import Optional

from reader_ai.config import WorkerSettings
from reader_ai.errors import InferenceFailure
from reader_ai.preprocessing.cleaning import clean_translation_artifacts
from reader_ai.preprocessing.language import resolve_source_language
from reader_ai.preprocessing.segmentation import split_into_chunks
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
from reader_ai.worker.host import InferenceWorkerHost
from reader_ai.worker.progress import ProgressCallback
from reader_ai.worker.runtime import ModelKey, resolve_summarization_model, translation_model_id


logger = logging.getLogger("reader_ai.providers.on_device")

# Summarization checkpoints in the catalog are English-only.
MODEL_OUTPUT_LANGUAGE = "en"


class OnDeviceWorkerProvider(Provider):
    id = ProviderId.ON_DEVICE_WORKER

    def __init__(self, host: InferenceWorkerHost, settings: Optional[WorkerSettings] = None) -> None:
        self.host = host
        self.settings = settings or WorkerSettings()

    def summarization_key(self) -> ModelKey:
        return ModelKey(resolve_summarization_model(self.settings.summarization_model), Task.SUMMARIZE)

    def translation_key(self, source: str, target: str) -> ModelKey:
        return ModelKey(translation_model_id(self.settings.translation_model_template, source, target), Task.TRANSLATE)

    async def availability(self, task: Task, params: TaskParameters) -> Availability:
        return Availability.AVAILABLE if self.host.reachable else Availability.UNAVAILABLE

    async def run(self, request: InferenceRequest, on_progress: Optional[ProgressCallback] = None) -> InferenceResult:
        try:
            if isinstance(request.parameters, SummarizeParams):
                return await self._summarize(request, request.parameters, on_progress)
            assert isinstance(request.parameters, TranslateParams)
            return await self._translate(request, request.parameters, on_progress)
        except InferenceFailure as e:
            raise e.with_provider(self.id)

    async def _summarize(
        self,
        request: InferenceRequest,
        params: SummarizeParams,
        on_progress: Optional[ProgressCallback],
    ) -> InferenceResult:
        key = self.summarization_key()
        out = await self.host.infer(key, request.text, params, on_progress)
        summary, tokens, model = out.text, out.tokens, key.model_id

        target = (params.output_language or MODEL_OUTPUT_LANGUAGE).lower()
        if target != MODEL_OUTPUT_LANGUAGE:
            tkey = self.translation_key(MODEL_OUTPUT_LANGUAGE, target)
            try:
                translated = await self.host.infer(
                    tkey, summary, TranslateParams(target, MODEL_OUTPUT_LANGUAGE), on_progress
                )
            except InferenceFailure as e:
                logger.warning("Could not translate summary to %s, keeping English: %s", target, e.message)
            else:
                summary = clean_translation_artifacts(translated.text)
                tokens += translated.tokens
        return InferenceResult(output=summary, provider_used=self.id, tokens_or_bytes_used=tokens, model=model)

    async def _translate(
        self,
        request: InferenceRequest,
        params: TranslateParams,
        on_progress: Optional[ProgressCallback],
    ) -> InferenceResult:
        target = params.target_language.lower()
        source = resolve_source_language(request.text, params.source_language, self.settings.default_source_language)
        if source == target:
            return unchanged_translation(request, self.id)

        key = self.translation_key(source, target)
        concrete = TranslateParams(target, source)
        pieces: list[str] = []
        tokens = 0
        # One job per chunk; the model stays resident between them.
        for i, chunk in enumerate(split_into_chunks(request.text)):
            out = await self.host.infer(key, chunk, concrete, on_progress if i == 0 else None)
            pieces.append(out.text)
            tokens += out.tokens
        return InferenceResult(
            output=clean_translation_artifacts(" ".join(pieces)),
            provider_used=self.id,
            tokens_or_bytes_used=tokens,
            model=key.model_id,
        )

    async def aclose(self) -> None:
        # close() joins the worker thread, which may be mid-download.
        await asyncio.to_thread(self.host.close)
