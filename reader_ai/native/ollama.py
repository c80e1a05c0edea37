from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import httpx

from reader_ai.config import NativeSettings
from reader_ai.errors import ErrorKind, InferenceFailure
from reader_ai.types import Availability
from reader_ai.worker.progress import ProgressCallback, ProgressEvent, ProgressStatus


logger = logging.getLogger("reader_ai.native.ollama")


class OllamaBridge:
    """Talks to a local Ollama daemon: model presence, pulls and generation.

    A pull started on behalf of one caller keeps running if that caller goes
    away; later callers attach to the same pull and see its remaining progress.
    """

    def __init__(self, settings: Optional[NativeSettings] = None, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings or NativeSettings()
        self.base_url = self.settings.base_url.rstrip("/")
        self.model = self.settings.model
        self._client = client or httpx.AsyncClient(timeout=self.settings.timeout_seconds)
        self._owns_client = client is None
        self._pull_task: Optional[asyncio.Task] = None
        self._listeners: list[ProgressCallback] = []

    @property
    def pulling(self) -> bool:
        return self._pull_task is not None and not self._pull_task.done()

    def _has_model(self, tags: dict[str, Any]) -> bool:
        names = {m.get("name") or m.get("model") for m in tags.get("models") or [] if isinstance(m, dict)}
        if self.model in names:
            return True
        return ":" not in self.model and f"{self.model}:latest" in names

    def supports_language(self, language: Optional[str]) -> bool:
        allowed = [code.lower() for code in self.settings.supported_languages]
        return not allowed or language is None or language.lower() in allowed

    async def list_models(self) -> dict[str, Any]:
        resp = await self._client.get(f"{self.base_url}/api/tags", timeout=self.settings.probe_timeout_seconds)
        resp.raise_for_status()
        return resp.json()

    async def availability(self, language: Optional[str] = None) -> Availability:
        if not self.settings.enabled:
            return Availability.NOT_SUPPORTED
        try:
            tags = await self.list_models()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Ollama not reachable at %s: %s", self.base_url, e)
            return Availability.NOT_SUPPORTED

        if not self.supports_language(language):
            return Availability.UNAVAILABLE
        if self._has_model(tags):
            return Availability.AVAILABLE
        if self.pulling:
            return Availability.DOWNLOADING
        return Availability.DOWNLOADABLE if self.settings.allow_download else Availability.UNAVAILABLE

    def _broadcast(self, event: ProgressEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    async def _pull(self) -> None:
        logger.info("Pulling Ollama model %s", self.model)
        self._broadcast(ProgressEvent(ProgressStatus.INITIATE, file=self.model))
        try:
            async with self._client.stream(
                "POST",
                f"{self.base_url}/api/pull",
                json={"model": self.model, "stream": True},
                timeout=None,
            ) as resp:
                if resp.status_code != 200:
                    body = (await resp.aread()).decode("utf-8", "replace")
                    raise InferenceFailure(ErrorKind.MODEL_LOAD_FAILED, f"Ollama pull failed: {body[:200]}")
                async for line in resp.aiter_lines():
                    if not line.strip():
                        continue
                    data = json.loads(line)
                    if "error" in data:
                        raise InferenceFailure(ErrorKind.MODEL_LOAD_FAILED, f"Ollama pull failed: {data['error']}")
                    status = data.get("status", "")
                    if "total" in data:
                        self._broadcast(
                            ProgressEvent(
                                ProgressStatus.PROGRESS,
                                loaded=int(data.get("completed", 0)),
                                total=int(data["total"]),
                                file=data.get("digest"),
                            )
                        )
                    elif status == "success":
                        self._broadcast(ProgressEvent(ProgressStatus.DONE, file=self.model))
        except httpx.HTTPError as e:
            raise InferenceFailure(ErrorKind.MODEL_LOAD_FAILED, f"Could not download {self.model}: {e}") from e
        except ValueError as e:
            raise InferenceFailure(ErrorKind.MODEL_LOAD_FAILED, f"Unexpected pull response: {e}") from e
        logger.info("Ollama model %s ready", self.model)

    def _pull_finished(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Ollama pull of %s failed: %s", self.model, exc)

    async def ensure_model(self, on_progress: Optional[ProgressCallback] = None) -> None:
        try:
            tags = await self.list_models()
        except (httpx.HTTPError, ValueError) as e:
            raise InferenceFailure(ErrorKind.PROVIDER_FAILURE, f"Ollama is not reachable: {e}") from e
        if self._has_model(tags):
            return
        if not self.settings.allow_download:
            raise InferenceFailure(ErrorKind.MODEL_LOAD_FAILED, f"Model {self.model} is not installed")

        if not self.pulling:
            self._pull_task = asyncio.create_task(self._pull())
            self._pull_task.add_done_callback(self._pull_finished)
        task = self._pull_task
        assert task is not None
        if on_progress is not None:
            self._listeners.append(on_progress)
        try:
            # The pull outlives a cancelled caller.
            await asyncio.shield(task)
        finally:
            if on_progress is not None and on_progress in self._listeners:
                self._listeners.remove(on_progress)

    async def generate(self, prompt: str) -> tuple[str, Optional[int]]:
        try:
            resp = await self._client.post(
                f"{self.base_url}/api/generate",
                json={"model": self.model, "prompt": prompt, "stream": False},
            )
        except httpx.TimeoutException as e:
            raise InferenceFailure(ErrorKind.PROVIDER_FAILURE, "The local model did not respond in time") from e
        except httpx.HTTPError as e:
            raise InferenceFailure(ErrorKind.PROVIDER_FAILURE, f"Ollama request failed: {e}") from e

        if resp.status_code == 404:
            raise InferenceFailure(ErrorKind.MODEL_LOAD_FAILED, f"Model {self.model} is not installed")
        if resp.status_code != 200:
            logger.error("Ollama error %s: %s", resp.status_code, resp.text[:500])
            raise InferenceFailure(ErrorKind.ENGINE_FAILURE, f"Local model failed (HTTP {resp.status_code})")

        data = resp.json()
        text = (data.get("response") or "").strip()
        if not text:
            raise InferenceFailure(ErrorKind.ENGINE_FAILURE, "Local model returned an empty response")
        tokens = data.get("eval_count")
        if tokens is not None and data.get("prompt_eval_count") is not None:
            tokens += data["prompt_eval_count"]
        return text, tokens

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["OllamaBridge"]
