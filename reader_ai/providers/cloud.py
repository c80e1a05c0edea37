from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from reader_ai.cloud.gemini import GeminiClient
from reader_ai.cloud.keys import ApiKeyStore
from reader_ai.config import CloudSettings
from reader_ai.errors import ErrorKind, InferenceFailure
from reader_ai.preprocessing.language import resolve_source_language
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
from reader_ai.worker.progress import ProgressCallback


logger = logging.getLogger("reader_ai.providers.cloud")

# Proxy answers that mean the server itself is not set up; retrying this session is pointless.
MISCONFIGURED_ERRORS = frozenset({"Summarization service not configured", "Service configuration error"})

_STATUS_KINDS = {
    400: ErrorKind.INVALID_INPUT,
    429: ErrorKind.RATE_LIMITED,
    503: ErrorKind.SERVICE_UNAVAILABLE,
}


def _proxy_body(resp: httpx.Response) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _failure_from_proxy(resp: httpx.Response, body: dict[str, Any]) -> InferenceFailure:
    try:
        kind = ErrorKind(body["code"])
    except (KeyError, ValueError):
        kind = _STATUS_KINDS.get(resp.status_code, ErrorKind.PROVIDER_FAILURE)

    retry_after = body.get("retryAfter")
    if retry_after is None and resp.headers.get("retry-after", "").isdigit():
        retry_after = int(resp.headers["retry-after"])

    message = body.get("message") or body.get("error") or f"Summary service error (HTTP {resp.status_code})"
    return InferenceFailure(kind, message, retry_after=retry_after, provider=ProviderId.CLOUD_PROXY)


class CloudProxyProvider(Provider):
    """Summaries through our own rate-limited proxy endpoint."""

    id = ProviderId.CLOUD_PROXY

    def __init__(
        self,
        proxy_url: Optional[str],
        *,
        timeout: float = 45.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.proxy_url = proxy_url.rstrip("/") if proxy_url else None
        self.misconfigured = False
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def availability(self, task: Task, params: TaskParameters) -> Availability:
        if task is not Task.SUMMARIZE or not self.proxy_url:
            return Availability.NOT_SUPPORTED
        if self.misconfigured:
            return Availability.UNAVAILABLE
        return Availability.AVAILABLE

    async def run(self, request: InferenceRequest, on_progress: Optional[ProgressCallback] = None) -> InferenceResult:
        if not isinstance(request.parameters, SummarizeParams) or not self.proxy_url:
            raise InferenceFailure(ErrorKind.UNAVAILABLE, "The summary service only summarizes", provider=self.id)

        try:
            resp = await self._client.post(
                f"{self.proxy_url}/summarize",
                json={"text": request.text, "length": request.parameters.length.value},
            )
        except httpx.TimeoutException as e:
            raise InferenceFailure(ErrorKind.PROVIDER_FAILURE, "The summary service did not respond in time", provider=self.id) from e
        except httpx.HTTPError as e:
            raise InferenceFailure(ErrorKind.PROVIDER_FAILURE, f"Could not reach the summary service: {e}", provider=self.id) from e

        if resp.status_code != 200:
            body = _proxy_body(resp)
            failure = _failure_from_proxy(resp, body)
            if resp.status_code == 503 and body.get("error") in MISCONFIGURED_ERRORS:
                logger.warning("Summary proxy reports it is not configured; disabling it for this session")
                self.misconfigured = True
            raise failure

        data = resp.json()
        return InferenceResult(
            output=data["summary"],
            provider_used=self.id,
            tokens_or_bytes_used=data.get("tokensUsed"),
            model=data.get("model"),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class CloudDirectProvider(Provider):
    """Gemini called straight from the client with the user's own key."""

    id = ProviderId.CLOUD_DIRECT

    def __init__(
        self,
        keys: ApiKeyStore,
        settings: Optional[CloudSettings] = None,
        *,
        fallback_source_language: str = "en",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.keys = keys
        self.settings = settings or CloudSettings()
        self.fallback_source_language = fallback_source_language
        self._client = client or httpx.AsyncClient(timeout=self.settings.timeout_seconds)
        self._owns_client = client is None

    def gemini(self, api_key: str) -> GeminiClient:
        return GeminiClient(
            api_key,
            model=self.settings.direct_model,
            base_url=self.settings.base_url,
            default_retry_after=self.settings.default_retry_after_seconds,
            client=self._client,
        )

    async def availability(self, task: Task, params: TaskParameters) -> Availability:
        return Availability.AVAILABLE if self.keys.validated_key() else Availability.UNAVAILABLE

    async def run(self, request: InferenceRequest, on_progress: Optional[ProgressCallback] = None) -> InferenceResult:
        api_key = self.keys.validated_key()
        if not api_key:
            raise InferenceFailure(ErrorKind.SERVICE_UNAVAILABLE, "No validated Gemini API key", provider=self.id)
        client = self.gemini(api_key)
        params = request.parameters

        try:
            if isinstance(params, TranslateParams):
                source = resolve_source_language(request.text, params.source_language, self.fallback_source_language)
                if source == params.target_language.lower():
                    return unchanged_translation(request, self.id)
                completion = await client.translate(request.text, params.target_language, source)
            else:
                completion = await client.summarize(
                    request.text,
                    params.length,
                    output_language=params.output_language or self.settings.output_language,
                    style=params.style,
                    max_input_chars=self.settings.max_input_chars,
                )
        except InferenceFailure as e:
            raise e.with_provider(self.id)
        return InferenceResult(
            output=completion.text,
            provider_used=self.id,
            tokens_or_bytes_used=completion.tokens_used,
            model=completion.model,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
