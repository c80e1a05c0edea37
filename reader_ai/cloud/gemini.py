from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import httpx

from reader_ai.errors import ErrorKind, InferenceFailure
from reader_ai.prompts import MAX_INPUT_CHARS, build_summary_prompt, build_translation_prompt
from reader_ai.types import SummaryLength, SummaryStyle


logger = logging.getLogger("reader_ai.cloud.gemini")

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

_RETRY_DELAY_RE = re.compile(r'"retryDelay"\s*:\s*"(\d+(?:\.\d+)?)s"')


@dataclass(frozen=True)
class GeminiCompletion:
    text: str
    model: str
    tokens_used: Optional[int] = None


def _retry_after_seconds(raw: str, headers: Mapping[str, str], default: int) -> int:
    m = _RETRY_DELAY_RE.search(raw)
    if m:
        return max(1, math.ceil(float(m.group(1))))
    header = headers.get("retry-after")
    if header and header.strip().isdigit():
        return max(1, int(header.strip()))
    return default


def classify_gemini_error(
    status_code: int,
    raw: str,
    headers: Optional[Mapping[str, str]] = None,
    *,
    default_retry_after: int = 60,
    failure_message: str = "Failed to generate summary",
) -> InferenceFailure:
    """Map an upstream error response to an InferenceFailure.

    Markers are checked in order: invalid key, exhausted quota, rate limit,
    safety block. Quota exhaustion is a 429 too but is not something a retry fixes.
    """
    headers = headers or {}
    if "API_KEY_INVALID" in raw:
        return InferenceFailure(ErrorKind.SERVICE_UNAVAILABLE, "Service configuration error")
    if "QUOTA_EXCEEDED" in raw:
        return InferenceFailure(ErrorKind.SERVICE_UNAVAILABLE, "Service temporarily unavailable. Try again later.")
    if status_code == 429 or "RESOURCE_EXHAUSTED" in raw:
        retry_after = _retry_after_seconds(raw, headers, default_retry_after)
        return InferenceFailure(
            ErrorKind.CLOUD_RATE_LIMITED,
            f"The AI provider is rate limiting requests. Try again in {retry_after} seconds.",
            retry_after=retry_after,
        )
    if "SAFETY" in raw:
        return InferenceFailure(ErrorKind.CONTENT_REJECTED, "Content blocked by safety filters")
    return InferenceFailure(ErrorKind.PROVIDER_FAILURE, failure_message)


def _extract_text(payload: dict[str, Any]) -> Optional[str]:
    candidates = payload.get("candidates") or []
    if not candidates:
        return None
    parts = (candidates[0].get("content") or {}).get("parts") or []
    text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
    return text.strip() or None


class GeminiClient:
    """Minimal `generateContent` client over httpx."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gemini-2.0-flash-lite",
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        default_retry_after: int = 60,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.default_retry_after = default_retry_after
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    async def generate(
        self,
        prompt: str,
        *,
        max_output_tokens: Optional[int] = None,
        failure_message: str = "Failed to generate summary",
    ) -> GeminiCompletion:
        body: dict[str, Any] = {"contents": [{"parts": [{"text": prompt}]}]}
        if max_output_tokens:
            body["generationConfig"] = {"maxOutputTokens": max_output_tokens}

        try:
            resp = await self._client.post(
                self.endpoint,
                headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
                json=body,
            )
        except httpx.TimeoutException as e:
            logger.warning("Gemini request timed out: %s", e)
            raise InferenceFailure(ErrorKind.PROVIDER_FAILURE, "The AI provider did not respond in time") from e
        except httpx.HTTPError as e:
            logger.warning("Gemini request failed: %s", e)
            raise InferenceFailure(ErrorKind.PROVIDER_FAILURE, "Error connecting to AI service") from e

        if resp.status_code != 200:
            logger.error("Gemini API error %s: %s", resp.status_code, resp.text[:500])
            raise classify_gemini_error(
                resp.status_code,
                resp.text,
                resp.headers,
                default_retry_after=self.default_retry_after,
                failure_message=failure_message,
            )

        try:
            payload = resp.json()
        except ValueError as e:
            raise InferenceFailure(ErrorKind.PROVIDER_FAILURE, failure_message) from e

        block = (payload.get("promptFeedback") or {}).get("blockReason")
        finish = ((payload.get("candidates") or [{}])[0] or {}).get("finishReason")
        if block or finish == "SAFETY":
            logger.info("Gemini blocked content (blockReason=%s finishReason=%s)", block, finish)
            raise InferenceFailure(ErrorKind.CONTENT_REJECTED, "Content blocked by safety filters")

        text = _extract_text(payload)
        if text is None:
            logger.error("Gemini returned no text: %s", str(payload)[:500])
            raise InferenceFailure(ErrorKind.PROVIDER_FAILURE, failure_message)

        usage = payload.get("usageMetadata") or {}
        return GeminiCompletion(text=text, model=self.model, tokens_used=usage.get("totalTokenCount"))

    async def summarize(
        self,
        text: str,
        length: SummaryLength = SummaryLength.MEDIUM,
        *,
        output_language: str = "es",
        style: SummaryStyle = SummaryStyle.TLDR,
        max_input_chars: int = MAX_INPUT_CHARS,
    ) -> GeminiCompletion:
        prompt = build_summary_prompt(
            text,
            length,
            output_language=output_language,
            style=style,
            max_input_chars=max_input_chars,
        )
        return await self.generate(prompt)

    async def translate(self, text: str, target_language: str, source_language: str = "auto") -> GeminiCompletion:
        prompt = build_translation_prompt(text, target_language, source_language)
        return await self.generate(prompt, failure_message="Failed to generate translation")

    async def validate_key(self) -> bool:
        """Issue the smallest possible request; any failure means the key is not usable."""
        try:
            await self.generate("Say 'ok'")
        except InferenceFailure as e:
            logger.info("Gemini key validation failed: %s", e.message)
            return False
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["GeminiClient", "GeminiCompletion", "classify_gemini_error", "DEFAULT_BASE_URL"]
