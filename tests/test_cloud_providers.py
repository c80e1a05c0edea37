from __future__ import annotations

import asyncio
import json
import stat

import httpx
import pytest

from reader_ai.api.app import create_app
from reader_ai.cloud.gemini import GeminiClient
from reader_ai.cloud.keys import ApiKeyStore
from reader_ai.config import CloudSettings
from reader_ai.errors import ErrorKind, InferenceFailure
from reader_ai.providers.cloud import CloudDirectProvider, CloudProxyProvider
from reader_ai.ratelimit.limiter import RateLimiter
from reader_ai.ratelimit.store import InMemoryRateLimitStore
from reader_ai.types import (
    Availability,
    InferenceRequest,
    ProviderId,
    SummarizeParams,
    SummaryLength,
    Task,
    TranslateParams,
)


ARTICLE = (
    "Researchers have found that a four-day working week improved wellbeing across dozens of "
    "companies without any measurable drop in productivity during the six-month trial."
)

GEMINI_OK = {"candidates": [{"content": {"parts": [{"text": "A short summary."}]}}], "usageMetadata": {"totalTokenCount": 12}}


def _summary(length: SummaryLength = SummaryLength.MEDIUM) -> InferenceRequest:
    return InferenceRequest(text=ARTICLE, task=Task.SUMMARIZE, parameters=SummarizeParams(length=length))


def _proxy(handler) -> CloudProxyProvider:
    return CloudProxyProvider("http://proxy.test/", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_proxy_only_summarizes():
    provider = _proxy(lambda r: httpx.Response(500))
    assert asyncio.run(provider.availability(Task.TRANSLATE, TranslateParams("es"))) is Availability.NOT_SUPPORTED
    assert asyncio.run(provider.availability(Task.SUMMARIZE, SummarizeParams())) is Availability.AVAILABLE
    assert asyncio.run(CloudProxyProvider(None).availability(Task.SUMMARIZE, SummarizeParams())) is Availability.NOT_SUPPORTED


def test_proxy_success():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"summary": "Resumen.", "model": "gemini-2.0-flash-lite", "length": "long", "tokensUsed": 9})

    result = asyncio.run(_proxy(handler).run(_summary(SummaryLength.LONG)))

    assert str(seen[0].url) == "http://proxy.test/summarize"
    assert json.loads(seen[0].content) == {"text": ARTICLE, "length": "long"}
    assert result.output == "Resumen."
    assert result.provider_used is ProviderId.CLOUD_PROXY
    assert result.tokens_or_bytes_used == 9
    assert result.model == "gemini-2.0-flash-lite"


def test_proxy_rate_limit_maps_to_failure():
    body = {"error": "Rate limit exceeded", "message": "Limit of 5 requests reached.", "retryAfter": 1800, "code": "rate_limited"}
    provider = _proxy(lambda r: httpx.Response(429, json=body, headers={"Retry-After": "1800"}))

    with pytest.raises(InferenceFailure) as exc:
        asyncio.run(provider.run(_summary()))

    assert exc.value.kind is ErrorKind.RATE_LIMITED
    assert exc.value.retry_after == 1800
    assert exc.value.retryable
    assert exc.value.provider is ProviderId.CLOUD_PROXY
    assert not provider.misconfigured


def test_proxy_falls_back_to_status_and_header():
    provider = _proxy(lambda r: httpx.Response(429, text="slow down", headers={"Retry-After": "30"}))
    with pytest.raises(InferenceFailure) as exc:
        asyncio.run(provider.run(_summary()))
    assert exc.value.kind is ErrorKind.RATE_LIMITED
    assert exc.value.retry_after == 30


def test_misconfigured_proxy_is_disabled_for_the_session():
    provider = _proxy(lambda r: httpx.Response(503, json={"error": "Summarization service not configured", "code": "service_unavailable"}))

    with pytest.raises(InferenceFailure) as exc:
        asyncio.run(provider.run(_summary()))

    assert exc.value.kind is ErrorKind.SERVICE_UNAVAILABLE
    assert provider.misconfigured
    assert asyncio.run(provider.availability(Task.SUMMARIZE, SummarizeParams())) is Availability.UNAVAILABLE


def test_proxy_unreachable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(InferenceFailure) as exc:
        asyncio.run(_proxy(handler).run(_summary()))
    assert exc.value.kind is ErrorKind.PROVIDER_FAILURE


def test_proxy_against_real_app(settings):
    gemini_calls = []

    def gemini_handler(request):
        gemini_calls.append(request)
        return httpx.Response(200, json=GEMINI_OK)

    def factory(api_key):
        return GeminiClient(api_key, client=httpx.AsyncClient(transport=httpx.MockTransport(gemini_handler)))

    limiter = RateLimiter(InMemoryRateLimitStore(), limit=1, window_seconds=3600)
    app = create_app(settings, limiter=limiter, gemini_factory=factory)
    provider = CloudProxyProvider(
        "http://proxy.test",
        client=httpx.AsyncClient(transport=httpx.ASGITransport(app=app)),
    )

    async def scenario():
        first = await provider.run(_summary())
        with pytest.raises(InferenceFailure) as exc:
            await provider.run(_summary())
        return first, exc.value

    first, limited = asyncio.run(scenario())

    assert first.output == "A short summary."
    assert first.tokens_or_bytes_used == 12
    assert limited.kind is ErrorKind.RATE_LIMITED
    assert 3590 <= limited.retry_after <= 3600
    assert len(gemini_calls) == 1


@pytest.fixture
def key_store(tmp_path) -> ApiKeyStore:
    return ApiKeyStore(tmp_path / "conf" / "gemini.json")


def test_key_store_permissions_and_validation(key_store):
    assert key_store.load() is None

    async def accept(key):
        return key == "good-key"

    assert asyncio.run(key_store.validate_and_store("  good-key ", accept)) is True
    assert stat.S_IMODE(key_store.path.stat().st_mode) == 0o600
    assert key_store.validated_key() == "good-key"

    assert asyncio.run(key_store.validate_and_store("bad-key", accept)) is False
    assert key_store.load().api_key == "bad-key"
    assert key_store.validated_key() is None

    key_store.clear()
    assert key_store.load() is None


def test_empty_key_is_rejected(key_store):
    with pytest.raises(InferenceFailure) as exc:
        key_store.save("   ", validated=True)
    assert exc.value.kind is ErrorKind.INVALID_INPUT


def test_corrupt_key_file_is_ignored(key_store):
    key_store.path.parent.mkdir(parents=True)
    key_store.path.write_text("{broken", encoding="utf-8")
    assert key_store.load() is None


def test_direct_provider_needs_validated_key(key_store):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=GEMINI_OK)

    provider = CloudDirectProvider(key_store, CloudSettings(), client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    assert asyncio.run(provider.availability(Task.SUMMARIZE, SummarizeParams())) is Availability.UNAVAILABLE
    with pytest.raises(InferenceFailure) as exc:
        asyncio.run(provider.run(_summary()))
    assert exc.value.kind is ErrorKind.SERVICE_UNAVAILABLE

    key_store.save("user-key", validated=True)
    assert asyncio.run(provider.availability(Task.TRANSLATE, TranslateParams("es"))) is Availability.AVAILABLE
    result = asyncio.run(provider.run(_summary()))

    assert result.output == "A short summary."
    assert result.provider_used is ProviderId.CLOUD_DIRECT
    assert result.model == "gemini-2.5-flash"
    assert calls[0].headers["x-goog-api-key"] == "user-key"
    assert "gemini-2.5-flash:generateContent" in str(calls[0].url)


def test_direct_translation_to_same_language_is_free(key_store):
    calls = []
    key_store.save("user-key", validated=True)
    provider = CloudDirectProvider(
        key_store,
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: calls.append(r) or httpx.Response(200, json=GEMINI_OK))),
    )
    request = InferenceRequest(
        text="The weather will be sunny across the whole country this weekend.",
        task=Task.TRANSLATE,
        parameters=TranslateParams("EN"),
    )

    result = asyncio.run(provider.run(request))

    assert result.output == request.text
    assert result.tokens_or_bytes_used == 0
    assert calls == []


def test_direct_failure_is_tagged(key_store):
    key_store.save("user-key", validated=True)
    provider = CloudDirectProvider(
        key_store,
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(429, json={"error": {"status": "RESOURCE_EXHAUSTED"}}))),
    )
    with pytest.raises(InferenceFailure) as exc:
        asyncio.run(provider.run(_summary()))
    assert exc.value.kind is ErrorKind.CLOUD_RATE_LIMITED
    assert exc.value.provider is ProviderId.CLOUD_DIRECT
    assert exc.value.retry_after == 60
