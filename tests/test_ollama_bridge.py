from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from reader_ai.config import NativeSettings
from reader_ai.errors import ErrorKind, InferenceFailure
from reader_ai.native.ollama import OllamaBridge
from reader_ai.providers.platform import PlatformNativeProvider
from reader_ai.types import (
    Availability,
    InferenceRequest,
    ProviderId,
    SummarizeParams,
    Task,
    TranslateParams,
)
from reader_ai.worker.progress import ProgressStatus


ARTICLE = (
    "Heavy rain caused flooding in several coastal towns overnight, and emergency services "
    "evacuated more than two hundred residents from low-lying neighbourhoods."
)

PULL_LINES = [
    {"status": "pulling manifest"},
    {"status": "pulling abc", "digest": "sha256:abc", "total": 1000, "completed": 250},
    {"status": "pulling abc", "digest": "sha256:abc", "total": 1000, "completed": 1000},
    {"status": "verifying sha256 digest"},
    {"status": "success"},
]


def _ndjson(lines) -> bytes:
    return "\n".join(json.dumps(line) for line in lines).encode("utf-8") + b"\n"


class FakeOllama:
    def __init__(self, installed=(), pull_lines=PULL_LINES) -> None:
        self.installed = list(installed)
        self.pull_lines = pull_lines
        self.generated: list[dict] = []
        self.pulls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": name} for name in self.installed]})
        if path == "/api/pull":
            self.pulls += 1
            assert json.loads(request.content) == {"model": "llama3.2:3b", "stream": True}
            if any(line.get("status") == "success" for line in self.pull_lines):
                self.installed.append("llama3.2:3b")
            return httpx.Response(200, content=_ndjson(self.pull_lines))
        if path == "/api/generate":
            body = json.loads(request.content)
            self.generated.append(body)
            if body["model"] not in self.installed:
                return httpx.Response(404, json={"error": "model not found"})
            return httpx.Response(200, json={"response": " Resumen local. ", "eval_count": 30, "prompt_eval_count": 70})
        return httpx.Response(404)


def _bridge(handler, **settings) -> OllamaBridge:
    return OllamaBridge(NativeSettings(**settings), client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_availability_states():
    assert asyncio.run(_bridge(FakeOllama(["llama3.2:3b"])).availability()) is Availability.AVAILABLE
    assert asyncio.run(_bridge(FakeOllama()).availability()) is Availability.DOWNLOADABLE
    assert asyncio.run(_bridge(FakeOllama(), allow_download=False).availability()) is Availability.UNAVAILABLE
    assert asyncio.run(_bridge(FakeOllama(), enabled=False).availability()) is Availability.NOT_SUPPORTED

    limited = _bridge(FakeOllama(["llama3.2:3b"]), supported_languages=["en", "ES"])
    assert asyncio.run(limited.availability("es")) is Availability.AVAILABLE
    assert asyncio.run(limited.availability("ja")) is Availability.UNAVAILABLE


def test_unreachable_daemon_is_not_supported():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert asyncio.run(_bridge(handler).availability()) is Availability.NOT_SUPPORTED


def test_latest_tag_matches_untagged_model():
    bridge = _bridge(FakeOllama(["mistral:latest"]), model="mistral")
    assert asyncio.run(bridge.availability()) is Availability.AVAILABLE


def test_pull_reports_progress():
    fake = FakeOllama()
    bridge = _bridge(fake)
    events = []

    asyncio.run(bridge.ensure_model(events.append))

    assert fake.pulls == 1
    assert [e.status for e in events] == [
        ProgressStatus.INITIATE,
        ProgressStatus.PROGRESS,
        ProgressStatus.PROGRESS,
        ProgressStatus.DONE,
    ]
    assert [(e.loaded, e.total) for e in events if e.status is ProgressStatus.PROGRESS] == [(250, 1000), (1000, 1000)]
    assert asyncio.run(bridge.availability()) is Availability.AVAILABLE


def test_pull_error_line_fails():
    fake = FakeOllama(pull_lines=[{"status": "pulling manifest"}, {"error": "pull model manifest: file does not exist"}])
    with pytest.raises(InferenceFailure) as exc:
        asyncio.run(_bridge(fake).ensure_model())
    assert exc.value.kind is ErrorKind.MODEL_LOAD_FAILED
    assert "file does not exist" in exc.value.message


def test_no_download_allowed():
    with pytest.raises(InferenceFailure) as exc:
        asyncio.run(_bridge(FakeOllama(), allow_download=False).ensure_model())
    assert exc.value.kind is ErrorKind.MODEL_LOAD_FAILED


def test_pull_in_progress_is_downloading_and_shared():
    async def scenario():
        release = asyncio.Event()
        installed: list[str] = []
        pulls = []

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/tags":
                return httpx.Response(200, json={"models": [{"name": n} for n in installed]})
            pulls.append(request)
            await release.wait()
            installed.append("llama3.2:3b")
            return httpx.Response(200, content=_ndjson(PULL_LINES))

        bridge = _bridge(handler)
        first_events, second_events = [], []
        first = asyncio.create_task(bridge.ensure_model(first_events.append))
        while not bridge.pulling or not pulls:
            await asyncio.sleep(0.01)

        during = await bridge.availability()
        second = asyncio.create_task(bridge.ensure_model(second_events.append))
        await asyncio.sleep(0.01)
        release.set()
        await asyncio.gather(first, second)
        return during, len(pulls), first_events, second_events, await bridge.availability()

    during, pulls, first_events, second_events, after = asyncio.run(scenario())

    assert during is Availability.DOWNLOADING
    assert pulls == 1
    assert first_events[-1].status is ProgressStatus.DONE
    # The second caller attached mid-pull and still sees the rest of it.
    assert second_events[-1].status is ProgressStatus.DONE
    assert ProgressStatus.INITIATE not in [e.status for e in second_events]
    assert after is Availability.AVAILABLE


def test_generate_errors():
    assert asyncio.run(_bridge(FakeOllama(["llama3.2:3b"])).generate("hi")) == ("Resumen local.", 100)

    with pytest.raises(InferenceFailure) as exc:
        asyncio.run(_bridge(FakeOllama()).generate("hi"))
    assert exc.value.kind is ErrorKind.MODEL_LOAD_FAILED

    with pytest.raises(InferenceFailure) as exc:
        asyncio.run(_bridge(lambda r: httpx.Response(500, text="boom")).generate("hi"))
    assert exc.value.kind is ErrorKind.ENGINE_FAILURE

    with pytest.raises(InferenceFailure) as exc:
        asyncio.run(_bridge(lambda r: httpx.Response(200, json={"response": "  "})).generate("hi"))
    assert exc.value.kind is ErrorKind.ENGINE_FAILURE


def test_platform_provider_downloads_then_summarizes():
    fake = FakeOllama()
    provider = PlatformNativeProvider(_bridge(fake), default_output_language="es")
    request = InferenceRequest(text=ARTICLE, task=Task.SUMMARIZE, parameters=SummarizeParams())
    events = []

    result = asyncio.run(provider.run(request, events.append))

    assert result.output == "Resumen local."
    assert result.provider_used is ProviderId.PLATFORM_NATIVE
    assert result.tokens_or_bytes_used == 100
    assert result.model == "llama3.2:3b"
    assert "in Spanish" in fake.generated[0]["prompt"]
    percents = [e.percent for e in events]
    assert percents == sorted(percents) and percents[-1] == 100.0


def test_platform_provider_uses_target_language_for_availability():
    provider = PlatformNativeProvider(_bridge(FakeOllama(["llama3.2:3b"]), supported_languages=["en", "es"]))
    assert asyncio.run(provider.availability(Task.TRANSLATE, TranslateParams("de"))) is Availability.UNAVAILABLE
    assert asyncio.run(provider.availability(Task.SUMMARIZE, SummarizeParams())) is Availability.AVAILABLE


def test_platform_translation_prompt():
    fake = FakeOllama(["llama3.2:3b"])
    provider = PlatformNativeProvider(_bridge(fake))
    request = InferenceRequest(text=ARTICLE, task=Task.TRANSLATE, parameters=TranslateParams("fr", "en"))

    asyncio.run(provider.run(request))

    assert fake.generated[0]["prompt"].startswith("Translate the following text from English to French.")


def test_platform_failure_is_tagged():
    provider = PlatformNativeProvider(_bridge(lambda r: httpx.Response(200, json={"models": []}), allow_download=False))
    request = InferenceRequest(text=ARTICLE, task=Task.SUMMARIZE, parameters=SummarizeParams())
    with pytest.raises(InferenceFailure) as exc:
        asyncio.run(provider.run(request))
    assert exc.value.provider is ProviderId.PLATFORM_NATIVE
