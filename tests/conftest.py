from __future__ import annotations

import threading
from typing import Optional

import pytest

from reader_ai.config import Settings
from reader_ai.providers.base import Provider
from reader_ai.types import Availability, InferenceRequest, InferenceResult, ProviderId
from reader_ai.worker.progress import ProgressEvent, ProgressStatus
from reader_ai.worker.runtime import EngineOutput, ModelKey


_ENV_VARS = (
    "GEMINI_API_KEY",
    "UPSTASH_REDIS_REST_URL",
    "UPSTASH_REDIS_REST_TOKEN",
    "READER_AI_PROXY_URL",
    "OLLAMA_BASE_URL",
    "READER_AI_LOG_LEVEL",
    "READER_AI_CONFIG",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.cloud.api_key = "test-key"
    s.logging.log_dir = None
    return s


class Clock:
    def __init__(self, t: float = 1_700_000_000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


@pytest.fixture
def clock() -> Clock:
    return Clock()


class FakeEngine:
    def __init__(self, key: ModelKey, log: list, gate: Optional[threading.Event] = None) -> None:
        self.key = key
        self.log = log
        self.gate = gate
        self.closed = False

    def run(self, text, params) -> EngineOutput:
        if text == "slow" and self.gate is not None:
            self.gate.wait(5)
        if text == "boom":
            raise MemoryError("out of memory")
        self.log.append(text)
        return EngineOutput(text=f"{self.key.model_id}:{text}", tokens=len(text.split()))

    def close(self) -> None:
        self.closed = True


class FakeLoader:
    """Stands in for the transformers loader; emits a byte-progress sequence per load."""

    def __init__(self) -> None:
        self.loaded: list[ModelKey] = []
        self.engines: list[FakeEngine] = []
        self.log: list[str] = []
        self.fail_for: set[str] = set()
        self.oom_for: set[str] = set()
        self.gate: Optional[threading.Event] = None
        self.load_gate: Optional[threading.Event] = None

    def __call__(self, key: ModelKey, on_progress) -> FakeEngine:
        on_progress(ProgressEvent(ProgressStatus.INITIATE, file=key.model_id))
        if self.load_gate is not None:
            self.load_gate.wait(5)
        if key.model_id in self.fail_for:
            raise OSError("network unreachable")
        if key.model_id in self.oom_for:
            raise MemoryError("out of memory while loading")
        on_progress(ProgressEvent(ProgressStatus.PROGRESS, loaded=60, total=100, file="model.safetensors"))
        # A smaller file finishing later must not move the bar backwards.
        on_progress(ProgressEvent(ProgressStatus.PROGRESS, loaded=30, total=100, file="tokenizer.json"))
        on_progress(ProgressEvent(ProgressStatus.PROGRESS, loaded=100, total=100, file="tokenizer.json"))
        on_progress(ProgressEvent(ProgressStatus.DONE, file=key.model_id))
        self.loaded.append(key)
        engine = FakeEngine(key, self.log, self.gate)
        self.engines.append(engine)
        return engine


@pytest.fixture
def loader() -> FakeLoader:
    return FakeLoader()


@pytest.fixture
def host(loader):
    from reader_ai.worker.host import InferenceWorkerHost

    h = InferenceWorkerHost(loader)
    yield h
    h.close()


class StubProvider(Provider):
    def __init__(
        self,
        pid: ProviderId,
        availability: Availability = Availability.AVAILABLE,
        *,
        failure: Optional[BaseException] = None,
        output: str = "stub output",
    ) -> None:
        self.id = pid
        self._availability = availability
        self.failure = failure
        self.output = output
        self.checks = 0
        self.calls = 0
        self.broken_check = False

    async def availability(self, task, params) -> Availability:
        self.checks += 1
        if self.broken_check:
            raise RuntimeError("probe exploded")
        return self._availability

    async def run(self, request: InferenceRequest, on_progress=None) -> InferenceResult:
        self.calls += 1
        if on_progress is not None and self._availability is not Availability.AVAILABLE:
            on_progress(ProgressEvent(ProgressStatus.PROGRESS, loaded=5, total=10, percent=50.0))
            on_progress(ProgressEvent(ProgressStatus.READY, percent=100.0))
        if self.failure is not None:
            raise self.failure
        return InferenceResult(output=self.output, provider_used=self.id, tokens_or_bytes_used=3)


@pytest.fixture
def make_provider():
    return StubProvider
