from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from reader_ai.errors import invalid_input


MIN_SUMMARY_CHARS = 50
MAX_TEXT_CHARS = 50_000


class Task(str, Enum):
    SUMMARIZE = "summarize"
    TRANSLATE = "translate"


class SummaryLength(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"
    EXTENDED = "extended"

    @classmethod
    def parse(cls, value: object, default: Optional["SummaryLength"] = None) -> "SummaryLength":
        """Lenient parse: unknown or missing values fall back to `default` (medium)."""
        fallback = default or cls.MEDIUM
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return fallback
        return fallback


class SummaryStyle(str, Enum):
    TLDR = "tldr"
    KEY_POINTS = "key-points"
    TEASER = "teaser"
    HEADLINE = "headline"


class ProviderId(str, Enum):
    # Declaration order is the default preference: cheapest / most private first.
    ON_DEVICE_WORKER = "on-device-worker"
    PLATFORM_NATIVE = "platform-native"
    CLOUD_PROXY = "cloud-proxy"
    CLOUD_DIRECT = "cloud-direct"


DEFAULT_PROVIDER_ORDER: tuple[ProviderId, ...] = tuple(ProviderId)


class Availability(str, Enum):
    AVAILABLE = "available"
    DOWNLOADABLE = "downloadable"
    DOWNLOADING = "downloading"
    UNAVAILABLE = "unavailable"
    NOT_SUPPORTED = "not-supported"


@dataclass(frozen=True)
class SummarizeParams:
    length: SummaryLength = SummaryLength.MEDIUM
    style: SummaryStyle = SummaryStyle.TLDR
    output_language: Optional[str] = None


@dataclass(frozen=True)
class TranslateParams:
    target_language: str
    source_language: str = "auto"


TaskParameters = Union[SummarizeParams, TranslateParams]

_PARAMS_FOR_TASK = {Task.SUMMARIZE: SummarizeParams, Task.TRANSLATE: TranslateParams}


@dataclass(frozen=True)
class ProviderCapability:
    id: ProviderId
    availability: Availability
    detail: Optional[str] = None

    @property
    def usable(self) -> bool:
        return self.availability in (Availability.AVAILABLE, Availability.DOWNLOADABLE, Availability.DOWNLOADING)


@dataclass(frozen=True)
class InferenceRequest:
    text: str
    task: Task
    parameters: TaskParameters
    requested_provider: Optional[ProviderId] = None
    content_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.text, str) or not self.text.strip():
            raise invalid_input("No text provided")
        if len(self.text) > MAX_TEXT_CHARS:
            raise invalid_input("Text must be less than 50,000 characters")
        expected = _PARAMS_FOR_TASK[self.task]
        if not isinstance(self.parameters, expected):
            raise invalid_input(f"{self.task.value} requires {expected.__name__}")
        if self.task is Task.SUMMARIZE and len(self.text.strip()) < MIN_SUMMARY_CHARS:
            raise invalid_input("Text must be at least 50 characters")
        if self.task is Task.TRANSLATE and not self.parameters.target_language:
            raise invalid_input("Missing target language")

    @property
    def content_identity(self) -> str:
        if self.content_id:
            return self.content_id
        return hashlib.sha256(self.text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class InferenceResult:
    output: str
    provider_used: ProviderId
    tokens_or_bytes_used: Optional[int] = None
    completed_at: float = field(default_factory=time.time)
    model: Optional[str] = None


__all__ = [
    "MIN_SUMMARY_CHARS",
    "MAX_TEXT_CHARS",
    "Task",
    "SummaryLength",
    "SummaryStyle",
    "ProviderId",
    "DEFAULT_PROVIDER_ORDER",
    "Availability",
    "SummarizeParams",
    "TranslateParams",
    "TaskParameters",
    "ProviderCapability",
    "InferenceRequest",
    "InferenceResult",
]
