from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from reader_ai.types import ProviderId


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    MODEL_LOAD_FAILED = "model_load_failed"
    ENGINE_FAILURE = "engine_failure"
    RATE_LIMITED = "rate_limited"
    CLOUD_RATE_LIMITED = "cloud_rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    CONTENT_REJECTED = "content_rejected"
    PROVIDER_FAILURE = "provider_failure"
    UNAVAILABLE = "unavailable"


# Whether the caller may try the same request again without changing anything.
_RETRYABLE: dict[ErrorKind, bool] = {
    ErrorKind.INVALID_INPUT: False,
    ErrorKind.MODEL_LOAD_FAILED: True,
    ErrorKind.ENGINE_FAILURE: False,
    ErrorKind.RATE_LIMITED: True,
    ErrorKind.CLOUD_RATE_LIMITED: True,
    ErrorKind.SERVICE_UNAVAILABLE: False,
    ErrorKind.CONTENT_REJECTED: False,
    ErrorKind.PROVIDER_FAILURE: True,
    ErrorKind.UNAVAILABLE: False,
}


class ReaderAIError(Exception):
    """Base exception for the reader_ai package."""


class ConfigError(ReaderAIError):
    """Raised when the configuration file or environment is invalid."""


class RateLimitStoreError(ReaderAIError):
    """Raised when the distributed rate-limit store cannot be reached or answers garbage."""


class InferenceFailure(ReaderAIError):
    """A classified inference failure with a message suitable for display."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        retry_after: Optional[float] = None,
        retryable: Optional[bool] = None,
        provider: Optional["ProviderId"] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retry_after = retry_after
        self.retryable = _RETRYABLE[kind] if retryable is None else retryable
        self.provider = provider

    def with_provider(self, provider: "ProviderId") -> "InferenceFailure":
        if self.provider is None:
            self.provider = provider
        return self

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind.value, "message": self.message, "retryable": self.retryable}
        if self.retry_after is not None:
            out["retryAfter"] = self.retry_after
        if self.provider is not None:
            out["provider"] = self.provider.value
        return out

    def __repr__(self) -> str:
        return f"InferenceFailure({self.kind.value!r}, {self.message!r}, retry_after={self.retry_after!r})"


def invalid_input(message: str) -> InferenceFailure:
    return InferenceFailure(ErrorKind.INVALID_INPUT, message)


__all__ = [
    "ErrorKind",
    "ReaderAIError",
    "ConfigError",
    "RateLimitStoreError",
    "InferenceFailure",
    "invalid_input",
]
