from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from reader_ai.errors import ConfigError
from reader_ai.types import DEFAULT_PROVIDER_ORDER, ProviderId


class WorkerSettings(BaseModel):
    # Key into worker.runtime.SUMMARIZATION_MODELS, or a full Hugging Face repo id.
    summarization_model: str = "distilbart-cnn-6-6"
    translation_model_template: str = "Helsinki-NLP/opus-mt-{source}-{target}"
    # A locally fine-tuned checkpoint wins over the hub download when it has a config.json.
    model_dir: Optional[str] = None
    cache_dir: Optional[str] = None
    device: Literal["auto", "cpu", "cuda"] = "auto"
    max_input_tokens: int = Field(default=1024, ge=64, le=4096)
    default_source_language: str = "en"


class NativeSettings(BaseModel):
    enabled: bool = True
    base_url: str = "http://localhost:11434"
    model: str = "llama3.2:3b"
    allow_download: bool = True
    # Empty list means every language is accepted.
    supported_languages: list[str] = Field(default_factory=list)
    probe_timeout_seconds: float = 2.0
    timeout_seconds: float = 120.0


class CloudSettings(BaseModel):
    api_key: Optional[str] = None
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    proxy_model: str = "gemini-2.0-flash-lite"
    direct_model: str = "gemini-2.5-flash"
    timeout_seconds: float = 30.0
    output_language: str = "es"
    min_text_chars: int = 50
    max_text_chars: int = 50_000
    max_input_chars: int = 15_000
    default_retry_after_seconds: int = 60
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class RateLimitSettings(BaseModel):
    requests: int = Field(default=5, ge=1)
    window_seconds: int = Field(default=60 * 60, ge=1)
    sweep_interval_seconds: int = Field(default=10 * 60, ge=1)
    key_prefix: str = "ratelimit:summarize:"


class StoreSettings(BaseModel):
    redis_rest_url: Optional[str] = None
    redis_rest_token: Optional[str] = None
    timeout_seconds: float = 2.0

    @property
    def distributed(self) -> bool:
        return bool(self.redis_rest_url and self.redis_rest_token)


class ClientSettings(BaseModel):
    proxy_url: Optional[str] = "http://localhost:8000"
    proxy_timeout_seconds: float = 45.0
    key_file: str = "~/.config/reader-ai/gemini.json"
    provider_order: list[ProviderId] = Field(default_factory=lambda: list(DEFAULT_PROVIDER_ORDER))


class LoggingSettings(BaseModel):
    level: str = "INFO"
    log_dir: Optional[str] = "reader_ai/logs"
    requests_jsonl: str = "requests.jsonl"
    usage_json: str = "usage.json"


class Settings(BaseModel):
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    native: NativeSettings = Field(default_factory=NativeSettings)
    cloud: CloudSettings = Field(default_factory=CloudSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    client: ClientSettings = Field(default_factory=ClientSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# env var -> (section, field)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "GEMINI_API_KEY": ("cloud", "api_key"),
    "UPSTASH_REDIS_REST_URL": ("store", "redis_rest_url"),
    "UPSTASH_REDIS_REST_TOKEN": ("store", "redis_rest_token"),
    "READER_AI_PROXY_URL": ("client", "proxy_url"),
    "OLLAMA_BASE_URL": ("native", "base_url"),
    "READER_AI_LOG_LEVEL": ("logging", "level"),
}


def _apply_env(raw: dict[str, Any]) -> dict[str, Any]:
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            raw.setdefault(section, {})[key] = value
    return raw


def load_settings(config_path: Optional[str | Path] = None, *, use_env: bool = True) -> Settings:
    """Load settings from YAML (if present) and overlay environment variables.

    The config path defaults to $READER_AI_CONFIG, then the repo-root config.yaml.
    A `.env` file in the working directory is loaded before reading the environment.
    """
    if use_env:
        load_dotenv()
    if config_path is None:
        config_path = os.environ.get("READER_AI_CONFIG") if use_env else None
    path = Path(config_path) if config_path else Path(__file__).resolve().parents[1] / "config.yaml"

    raw: Any = {}
    if path.exists():
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    if use_env:
        raw = _apply_env(raw)
    try:
        return Settings.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e
