from __future__ import annotations

import pytest

from reader_ai.config import Settings, load_settings
from reader_ai.errors import ConfigError, ErrorKind, InferenceFailure
from reader_ai.types import (
    InferenceRequest,
    ProviderId,
    SummarizeParams,
    SummaryLength,
    Task,
    TranslateParams,
)


def test_yaml_with_env_overlay(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        "rate_limit:\n  requests: 10\nclient:\n  provider_order: [cloud-proxy]\nnative:\n  enabled: false\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("GEMINI_API_KEY", "from-env")
    monkeypatch.setenv("UPSTASH_REDIS_REST_URL", "https://x.upstash.io")
    monkeypatch.setenv("UPSTASH_REDIS_REST_TOKEN", "tok")

    settings = load_settings(cfg)

    assert settings.rate_limit.requests == 10
    assert settings.rate_limit.window_seconds == 3600
    assert settings.client.provider_order == [ProviderId.CLOUD_PROXY]
    assert settings.native.enabled is False
    assert settings.cloud.api_key == "from-env"
    assert settings.store.distributed


def test_env_can_be_ignored(tmp_path, monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "from-env")
    settings = load_settings(tmp_path / "missing.yaml", use_env=False)
    assert settings == Settings()


def test_config_env_var_selects_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    cfg = tmp_path / "other.yaml"
    cfg.write_text("cloud:\n  output_language: fr\n", encoding="utf-8")
    monkeypatch.setenv("READER_AI_CONFIG", str(cfg))
    assert load_settings().cloud.output_language == "fr"


def test_non_mapping_config_is_rejected(tmp_path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings(cfg, use_env=False)


def test_invalid_values_are_rejected(tmp_path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("rate_limit:\n  requests: 0\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_settings(cfg, use_env=False)


def test_repo_config_matches_defaults():
    assert load_settings(use_env=False) == Settings()


@pytest.mark.parametrize(
    "text,task,params,message",
    [
        ("   ", Task.SUMMARIZE, SummarizeParams(), "No text provided"),
        ("short text", Task.SUMMARIZE, SummarizeParams(), "Text must be at least 50 characters"),
        ("x" * 50_001, Task.SUMMARIZE, SummarizeParams(), "Text must be less than 50,000 characters"),
        ("hola", Task.TRANSLATE, TranslateParams(""), "Missing target language"),
        ("hola", Task.TRANSLATE, SummarizeParams(), "translate requires TranslateParams"),
    ],
)
def test_request_validation(text, task, params, message):
    with pytest.raises(InferenceFailure) as exc:
        InferenceRequest(text=text, task=task, parameters=params)
    assert exc.value.kind is ErrorKind.INVALID_INPUT
    assert exc.value.message == message


def test_short_text_is_fine_for_translation():
    request = InferenceRequest(text="hola", task=Task.TRANSLATE, parameters=TranslateParams("en"))
    assert len(request.content_identity) == 64


def test_summary_length_parse():
    assert SummaryLength.parse("LONG") is SummaryLength.LONG
    assert SummaryLength.parse("huge") is SummaryLength.MEDIUM
    assert SummaryLength.parse(None) is SummaryLength.MEDIUM
    assert SummaryLength.parse(3, default=SummaryLength.SHORT) is SummaryLength.SHORT
