from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from apkllama.config import InferenceSettings


def test_defaults_match_local_ollama_setup() -> None:
    settings = InferenceSettings(_env_file=None)

    assert settings.ollama_endpoint == "http://localhost:11434"
    assert settings.ollama_model == "qwen2.5-coder:7b"
    assert settings.connect_timeout_seconds == 17.5
    assert settings.read_timeout_seconds == 52.5
    assert settings.max_concurrent_requests == 1
    assert settings.max_retries == 3
    assert settings.stale_after_seconds == 63.0
    assert settings.report_path == Path("ai_report.json")


def test_environment_overrides_are_parsed_and_normalized(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OLLAMA_ENDPOINT", "  http://gpu-box:11434/ ")
    monkeypatch.setenv("OLLAMA_MODEL", " llama3:8b ")
    monkeypatch.setenv("MAX_RETRIES", "5")
    monkeypatch.setenv("FINDINGS_PATH", "scan/findings.json")
    monkeypatch.setenv("LOG_FORMAT", "console")

    settings = InferenceSettings(_env_file=None)

    assert settings.ollama_endpoint == "http://gpu-box:11434"
    assert settings.ollama_model == "llama3:8b"
    assert settings.max_retries == 5
    assert settings.findings_path == Path("scan/findings.json")
    assert settings.log_format == "console"


def test_endpoint_must_be_http_url() -> None:
    with pytest.raises(ValidationError, match="http"):
        InferenceSettings(_env_file=None, ollama_endpoint="localhost:11434")


def test_read_timeout_cannot_undercut_connect_timeout() -> None:
    with pytest.raises(ValidationError, match="READ_TIMEOUT_SECONDS"):
        InferenceSettings(_env_file=None, connect_timeout_seconds=30, read_timeout_seconds=10)


def test_concurrency_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        InferenceSettings(_env_file=None, max_concurrent_requests=0)
