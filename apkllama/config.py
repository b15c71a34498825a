from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class InferenceSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"

    ollama_endpoint: str = "http://localhost:11434"
    ollama_model: str = "qwen2.5-coder:7b"
    connect_timeout_seconds: float = Field(default=17.5, gt=0)
    read_timeout_seconds: float = Field(default=52.5, gt=0)
    probe_timeout_seconds: float = Field(default=5.0, gt=0)
    max_tokens: int = Field(default=2000, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_prompt_chars: int = Field(default=10000, ge=1)

    client_retries: int = Field(default=2, ge=0)
    client_retry_base_seconds: float = Field(default=1.0, ge=0)

    max_concurrent_requests: int = Field(default=1, ge=1)
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=3.5, ge=0)
    worker_backoff_cap_seconds: float = Field(default=10.0, ge=0)
    retry_backoff_cap_seconds: float = Field(default=30.0, ge=0)
    rate_limit_delay_seconds: float = Field(default=5.0, ge=0)
    service_unavailable_delay_seconds: float = Field(default=10.0, ge=0)
    request_timeout_seconds: float = Field(default=53.0, gt=0)
    stale_grace_seconds: float = Field(default=10.0, ge=0)
    stale_check_interval_seconds: float = Field(default=30.0, gt=0)
    health_check_interval_seconds: float = Field(default=60.0, gt=0)
    max_idle_seconds: float = Field(default=300.0, ge=0)
    poll_interval_seconds: float = Field(default=0.1, gt=0)
    shutdown_grace_seconds: float = Field(default=5.0, ge=0)

    findings_path: Path | None = None
    report_path: Path = Path("ai_report.json")
    prompt_template_path: Path | None = None
    batch_timeout_seconds: float | None = None

    @field_validator("ollama_endpoint", "ollama_model", "log_level", mode="before")
    @classmethod
    def _strip_env_strings(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("ollama_endpoint")
    @classmethod
    def _normalize_endpoint(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("OLLAMA_ENDPOINT must be an http(s) URL")
        return value.rstrip("/")

    @model_validator(mode="after")
    def _validate_timeouts(self) -> InferenceSettings:
        if self.read_timeout_seconds < self.connect_timeout_seconds:
            raise ValueError("READ_TIMEOUT_SECONDS must not be shorter than CONNECT_TIMEOUT_SECONDS")
        return self

    @property
    def stale_after_seconds(self) -> float:
        return self.request_timeout_seconds + self.stale_grace_seconds


@lru_cache(maxsize=1)
def get_settings() -> InferenceSettings:
    return InferenceSettings()
