from __future__ import annotations

import json
import math
from collections.abc import Callable, Iterator
from time import perf_counter
from typing import Any

import requests
import structlog

from apkllama.cancellation import CancellationToken
from apkllama.config import InferenceSettings
from apkllama.errors import (
    RETRYABLE_KINDS,
    BackendConnectionError,
    Cancelled,
    EmptyResponse,
    FailureKind,
    InferenceError,
    InferenceTimeout,
    PromptValidationError,
    RateLimited,
    ServiceUnavailable,
    UnknownServerError,
    message_suggests_retry,
)
from apkllama.transport import LiveConnections, TrackingAdapter

logger = structlog.get_logger(__name__)

GENERATE_PATH = "/api/generate"
TAGS_PATH = "/api/tags"

_RESPONSE_MARKER = '"response":"'


def estimate_token_count(text: str | None) -> int:
    """Rough token estimate used for telemetry (four characters per token)."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def extract_response(body: str) -> str:
    """Pull the generated text out of a non-streaming generate envelope.

    The envelope is parsed as JSON when possible. Bodies that are not valid
    JSON (truncated reads, proxies that append noise) fall back to locating
    the ``response`` field by its delimiters.
    """
    try:
        envelope = json.loads(body)
    except ValueError:
        envelope = None
    if isinstance(envelope, dict) and isinstance(envelope.get("response"), str):
        return envelope["response"]

    start = body.find(_RESPONSE_MARKER)
    if start < 0:
        return body
    start += len(_RESPONSE_MARKER)
    end = body.find('","', start)
    if end < 0:
        end = body.find('"}', start)
    if end < 0:
        return body
    return body[start:end].replace("\\n", "\n").replace('\\"', '"').replace("\\\\", "\\")


class InferenceClient:
    provider = "ollama"

    def __init__(
        self,
        settings: InferenceSettings,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        # Copied once: a settings change needs a new client/orchestrator pair.
        self._endpoint = settings.ollama_endpoint
        self._model = settings.ollama_model
        self._connect_timeout = settings.connect_timeout_seconds
        self._read_timeout = settings.read_timeout_seconds
        self._probe_timeout = settings.probe_timeout_seconds
        self._max_tokens = settings.max_tokens
        self._temperature = settings.temperature
        self._max_prompt_chars = settings.max_prompt_chars
        self._retries = settings.client_retries
        self._retry_base_seconds = settings.client_retry_base_seconds
        self._session_factory = session_factory

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def model(self) -> str:
        return self._model

    def is_available(self) -> bool:
        url = f"{self._endpoint}{TAGS_PATH}"
        try:
            with self._session_factory() as session:
                response = session.get(url, timeout=(self._probe_timeout, self._probe_timeout))
                return response.status_code == 200
        except requests.RequestException as exc:
            logger.info("inference_probe_failed", endpoint=self._endpoint, error=str(exc))
            return False

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, InferenceError):
            if exc.kind in RETRYABLE_KINDS:
                return True
            if exc.kind in (FailureKind.VALIDATION, FailureKind.CANCELLED):
                return False
        return message_suggests_retry(exc)

    def validate_prompt(self, prompt: str | None) -> None:
        if prompt is None or not prompt.strip():
            raise PromptValidationError("Prompt cannot be empty")
        if len(prompt) > self._max_prompt_chars:
            raise PromptValidationError(f"Prompt too long. Maximum {self._max_prompt_chars} characters.")

    def generate(self, prompt: str, token: CancellationToken | None = None) -> str:
        self.validate_prompt(prompt)
        token = token or CancellationToken()

        attempt = 0
        while True:
            started = perf_counter()
            try:
                text = self._generate_once(prompt, token)
            except BackendConnectionError as exc:
                if attempt >= self._retries or not self.is_retryable(exc):
                    raise
                attempt += 1
                delay = self._retry_base_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "inference_connection_retry",
                    attempt=attempt,
                    max_retries=self._retries,
                    delay_seconds=delay,
                    error=str(exc),
                )
                if token.wait(delay):
                    raise Cancelled("Request cancelled during connection retry backoff") from exc
                continue
            logger.info(
                "inference_generated",
                model=self._model,
                prompt_tokens=estimate_token_count(prompt),
                response_tokens=estimate_token_count(text),
                duration_ms=round((perf_counter() - started) * 1000, 2),
            )
            return text

    def _payload(self, prompt: str) -> dict[str, Any]:
        return {
            "model": self._model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self._temperature,
                "num_predict": self._max_tokens,
            },
        }

    def _body_chunks(self, body: bytes, token: CancellationToken) -> Iterator[bytes]:
        yield body
        # Resumed by the transport once the body has been written.
        token.raise_if_cancelled("after_body")

    def _generate_once(self, prompt: str, token: CancellationToken) -> str:
        token.raise_if_cancelled("before_send")
        body = json.dumps(self._payload(prompt)).encode("utf-8")
        url = f"{self._endpoint}{GENERATE_PATH}"

        live = LiveConnections()
        with self._session_factory() as session, token.bind(session), token.bind(live):
            adapter = TrackingAdapter(live)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            try:
                response = session.post(
                    url,
                    data=self._body_chunks(body, token),
                    headers={"Content-Type": "application/json", "Accept": "application/json"},
                    timeout=(self._connect_timeout, self._read_timeout),
                    stream=True,
                )
            except requests.Timeout as exc:
                self._raise_if_torn_down(token, exc)
                raise InferenceTimeout(f"Inference request timed out: {exc}") from exc
            except requests.RequestException as exc:
                self._raise_if_torn_down(token, exc)
                raise BackendConnectionError(f"Connection to inference backend failed: {exc}") from exc

            with response, token.bind(response):
                token.raise_if_cancelled("before_response")
                self._check_status(response)
                raw = self._read_body(response, token)

        text = extract_response(raw)
        if not text or not text.strip():
            raise EmptyResponse("Empty response from inference backend")
        return text

    def _check_status(self, response: requests.Response) -> None:
        if response.status_code == 200:
            return
        if response.status_code == 429:
            raise RateLimited("Rate limit exceeded. Please try again later.", status_code=429)
        if response.status_code == 503:
            raise ServiceUnavailable("Service unavailable. The inference backend might be busy.", status_code=503)
        raise UnknownServerError(
            f"Inference backend returned status {response.status_code}: {response.text[:400]}",
            status_code=response.status_code,
        )

    def _read_body(self, response: requests.Response, token: CancellationToken) -> str:
        chunks: list[bytes] = []
        try:
            for line in response.iter_lines():
                token.raise_if_cancelled("during_read")
                if line:
                    chunks.append(line)
        except requests.Timeout as exc:
            self._raise_if_torn_down(token, exc)
            raise InferenceTimeout(f"Inference response read timed out: {exc}") from exc
        except (requests.RequestException, OSError, ValueError, AttributeError) as exc:
            # A force-closed response surfaces as any of these depending on timing.
            self._raise_if_torn_down(token, exc)
            raise BackendConnectionError(f"Inference response stream broken: {exc}") from exc
        token.raise_if_cancelled("during_read")
        return b"".join(chunks).decode("utf-8", errors="replace")

    @staticmethod
    def _raise_if_torn_down(token: CancellationToken, exc: BaseException) -> None:
        if token.cancelled:
            raise Cancelled("Request cancelled while the connection was open") from exc
