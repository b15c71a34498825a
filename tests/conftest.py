from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable, Iterator
from typing import Any

import pytest

from apkllama.cancellation import CancellationToken
from apkllama.config import InferenceSettings
from apkllama.orchestrator import AnalysisOrchestrator
from apkllama.types import Finding, Severity


def make_settings(**overrides: Any) -> InferenceSettings:
    base: dict[str, Any] = {
        "_env_file": None,
        "client_retries": 2,
        "client_retry_base_seconds": 0.0,
        "retry_base_delay_seconds": 0.01,
        "worker_backoff_cap_seconds": 0.05,
        "retry_backoff_cap_seconds": 0.05,
        "rate_limit_delay_seconds": 0.01,
        "service_unavailable_delay_seconds": 0.01,
        "poll_interval_seconds": 0.01,
        "stale_check_interval_seconds": 3600,
        "health_check_interval_seconds": 3600,
        "shutdown_grace_seconds": 1.0,
    }
    base.update(overrides)
    return InferenceSettings(**base)


def make_finding(finding_id: str = "F-1", **overrides: Any) -> Finding:
    fields: dict[str, Any] = {
        "id": finding_id,
        "title": f"Hardcoded secret {finding_id}",
        "severity": Severity.HIGH,
        "category": "Secrets",
        "file_path": "sources/com/example/Config.java",
        "evidence": 'String API_KEY = "AKIA..."',
        "line_number": 42,
    }
    fields.update(overrides)
    return Finding(**fields)


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def ok_body(text: str) -> bytes:
    return json.dumps({"model": "qwen2.5-coder:7b", "response": text, "done": True}).encode("utf-8")


class FakeResponse:
    def __init__(
        self,
        status_code: int = 200,
        lines: list[bytes] | None = None,
        text: str = "",
        on_line: Callable[[int], None] | None = None,
    ) -> None:
        self.status_code = status_code
        self._lines = lines or []
        self.text = text
        self.closed = False
        self._on_line = on_line

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def iter_lines(self) -> Iterator[bytes]:
        for index, line in enumerate(self._lines):
            yield line
            if self._on_line is not None:
                self._on_line(index)

    def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, transport: FakeTransport) -> None:
        self._transport = transport
        self.closed = False
        self.adapters: dict[str, Any] = {}

    def __enter__(self) -> FakeSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.closed = True

    def mount(self, prefix: str, adapter: Any) -> None:
        self.adapters[prefix] = adapter

    def get(self, url: str, timeout: object = None) -> FakeResponse:
        self._transport.probes.append(url)
        probe = self._transport.probe
        if isinstance(probe, BaseException):
            raise probe
        return FakeResponse(status_code=probe)

    def post(self, url: str, data: Any = None, headers: Any = None, timeout: Any = None, stream: bool = False) -> Any:
        chunks = iter(data)
        body = next(chunks)
        if self._transport.on_body_written is not None:
            self._transport.on_body_written()
        body += b"".join(chunks)
        self._transport.posts.append({"url": url, "json": json.loads(body), "timeout": timeout, "stream": stream})
        outcome = self._transport.next_outcome()
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome()
        return outcome


class FakeTransport:
    """Scripted stand-in for ``requests.Session``; the last outcome repeats."""

    def __init__(self, *outcomes: Any, probe: int | BaseException = 200) -> None:
        self.outcomes = list(outcomes)
        self.probe = probe
        self.sessions: list[FakeSession] = []
        self.posts: list[dict[str, Any]] = []
        self.probes: list[str] = []
        self.on_body_written: Callable[[], None] | None = None

    def session(self) -> FakeSession:
        session = FakeSession(self)
        self.sessions.append(session)
        return session

    def next_outcome(self) -> Any:
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]


class ScriptedBackend:
    """Fake generation backend; ``handler(prompt, call_number, token)`` decides each call."""

    def __init__(
        self,
        handler: Callable[[str, int, CancellationToken | None], str] | None = None,
        available: bool = True,
    ) -> None:
        self._handler = handler or (lambda prompt, call, token: f"report for call {call}")
        self.available = available
        self.calls: list[str] = []
        self.probes = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        self.probes += 1
        return self.available

    def generate(self, prompt: str, token: CancellationToken | None = None) -> str:
        with self._lock:
            self.calls.append(prompt)
            call = len(self.calls)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            return self._handler(prompt, call, token)
        finally:
            with self._lock:
                self.in_flight -= 1


class RecordingListener:
    def __init__(self) -> None:
        self.updates: list[tuple[str, str]] = []
        self.batches: list[list[str]] = []
        self.batch_done = threading.Event()
        self._lock = threading.Lock()

    def on_status_update(self, record: Any) -> None:
        with self._lock:
            self.updates.append((record.id, record.status.name))

    def on_batch_complete(self, records: Any) -> None:
        with self._lock:
            self.batches.append([record.id for record in records])
        self.batch_done.set()


@pytest.fixture()
def settings() -> InferenceSettings:
    return make_settings()


@pytest.fixture()
def orchestrator_factory(settings: InferenceSettings) -> Iterator[Callable[..., AnalysisOrchestrator]]:
    created: list[AnalysisOrchestrator] = []

    def _factory(backend: ScriptedBackend, **kwargs: Any) -> AnalysisOrchestrator:
        orchestrator = AnalysisOrchestrator(backend, kwargs.pop("settings", settings), **kwargs)
        created.append(orchestrator)
        return orchestrator

    yield _factory
    for orchestrator in created:
        orchestrator.shutdown()
