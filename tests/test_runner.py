from __future__ import annotations

import threading

import pytest

from apkllama import runner as runner_module
from apkllama.errors import BackendUnavailableError, BatchTimeoutError
from apkllama.runner import BatchRunner
from apkllama.types import RequestStatus
from conftest import ScriptedBackend, make_finding, make_settings


@pytest.mark.asyncio
async def test_run_submits_rendered_prompts_and_waits_for_batch(orchestrator_factory, settings) -> None:
    backend = ScriptedBackend(lambda prompt, call, token: f"report #{call}")
    orchestrator = orchestrator_factory(backend)
    runner = BatchRunner(settings=settings, client=backend, orchestrator=orchestrator)

    records = await runner.run([make_finding("A"), make_finding("B")], "{} | {} | {} | {} | {}")

    assert [record.finding_id for record in records] == ["A", "B"]
    assert all(record.status is RequestStatus.COMPLETED for record in records)
    assert backend.calls[0] == 'Hardcoded secret A | High | Secrets | sources/com/example/Config.java | String API_KEY = "AKIA..."'
    assert orchestrator.progress()["percent"] == 100


@pytest.mark.asyncio
async def test_run_refuses_to_submit_when_backend_is_down(orchestrator_factory, settings) -> None:
    backend = ScriptedBackend(available=False)
    orchestrator = orchestrator_factory(backend)
    runner = BatchRunner(settings=settings, client=backend, orchestrator=orchestrator)

    with pytest.raises(BackendUnavailableError, match="ollama serve"):
        await runner.run([make_finding()], "{} {} {} {} {}")

    assert orchestrator.requests() == []
    assert backend.calls == []


@pytest.mark.asyncio
async def test_run_with_no_findings_returns_empty(orchestrator_factory, settings) -> None:
    backend = ScriptedBackend()
    runner = BatchRunner(settings=settings, client=backend, orchestrator=orchestrator_factory(backend))

    assert await runner.run([], "{} {} {} {} {}") == []
    assert backend.probes == 1


@pytest.mark.asyncio
async def test_run_raises_when_batch_exceeds_timeout(orchestrator_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(runner_module, "_PROGRESS_LOG_SECONDS", 0.05)
    release = threading.Event()

    def handler(prompt: str, call: int, token: object) -> str:
        release.wait(5)
        return "late"

    settings = make_settings(batch_timeout_seconds=0.1)
    backend = ScriptedBackend(handler)
    orchestrator = orchestrator_factory(backend, settings=settings)
    runner = BatchRunner(settings=settings, client=backend, orchestrator=orchestrator)

    try:
        with pytest.raises(BatchTimeoutError):
            await runner.run([make_finding()], "{} {} {} {} {}")
    finally:
        release.set()
