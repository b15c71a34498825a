from __future__ import annotations

import threading
from collections.abc import Sequence
from time import perf_counter

import anyio
import structlog

from apkllama.config import InferenceSettings
from apkllama.errors import BackendUnavailableError, BatchTimeoutError
from apkllama.orchestrator import AnalysisOrchestrator, GenerationBackend
from apkllama.record import RequestRecord
from apkllama.types import Finding

logger = structlog.get_logger(__name__)

_PROGRESS_LOG_SECONDS = 5.0


class _BatchWaiter:
    def __init__(self) -> None:
        self.done = threading.Event()

    def on_status_update(self, record: RequestRecord) -> None:
        logger.debug("request_status", request_id=record.id, status=record.status.name)

    def on_batch_complete(self, records: Sequence[RequestRecord]) -> None:
        self.done.set()


class BatchRunner:
    """Submit a set of findings and wait, off the event loop, for the batch to finish."""

    def __init__(
        self,
        *,
        settings: InferenceSettings,
        client: GenerationBackend,
        orchestrator: AnalysisOrchestrator,
    ) -> None:
        self._settings = settings
        self._client = client
        self._orchestrator = orchestrator

    async def run(self, findings: Sequence[Finding], template: str) -> list[RequestRecord]:
        probe_started = perf_counter()
        available = await anyio.to_thread.run_sync(self._client.is_available)
        logger.info(
            "backend_probe",
            available=available,
            duration_ms=round((perf_counter() - probe_started) * 1000, 2),
        )
        if not available:
            raise BackendUnavailableError(
                f"Inference backend at {self._settings.ollama_endpoint} is not available. "
                "Make sure Ollama is running (ollama serve)."
            )
        if not findings:
            logger.info("batch_empty")
            return []

        waiter = _BatchWaiter()
        self._orchestrator.add_listener(waiter)
        started = perf_counter()
        try:
            records = self._orchestrator.submit_batch(findings, template)
            await self._wait(waiter, started)
        finally:
            self._orchestrator.remove_listener(waiter)

        logger.info(
            "batch_finished",
            duration_ms=round((perf_counter() - started) * 1000, 2),
            **self._orchestrator.progress(),
        )
        return records

    async def _wait(self, waiter: _BatchWaiter, started: float) -> None:
        timeout = self._settings.batch_timeout_seconds
        while not await anyio.to_thread.run_sync(waiter.done.wait, _PROGRESS_LOG_SECONDS):
            elapsed = perf_counter() - started
            logger.info("batch_progress", elapsed_seconds=round(elapsed, 1), **self._orchestrator.progress())
            if timeout is not None and elapsed >= timeout:
                raise BatchTimeoutError(f"Batch did not finish within {timeout} seconds")
