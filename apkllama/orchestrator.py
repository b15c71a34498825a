from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from time import monotonic, perf_counter
from typing import Any, Protocol

import structlog
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED, JobEvent
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler

from apkllama.cancellation import CancellationToken
from apkllama.client import estimate_token_count
from apkllama.config import InferenceSettings
from apkllama.errors import (
    Cancelled,
    FailureKind,
    InferenceTimeout,
    RateLimited,
    ServiceUnavailable,
    failure_kind_of,
    terminal_status_for,
)
from apkllama.events import ListenerRegistry, StatusListener
from apkllama.prompts import check_template, render_prompt
from apkllama.record import RequestRecord
from apkllama.types import Finding, RequestStatus
from apkllama.work_queue import WorkQueue

logger = structlog.get_logger(__name__)

HEALTH_CHECK_JOB_ID = "apkllama-health-check"
STALE_SWEEP_JOB_ID = "apkllama-stale-sweep"


class GenerationBackend(Protocol):
    def is_available(self) -> bool: ...

    def generate(self, prompt: str, token: CancellationToken | None = None) -> str: ...


class AnalysisOrchestrator:
    """Queues AI-analysis jobs and drives them through one slow backend.

    A dispatcher thread drains the work queue into a thread pool sized to
    the backend's real concurrency. Delayed re-enqueues, the health probe
    and the stale-job sweep run on an APScheduler background scheduler.
    ``submit``, ``cancel`` and ``retry`` never wait on the network.
    """

    def __init__(
        self,
        client: GenerationBackend,
        settings: InferenceSettings,
        *,
        scheduler: BaseScheduler | None = None,
        autostart: bool = True,
    ) -> None:
        self._client = client
        self._max_concurrent = settings.max_concurrent_requests
        self._max_retries = settings.max_retries
        self._retry_base_delay = settings.retry_base_delay_seconds
        self._worker_backoff_cap = settings.worker_backoff_cap_seconds
        self._retry_backoff_cap = settings.retry_backoff_cap_seconds
        self._rate_limit_delay = settings.rate_limit_delay_seconds
        self._service_unavailable_delay = settings.service_unavailable_delay_seconds
        self._stale_after = settings.stale_after_seconds
        self._stale_check_interval = settings.stale_check_interval_seconds
        self._health_check_interval = settings.health_check_interval_seconds
        self._max_idle = settings.max_idle_seconds
        self._poll_interval = settings.poll_interval_seconds
        self._shutdown_grace = settings.shutdown_grace_seconds

        self._requests: dict[str, RequestRecord] = {}
        self._registry_lock = threading.Lock()
        self._queue = WorkQueue()
        self._listeners = ListenerRegistry()

        self._executor = ThreadPoolExecutor(max_workers=self._max_concurrent, thread_name_prefix="inference")
        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler or BackgroundScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
            timezone="UTC",
        )
        self._scheduler.add_listener(self._on_job_event, EVENT_JOB_ERROR | EVENT_JOB_MISSED)

        self._active = 0
        self._active_changed = threading.Condition()
        self._batch_lock = threading.Lock()
        self._batch_open = False
        self._last_activity = monotonic()
        self._backend_healthy = True

        self._stop = threading.Event()
        self._dispatcher: threading.Thread | None = None
        self._lifecycle_lock = threading.Lock()
        self._started = False
        self._closed = False

        if autostart:
            self.start()

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._started or self._closed:
                return
            self._started = True

        self._scheduler.add_job(
            self._check_health,
            "interval",
            seconds=self._health_check_interval,
            id=HEALTH_CHECK_JOB_ID,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self._sweep_stale,
            "interval",
            seconds=self._stale_check_interval,
            id=STALE_SWEEP_JOB_ID,
            replace_existing=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()

        self._dispatcher = threading.Thread(target=self._dispatch_loop, name="ai-dispatcher", daemon=True)
        self._dispatcher.start()
        logger.info(
            "orchestrator_started",
            max_concurrent=self._max_concurrent,
            max_retries=self._max_retries,
        )

    def shutdown(self) -> None:
        with self._lifecycle_lock:
            if self._closed:
                return
            self._closed = True

        self._stop.set()
        if self._owns_scheduler:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
        else:
            self._remove_own_jobs()
        self._executor.shutdown(wait=False)
        if self._dispatcher is not None:
            self._dispatcher.join(self._shutdown_grace)

        with self._active_changed:
            drained = self._active_changed.wait_for(lambda: self._active == 0, timeout=self._shutdown_grace)
        if not drained:
            in_flight = [record for record in self._snapshot() if record.status is RequestStatus.IN_PROGRESS]
            logger.warning("orchestrator_shutdown_forced", in_flight=len(in_flight))
            for record in in_flight:
                record.token.cancel()
        logger.info("orchestrator_shutdown")

    def _remove_own_jobs(self) -> None:
        # A shared scheduler outlives us; drop the maintenance and pending retry jobs bound to this instance.
        self._scheduler.remove_listener(self._on_job_event)
        for job in self._scheduler.get_jobs():
            if getattr(job.func, "__self__", None) is not self:
                continue
            try:
                self._scheduler.remove_job(job.id)
            except JobLookupError:
                continue
            logger.info("scheduled_job_removed", job_id=job.id)

    @property
    def is_running(self) -> bool:
        return self._started and not self._closed

    # -- public surface ------------------------------------------------------

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.add(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        self._listeners.remove(listener)

    @property
    def backend_healthy(self) -> bool:
        return self._backend_healthy

    @property
    def active_count(self) -> int:
        with self._active_changed:
            return self._active

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    def submit(self, finding: Finding, prompt: str, line_number: int = -1) -> RequestRecord:
        if self._closed:
            raise RuntimeError("Orchestrator has been shut down")
        record = RequestRecord(finding, prompt, line_number)
        self._register_and_enqueue(record)
        logger.info("request_submitted", request_id=record.id, finding_id=finding.id, line_number=line_number)
        self._listeners.status_update(record)
        return record

    def submit_batch(
        self,
        findings: Iterable[Finding],
        template: str,
        line_numbers: Mapping[str, int] | None = None,
    ) -> list[RequestRecord]:
        check_template(template)
        line_numbers = line_numbers or {}
        # Render everything first so a bad template enqueues nothing.
        prompts = [(finding, render_prompt(template, finding)) for finding in findings]
        records = [
            self.submit(finding, prompt, line_numbers.get(finding.id, finding.line_number))
            for finding, prompt in prompts
        ]
        logger.info("batch_submitted", count=len(records))
        return records

    def cancel(self, request_id: str) -> bool:
        record = self.get_request(request_id)
        if record is None or not record.cancel():
            return False
        if self._queue.remove(record):
            record.mark_removed_from_queue()
        logger.info("request_cancelled", request_id=record.id, removed_from_queue=record.removed_from_queue)
        self._listeners.status_update(record)
        self._maybe_complete_batch()
        return True

    def retry(self, request_id: str) -> bool:
        return self.retry_request(request_id) is not None

    def retry_request(self, request_id: str) -> RequestRecord | None:
        """Re-arm a retryable record as a brand-new record; the old one stays terminal."""
        with self._registry_lock:
            old = self._requests.get(request_id)
            if old is None or not old.status.is_retryable:
                return None
            del self._requests[request_id]
        return self._rearm(old)

    def retry_all_failed(self) -> bool:
        retried = [self.retry_request(record.id) for record in self._snapshot() if record.status.is_retryable]
        count = sum(1 for record in retried if record is not None)
        if count:
            logger.info("retry_all_failed", count=count)
        return count > 0

    def get_request(self, request_id: str) -> RequestRecord | None:
        with self._registry_lock:
            return self._requests.get(request_id)

    def get_requests_for_finding(self, finding_id: str) -> list[RequestRecord]:
        return [record for record in self._snapshot() if record.finding_id == finding_id]

    def requests(self) -> list[RequestRecord]:
        return self._snapshot()

    def progress(self) -> dict[str, Any]:
        records = self._snapshot()
        total = len(records)
        completed = sum(1 for record in records if record.status is RequestStatus.COMPLETED)
        failed = sum(1 for record in records if record.status.is_retryable)
        cancelled = sum(1 for record in records if record.status is RequestStatus.CANCELLED)
        return {
            "total": total,
            "completed": completed,
            "failed": failed,
            "cancelled": cancelled,
            "active": self.active_count,
            "queued": self.queued_count,
            "percent": int(completed * 100 / total) if total else 0,
        }

    def clear(self) -> None:
        """Cancel outstanding work and forget every record; used when a new scan starts."""
        for record in self._snapshot():
            record.cancel()
        for record in self._queue.drain():
            record.mark_removed_from_queue()
        with self._batch_lock:
            with self._registry_lock:
                count = len(self._requests)
                self._requests.clear()
            self._batch_open = False
        logger.info("registry_cleared", count=count)

    # -- dispatch ------------------------------------------------------------

    def _snapshot(self) -> list[RequestRecord]:
        with self._registry_lock:
            records = list(self._requests.values())
        records.sort(key=lambda record: record.created_at)
        return records

    def _register_and_enqueue(self, record: RequestRecord) -> None:
        with self._batch_lock:
            self._batch_open = True
            with self._registry_lock:
                self._requests[record.id] = record
            self._queue.offer(record)

    def _rearm(self, old: RequestRecord) -> RequestRecord:
        fresh = RequestRecord(old.finding, old.prompt, old.line_number)
        self._register_and_enqueue(fresh)
        logger.info("request_rearmed", request_id=fresh.id, previous_request_id=old.id, previous_status=old.status.name)
        self._listeners.status_update(fresh)
        return fresh

    def _dispatch_loop(self) -> None:
        while not self._stop.is_set():
            try:
                if self.active_count >= self._max_concurrent:
                    self._stop.wait(0.05)
                    continue
                record = self._queue.poll(self._poll_interval)
                if record is not None:
                    self._dispatch(record)
            except Exception as exc:
                logger.exception("dispatch_cycle_failed", error=str(exc))
        logger.info("dispatcher_stopped")

    def _dispatch(self, record: RequestRecord) -> None:
        if record.cancelled:
            record.mark_removed_from_queue()
            self._listeners.status_update(record)
            self._maybe_complete_batch()
            return

        with record.lock:
            attempt = record.claim()
            token = record.token
        if attempt is None:
            if record.cancelled:
                record.mark_removed_from_queue()
            return

        with self._active_changed:
            self._active += 1
        self._last_activity = monotonic()
        self._listeners.status_update(record)

        try:
            self._executor.submit(self._execute, record, attempt, token)
        except RuntimeError as exc:
            # Executor already shut down.
            logger.warning("request_dispatch_rejected", request_id=record.id, error=str(exc))
            self._release_slot()

    def _release_slot(self) -> None:
        with self._active_changed:
            self._active -= 1
            self._active_changed.notify_all()
        self._last_activity = monotonic()

    def _execute(self, record: RequestRecord, attempt: int, token: CancellationToken) -> None:
        structlog.contextvars.bind_contextvars(request_id=record.id, finding_id=record.finding_id, attempt=attempt)
        started = perf_counter()
        try:
            if record.retry_count > 0:
                delay = min(self._retry_base_delay * (2 ** (record.retry_count - 1)), self._worker_backoff_cap)
                if token.wait(delay):
                    return
            if not record.is_current(attempt):
                return

            response = self._client.generate(record.prompt, token)
            if record.complete(
                attempt,
                response,
                prompt_tokens=estimate_token_count(record.prompt),
                response_tokens=estimate_token_count(response),
            ):
                logger.info(
                    "request_completed",
                    retry_count=record.retry_count,
                    response_tokens=record.response_tokens,
                    duration_ms=round((perf_counter() - started) * 1000, 2),
                )
            else:
                logger.info("request_result_discarded", status=record.status.name)
        except Cancelled:
            logger.info("request_aborted", status=record.status.name)
        except RateLimited as exc:
            self._handle_rate_limit(record, attempt, exc)
        except ServiceUnavailable as exc:
            self._handle_service_unavailable(record, attempt, exc)
        except Exception as exc:
            self._handle_failure(record, attempt, exc)
        finally:
            self._release_slot()
            self._listeners.status_update(record)
            self._maybe_complete_batch()
            structlog.contextvars.clear_contextvars()

    # -- failure paths -------------------------------------------------------

    def _backoff(self, retry_count: int, cap: float) -> float:
        return min(self._retry_base_delay * (2 ** (retry_count - 1)), cap)

    def _handle_rate_limit(self, record: RequestRecord, attempt: int, exc: RateLimited) -> None:
        with record.lock:
            if not record.is_current(attempt):
                return
            retry_count = record.record_failure(exc.message, exc.kind)
            if record.should_retry(self._max_retries):
                record.set_status(RequestStatus.PENDING)
                self._schedule_requeue(record, self._rate_limit_delay)
            else:
                record.set_status(RequestStatus.RATE_LIMITED)
        logger.warning("request_rate_limited", retry_count=retry_count, status=record.status.name)

    def _handle_service_unavailable(self, record: RequestRecord, attempt: int, exc: ServiceUnavailable) -> None:
        with record.lock:
            if not record.is_current(attempt):
                return
            self._retry_after_outage(record, exc)

    def _retry_after_outage(self, record: RequestRecord, exc: ServiceUnavailable) -> None:
        with record.lock:
            if record.cancelled:
                return
            retry_count = record.record_failure(exc.message, exc.kind)
            if record.should_retry(self._max_retries):
                record.set_status(RequestStatus.PENDING)
                self._mark_backend_health(False)
                self._scheduler.add_job(
                    self._probe_and_requeue,
                    "date",
                    run_date=datetime.now(timezone.utc) + timedelta(seconds=self._service_unavailable_delay),
                    args=[record, exc],
                    id=f"probe:{record.id}:{retry_count}",
                    replace_existing=True,
                )
            else:
                record.set_status(RequestStatus.FAILED)
        logger.warning("request_service_unavailable", request_id=record.id, retry_count=retry_count, status=record.status.name)

    def _probe_and_requeue(self, record: RequestRecord, exc: ServiceUnavailable) -> None:
        try:
            if record.cancelled or record.status is not RequestStatus.PENDING:
                return
            if self._client.is_available():
                self._mark_backend_health(True)
                self._queue.offer(record)
                return
            self._retry_after_outage(record, exc)
            self._listeners.status_update(record)
            self._maybe_complete_batch()
        except Exception as error:
            logger.exception("service_recovery_probe_failed", request_id=record.id, error=str(error))

    def _handle_failure(self, record: RequestRecord, attempt: int, exc: BaseException) -> None:
        kind = failure_kind_of(exc)
        message = str(exc) or type(exc).__name__
        with record.lock:
            if not record.is_current(attempt):
                logger.info("stale_attempt_failure_ignored", request_id=record.id, error=message)
                return
            if kind is FailureKind.VALIDATION:
                retry_count = record.record_failure(message, kind, count_retry=False)
                record.set_status(RequestStatus.FAILED)
            else:
                retry_count = record.record_failure(message, kind)
                if record.should_retry(self._max_retries):
                    record.set_status(RequestStatus.PENDING)
                    self._schedule_requeue(record, self._backoff(retry_count, self._retry_backoff_cap))
                else:
                    record.set_status(terminal_status_for(exc))
        logger.warning(
            "request_failed",
            request_id=record.id,
            error=message,
            failure_kind=kind.value,
            retry_count=retry_count,
            status=record.status.name,
        )

    def _schedule_requeue(self, record: RequestRecord, delay: float) -> None:
        self._scheduler.add_job(
            self._requeue,
            "date",
            run_date=datetime.now(timezone.utc) + timedelta(seconds=delay),
            args=[record],
            id=f"requeue:{record.id}:{record.retry_count}",
            replace_existing=True,
        )

    def _requeue(self, record: RequestRecord) -> None:
        if record.cancelled or record.status is not RequestStatus.PENDING:
            return
        self._queue.offer(record)

    # -- maintenance ---------------------------------------------------------

    def _on_job_event(self, event: JobEvent) -> None:
        if event.code == EVENT_JOB_MISSED:
            logger.warning("scheduled_job_missed", job_id=event.job_id)
        else:
            logger.error("scheduled_job_failed", job_id=event.job_id, error=str(getattr(event, "exception", "")))

    def _mark_backend_health(self, healthy: bool) -> None:
        if self._backend_healthy == healthy:
            return
        self._backend_healthy = healthy
        if healthy:
            logger.info("backend_health_restored")
        else:
            logger.warning("backend_health_lost")

    def _check_health(self) -> None:
        try:
            if self.active_count > 0 or not self._queue.empty():
                self._last_activity = monotonic()
                return
            if monotonic() - self._last_activity <= self._max_idle:
                return
            self._mark_backend_health(self._client.is_available())
        except Exception as exc:
            logger.exception("health_check_failed", error=str(exc))

    def _sweep_stale(self) -> None:
        try:
            cutoff = datetime.now(timezone.utc) - timedelta(seconds=self._stale_after)
            for record in self._snapshot():
                if record.status is RequestStatus.IN_PROGRESS and record.updated_at < cutoff:
                    self._fail_stuck(record)
        except Exception as exc:
            logger.exception("stale_sweep_failed", error=str(exc))

    def _fail_stuck(self, record: RequestRecord) -> None:
        with record.lock:
            if record.status is not RequestStatus.IN_PROGRESS:
                return
            attempt = record.attempt
            token = record.token
            self._handle_failure(record, attempt, InferenceTimeout("Stuck request timeout"))
        # The worker still owns its slot; tearing down the attempt's token makes it return.
        token.cancel()
        self._listeners.status_update(record)
        self._maybe_complete_batch()

    def _maybe_complete_batch(self) -> None:
        with self._batch_lock:
            if not self._batch_open or self.active_count > 0:
                return
            records = self._snapshot()
            if any(record.status.is_cancellable for record in records):
                return
            self._batch_open = False
            finished = [record for record in records if record.status.is_final]
        logger.info("batch_complete", count=len(finished))
        self._listeners.batch_complete(finished)
