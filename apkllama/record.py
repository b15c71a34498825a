from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from apkllama.cancellation import CancellationToken
from apkllama.errors import FailureKind
from apkllama.types import Finding, RequestStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestRecord:
    """One AI-analysis job for one finding.

    Mutations go through the methods below, each of which takes the
    record's own re-entrant lock. Callers that need a check-then-act
    sequence across several calls hold ``record.lock`` around it.

    ``attempt`` increases on every claim. Each claim also installs a new
    cancellation token, so teardown of one attempt never leaks into the
    next one.
    """

    def __init__(self, finding: Finding, prompt: str, line_number: int = -1) -> None:
        self.id = f"ai_{finding.id}_{uuid4().hex[:12]}"
        self.finding = finding
        self.prompt = prompt
        self.line_number = line_number
        self.created_at = _utcnow()
        self.lock = threading.RLock()

        self._updated_at = self.created_at
        self._status = RequestStatus.PENDING
        self._response: str | None = None
        self._error: str | None = None
        self._failure_kind: FailureKind | None = None
        self._retry_count = 0
        self._attempt = 0
        self._cancelled = False
        self._removed_from_queue = False
        self._processing_started_at: datetime | None = None
        self._prompt_tokens = 0
        self._response_tokens = 0
        self._token = CancellationToken()

    def __repr__(self) -> str:
        return f"RequestRecord[{self.id}, {self._status.name}, retries={self._retry_count}]"

    @property
    def finding_id(self) -> str:
        return self.finding.id

    @property
    def status(self) -> RequestStatus:
        return self._status

    @property
    def updated_at(self) -> datetime:
        return self._updated_at

    @property
    def response(self) -> str | None:
        return self._response

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def failure_kind(self) -> FailureKind | None:
        return self._failure_kind

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def removed_from_queue(self) -> bool:
        return self._removed_from_queue

    @property
    def is_valid(self) -> bool:
        return not self._cancelled and not self._removed_from_queue

    @property
    def processing_started_at(self) -> datetime | None:
        return self._processing_started_at

    @property
    def prompt_tokens(self) -> int:
        return self._prompt_tokens

    @property
    def response_tokens(self) -> int:
        return self._response_tokens

    @property
    def token(self) -> CancellationToken:
        return self._token

    def _touch(self) -> None:
        self._updated_at = _utcnow()

    def claim(self) -> int | None:
        """PENDING -> IN_PROGRESS; returns the attempt number or None if not claimable."""
        with self.lock:
            if self._cancelled or self._status is not RequestStatus.PENDING:
                return None
            self._attempt += 1
            self._token = CancellationToken()
            self._status = RequestStatus.IN_PROGRESS
            self._processing_started_at = _utcnow()
            self._touch()
            return self._attempt

    def is_current(self, attempt: int) -> bool:
        with self.lock:
            return (
                not self._cancelled
                and self._attempt == attempt
                and self._status is RequestStatus.IN_PROGRESS
            )

    def complete(self, attempt: int, response: str, *, prompt_tokens: int, response_tokens: int) -> bool:
        with self.lock:
            if not self.is_current(attempt):
                return False
            self._response = response
            self._error = None
            self._failure_kind = None
            self._prompt_tokens = prompt_tokens
            self._response_tokens = response_tokens
            self._status = RequestStatus.COMPLETED
            self._touch()
            return True

    def record_failure(self, message: str, kind: FailureKind, *, count_retry: bool = True) -> int:
        with self.lock:
            self._error = message
            self._failure_kind = kind
            if count_retry:
                self._retry_count += 1
            self._touch()
            return self._retry_count

    def set_status(self, status: RequestStatus) -> None:
        with self.lock:
            if self._cancelled and status is not RequestStatus.CANCELLED:
                raise ValueError(f"Cancelled record {self.id} cannot move to {status.name}")
            self._status = status
            self._touch()

    def should_retry(self, max_retries: int) -> bool:
        with self.lock:
            return not self._cancelled and self._retry_count < max_retries

    def cancel(self) -> bool:
        """Flag the record cancelled and tear down its network handle.

        Returns False when the record is not in a cancellable state.
        """
        with self.lock:
            if not self._status.is_cancellable:
                return False
            self._cancelled = True
            self._status = RequestStatus.CANCELLED
            self._touch()
            token = self._token
        token.cancel()
        return True

    def mark_removed_from_queue(self) -> None:
        with self.lock:
            self._removed_from_queue = True
            self._touch()

    def to_dict(self) -> dict[str, Any]:
        with self.lock:
            return {
                "request_id": self.id,
                "finding_id": self.finding.id,
                "title": self.finding.title,
                "severity": self.finding.severity.display_name,
                "line_number": self.line_number,
                "status": self._status.name,
                "response": self._response,
                "error": self._error,
                "failure_kind": self._failure_kind.value if self._failure_kind else None,
                "retry_count": self._retry_count,
                "prompt_tokens": self._prompt_tokens,
                "response_tokens": self._response_tokens,
                "created_at": self.created_at,
                "updated_at": self._updated_at,
            }
