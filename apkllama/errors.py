from __future__ import annotations

from enum import Enum

from apkllama.types import RequestStatus


class FailureKind(str, Enum):
    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    CANCELLED = "cancelled"
    EMPTY_RESPONSE = "empty_response"
    UNKNOWN_SERVER_ERROR = "unknown_server_error"


RETRYABLE_KINDS = frozenset(
    {
        FailureKind.RATE_LIMITED,
        FailureKind.SERVICE_UNAVAILABLE,
        FailureKind.TIMEOUT,
        FailureKind.CONNECTION_ERROR,
    }
)

_RETRYABLE_HINTS = ("timeout", "timed out", "connection", "busy")


class InferenceError(Exception):
    kind: FailureKind = FailureKind.UNKNOWN_SERVER_ERROR

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class PromptValidationError(InferenceError):
    kind = FailureKind.VALIDATION


class RateLimited(InferenceError):
    kind = FailureKind.RATE_LIMITED


class ServiceUnavailable(InferenceError):
    kind = FailureKind.SERVICE_UNAVAILABLE


class InferenceTimeout(InferenceError):
    kind = FailureKind.TIMEOUT


class BackendConnectionError(InferenceError):
    kind = FailureKind.CONNECTION_ERROR


class Cancelled(InferenceError):
    kind = FailureKind.CANCELLED


class EmptyResponse(InferenceError):
    kind = FailureKind.EMPTY_RESPONSE


class UnknownServerError(InferenceError):
    kind = FailureKind.UNKNOWN_SERVER_ERROR


class BackendUnavailableError(RuntimeError):
    """Raised before submission when the liveness probe fails."""


class BatchTimeoutError(RuntimeError):
    pass


def failure_kind_of(exc: BaseException) -> FailureKind:
    """Classify any exception into the closed failure taxonomy.

    Typed errors carry their kind. Anything else (a worker bug, a library
    error that escaped translation) is classified from its message so the
    terminal status stays meaningful.
    """
    if isinstance(exc, InferenceError):
        return exc.kind
    message = str(exc).lower()
    if "timed out" in message or "timeout" in message:
        return FailureKind.TIMEOUT
    if "rate limit" in message:
        return FailureKind.RATE_LIMITED
    if "connection" in message:
        return FailureKind.CONNECTION_ERROR
    return FailureKind.UNKNOWN_SERVER_ERROR


def message_suggests_retry(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(hint in message for hint in _RETRYABLE_HINTS)


def terminal_status_for(exc: BaseException) -> RequestStatus:
    kind = failure_kind_of(exc)
    if kind is FailureKind.TIMEOUT:
        return RequestStatus.TIMEOUT
    if kind is FailureKind.RATE_LIMITED:
        return RequestStatus.RATE_LIMITED
    return RequestStatus.FAILED
