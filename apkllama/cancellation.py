from __future__ import annotations

import threading
import weakref
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol

import structlog

from apkllama.errors import Cancelled

logger = structlog.get_logger(__name__)


class Closeable(Protocol):
    def close(self) -> Any: ...


class CancellationToken:
    """Cooperative cancellation handle shared by a worker and whoever cancels it.

    The in-flight transport object (session or response) is bound for the
    duration of the call through a weak reference. ``cancel`` and
    ``force_close`` close it from the cancelling thread, which makes the
    blocked read or write in the worker fail promptly.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._handles: list[weakref.ref[Closeable]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def has_handle(self) -> bool:
        with self._lock:
            return any(ref() is not None for ref in self._handles)

    def cancel(self) -> None:
        self._event.set()
        self.force_close()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self, checkpoint: str) -> None:
        if self._event.is_set():
            self.force_close()
            raise Cancelled(f"Request cancelled ({checkpoint})")

    def force_close(self) -> None:
        with self._lock:
            handles = [ref() for ref in self._handles]
        for handle in handles:
            if handle is None:
                continue
            try:
                handle.close()
            except Exception as exc:
                logger.warning("network_handle_close_failed", error=str(exc))

    @contextmanager
    def bind(self, handle: Closeable) -> Iterator[None]:
        ref = weakref.ref(handle)
        with self._lock:
            self._handles.append(ref)
        try:
            if self._event.is_set():
                handle.close()
            yield
        finally:
            with self._lock:
                self._handles.remove(ref)
