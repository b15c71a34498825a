from __future__ import annotations

import threading
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

import structlog

from apkllama.record import RequestRecord

logger = structlog.get_logger(__name__)


@runtime_checkable
class StatusListener(Protocol):
    def on_status_update(self, record: RequestRecord) -> None: ...

    def on_batch_complete(self, records: Sequence[RequestRecord]) -> None: ...


class ListenerRegistry:
    """Copy-on-write observer list. Listener errors are logged and dropped."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: tuple[StatusListener, ...] = ()

    def __len__(self) -> int:
        return len(self._listeners)

    def add(self, listener: StatusListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners = (*self._listeners, listener)

    def remove(self, listener: StatusListener) -> None:
        with self._lock:
            self._listeners = tuple(item for item in self._listeners if item is not listener)

    def status_update(self, record: RequestRecord) -> None:
        for listener in self._listeners:
            try:
                listener.on_status_update(record)
            except Exception:
                logger.exception("status_listener_failed", request_id=record.id, listener=type(listener).__name__)

    def batch_complete(self, records: Sequence[RequestRecord]) -> None:
        for listener in self._listeners:
            try:
                listener.on_batch_complete(records)
            except Exception:
                logger.exception("batch_listener_failed", count=len(records), listener=type(listener).__name__)
