from __future__ import annotations

import heapq
import itertools
import threading
from time import monotonic

from apkllama.record import RequestRecord


class WorkQueue:
    """Blocking priority queue of records, oldest ``created_at`` first.

    Unlike ``queue.PriorityQueue`` it supports removing a specific record,
    which cancellation needs. Removed entries stay in the heap and are
    skipped when they surface.
    """

    def __init__(self) -> None:
        self._heap: list[list[object]] = []
        self._entries: dict[str, list[object]] = {}
        self._counter = itertools.count()
        self._not_empty = threading.Condition(threading.Lock())

    def __len__(self) -> int:
        with self._not_empty:
            return len(self._entries)

    def __contains__(self, record: RequestRecord) -> bool:
        with self._not_empty:
            return record.id in self._entries

    def empty(self) -> bool:
        return len(self) == 0

    def offer(self, record: RequestRecord) -> bool:
        with self._not_empty:
            if record.id in self._entries:
                return False
            entry: list[object] = [record.created_at, next(self._counter), record]
            self._entries[record.id] = entry
            heapq.heappush(self._heap, entry)
            self._not_empty.notify()
            return True

    def remove(self, record: RequestRecord) -> bool:
        with self._not_empty:
            entry = self._entries.pop(record.id, None)
            if entry is None:
                return False
            entry[-1] = None
            return True

    def poll(self, timeout: float) -> RequestRecord | None:
        deadline = monotonic() + timeout
        with self._not_empty:
            while True:
                while self._heap:
                    record = heapq.heappop(self._heap)[-1]
                    if record is not None:
                        del self._entries[record.id]  # type: ignore[attr-defined]
                        return record  # type: ignore[return-value]
                remaining = deadline - monotonic()
                if remaining <= 0:
                    return None
                self._not_empty.wait(remaining)

    def drain(self) -> list[RequestRecord]:
        with self._not_empty:
            records = [entry[-1] for entry in self._heap if entry[-1] is not None]
            self._heap.clear()
            self._entries.clear()
            return records  # type: ignore[return-value]
