from __future__ import annotations

import socket
import threading
import weakref
from typing import Any

import structlog
from requests.adapters import HTTPAdapter
from urllib3.poolmanager import PoolManager

logger = structlog.get_logger(__name__)


class LiveConnections:
    """Connections checked out of a session's pools during one inference call.

    Closing ``requests.Session`` only drops idle pooled connections, so a
    worker blocked in ``recv`` on a checked-out socket keeps waiting for the
    read timeout. ``close`` shuts those sockets down, which makes the
    blocked read fail at once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: weakref.WeakSet[Any] = weakref.WeakSet()
        self._closed = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    @property
    def closed(self) -> bool:
        return self._closed

    def track(self, connection: Any) -> None:
        with self._lock:
            self._connections.add(connection)
            closed = self._closed
        if closed:
            _teardown(connection)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            connections = list(self._connections)
        for connection in connections:
            _teardown(connection)


def _teardown(connection: Any) -> None:
    sock = getattr(connection, "sock", None)
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            # Not connected yet, or the peer already hung up.
            logger.debug("socket_shutdown_skipped", error=str(exc))
    connection.close()


def _tracking_pool_class(base: type, connections: LiveConnections) -> type:
    if getattr(base, "tracks_connections", False):
        return base

    class TrackingPool(base):  # type: ignore[valid-type, misc]
        tracks_connections = True

        def _get_conn(self, *args: Any, **kwargs: Any) -> Any:
            connection = super()._get_conn(*args, **kwargs)
            connections.track(connection)
            return connection

    TrackingPool.__name__ = f"Tracking{base.__name__}"
    return TrackingPool


class TrackingAdapter(HTTPAdapter):
    """HTTP adapter whose pools report every connection they hand out."""

    def __init__(self, connections: LiveConnections, **kwargs: Any) -> None:
        # init_poolmanager runs inside HTTPAdapter.__init__.
        self._connections = connections
        super().__init__(**kwargs)

    def _install(self, manager: PoolManager) -> PoolManager:
        manager.pool_classes_by_scheme = {
            scheme: _tracking_pool_class(pool_cls, self._connections)
            for scheme, pool_cls in manager.pool_classes_by_scheme.items()
        }
        return manager

    def init_poolmanager(self, *args: Any, **kwargs: Any) -> None:
        super().init_poolmanager(*args, **kwargs)
        self._install(self.poolmanager)

    def proxy_manager_for(self, proxy: str, **proxy_kwargs: Any) -> PoolManager:
        return self._install(super().proxy_manager_for(proxy, **proxy_kwargs))
