from __future__ import annotations

import json
import socket
import threading
import time
from collections.abc import Iterator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from apkllama.cancellation import CancellationToken
from apkllama.client import InferenceClient
from apkllama.errors import Cancelled
from apkllama.transport import LiveConnections
from conftest import make_settings


class SlowBackend:
    """Local HTTP server that holds each generate call until released."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.received = threading.Event()
        backend = self

        class Handler(BaseHTTPRequestHandler):
            def do_POST(self) -> None:
                backend.received.set()
                backend.release.wait(5)
                body = json.dumps({"model": "m", "response": "generated", "done": True}).encode("utf-8")
                try:
                    self.send_response(200)
                    self.send_header("Content-Type", "application/json")
                    self.send_header("Content-Length", str(len(body)))
                    self.end_headers()
                    self.wfile.write(body)
                except (BrokenPipeError, ConnectionResetError):
                    pass

            def log_message(self, format: str, *args: object) -> None:
                return None

        self.server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.server.daemon_threads = True
        self.endpoint = f"http://127.0.0.1:{self.server.server_address[1]}"
        self._thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    def __enter__(self) -> SlowBackend:
        self._thread.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release.set()
        self.server.shutdown()
        self.server.server_close()


@pytest.fixture()
def slow_backend(monkeypatch: pytest.MonkeyPatch) -> Iterator[SlowBackend]:
    for name in ("HTTP_PROXY", "http_proxy", "ALL_PROXY", "all_proxy"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("NO_PROXY", "127.0.0.1,localhost")
    with SlowBackend() as backend:
        yield backend


def test_cancel_tears_down_socket_while_backend_is_still_generating(slow_backend: SlowBackend) -> None:
    client = InferenceClient(make_settings(ollama_endpoint=slow_backend.endpoint, read_timeout_seconds=30))
    token = CancellationToken()
    timer = threading.Timer(0.3, token.cancel)

    started = time.monotonic()
    timer.start()
    try:
        with pytest.raises(Cancelled):
            client.generate("prompt", token)
    finally:
        timer.cancel()
    elapsed = time.monotonic() - started

    assert slow_backend.received.is_set()
    assert elapsed < 2.0


def test_generate_against_local_server_returns_text(slow_backend: SlowBackend) -> None:
    slow_backend.release.set()
    client = InferenceClient(make_settings(ollama_endpoint=slow_backend.endpoint))

    assert client.generate("prompt", CancellationToken()) == "generated"


class _Socket:
    def __init__(self, error: OSError | None = None) -> None:
        self.shutdowns: list[int] = []
        self._error = error

    def shutdown(self, how: int) -> None:
        if self._error is not None:
            raise self._error
        self.shutdowns.append(how)


class _Connection:
    def __init__(self, sock: _Socket | None) -> None:
        self.sock = sock
        self.closed = False

    def close(self) -> None:
        self.closed = True


def test_close_shuts_down_every_tracked_socket() -> None:
    live = LiveConnections()
    first = _Connection(_Socket())
    unconnected = _Connection(None)
    live.track(first)
    live.track(unconnected)

    live.close()

    assert first.sock.shutdowns == [socket.SHUT_RDWR]
    assert first.closed
    assert unconnected.closed
    assert live.closed


def test_connection_tracked_after_close_is_torn_down_immediately() -> None:
    live = LiveConnections()
    live.close()
    late = _Connection(_Socket(OSError("Transport endpoint is not connected")))

    live.track(late)

    assert late.closed
