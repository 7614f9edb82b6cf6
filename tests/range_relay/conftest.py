"""Shared fixtures for the range_relay test suite."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx
import pytest

from RangeRelay.logging_config import ROOT_LOGGER_NAME
from RangeRelay.settings import DownloadConfiguration, invalidate_settings_cache


def parse_test_range(header: Optional[str], size: int) -> Tuple[int, int]:
    """Return an inclusive ``(start, end)`` pair for ``bytes=a-b`` headers."""
    if not header:
        return 0, size - 1
    first, _, last = header.split("=", 1)[1].partition("-")
    start = int(first)
    end = int(last) if last else size - 1
    return start, min(end, size - 1)


def _lowered(items) -> Dict[str, str]:
    return {key.lower(): value for key, value in items}


@dataclass
class OriginState:
    payloads: Dict[str, bytes] = field(default_factory=dict)
    fail_heads: Dict[str, int] = field(default_factory=dict)
    requests: List[Tuple[str, str, Dict[str, str]]] = field(default_factory=list)
    uploads: List[Tuple[Dict[str, str], bytes]] = field(default_factory=list)
    upload_reply: bytes = b'{"ok": true}'
    lock: threading.Lock = field(default_factory=threading.Lock)


class _OriginServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, handler, state: OriginState):
        super().__init__(address, handler)
        self.state = state


class _OriginHandler(BaseHTTPRequestHandler):
    server: _OriginServer  # type: ignore[assignment]

    def log_message(self, format: str, *args):  # noqa: D401 - silence server logs
        """Suppress default HTTP server logging."""

    def _write(self, status: int, headers: Dict[str, str], body: bytes = b"") -> None:
        self.send_response(status)
        for key, value in headers.items():
            self.send_header(key, value)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _record(self) -> str:
        path = urlparse(self.path).path
        with self.server.state.lock:
            self.server.state.requests.append((self.command, path, _lowered(self.headers.items())))
        return path

    def do_HEAD(self) -> None:  # noqa: N802
        state = self.server.state
        path = self._record()
        status = state.fail_heads.get(path)
        if status is not None:
            self._write(status, {"Content-Length": "0"})
            return
        payload = state.payloads.get(path)
        if payload is None:
            self._write(404, {"Content-Length": "0"})
            return
        self._write(200, {"Content-Length": str(len(payload)), "Accept-Ranges": "bytes"})

    def do_GET(self) -> None:  # noqa: N802
        state = self.server.state
        path = self._record()
        payload = state.payloads.get(path)
        if payload is None:
            self._write(404, {"Content-Length": "9"}, b"not found")
            return
        range_header = self.headers.get("Range")
        start, end = parse_test_range(range_header, len(payload))
        body = payload[start : end + 1]
        headers = {"Content-Type": "video/mp4", "Content-Length": str(len(body))}
        if range_header:
            headers["Content-Range"] = f"bytes {start}-{end}/{len(payload)}"
            self._write(206, headers, body)
        else:
            self._write(200, headers, body)

    def do_POST(self) -> None:  # noqa: N802
        state = self.server.state
        self._record()
        length = int(self.headers.get("Content-Length", "0"))
        body = self.rfile.read(length)
        with state.lock:
            state.uploads.append((_lowered(self.headers.items()), body))
        reply = state.upload_reply
        headers = {"Content-Type": "application/json", "Content-Length": str(len(reply))}
        self._write(200, headers, reply)


@dataclass
class Origin:
    base_url: str
    state: OriginState

    def url_for(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def gets_for(self, path: str) -> List[Dict[str, str]]:
        with self.state.lock:
            return [
                headers
                for method, p, headers in self.state.requests
                if method == "GET" and p == path
            ]


@pytest.fixture
def origin_server():
    state = OriginState()
    server = _OriginServer(("127.0.0.1", 0), _OriginHandler, state)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    yield Origin(base_url=f"http://{host}:{port}", state=state)
    server.shutdown()
    server.server_close()
    thread.join()


@dataclass
class RangeTransport:
    """``httpx.MockTransport`` handler serving one payload with range support."""

    payload: bytes
    failures: Dict[int, int] = field(default_factory=dict)
    failure_status: int = 503
    on_get: Optional[Callable[[int], None]] = None
    calls: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        range_header = request.headers.get("Range")
        with self.lock:
            self.calls.append((request.method, range_header))
        if request.method == "HEAD":
            return httpx.Response(200, headers={"Content-Length": str(len(self.payload))})
        start, end = parse_test_range(range_header, len(self.payload))
        if self.on_get is not None:
            self.on_get(start)
        with self.lock:
            remaining = self.failures.get(start, 0)
            if remaining > 0:
                self.failures[start] = remaining - 1
                return httpx.Response(self.failure_status, content=b"temporarily unavailable")
        status = 206 if range_header else 200
        return httpx.Response(status, content=self.payload[start : end + 1])

    def gets_at(self, offset: int) -> int:
        with self.lock:
            return sum(
                1
                for method, header in self.calls
                if method == "GET" and parse_test_range(header, len(self.payload))[0] == offset
            )

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


@pytest.fixture
def range_transport() -> Callable[..., RangeTransport]:
    """Factory for mock range transports."""
    return RangeTransport


@pytest.fixture
def fast_config() -> DownloadConfiguration:
    return DownloadConfiguration(retry_delay_sec=0.0, concurrency=4)


@pytest.fixture(autouse=True)
def _reset_relay_state():
    invalidate_settings_cache()
    yield
    invalidate_settings_cache()
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_rangerelay_managed", False):
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(logging.NOTSET)
