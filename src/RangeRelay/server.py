# === NAVMAP v1 ===
# {
#   "module": "RangeRelay.server",
#   "purpose": "Expose partitioned files and remote sources over HTTP with byte-range support",
#   "sections": [
#     {"id": "rangenotsatisfiable", "name": "RangeNotSatisfiable", "anchor": "class-rangenotsatisfiable", "kind": "class"},
#     {"id": "parse-range", "name": "parse_range", "anchor": "function-parse-range", "kind": "function"},
#     {"id": "handler", "name": "_RangeRequestHandler", "anchor": "class-rangerequesthandler", "kind": "class"},
#     {"id": "partialcontentserver", "name": "PartialContentServer", "anchor": "class-partialcontentserver", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Partial-content HTTP server for files that are still downloading.

The external transcoder reads its inputs over HTTP instead of from disk so it
can start while the chunk downloader is still filling them.  Each registered
route answers ``HEAD`` and ``GET`` with ``Accept-Ranges: bytes``; a single
``Range`` yields ``206 Partial Content``, no range yields ``200``, and a range
starting past the end yields ``416``.

Routes come in two flavours:

- ``add_file`` serves a :class:`~RangeRelay.partitioned_file.PartitionedFile`.
  Ungated routes read the declared-size file directly, so bytes of parts that
  are not yet downloaded read as zeros.  Gated routes deliver each range
  through :meth:`PartitionedFile.stream_at` and block until the covering
  parts are available.
- ``add_remote`` proxies the route to the origin, forwarding the source's
  headers and the caller's ``Range``.
"""

from __future__ import annotations

import logging
import mimetypes
import threading
from dataclasses import dataclass
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse

import httpx

from .cancellation import CancellationToken
from .errors import CancellationError
from .formats import MediaSource
from .partitioned_file import PartitionedFile
from .settings import ServerConfiguration

logger = logging.getLogger(__name__)

_COPY_BLOCK = 64 * 1024
_PROXIED_HEADERS = (
    "Content-Type",
    "Content-Length",
    "Content-Range",
    "Accept-Ranges",
    "Content-Encoding",
    "ETag",
)


class RangeNotSatisfiable(ValueError):
    """Raised by :func:`parse_range` when no requested byte exists."""


def parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """Parse a single-range ``Range`` header against a resource of ``size`` bytes.

    Args:
        header: Raw header value, for example ``"bytes=0-499"``, ``"bytes=500-"``
            or ``"bytes=-500"``.
        size: Resource size in bytes.

    Returns:
        ``(start, end)`` with ``end`` exclusive, or ``None`` when the header is
        absent, malformed, or asks for several ranges (the full body is served).

    Raises:
        RangeNotSatisfiable: The range starts at or past ``size``.
    """
    if not header:
        return None
    unit, sep, spec = header.strip().partition("=")
    if not sep or unit.strip().lower() != "bytes" or "," in spec:
        return None
    first, dash, last = spec.strip().partition("-")
    if not dash:
        return None
    try:
        start = int(first) if first else None
        end = int(last) + 1 if last else None
    except ValueError:
        return None

    if start is None:
        if end is None:
            return None
        suffix = end - 1
        if suffix <= 0 or size == 0:
            raise RangeNotSatisfiable(header)
        return max(size - suffix, 0), size
    if start < 0 or (end is not None and end <= start):
        return None
    if start >= size:
        raise RangeNotSatisfiable(header)
    return start, size if end is None else min(end, size)


@dataclass
class _FileRoute:
    pfile: PartitionedFile
    gate: bool
    content_type: str


@dataclass
class _RemoteRoute:
    source: MediaSource
    client: httpx.Client


_Route = Union[_FileRoute, _RemoteRoute]


class _RelayHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, handler, relay: "PartialContentServer"):
        super().__init__(address, handler)
        self.relay = relay


class _RangeRequestHandler(BaseHTTPRequestHandler):
    server: _RelayHTTPServer  # type: ignore[assignment]

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        logger.debug("http request", extra={"client": self.client_address[0], "line": format % args})

    def do_HEAD(self) -> None:  # noqa: N802
        self._dispatch(send_body=False)

    def do_GET(self) -> None:  # noqa: N802
        self._dispatch(send_body=True)

    def _dispatch(self, *, send_body: bool) -> None:
        route = self.server.relay._lookup(urlparse(self.path).path)
        if route is None:
            self._send_empty(HTTPStatus.NOT_FOUND)
            return
        try:
            if isinstance(route, _RemoteRoute):
                self._proxy(route, send_body=send_body)
            else:
                self._serve_file(route, send_body=send_body)
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("client disconnected", extra={"path": self.path})
        except CancellationError:
            logger.debug("request cancelled by shutdown", extra={"path": self.path})

    def _send_empty(self, status: HTTPStatus, headers: Optional[Dict[str, str]] = None) -> None:
        self.send_response(status)
        for key, value in (headers or {}).items():
            self.send_header(key, value)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _serve_file(self, route: _FileRoute, *, send_body: bool) -> None:
        pfile = route.pfile
        size = pfile.size
        if size is None or not pfile.partitioned:
            self._send_empty(HTTPStatus.SERVICE_UNAVAILABLE, {"Retry-After": "1"})
            return

        try:
            byte_range = parse_range(self.headers.get("Range"), size)
        except RangeNotSatisfiable:
            self._send_empty(
                HTTPStatus.REQUESTED_RANGE_NOT_SATISFIABLE,
                {"Content-Range": f"bytes */{size}", "Accept-Ranges": "bytes"},
            )
            return

        if byte_range is None:
            start, end = 0, size
            self.send_response(HTTPStatus.OK)
        else:
            start, end = byte_range
            self.send_response(HTTPStatus.PARTIAL_CONTENT)
            self.send_header("Content-Range", f"bytes {start}-{end - 1}/{size}")
        self.send_header("Accept-Ranges", "bytes")
        self.send_header("Content-Type", route.content_type)
        self.send_header("Content-Length", str(end - start))
        self.end_headers()
        if not send_body or end == start:
            return

        relay = self.server.relay
        if route.gate:
            pfile.stream_at(
                self.wfile,
                start,
                end - start,
                token=relay._token,
                poll_interval=relay.poll_interval,
            )
            return
        with open(pfile.path, "rb") as handle:
            handle.seek(start)
            remaining = end - start
            while remaining > 0:
                block = handle.read(min(_COPY_BLOCK, remaining))
                if not block:
                    break
                self.wfile.write(block)
                remaining -= len(block)

    def _proxy(self, route: _RemoteRoute, *, send_body: bool) -> None:
        headers = dict(route.source.headers)
        incoming_range = self.headers.get("Range")
        if incoming_range:
            headers["Range"] = incoming_range
        method = "GET" if send_body else "HEAD"
        responded = False
        try:
            with route.client.stream(method, route.source.url, headers=headers) as upstream:
                responded = True
                self.send_response(upstream.status_code)
                for name in _PROXIED_HEADERS:
                    value = upstream.headers.get(name)
                    if value is not None:
                        self.send_header(name, value)
                self.end_headers()
                if send_body:
                    for block in upstream.iter_raw(_COPY_BLOCK):
                        self.wfile.write(block)
        except httpx.HTTPError as exc:
            logger.warning("upstream request failed", extra={"url": route.source.url, "error": str(exc)})
            if not responded:
                self._send_empty(HTTPStatus.BAD_GATEWAY)


class PartialContentServer:
    """Threaded HTTP server exposing local and remote byte ranges on loopback.

    Example:
        >>> with PartialContentServer() as server:  # doctest: +SKIP
        ...     server.add_file("/video", video_file, gate=True)
        ...     url = server.url_for("/video")
    """

    def __init__(
        self,
        config: Optional[ServerConfiguration] = None,
        *,
        poll_interval: float = 0.001,
        token: Optional[CancellationToken] = None,
    ) -> None:
        self.config = config or ServerConfiguration()
        self.poll_interval = poll_interval
        self._routes: Dict[str, _Route] = {}
        self._routes_lock = threading.Lock()
        self._httpd: Optional[_RelayHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._parent_token = token
        self._token = token.child() if token is not None else CancellationToken()

    def __enter__(self) -> "PartialContentServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @staticmethod
    def _normalize(route: str) -> str:
        return route if route.startswith("/") else f"/{route}"

    def _lookup(self, path: str) -> Optional[_Route]:
        with self._routes_lock:
            return self._routes.get(path)

    def add_file(
        self,
        route: str,
        pfile: PartitionedFile,
        *,
        gate: Optional[bool] = None,
        content_type: Optional[str] = None,
    ) -> str:
        """Serve ``pfile`` at ``route``.

        Args:
            route: URL path, for example ``"/video"``.
            pfile: File to serve; it may still be downloading.
            gate: Deliver ranges only once their parts are available.  Defaults
                to ``config.gate_on_availability``.
            content_type: Explicit media type; guessed from the path otherwise.

        Returns:
            The normalized route.
        """
        route = self._normalize(route)
        if gate is None:
            gate = self.config.gate_on_availability
        if content_type is None:
            content_type = mimetypes.guess_type(pfile.path.name)[0] or "application/octet-stream"
        with self._routes_lock:
            self._routes[route] = _FileRoute(pfile=pfile, gate=gate, content_type=content_type)
        logger.debug("route registered", extra={"route": route, "path": str(pfile.path), "gate": gate})
        return route

    def add_remote(self, route: str, source: MediaSource, client: httpx.Client) -> str:
        """Proxy ``route`` to ``source`` through ``client``."""
        route = self._normalize(route)
        with self._routes_lock:
            self._routes[route] = _RemoteRoute(source=source, client=client)
        logger.debug("remote route registered", extra={"route": route, "url": source.url})
        return route

    def start(self) -> str:
        """Bind and start serving in a background thread; returns :attr:`base_url`."""
        if self._httpd is not None:
            return self.base_url
        self._httpd = _RelayHTTPServer(
            (self.config.host, self.config.port), _RangeRequestHandler, self
        )
        self._thread = threading.Thread(
            target=self._httpd.serve_forever, name="rangerelay-server", daemon=True
        )
        self._thread.start()
        logger.info("server listening", extra={"url": self.base_url})
        return self.base_url

    @property
    def base_url(self) -> str:
        if self._httpd is None:
            raise RuntimeError("server is not running")
        host, port = self._httpd.server_address[:2]
        return f"http://{host}:{port}"

    def url_for(self, route: str) -> str:
        return f"{self.base_url}{self._normalize(route)}"

    def close(self) -> None:
        """Stop serving; in-flight gated reads are cancelled."""
        self._token.cancel()
        if self._parent_token is not None:
            self._parent_token.remove_child(self._token)
        httpd, self._httpd = self._httpd, None
        if httpd is None:
            return
        httpd.shutdown()
        httpd.server_close()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        logger.info("server closed")


__all__ = ["PartialContentServer", "RangeNotSatisfiable", "parse_range"]
