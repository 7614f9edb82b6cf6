# === NAVMAP v1 ===
# {
#   "module": "RangeRelay.download",
#   "purpose": "Concurrent ranged download of a remote object into a PartitionedFile",
#   "sections": [
#     {"id": "downloadreport", "name": "DownloadReport", "anchor": "class-downloadreport", "kind": "class"},
#     {"id": "probe-size", "name": "probe_size", "anchor": "function-probe-size", "kind": "function"},
#     {"id": "download-part", "name": "download_part", "anchor": "function-download-part", "kind": "function"},
#     {"id": "chunkdownloadengine", "name": "ChunkDownloadEngine", "anchor": "class-chunkdownloadengine", "kind": "class"},
#     {"id": "download-chunked", "name": "download_chunked", "anchor": "function-download-chunked", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Chunked range download engine.

The engine resolves the exact object size with a HEAD probe, allocates the
target :class:`~RangeRelay.partitioned_file.PartitionedFile`, splits it into
parts, and drains a pre-filled queue of parts with a fixed pool of worker
threads.  Each worker range-fetches one part at a time into its own file
handle seeked to the part offset, then marks the part available so concurrent
readers can consume it.

Failure handling:
- The size probe is never retried; a non-2xx answer raises
  :class:`~RangeRelay.errors.BadStatusError`.
- Part failures (network error, non-2xx, local write error) are retried with a
  constant delay up to the attempt budget.
- The first part to exhaust its budget cancels the remaining workers, which
  finish their current item and stop pulling work; the engine then raises
  :class:`~RangeRelay.errors.RetryExhaustedError`.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import httpx
from tenacity import RetryError

from .cancellation import CancellationToken, ensure_token
from .errors import (
    BODY_SNIPPET_LIMIT,
    BadStatusError,
    CancellationError,
    RangeRelayError,
    RetryExhaustedError,
    SizeUnknownError,
    TransientIOError,
)
from .formats import MediaSource
from .network.client import create_http_client
from .network.retry import create_part_retry_policy
from .partitioned_file import Part, PartitionedFile
from .settings import DownloadConfiguration

logger = logging.getLogger(__name__)

_WRITE_BLOCK = 1 << 16


@dataclass(frozen=True)
class DownloadReport:
    """Summary of a completed chunked download."""

    path: Path
    size: int
    parts: int
    bytes_written: int
    elapsed_sec: float


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


def _read_snippet(response: httpx.Response) -> bytes:
    snippet = bytearray()
    try:
        for block in response.iter_bytes(BODY_SNIPPET_LIMIT):
            snippet.extend(block)
            if len(snippet) >= BODY_SNIPPET_LIMIT:
                break
    except httpx.HTTPError as exc:
        logger.debug("error body truncated", extra={"error": str(exc)})
    return bytes(snippet[:BODY_SNIPPET_LIMIT])


def probe_size(client: httpx.Client, source: MediaSource) -> int:
    """Resolve the exact size of ``source`` with a zero-body request.

    Args:
        client: HTTP client used for the probe.
        source: Media source whose headers accompany the probe.

    Returns:
        The declared ``Content-Length``.

    Raises:
        BadStatusError: The probe answered with a non-2xx status.
        SizeUnknownError: The probe succeeded without a usable length.
        TransientIOError: The probe could not reach the source.
    """
    try:
        response = client.head(source.url, headers=source.headers)
    except httpx.HTTPError as exc:
        raise TransientIOError(f"Size probe failed for {source.url}: {exc}") from exc

    if not _is_success(response.status_code):
        body = response.content[:BODY_SNIPPET_LIMIT]
        raise BadStatusError(
            f"bad status: {response.status_code} {response.reason_phrase}: {body!r}",
            status_code=response.status_code,
            body=body,
            url=source.url,
        )

    raw_length = response.headers.get("Content-Length")
    try:
        size = int(raw_length) if raw_length is not None else -1
    except ValueError:
        size = -1
    if size < 0:
        raise SizeUnknownError(
            f"Size probe for {source.url} returned no Content-Length", url=source.url
        )
    logger.debug("size resolved", extra={"url": source.url, "size": size})
    return size


def download_part(
    client: httpx.Client,
    source: MediaSource,
    part: Part,
    total_size: int,
    *,
    token: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
) -> int:
    """Fetch one part and write it at its offset, then mark it available.

    The ``Range`` header is omitted only when the part spans the whole object.
    Whatever the response body yields is written; its length is not checked
    against the part size.

    Returns:
        Number of bytes written.

    Raises:
        BadStatusError: The fetch answered with a non-2xx status.
        TransientIOError: Network or filesystem failure.
        CancellationError: ``token`` was cancelled before or during the transfer.
    """
    token = ensure_token(token)
    token.raise_if_cancelled()

    headers = dict(source.headers)
    ranged = part.offset > 0 or part.size < total_size
    if ranged:
        headers["Range"] = part.range_header()

    start = time.monotonic()
    written = 0
    request_kwargs = {"headers": headers}
    if timeout is not None:
        request_kwargs["timeout"] = timeout
    try:
        with client.stream("GET", source.url, **request_kwargs) as response:
            if not _is_success(response.status_code):
                body = _read_snippet(response)
                raise BadStatusError(
                    f"bad status: {response.status_code} {response.reason_phrase}: {body!r}",
                    status_code=response.status_code,
                    body=body,
                    url=source.url,
                )
            if ranged and response.status_code == 200:
                logger.warning(
                    "range ignored by origin",
                    extra={"offset": part.offset, "size": part.size, "url": source.url},
                )
            with open(part.file_path, "r+b") as handle:
                handle.seek(part.offset)
                for block in response.iter_bytes(_WRITE_BLOCK):
                    token.raise_if_cancelled()
                    handle.write(block)
                    written += len(block)
    except httpx.HTTPError as exc:
        raise TransientIOError(
            f"Network error fetching bytes {part.offset}+{part.size}: {exc}",
            offset=part.offset,
            size=part.size,
        ) from exc
    except OSError as exc:
        raise TransientIOError(
            f"Write error for bytes {part.offset}+{part.size}: {exc}",
            offset=part.offset,
            size=part.size,
        ) from exc

    part.mark_available()
    duration = max(time.monotonic() - start, 1e-9)
    logger.info(
        "part downloaded",
        extra={
            "offset": part.offset,
            "expected_size": part.size,
            "actual_size": written,
            "duration_sec": round(duration, 3),
            "bytes_per_sec": int(written / duration),
        },
    )
    return written


class ChunkDownloadEngine:
    """Download a remote object into a :class:`PartitionedFile` in parallel.

    Usage:
        engine = ChunkDownloadEngine(DownloadConfiguration(concurrency=4))
        target = PartitionedFile(Path("video.mp4"))
        report = engine.download(source, target)

    Session management:
        Pass ``client`` to share one ``httpx.Client`` across downloads; the
        engine only closes clients it created itself.
    """

    def __init__(
        self,
        config: Optional[DownloadConfiguration] = None,
        *,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.config = config or DownloadConfiguration()
        self._client = client

    def download(
        self,
        source: MediaSource,
        target: PartitionedFile,
        *,
        token: Optional[CancellationToken] = None,
    ) -> DownloadReport:
        """Download ``source`` into ``target`` and mark every part available.

        Args:
            source: Media source descriptor (URL, headers, chunk-size hint).
            target: Unallocated partitioned file; its size is set from the probe.
            token: Optional cancellation token for the whole download.

        Returns:
            :class:`DownloadReport` describing the finished file.

        Raises:
            BadStatusError: The size probe failed.
            AllocationError: The target could not be created.
            RetryExhaustedError: A part failed on every attempt.
            CancellationError: ``token`` was cancelled.
        """
        token = ensure_token(token)
        token.raise_if_cancelled()
        start = time.monotonic()

        client = self._client
        owns_client = client is None
        if client is None:
            client = create_http_client(self.config)
        try:
            total_size = probe_size(client, source)
            target.size = total_size
            target.allocate()
            chunk_size = source.chunk_size_hint if source.chunk_size_hint > 0 else self.config.chunk_size
            parts = target.split(chunk_size)
            logger.info(
                "download starting",
                extra={
                    "url": source.url,
                    "size": total_size,
                    "parts": len(parts),
                    "chunk_size": chunk_size,
                    "concurrency": self.config.concurrency,
                },
            )
            written = self._drain(client, source, target, token)
        finally:
            if owns_client:
                client.close()

        elapsed = time.monotonic() - start
        logger.info(
            "download complete",
            extra={"path": str(target.path), "size": total_size, "elapsed_sec": round(elapsed, 3)},
        )
        return DownloadReport(
            path=target.path,
            size=total_size,
            parts=len(target.parts),
            bytes_written=written,
            elapsed_sec=elapsed,
        )

    def _drain(
        self,
        client: httpx.Client,
        source: MediaSource,
        target: PartitionedFile,
        token: CancellationToken,
    ) -> int:
        work: "queue.Queue[Part]" = queue.Queue(maxsize=max(len(target.parts), 1))
        for part in target.parts:
            work.put_nowait(part)

        scope = token.child()
        failures: List[Exception] = []
        state_lock = threading.Lock()
        totals = {"written": 0}

        def _worker() -> None:
            while not scope.is_cancelled():
                try:
                    part = work.get_nowait()
                except queue.Empty:
                    return
                try:
                    count = self._fetch_with_retry(client, source, part, target.size or 0, scope)
                except Exception as exc:
                    with state_lock:
                        failures.append(exc)
                    scope.cancel()
                    return
                with state_lock:
                    totals["written"] += count

        try:
            with ThreadPoolExecutor(
                max_workers=self.config.concurrency, thread_name_prefix="rangerelay-part"
            ) as pool:
                futures = [pool.submit(_worker) for _ in range(self.config.concurrency)]
                for future in futures:
                    future.result()
        finally:
            token.remove_child(scope)

        if token.is_cancelled():
            raise CancellationError(f"download of {source.url} cancelled")
        if failures:
            fatal = [exc for exc in failures if not isinstance(exc, CancellationError)]
            raise (fatal or failures)[0]

        missing = target.missing_parts()
        if missing:
            raise RangeRelayError(
                f"{len(missing)} parts of {target.path} were never downloaded"
            )
        return totals["written"]

    def _fetch_with_retry(
        self,
        client: httpx.Client,
        source: MediaSource,
        part: Part,
        total_size: int,
        token: CancellationToken,
    ) -> int:
        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            logger.warning(
                "part download failed",
                extra={
                    "offset": part.offset,
                    "size": part.size,
                    "attempt": attempt,
                    "retry_delay_sec": delay,
                    "error": str(exc),
                },
            )

        policy = create_part_retry_policy(
            max_attempts=self.config.max_attempts,
            delay_seconds=self.config.retry_delay_sec,
            token=token,
            on_retry=_on_retry,
        )
        try:
            return policy(
                download_part,
                client,
                source,
                part,
                total_size,
                token=token,
                timeout=self.config.request_timeout_sec,
            )
        except RetryError as exc:
            attempts = exc.last_attempt.attempt_number
            last_error = exc.last_attempt.exception()
            logger.error(
                "part retries exhausted",
                extra={"offset": part.offset, "size": part.size, "attempts": attempts},
            )
            raise RetryExhaustedError(
                f"Part at offset {part.offset} (size {part.size}) failed after "
                f"{attempts} attempts: {last_error}",
                offset=part.offset,
                size=part.size,
                attempts=attempts,
                last_error=last_error,
            ) from last_error


def download_chunked(
    source: MediaSource,
    target: PartitionedFile,
    *,
    config: Optional[DownloadConfiguration] = None,
    client: Optional[httpx.Client] = None,
    token: Optional[CancellationToken] = None,
) -> DownloadReport:
    """Convenience wrapper around :class:`ChunkDownloadEngine`."""
    return ChunkDownloadEngine(config, client=client).download(source, target, token=token)


__all__ = [
    "DownloadReport",
    "ChunkDownloadEngine",
    "download_chunked",
    "download_part",
    "probe_size",
]
