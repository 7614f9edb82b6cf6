"""Streaming upload of a growing file through an :class:`InvokerPool`.

:class:`StreamUploader` couples :class:`~RangeRelay.streaming.GrowingFileStreamer`
to the pool: every non-empty chunk becomes one :class:`UploadPartRequest`.
The total part count is unknown until the writer finishes, so non-final parts
announce ``total_parts = -1`` and the last part announces ``index + 1``.
"""

from __future__ import annotations

import logging
import secrets
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from .cancellation import CancellationToken, ensure_token
from .errors import CancellationError, RangeRelayError
from .invoker_pool import InvokerPool
from .settings import DEFAULT_UPLOAD_PART_SIZE
from .streaming import CompletionSignal, GrowingFileStreamer, StreamChunk

logger = logging.getLogger(__name__)

UNKNOWN_TOTAL_PARTS = -1


@dataclass(frozen=True)
class UploadPartRequest:
    file_id: Union[int, str]
    part_index: int
    total_parts: int
    data: bytes


@dataclass(frozen=True)
class UploadSummary:
    file_id: Union[int, str]
    parts: int
    bytes: int


def new_file_id() -> int:
    """Random positive 63-bit identifier grouping the parts of one upload."""
    return secrets.randbits(63)


class StreamUploader:
    """Upload a file part by part while it is still being written.

    Args:
        pool: Invokers receiving :class:`UploadPartRequest` values.
        part_size: Size of every non-final part; the sink's transfer unit.
        concurrency: Parts allowed in flight at once.  Above one, parts may
            complete out of order.
        poll_interval: Growth polling interval handed to the streamer.
    """

    def __init__(
        self,
        pool: InvokerPool,
        *,
        part_size: int = DEFAULT_UPLOAD_PART_SIZE,
        concurrency: int = 1,
        poll_interval: float = 0.01,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.pool = pool
        self.concurrency = concurrency
        self.streamer = GrowingFileStreamer(part_size, poll_interval=poll_interval)

    def upload(
        self,
        path: Path | str,
        done: CompletionSignal,
        *,
        file_id: Optional[Union[int, str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> UploadSummary:
        """Stream ``path`` to the pool until ``done`` fires and the tail is sent.

        Raises:
            NoClientsError: The pool is empty.
            CancellationError: ``token`` was cancelled.
            RangeRelayError: A part failed or was rejected by the sink.
        """
        token = ensure_token(token)
        self.pool.require_members()
        scope = token.child()
        file_id = new_file_id() if file_id is None else file_id
        slots = threading.BoundedSemaphore(self.concurrency)
        state_lock = threading.Lock()
        failures: List[Exception] = []
        totals = {"parts": 0, "bytes": 0}

        def _send(request: UploadPartRequest) -> None:
            try:
                accepted = self.pool.invoke(request)
                if accepted is False:
                    raise RangeRelayError(
                        f"Sink rejected part {request.part_index} of file {request.file_id}"
                    )
            except Exception as exc:
                with state_lock:
                    failures.append(exc)
                scope.cancel()
                logger.error(
                    "part upload failed",
                    extra={"file_id": request.file_id, "index": request.part_index, "error": str(exc)},
                )
                return
            finally:
                slots.release()
            with state_lock:
                totals["parts"] += 1
                totals["bytes"] += len(request.data)
            logger.debug(
                "part uploaded",
                extra={"file_id": request.file_id, "index": request.part_index, "size": len(request.data)},
            )

        stream_error: Optional[CancellationError] = None
        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="rangerelay-upload"
        ) as executor:

            def _on_chunk(chunk: StreamChunk) -> None:
                if not chunk.data:
                    return
                request = UploadPartRequest(
                    file_id=file_id,
                    part_index=chunk.index,
                    total_parts=chunk.index + 1 if chunk.last else UNKNOWN_TOTAL_PARTS,
                    data=chunk.data,
                )
                slots.acquire()
                if scope.is_cancelled():
                    slots.release()
                    raise CancellationError(f"upload of {path} cancelled")
                executor.submit(_send, request)

            try:
                self.streamer.stream(path, done, _on_chunk, token=scope)
            except CancellationError as exc:
                stream_error = exc
            finally:
                token.remove_child(scope)

        if failures:
            raise failures[0]
        if stream_error is not None:
            raise stream_error

        summary = UploadSummary(file_id=file_id, parts=totals["parts"], bytes=totals["bytes"])
        logger.info(
            "upload complete",
            extra={"file_id": file_id, "parts": summary.parts, "bytes": summary.bytes},
        )
        return summary


__all__ = [
    "StreamUploader",
    "UploadPartRequest",
    "UploadSummary",
    "UNKNOWN_TOTAL_PARTS",
    "new_file_id",
]
