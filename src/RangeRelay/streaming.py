"""Chunked re-reading of a file that another process is still appending to.

The transcoder writes its output incrementally; :class:`GrowingFileStreamer`
polls the file size and hands full chunks to a callback as soon as enough
bytes exist, so uploading overlaps with transcoding.  The writer announces
completion out of band through a ``threading.Event``-like signal, after which
the remaining tail is emitted as the single final chunk.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Protocol

from .cancellation import CancellationToken, ensure_token
from .errors import CancellationError, TransientIOError

logger = logging.getLogger(__name__)


class CompletionSignal(Protocol):
    def is_set(self) -> bool: ...


@dataclass(frozen=True)
class StreamChunk:
    """One emitted chunk; only the final chunk of a stream has ``last`` set."""

    offset: int
    index: int
    data: bytes
    last: bool

    @property
    def size(self) -> int:
        return len(self.data)


ChunkCallback = Callable[[StreamChunk], object]


class GrowingFileStreamer:
    """Emit fixed-size chunks of a growing file in offset order.

    A full chunk is emitted only while the unread tail is strictly larger than
    ``part_size``; a tail of at most one chunk is held back until the
    completion signal fires, so the final chunk is never empty unless the
    whole file is.

    Args:
        part_size: Size of every non-final chunk.
        poll_interval: Seconds between size checks while waiting for data.
    """

    def __init__(self, part_size: int, *, poll_interval: float = 0.01) -> None:
        if part_size <= 0:
            raise ValueError("part_size must be positive")
        self.part_size = part_size
        self.poll_interval = poll_interval

    def stream(
        self,
        path: Path | str,
        done: CompletionSignal,
        callback: ChunkCallback,
        *,
        token: Optional[CancellationToken] = None,
    ) -> int:
        """Read ``path`` until ``done`` fires and the tail has been emitted.

        Args:
            path: File being appended to.  The streamer waits for it to appear.
            done: Completion signal; once set, no more bytes will be appended.
            callback: Receives each :class:`StreamChunk`; exceptions it raises
                stop the stream and propagate unchanged.
            token: Optional cancellation token checked on every poll.

        Returns:
            Number of chunks emitted, including the final one.

        Raises:
            CancellationError: ``token`` was cancelled.
            TransientIOError: The file could not be opened or shrank while read.
        """
        token = ensure_token(token)
        path = Path(path)
        offset = 0
        index = 0
        with self._open_when_present(path, done, token) as handle:
            while True:
                token.raise_if_cancelled()
                # Sample the signal before the size so the final append is seen.
                finished = done.is_set()
                tail = os.fstat(handle.fileno()).st_size - offset
                if tail > self.part_size:
                    data = _read_exact(handle, offset, self.part_size, path)
                    callback(StreamChunk(offset=offset, index=index, data=data, last=False))
                    logger.debug(
                        "chunk emitted", extra={"offset": offset, "index": index, "size": len(data)}
                    )
                    offset += len(data)
                    index += 1
                    continue
                if finished:
                    data = _read_exact(handle, offset, tail, path)
                    callback(StreamChunk(offset=offset, index=index, data=data, last=True))
                    logger.info(
                        "stream finished",
                        extra={"path": str(path), "chunks": index + 1, "size": offset + len(data)},
                    )
                    return index + 1
                if token.wait(self.poll_interval):
                    raise CancellationError(f"streaming of {path} cancelled")

    def _open_when_present(
        self, path: Path, done: CompletionSignal, token: CancellationToken
    ) -> BinaryIO:
        while True:
            finished = done.is_set()
            try:
                return open(path, "rb", buffering=0)
            except FileNotFoundError as exc:
                if finished:
                    raise TransientIOError(f"{path} was never created") from exc
            except OSError as exc:
                raise TransientIOError(f"Cannot open {path}: {exc}") from exc
            if token.wait(self.poll_interval):
                raise CancellationError(f"streaming of {path} cancelled")


def _read_exact(handle: BinaryIO, offset: int, count: int, path: Path) -> bytes:
    handle.seek(offset)
    data = bytearray()
    while len(data) < count:
        block = handle.read(count - len(data))
        if not block:
            break
        data.extend(block)
    if len(data) != count:
        raise TransientIOError(
            f"{path} shrank while streaming: wanted {count} bytes at {offset}, got {len(data)}",
            offset=offset,
            size=count,
        )
    return bytes(data)


def stream_growing_file(
    path: Path | str,
    part_size: int,
    done: CompletionSignal,
    callback: ChunkCallback,
    *,
    token: Optional[CancellationToken] = None,
    poll_interval: float = 0.01,
) -> int:
    """Functional form of :meth:`GrowingFileStreamer.stream`."""
    streamer = GrowingFileStreamer(part_size, poll_interval=poll_interval)
    return streamer.stream(path, done, callback, token=token)


__all__ = ["CompletionSignal", "GrowingFileStreamer", "StreamChunk", "stream_growing_file"]
