# === NAVMAP v1 ===
# {
#   "module": "RangeRelay.partitioned_file",
#   "purpose": "Pre-sized local file split into independently available byte-range parts",
#   "sections": [
#     {"id": "part", "name": "Part", "anchor": "class-part", "kind": "class"},
#     {"id": "partitionedfile", "name": "PartitionedFile", "anchor": "class-partitionedfile", "kind": "class"},
#     {"id": "copy-exact", "name": "_copy_exact", "anchor": "function-copy-exact", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Partitioned file data model.

A :class:`PartitionedFile` is a file on local storage, allocated to its final
size up front and divided into contiguous :class:`Part` ranges.  Download
workers write parts independently and flip each one to *available* once its
bytes are on disk; readers use that state to consume the file while it is
still being filled.

Lifecycle:
    1. Construct with a path (size optionally unknown).
    2. Set ``size`` once it has been resolved, then :meth:`PartitionedFile.allocate`.
    3. :meth:`PartitionedFile.split` computes the parts exactly once.
    4. Writers call :meth:`Part.mark_available`; readers poll through
       :meth:`PartitionedFile.stream_at`.
"""

from __future__ import annotations

import bisect
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Protocol, Tuple

from .cancellation import CancellationToken, ensure_token
from .errors import AllocationError, CancellationError, RangeRelayError
from .settings import DEFAULT_CHUNK_SIZE

logger = logging.getLogger(__name__)

_COPY_BLOCK = 64 * 1024


class _Writer(Protocol):
    def write(self, data: bytes) -> object: ...


@dataclass(eq=False)
class Part:
    """Contiguous byte range of a :class:`PartitionedFile`.

    ``available`` only ever moves from ``False`` to ``True`` and is guarded by
    a lock owned by the part, so unrelated workers never contend.
    """

    offset: int
    size: int
    file_path: Path
    _available: bool = field(default=False, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def end(self) -> int:
        """Offset one past the last byte of this part."""
        return self.offset + self.size

    @property
    def available(self) -> bool:
        return self.is_available()

    def mark_available(self) -> None:
        with self._lock:
            self._available = True

    def is_available(self) -> bool:
        with self._lock:
            return self._available

    def range_header(self) -> str:
        """Return the HTTP ``Range`` header value covering this part."""
        return f"bytes={self.offset}-{self.end - 1}"


class PartitionedFile:
    """A file plus its immutable partitioning into :class:`Part` ranges.

    Attributes:
        path: Location of the backing file.
        size: Total size in bytes, ``None`` until resolved.
        parts: Parts in ascending offset order, empty until :meth:`split`.
    """

    def __init__(self, path: Path | str, size: Optional[int] = None) -> None:
        self.path = Path(path)
        self.size = size
        self.parts: List[Part] = []
        self._offsets: List[int] = []
        self._by_offset: Dict[int, Part] = {}
        self._split_key: Optional[Tuple[int, int]] = None
        self._allocated = False

    def __repr__(self) -> str:
        return f"PartitionedFile(path={str(self.path)!r}, size={self.size}, parts={len(self.parts)})"

    @classmethod
    def from_existing(cls, path: Path | str, chunk_size_hint: int = 0) -> "PartitionedFile":
        """Wrap a complete file already on disk; every part is available."""
        pfile = cls(path, size=Path(path).stat().st_size)
        pfile._allocated = True
        for part in pfile.split(chunk_size_hint):
            part.mark_available()
        return pfile

    @property
    def allocated(self) -> bool:
        return self._allocated

    @property
    def partitioned(self) -> bool:
        """Whether :meth:`split` has produced the part sequence."""
        return self._split_key is not None

    def allocate(self) -> None:
        """Create the backing file and size it to exactly ``size`` bytes.

        Raises:
            AllocationError: If the size is unresolved, the file was already
                allocated, or the filesystem refuses the create/truncate.
        """
        if self.size is None or self.size < 0:
            raise AllocationError(
                f"Cannot allocate {self.path} without a resolved size", path=str(self.path)
            )
        if self._allocated:
            raise AllocationError(f"{self.path} is already allocated", path=str(self.path))
        try:
            with open(self.path, "wb") as handle:
                handle.truncate(self.size)
        except OSError as exc:
            raise AllocationError(
                f"Failed to allocate {self.size} bytes at {self.path}: {exc}",
                path=str(self.path),
            ) from exc
        self._allocated = True
        logger.debug("file allocated", extra={"path": str(self.path), "size": self.size})

    def split(self, chunk_size_hint: int = 0) -> List[Part]:
        """Compute the part sequence for the resolved size.

        Args:
            chunk_size_hint: Preferred part size in bytes; values ``<= 0`` fall
                back to 1 MiB.

        Returns:
            The parts, ascending by offset.  The final part holds the
            remainder, or a full chunk when the size divides evenly.

        Raises:
            ValueError: If the size is unresolved, or parts already exist for a
                different size/chunk pair.
        """
        if self.size is None or self.size < 0:
            raise ValueError(f"Cannot split {self.path} before its size is resolved")
        chunk_size = chunk_size_hint if chunk_size_hint > 0 else DEFAULT_CHUNK_SIZE
        key = (self.size, chunk_size)
        if self._split_key is not None:
            if self._split_key == key:
                return self.parts
            raise ValueError(
                f"{self.path} is already split as size={self._split_key[0]} "
                f"chunk={self._split_key[1]}; parts cannot be recreated"
            )

        parts: List[Part] = []
        offset = 0
        while offset < self.size:
            size = min(chunk_size, self.size - offset)
            parts.append(Part(offset=offset, size=size, file_path=self.path))
            offset += size

        self.parts = parts
        self._offsets = [part.offset for part in parts]
        self._by_offset = {part.offset: part for part in parts}
        self._split_key = key
        return self.parts

    def part_at(self, offset: int) -> Optional[Part]:
        """Return the part starting exactly at ``offset``, if any."""
        return self._by_offset.get(offset)

    def part_containing(self, offset: int) -> Optional[Part]:
        """Return the part whose range covers ``offset``, if any."""
        index = bisect.bisect_right(self._offsets, offset) - 1
        if index < 0:
            return None
        part = self.parts[index]
        return part if offset < part.end else None

    def available_until(self, offset: int) -> int:
        """Return the end of the contiguous available run starting at ``offset``.

        Returns ``offset`` itself when the covering part is not available yet.
        """
        index = bisect.bisect_right(self._offsets, offset) - 1
        if index < 0:
            return offset
        end = offset
        for part in self.parts[index:]:
            if not part.is_available():
                break
            end = part.end
        return max(end, offset)

    def is_complete(self) -> bool:
        return bool(self._split_key) and all(part.is_available() for part in self.parts)

    def missing_parts(self) -> List[Part]:
        return [part for part in self.parts if not part.is_available()]

    def stream_at(
        self,
        writer: _Writer,
        offset: int = 0,
        length: Optional[int] = None,
        *,
        token: Optional[CancellationToken] = None,
        poll_interval: float = 0.001,
    ) -> int:
        """Copy bytes from ``offset`` to ``writer`` as their parts become available.

        The reader never touches a byte whose part is not yet available: it
        forwards the contiguous available run, then polls at ``poll_interval``
        until the next part flips.

        Args:
            writer: Object with a ``write(bytes)`` method.
            offset: First byte to deliver; need not fall on a part boundary.
            length: Number of bytes to deliver, ``None`` for the rest of the file.
            token: Optional cancellation token checked between polls.
            poll_interval: Seconds to sleep while waiting for availability.

        Returns:
            Number of bytes written.

        Raises:
            CancellationError: If ``token`` is cancelled before delivery completes.
            ValueError: If the file has not been split or ``offset`` is out of range.
        """
        if self._split_key is None or self.size is None:
            raise ValueError(f"{self.path} has not been split")
        if offset < 0 or offset > self.size:
            raise ValueError(f"offset {offset} outside file of size {self.size}")
        token = ensure_token(token)
        end = self.size if length is None else min(self.size, offset + max(length, 0))

        cursor = offset
        # Unbuffered so read-ahead never caches bytes of parts still being written.
        with open(self.path, "rb", buffering=0) as handle:
            handle.seek(offset)
            while cursor < end:
                token.raise_if_cancelled()
                to_write = min(self.available_until(cursor), end) - cursor
                if to_write <= 0:
                    if token.wait(poll_interval):
                        raise CancellationError("availability wait cancelled")
                    continue
                cursor += _copy_exact(handle, writer, to_write)
        return cursor - offset


def _copy_exact(source: BinaryIO, writer: _Writer, count: int) -> int:
    remaining = count
    while remaining > 0:
        block = source.read(min(_COPY_BLOCK, remaining))
        if not block:
            raise RangeRelayError(f"unexpected end of file with {remaining} bytes outstanding")
        writer.write(block)
        remaining -= len(block)
    return count


__all__ = ["Part", "PartitionedFile"]
