"""Cooperative cancellation primitives shared by download and streaming tasks.

Workers in the chunk downloader, the availability-aware reader, and the
growing-file streamer all block on ordinary I/O or on short polling sleeps.
:class:`CancellationToken` lets them stop between those points without thread
interruption.  Tokens form a tree: cancelling a parent cancels every child,
which is how a single fatal worker error stops its siblings while the
caller's own token stays untouched.
"""

from __future__ import annotations

import threading
from typing import List, Optional

from .errors import CancellationError


class CancellationToken:
    """Thread-safe cancellation token for cooperative task cancellation.

    Examples:
        >>> token = CancellationToken()
        >>> child = token.child()
        >>> token.cancel()
        >>> child.is_cancelled()
        True
    """

    def __init__(self) -> None:
        """Initialize a new cancellation token."""
        self._is_cancelled = threading.Event()
        self._lock = threading.Lock()
        self._children: List[CancellationToken] = []

    def cancel(self) -> None:
        """Signal that cancellation has been requested, including for children."""
        with self._lock:
            self._is_cancelled.set()
            children = list(self._children)
        for child in children:
            child.cancel()

    def is_cancelled(self) -> bool:
        """Check if cancellation has been requested.

        Returns:
            True if cancellation has been requested, False otherwise.
        """
        return self._is_cancelled.is_set()

    def wait(self, timeout: Optional[float]) -> bool:
        """Sleep for up to ``timeout`` seconds, waking early on cancellation.

        Args:
            timeout: Maximum number of seconds to wait.

        Returns:
            True if the token is cancelled when the wait ends.
        """
        return self._is_cancelled.wait(timeout)

    def child(self) -> "CancellationToken":
        """Create a token that is cancelled whenever this one is."""
        token = CancellationToken()
        with self._lock:
            self._children.append(token)
            cancelled = self._is_cancelled.is_set()
        if cancelled:
            token.cancel()
        return token

    def remove_child(self, token: "CancellationToken") -> None:
        """Detach ``token`` once the work it scoped has finished.

        Removing a token that is not a child is a no-op.
        """
        with self._lock:
            try:
                self._children.remove(token)
            except ValueError:
                return

    @property
    def child_count(self) -> int:
        with self._lock:
            return len(self._children)

    def raise_if_cancelled(self) -> None:
        """Raise :class:`CancellationError` when cancellation was requested."""
        if self.is_cancelled():
            raise CancellationError("operation cancelled")


def ensure_token(token: Optional[CancellationToken]) -> CancellationToken:
    """Return ``token`` or a fresh, never-cancelled token when it is ``None``."""
    return token if token is not None else CancellationToken()


__all__ = ["CancellationToken", "ensure_token"]
