# === NAVMAP v1 ===
# {
#   "module": "RangeRelay.invoker_pool",
#   "purpose": "Round-robin dispatch of outbound calls across interchangeable clients",
#   "sections": [
#     {"id": "invoker", "name": "Invoker", "anchor": "class-invoker", "kind": "class"},
#     {"id": "invokerpool", "name": "InvokerPool", "anchor": "class-invokerpool", "kind": "class"},
#     {"id": "httpinvoker", "name": "HttpInvoker", "anchor": "class-httpinvoker", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Invoker pool for parallel outbound calls.

Upload throughput is bounded per connection, so parts are spread over several
independently configured clients.  :class:`InvokerPool` owns the membership
list and the rotation cursor behind one lock; membership only grows.  Members
are never health-checked: a failing member stays in rotation and its errors
surface to whoever called :meth:`InvokerPool.invoke`.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Protocol

import httpx

from .errors import BODY_SNIPPET_LIMIT, BadStatusError, NoClientsError, TransientIOError

if TYPE_CHECKING:
    from .upload import UploadPartRequest

logger = logging.getLogger(__name__)


class Invoker(Protocol):
    """Uniform call signature shared by every pooled client."""

    def invoke(self, request: Any, **kwargs: Any) -> Any: ...


class InvokerPool:
    """Append-only set of invokers selected in round-robin order.

    Examples:
        >>> pool = InvokerPool()
        >>> pool.invoke("ping")
        Traceback (most recent call last):
        ...
        RangeRelay.errors.NoClientsError: invoker pool is empty
    """

    def __init__(self, invokers: Iterable[Invoker] = ()) -> None:
        self._lock = threading.Lock()
        self._members: List[Invoker] = list(invokers)
        self._cursor = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._members)

    def add(self, invoker: Invoker) -> None:
        with self._lock:
            self._members.append(invoker)
            size = len(self._members)
        logger.debug("invoker added", extra={"pool_size": size})

    def require_members(self) -> None:
        """Raise :class:`NoClientsError` when the pool has no members."""
        with self._lock:
            if not self._members:
                raise NoClientsError("invoker pool is empty")

    def next_invoker(self) -> Invoker:
        """Return the member at the cursor and advance it.

        Raises:
            NoClientsError: The pool has no members.
        """
        with self._lock:
            if not self._members:
                raise NoClientsError("invoker pool is empty")
            position = self._cursor % len(self._members)
            self._cursor = position + 1
            return self._members[position]

    def invoke(self, request: Any, **kwargs: Any) -> Any:
        """Forward ``request`` to the next member; its result or error is returned as is."""
        return self.next_invoker().invoke(request, **kwargs)


class HttpInvoker:
    """Invoker that POSTs upload parts to an HTTP sink.

    Each part is sent as the raw request body with ``X-File-Id``,
    ``X-Part-Index`` and ``X-Total-Parts`` headers.  The sink replies with
    JSON ``{"ok": true}``; an empty body counts as success.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        client: Optional[httpx.Client] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = 30.0,
    ) -> None:
        self.endpoint = endpoint
        self.headers: Dict[str, str] = dict(headers or {})
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def __enter__(self) -> "HttpInvoker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def invoke(self, request: "UploadPartRequest", **kwargs: Any) -> bool:
        headers = {
            **self.headers,
            "Content-Type": "application/octet-stream",
            "X-File-Id": str(request.file_id),
            "X-Part-Index": str(request.part_index),
            "X-Total-Parts": str(request.total_parts),
        }
        try:
            response = self._client.post(
                self.endpoint, content=request.data, headers=headers, **kwargs
            )
        except httpx.HTTPError as exc:
            raise TransientIOError(
                f"Upload of part {request.part_index} to {self.endpoint} failed: {exc}",
                size=len(request.data),
            ) from exc

        if not 200 <= response.status_code < 300:
            body = response.content[:BODY_SNIPPET_LIMIT]
            raise BadStatusError(
                f"bad status: {response.status_code} {response.reason_phrase}: {body!r}",
                status_code=response.status_code,
                body=body,
                url=self.endpoint,
            )
        if not response.content.strip():
            return True
        try:
            payload = response.json()
        except ValueError as exc:
            raise BadStatusError(
                f"Sink returned a non-JSON reply for part {request.part_index}",
                status_code=response.status_code,
                body=response.content,
                url=self.endpoint,
            ) from exc
        return bool(payload.get("ok", False)) if isinstance(payload, dict) else False


__all__ = ["HttpInvoker", "Invoker", "InvokerPool"]
