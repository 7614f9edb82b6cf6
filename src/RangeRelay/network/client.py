"""HTTPX client factory for range downloads.

Each download engine builds (or is handed) one ``httpx.Client`` shared by its
workers.  The client carries per-phase timeouts, a connection pool sized to
the worker count, an optional proxy, and a certifi-backed TLS context.
Redirects are followed because media CDNs routinely bounce range requests to
edge hosts.
"""

from __future__ import annotations

import logging
import ssl
from typing import Mapping, Optional

import certifi
import httpx

from ..settings import DownloadConfiguration

logger = logging.getLogger(__name__)


def create_ssl_context(verify: bool = True) -> ssl.SSLContext:
    """Create an SSL context using the certifi bundle.

    Args:
        verify: When ``False`` hostname and certificate checks are disabled.

    Returns:
        Configured ``ssl.SSLContext``.
    """
    if not verify:
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        logger.warning("TLS verification disabled")
        return ctx

    ctx = ssl.create_default_context(cafile=certifi.where())
    ctx.check_hostname = True
    ctx.verify_mode = ssl.CERT_REQUIRED
    return ctx


def create_http_client(
    config: Optional[DownloadConfiguration] = None,
    *,
    headers: Optional[Mapping[str, str]] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> httpx.Client:
    """Create an ``httpx.Client`` configured for parallel range fetches.

    Args:
        config: Download configuration; defaults are used when omitted.
        headers: Default headers sent with every request.
        transport: Optional transport override (tests pass ``httpx.MockTransport``).

    Returns:
        A client the caller owns and must close.
    """
    config = config or DownloadConfiguration()
    timeout = httpx.Timeout(
        config.request_timeout_sec,
        connect=config.connect_timeout_sec,
    )
    limits = httpx.Limits(
        max_connections=max(config.concurrency * 2, 4),
        max_keepalive_connections=config.concurrency,
    )
    kwargs = {}
    if transport is not None:
        kwargs["transport"] = transport
    elif config.proxy:
        kwargs["proxy"] = config.proxy

    client = httpx.Client(
        timeout=timeout,
        limits=limits,
        headers=dict(headers or {}),
        follow_redirects=True,
        verify=create_ssl_context(config.verify_tls),
        **kwargs,
    )
    logger.debug(
        "http client created",
        extra={"proxy": bool(config.proxy), "max_connections": limits.max_connections},
    )
    return client


__all__ = ["create_http_client", "create_ssl_context"]
