"""HTTP plumbing shared by the range downloader, relay routes, and HTTP invokers.

Exposes the client factory and the per-part retry policy so callers do not
need to know which module hosts them.
"""

from .client import create_http_client, create_ssl_context
from .retry import create_part_retry_policy, is_transient_failure

__all__ = [
    "create_http_client",
    "create_ssl_context",
    "create_part_retry_policy",
    "is_transient_failure",
]
