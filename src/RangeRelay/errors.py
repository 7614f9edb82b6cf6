"""Exception hierarchy shared by the download, serving, and upload paths.

The relay moves bytes through three stages: a chunked range download into a
pre-sized local file, a partial-content server feeding an external consumer,
and a streaming upload of a growing output file.  Failures are grouped here so
callers can react to broad categories (transient versus fatal) while each
exception still carries the offset, size, attempt count, or status needed to
diagnose a failed job without re-running it.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "RangeRelayError",
    "ConfigurationError",
    "AllocationError",
    "BadStatusError",
    "SizeUnknownError",
    "TransientIOError",
    "RetryExhaustedError",
    "NoClientsError",
    "CancellationError",
    "TranscodeError",
]

BODY_SNIPPET_LIMIT = 1024


class RangeRelayError(RuntimeError):
    """Base exception for download, serving, and upload failures."""


class ConfigurationError(RangeRelayError):
    """Raised when settings or environment overrides are invalid."""


class AllocationError(RangeRelayError):
    """Raised when the target file cannot be created or sized."""

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class BadStatusError(RangeRelayError):
    """Raised when a remote endpoint answers with a non-2xx status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        body: bytes = b"",
        url: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body[:BODY_SNIPPET_LIMIT]
        self.url = url


class SizeUnknownError(RangeRelayError):
    """Raised when a size probe succeeds without declaring a usable length."""

    def __init__(self, message: str, *, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


class TransientIOError(RangeRelayError):
    """Network or local I/O failure while fetching or writing one part."""

    def __init__(
        self,
        message: str,
        *,
        offset: Optional[int] = None,
        size: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.offset = offset
        self.size = size


class RetryExhaustedError(RangeRelayError):
    """Raised once a part has failed on every permitted attempt."""

    def __init__(
        self,
        message: str,
        *,
        offset: int,
        size: int,
        attempts: int,
        last_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.offset = offset
        self.size = size
        self.attempts = attempts
        self.last_error = last_error


class NoClientsError(RangeRelayError):
    """Raised when an invoker pool is asked to call with no members."""


class CancellationError(RangeRelayError):
    """Raised when the surrounding operation has been cancelled."""


class TranscodeError(RangeRelayError):
    """Raised when the external transcoder exits unsuccessfully."""

    def __init__(self, message: str, *, returncode: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


# === NAVMAP v1 ===
# {
#   "module": "RangeRelay.errors",
#   "purpose": "Define the exception hierarchy used across download, serving, and upload",
#   "sections": [
#     {"id": "base", "name": "Base Exceptions", "anchor": "BAS", "kind": "api"},
#     {"id": "download", "name": "Download Errors", "anchor": "DLD", "kind": "api"},
#     {"id": "upload", "name": "Pool & Upload Errors", "anchor": "UPL", "kind": "api"}
#   ]
# }
# === /NAVMAP ===
