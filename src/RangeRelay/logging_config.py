"""
Structured Logging Utilities

This module centralizes logging setup for the relay engine.  Components log
through ``logging.getLogger(__name__)`` with short event messages and attach
structured context (offsets, sizes, attempts, statuses) via ``extra``.  The
helpers here install a console handler and, optionally, a rotating JSON-lines
file handler that serializes that context with secrets masked.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Dict, Optional

from .settings import LoggingConfiguration

ROOT_LOGGER_NAME = "RangeRelay"

_SENSITIVE_KEYS = {"authorization", "cookie", "set-cookie", "token", "secret", "password", "api_key"}

# Attributes present on every LogRecord; anything else arrived through ``extra``.
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Remove secrets from structured payloads prior to logging.

    Args:
        payload: Arbitrary key-value pairs that may contain request headers
            forwarded from a media source descriptor.

    Returns:
        Copy of the payload where credential-bearing fields are replaced with
        ``***masked***``.  Nested mappings are masked recursively.

    Examples:
        >>> mask_sensitive_data({"Cookie": "sid=1", "offset": 0})
        {'Cookie': '***masked***', 'offset': 0}
    """
    masked: Dict[str, object] = {}
    for key, value in payload.items():
        if key.lower() in _SENSITIVE_KEYS:
            masked[key] = "***masked***"
        elif isinstance(value, dict):
            masked[key] = mask_sensitive_data(value)
        else:
            masked[key] = value
    return masked


class JSONFormatter(logging.Formatter):
    """Formatter emitting one JSON object per record, including ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        log_obj: Dict[str, object] = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        for key, value in vars(record).items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            log_obj[key] = value
        if record.exc_info:
            log_obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(log_obj), default=str)


def setup_logging(config: Optional[LoggingConfiguration] = None) -> logging.Logger:
    """Configure handlers on the package logger.

    Calling this repeatedly replaces the handlers installed by earlier calls
    instead of stacking duplicates.

    Args:
        config: Logging configuration; defaults are used when omitted.

    Returns:
        The configured ``RangeRelay`` logger.
    """
    config = config or LoggingConfiguration()
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, config.level, logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_rangerelay_managed", False):
            logger.removeHandler(handler)
            handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    if config.json_output:
        stream_handler.setFormatter(JSONFormatter())
    else:
        stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    stream_handler._rangerelay_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    if config.log_dir is not None:
        config.log_dir.mkdir(parents=True, exist_ok=True)
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = RotatingFileHandler(
            config.log_dir / f"rangerelay-{today}.jsonl",
            maxBytes=int(config.max_log_size_mb * 1024 * 1024),
            backupCount=5,
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._rangerelay_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.propagate = True
    return logger


__all__ = ["JSONFormatter", "mask_sensitive_data", "setup_logging", "ROOT_LOGGER_NAME"]
