# === NAVMAP v1 ===
# {
#   "module": "RangeRelay.settings",
#   "purpose": "Define configuration models and environment overrides for the relay engine",
#   "sections": [
#     {"id": "downloadconfiguration", "name": "DownloadConfiguration", "anchor": "class-downloadconfiguration", "kind": "class"},
#     {"id": "streamingconfiguration", "name": "StreamingConfiguration", "anchor": "class-streamingconfiguration", "kind": "class"},
#     {"id": "serverconfiguration", "name": "ServerConfiguration", "anchor": "class-serverconfiguration", "kind": "class"},
#     {"id": "loggingconfiguration", "name": "LoggingConfiguration", "anchor": "class-loggingconfiguration", "kind": "class"},
#     {"id": "relaysettings", "name": "RelaySettings", "anchor": "class-relaysettings", "kind": "class"},
#     {"id": "environmentoverrides", "name": "EnvironmentOverrides", "anchor": "class-environmentoverrides", "kind": "class"},
#     {"id": "load-settings", "name": "load_settings", "anchor": "function-load-settings", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Configuration models for the chunked download, serving, and upload engine.

Settings are grouped into pydantic sections so each component receives only
the slice it needs.  Defaults reproduce the engine's fixed contract (1 MiB
parts, four download workers, ten attempts one second apart); the
``RANGERELAY_*`` environment variables override them through
:class:`EnvironmentOverrides`.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, Optional

import platformdirs
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

DEFAULT_CHUNK_SIZE = 1024 * 1024
DEFAULT_CONCURRENCY = 4
DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_RETRY_DELAY_SEC = 1.0
DEFAULT_UPLOAD_PART_SIZE = 512 * 1024

logger = logging.getLogger(__name__)


class DownloadConfiguration(BaseModel):
    """Parameters controlling chunked range downloads."""

    chunk_size: int = Field(
        default=DEFAULT_CHUNK_SIZE,
        gt=0,
        description="Part size used when the source carries no chunk-size hint",
    )
    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1, le=64)
    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1, le=100)
    retry_delay_sec: float = Field(default=DEFAULT_RETRY_DELAY_SEC, ge=0.0, le=60.0)
    request_timeout_sec: float = Field(
        default=5.0, gt=0.0, le=600.0, description="Timeout applied to each part attempt"
    )
    connect_timeout_sec: float = Field(default=5.0, gt=0.0, le=60.0)
    proxy: Optional[str] = Field(default=None, description="Optional proxy URL for outbound HTTP")
    verify_tls: bool = Field(default=True)

    model_config = {"validate_assignment": True}

    @field_validator("proxy")
    @classmethod
    def _normalize_proxy(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class StreamingConfiguration(BaseModel):
    """Parameters for re-reading growing files and uploading their parts."""

    upload_part_size: int = Field(
        default=DEFAULT_UPLOAD_PART_SIZE,
        gt=0,
        description="Maximum transfer unit accepted by the remote sink",
    )
    poll_interval_sec: float = Field(default=0.01, ge=0.0, le=5.0)
    availability_poll_interval_sec: float = Field(default=0.001, ge=0.0, le=5.0)
    upload_concurrency: int = Field(default=1, ge=1, le=32)

    model_config = {"validate_assignment": True}


class ServerConfiguration(BaseModel):
    """Bind address and read contract for the partial-content server."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=0, ge=0, le=65535)
    gate_on_availability: bool = Field(
        default=False,
        description="Serve ranges only once the covering parts are downloaded",
    )

    model_config = {"validate_assignment": True}


class LoggingConfiguration(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    json_output: bool = Field(default=False, alias="json")
    log_dir: Optional[Path] = Field(default=None)
    max_log_size_mb: int = Field(default=50, gt=0)

    model_config = {"validate_assignment": True, "populate_by_name": True}

    @field_validator("level")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        upper = value.upper()
        if upper not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return upper


def _default_work_dir() -> Path:
    return Path(platformdirs.user_cache_dir("rangerelay"))


class RelaySettings(BaseModel):
    """Aggregate settings consumed by the engine, server, uploader, and CLI."""

    download: DownloadConfiguration = Field(default_factory=DownloadConfiguration)
    streaming: StreamingConfiguration = Field(default_factory=StreamingConfiguration)
    server: ServerConfiguration = Field(default_factory=ServerConfiguration)
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)
    work_dir: Path = Field(default_factory=_default_work_dir)

    model_config = {"validate_assignment": True}


class EnvironmentOverrides(BaseSettings):
    """Pydantic settings model exposing environment-derived overrides."""

    chunk_size: Optional[int] = Field(default=None, alias="RANGERELAY_CHUNK_SIZE")
    concurrency: Optional[int] = Field(default=None, alias="RANGERELAY_CONCURRENCY")
    max_attempts: Optional[int] = Field(default=None, alias="RANGERELAY_MAX_ATTEMPTS")
    retry_delay_sec: Optional[float] = Field(default=None, alias="RANGERELAY_RETRY_DELAY_SEC")
    upload_part_size: Optional[int] = Field(default=None, alias="RANGERELAY_UPLOAD_PART_SIZE")
    proxy: Optional[str] = Field(default=None, alias="RANGERELAY_PROXY")
    log_level: Optional[str] = Field(default=None, alias="RANGERELAY_LOG_LEVEL")
    work_dir: Optional[Path] = Field(default=None, alias="RANGERELAY_WORK_DIR")

    model_config = SettingsConfigDict(
        env_prefix="RANGERELAY_", case_sensitive=False, extra="ignore"
    )


_DOWNLOAD_OVERRIDES = ("chunk_size", "concurrency", "max_attempts", "retry_delay_sec", "proxy")


def get_env_overrides() -> Dict[str, str]:
    """Return environment-derived overrides as stringified key/value pairs."""

    env = EnvironmentOverrides()
    return {
        key: str(value) for key, value in env.model_dump(by_alias=False, exclude_none=True).items()
    }


def _apply_env_overrides(settings: RelaySettings) -> None:
    env = EnvironmentOverrides()
    for name in _DOWNLOAD_OVERRIDES:
        value = getattr(env, name)
        if value is not None:
            setattr(settings.download, name, value)
            logger.debug("applied environment override", extra={"setting": name})
    if env.upload_part_size is not None:
        settings.streaming.upload_part_size = env.upload_part_size
    if env.log_level is not None:
        settings.logging.level = env.log_level
    if env.work_dir is not None:
        settings.work_dir = env.work_dir


def load_settings(overrides: Optional[Dict[str, object]] = None) -> RelaySettings:
    """Build settings from defaults, ``overrides``, and the environment.

    Args:
        overrides: Optional nested mapping, for example
            ``{"download": {"concurrency": 8}}``, validated like a config file.

    Returns:
        Fully validated :class:`RelaySettings`.

    Raises:
        ConfigurationError: If any value fails validation.
    """
    try:
        settings = RelaySettings.model_validate(overrides or {})
        _apply_env_overrides(settings)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid relay settings: {exc}") from exc
    return settings


_SETTINGS_CACHE: Optional[RelaySettings] = None
_SETTINGS_LOCK = threading.Lock()


def get_settings() -> RelaySettings:
    """Return process-wide settings, loading them on first use."""

    global _SETTINGS_CACHE  # noqa: PLW0603

    with _SETTINGS_LOCK:
        if _SETTINGS_CACHE is None:
            _SETTINGS_CACHE = load_settings()
        return _SETTINGS_CACHE


def invalidate_settings_cache() -> None:
    """Invalidate the cached process-wide settings."""

    global _SETTINGS_CACHE  # noqa: PLW0603

    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None


__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_CONCURRENCY",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_RETRY_DELAY_SEC",
    "DEFAULT_UPLOAD_PART_SIZE",
    "DownloadConfiguration",
    "StreamingConfiguration",
    "ServerConfiguration",
    "LoggingConfiguration",
    "RelaySettings",
    "EnvironmentOverrides",
    "get_env_overrides",
    "load_settings",
    "get_settings",
    "invalidate_settings_cache",
]
