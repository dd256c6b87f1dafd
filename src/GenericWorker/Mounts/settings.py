# === NAVMAP v1 ===
# {
#   "module": "GenericWorker.Mounts.settings",
#   "purpose": "Define worker mount settings, environment overrides, and YAML config loading",
#   "sections": [
#     {"id": "httpsettings", "name": "HttpSettings", "anchor": "class-httpsettings", "kind": "class"},
#     {"id": "mountsettings", "name": "MountSettings", "anchor": "class-mountsettings", "kind": "class"},
#     {"id": "get-default-settings", "name": "get_default_settings", "anchor": "function-get-default-settings", "kind": "function"},
#     {"id": "load-config", "name": "load_config", "anchor": "function-load-config", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Configuration models for the mounts subsystem.

Settings are resolved from defaults, ``GENERIC_WORKER_*`` environment
variables, and optionally a YAML worker config file.  The caches and downloads
directories are the only paths the subsystem writes outside a task's home
directory, and both are wiped at feature initialisation.
"""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

__all__ = [
    "CACHE_ROOT",
    "HttpSettings",
    "MountSettings",
    "get_default_settings",
    "invalidate_default_settings_cache",
    "load_config",
]

CACHE_ROOT = Path.home() / ".cache" / "generic-worker"

LOGGER = logging.getLogger("GenericWorker.Mounts.settings")


class HttpSettings(BaseModel):
    """HTTP client and retry settings used for content downloads."""

    model_config = ConfigDict(frozen=True)

    timeout_connect: float = Field(default=10.0, gt=0.0, le=120.0)
    timeout_read: float = Field(default=60.0, gt=0.0, le=900.0)
    max_attempts: int = Field(
        default=6,
        ge=1,
        le=20,
        description="Total attempts per URL, including the first request",
    )
    backoff_base: float = Field(default=0.5, ge=0.0, le=30.0)
    backoff_max: float = Field(default=30.0, ge=0.0, le=300.0)
    max_delay_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Deadline for all retries of a single download",
    )
    chunk_size: int = Field(default=1 << 20, ge=1024)
    user_agent: str = Field(default="generic-worker-mounts")


class MountSettings(BaseSettings):
    """Worker-level settings consumed by :class:`~GenericWorker.Mounts.feature.MountsFeature`."""

    model_config = SettingsConfigDict(
        env_prefix="GENERIC_WORKER_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    caches_dir: Path = Field(default_factory=lambda: CACHE_ROOT / "caches")
    downloads_dir: Path = Field(default_factory=lambda: CACHE_ROOT / "downloads")
    signed_url_validity_sec: int = Field(default=30 * 60, gt=0, le=24 * 3600)
    log_level: str = Field(default="INFO")
    http: HttpSettings = Field(default_factory=HttpSettings)

    @field_validator("caches_dir", "downloads_dir", mode="before")
    @classmethod
    def normalize_dir(cls, value: Any) -> Path:
        return Path(value).expanduser().resolve()

    @field_validator("log_level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        upper = value.upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if upper not in valid_levels:
            raise ValueError(f"log_level must be one of {sorted(valid_levels)}")
        return upper

    @property
    def signed_url_validity(self) -> timedelta:
        return timedelta(seconds=self.signed_url_validity_sec)


_DEFAULT_SETTINGS_LOCK = threading.RLock()
_DEFAULT_SETTINGS: Optional[MountSettings] = None


def get_default_settings() -> MountSettings:
    """Return memoised settings built from defaults and the environment."""

    global _DEFAULT_SETTINGS  # noqa: PLW0603

    with _DEFAULT_SETTINGS_LOCK:
        if _DEFAULT_SETTINGS is None:
            _DEFAULT_SETTINGS = _build_settings({})
        return _DEFAULT_SETTINGS


def invalidate_default_settings_cache() -> None:
    """Forget memoised settings so the next lookup re-reads the environment."""

    global _DEFAULT_SETTINGS  # noqa: PLW0603

    with _DEFAULT_SETTINGS_LOCK:
        _DEFAULT_SETTINGS = None


def _build_settings(raw: Mapping[str, object]) -> MountSettings:
    try:
        return MountSettings(**dict(raw))
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid mount settings: {exc}") from exc


def load_config(config_path: Path) -> MountSettings:
    """Load mount settings from a YAML worker config file.

    The file may either hold the settings at top level or nest them under a
    ``mounts`` key, so the mounts block can live inside a larger worker config.
    Keys absent from the file fall back to environment variables and defaults.
    """

    path = Path(config_path).expanduser()
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration file {path} is not valid YAML: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Configuration file {path} must contain a mapping")
    section = data.get("mounts", data)
    if not isinstance(section, Mapping):
        raise ConfigError(f"'mounts' section in {path} must be a mapping")

    settings = _build_settings(section)
    LOGGER.debug(
        "loaded mount settings",
        extra={
            "stage": "init",
            "config_path": str(path),
            "caches_dir": str(settings.caches_dir),
            "downloads_dir": str(settings.downloads_dir),
        },
    )
    return settings
