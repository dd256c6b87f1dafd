"""Public API for the generic worker mounts feature.

The facade exposes the process-wide :class:`MountsFeature`, the per-task
:class:`TaskMount` it creates, the closed set of mount and content variants
decoded from task payloads, and the error hierarchy the task-execution loop
reports when provisioning fails.
"""

from __future__ import annotations

from .caches import DirectoryCache, DownloadCache
from .content import ArtifactContent, ContentSource, URLContent, decode_content
from .errors import (
    ConfigError,
    DownloadFailure,
    ExtractionError,
    MountError,
    MoveError,
    PayloadDecodeError,
    UnsupportedArchiveFormat,
)
from .feature import MountsFeature, TaskMount, TaskRun
from .mounts import (
    FileMount,
    MountEntry,
    MountEnvironment,
    ReadOnlyDirectory,
    WritableDirectoryCache,
    decode_mount,
)
from .queue import ArtifactQueue
from .scopes import RequiredScopes
from .settings import MountSettings, get_default_settings, load_config

__version__ = "0.1.0"

__all__ = [
    "ArtifactContent",
    "ArtifactQueue",
    "ConfigError",
    "ContentSource",
    "DirectoryCache",
    "DownloadCache",
    "DownloadFailure",
    "ExtractionError",
    "FileMount",
    "MountEntry",
    "MountEnvironment",
    "MountError",
    "MountSettings",
    "MountsFeature",
    "MoveError",
    "PayloadDecodeError",
    "ReadOnlyDirectory",
    "RequiredScopes",
    "TaskMount",
    "TaskRun",
    "URLContent",
    "UnsupportedArchiveFormat",
    "WritableDirectoryCache",
    "__version__",
    "decode_content",
    "decode_mount",
    "get_default_settings",
    "load_config",
]
