"""Exception hierarchy shared across mount decoding, download, and extraction.

Provisioning a task's mounts spans payload decoding, HTTP retrieval, archive
materialisation, and filesystem renames.  This module groups those failure
modes so the task-execution loop can react to a single :class:`MountError`
while callers that care can still distinguish a corrupt archive from a
signed-URL failure.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

__all__ = [
    "MountError",
    "PayloadDecodeError",
    "DownloadFailure",
    "ExtractionError",
    "UnsupportedArchiveFormat",
    "MoveError",
    "ConfigError",
]


class MountError(RuntimeError):
    """Base exception for any failure while provisioning task mounts."""


class PayloadDecodeError(MountError):
    """Raised when a mount or content declaration in the payload is malformed."""


class DownloadFailure(MountError):
    """Raised when content could not be fetched into the downloads directory."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class ExtractionError(MountError):
    """Raised when an archive is corrupt or contains unsafe members."""


class UnsupportedArchiveFormat(ExtractionError):
    """Raised when a mount declares an archive format the worker cannot unpack."""

    def __init__(self, format_name: str) -> None:
        super().__init__(f"Unsupported archive format {format_name!r}")
        self.format_name = format_name


class MoveError(MountError):
    """Raised when renaming a cached file or directory into place fails."""

    def __init__(
        self,
        source: Union[str, Path],
        destination: Union[str, Path],
        reason: Union[str, BaseException],
    ) -> None:
        super().__init__(f"Could not rename {source} as {destination} due to {reason}")
        self.source = Path(source)
        self.destination = Path(destination)


class ConfigError(MountError):
    """Raised when worker settings or configuration files are invalid."""
