"""Aggregated IO helpers for mount provisioning.

This subpackage bundles filesystem utilities (slot allocation, atomic moves,
staged archive extraction) and the streaming download logic with its retry and
back-off behaviour.
"""

from .filesystem import (
    ARCHIVE_FORMATS,
    ensure_empty_dir,
    extract_archive,
    move_path,
    random_slot,
)
from .network import download_url_to_file, is_retryable_error

__all__ = [
    "ARCHIVE_FORMATS",
    "download_url_to_file",
    "ensure_empty_dir",
    "extract_archive",
    "is_retryable_error",
    "move_path",
    "random_slot",
]
