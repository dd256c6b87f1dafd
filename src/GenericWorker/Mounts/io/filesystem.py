# === NAVMAP v1 ===
# {
#   "module": "GenericWorker.Mounts.io.filesystem",
#   "purpose": "Filesystem utilities for cache slots, atomic moves, and staged archive extraction",
#   "sections": [
#     {"id": "slots", "name": "Cache Slots & Directory Reset", "anchor": "SLT", "kind": "helpers"},
#     {"id": "moves", "name": "Atomic Moves", "anchor": "MOV", "kind": "api"},
#     {"id": "members", "name": "Archive Member Validation", "anchor": "MEM", "kind": "helpers"},
#     {"id": "archives", "name": "Archive Extraction", "anchor": "ARC", "kind": "api"}
#   ]
# }
# === /NAVMAP ===

"""Filesystem helpers for mount provisioning.

Responsibilities include allocating unguessable slot names inside the caches
and downloads directories, renaming cached files and directories in and out of
task home directories, and unpacking archives.  Extraction is staged in a
hidden sibling of the target directory and promoted only once every member has
been written, so a failed mount never leaves a half-populated directory that
could be mistaken for a successful one.
"""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Tuple

import libarchive

from ..errors import ExtractionError, MoveError, UnsupportedArchiveFormat

__all__ = [
    "ARCHIVE_FORMATS",
    "ensure_empty_dir",
    "extract_archive",
    "move_path",
    "random_slot",
]

LOGGER = logging.getLogger("GenericWorker.Mounts.io.filesystem")

# format tag -> (libarchive read format, libarchive read filter)
ARCHIVE_FORMATS: Dict[str, Tuple[str, str]] = {
    "zip": ("zip", "all"),
    "tar.gz": ("tar", "gzip"),
    "rar": ("rar", "all"),
    "tar.bz2": ("tar", "bzip2"),
}


def random_slot(root: Path) -> Path:
    """Return a fresh, unguessable path directly beneath ``root``."""

    return root / uuid.uuid4().hex


def ensure_empty_dir(path: Path) -> Path:
    """Create ``path`` if needed and remove everything inside it."""

    path.mkdir(parents=True, exist_ok=True)
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()
    return path


def move_path(source: Path, destination: Path) -> Path:
    """Rename ``source`` to ``destination`` without copying.

    The parent of ``destination`` is created first. Renames across devices are
    not attempted as copies; they fail with :class:`MoveError` so the caller can
    report both paths.
    """

    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        os.rename(source, destination)
    except OSError as exc:
        raise MoveError(source, destination, exc) from exc
    LOGGER.debug(
        "moved path",
        extra={"stage": "move", "source": str(source), "destination": str(destination)},
    )
    return destination


def _validate_member_path(member_name: str) -> Optional[PurePosixPath]:
    """Return the normalised relative path of an archive member.

    ``None`` is returned for members that name the archive root itself
    (``./`` in tarballs created with ``-C dir .``).
    """

    normalized = member_name.replace("\\", "/")
    relative = PurePosixPath(normalized)
    if relative.is_absolute() or (relative.parts and relative.parts[0].endswith(":")):
        raise ExtractionError(f"Unsafe absolute path detected in archive: {member_name}")
    parts = [part for part in relative.parts if part not in {"", "."}]
    if any(part == ".." for part in parts):
        raise ExtractionError(f"Unsafe path detected in archive: {member_name}")
    if not parts:
        return None
    return PurePosixPath(*parts)


def _validate_link_target(member: PurePosixPath, link_target: str) -> None:
    """Reject symlink targets that are absolute or climb out of the extraction root."""

    if not link_target or PurePosixPath(link_target).is_absolute():
        raise ExtractionError(f"Unsafe link target {link_target!r} for archive member {member}")
    resolved = os.path.normpath(os.path.join(str(member.parent), link_target))
    if resolved == ".." or resolved.startswith("../") or os.path.isabs(resolved):
        raise ExtractionError(f"Link {member} escapes extraction root via {link_target!r}")


def _ensure_contained(path: Path, root: Path, member: PurePosixPath) -> None:
    """Follow any links already on disk and require ``path`` to stay inside ``root``."""

    try:
        resolved = path.resolve()
    except (OSError, RuntimeError) as exc:
        raise ExtractionError(f"Cannot resolve archive member {member}: {exc}") from exc
    if not resolved.is_relative_to(root):
        raise ExtractionError(f"Archive member {member} resolves outside the extraction root")


def _write_members(
    archive_path: Path, format_name: str, filter_name: str, root: Path
) -> List[Path]:
    written: List[Path] = []
    real_root = root.resolve()
    with libarchive.file_reader(
        str(archive_path), format_name=format_name, filter_name=filter_name
    ) as archive:
        for entry in archive:
            member = _validate_member_path(entry.pathname)
            if member is None:
                continue
            target = root.joinpath(*member.parts)
            _ensure_contained(target.parent, real_root, member)

            if entry.isdir:
                _ensure_contained(target, real_root, member)
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)

            if entry.issym:
                _validate_link_target(member, entry.linkpath)
                os.symlink(entry.linkpath, target)
                _ensure_contained(target, real_root, member)
            elif entry.islnk:
                link_member = _validate_member_path(entry.linkpath)
                if link_member is None:
                    raise ExtractionError(f"Hardlink {member} points at the archive root")
                source = root.joinpath(*link_member.parts)
                _ensure_contained(source, real_root, member)
                os.link(source, target)
            elif entry.isfile:
                _ensure_contained(target, real_root, member)
                with target.open("wb") as stream:
                    for block in entry.get_blocks():
                        stream.write(block)
                permissions = entry.mode & 0o777
                if permissions:
                    os.chmod(target, permissions | 0o600)
            else:
                raise ExtractionError(
                    f"Unsupported entry type for archive member {entry.pathname}"
                )
            written.append(target)
    return written


def _is_real_dir(path: Path) -> bool:
    return path.is_dir() and not path.is_symlink()


def _merge_tree(source: Path, destination: Path) -> None:
    for child in source.iterdir():
        target = destination / child.name
        if _is_real_dir(child) and _is_real_dir(target):
            _merge_tree(child, target)
            continue
        if _is_real_dir(target):
            shutil.rmtree(target)
        os.replace(child, target)
    source.rmdir()


def _promote(staging: Path, destination: Path) -> None:
    if not destination.exists() and not destination.is_symlink():
        os.rename(staging, destination)
        return
    if not destination.is_dir() or destination.is_symlink():
        raise ExtractionError(f"Extraction target {destination} exists and is not a directory")
    if not any(destination.iterdir()):
        destination.rmdir()
        os.rename(staging, destination)
        return
    _merge_tree(staging, destination)


def extract_archive(archive_path: Path, format_name: str, destination: Path) -> List[Path]:
    """Unpack ``archive_path`` into ``destination`` according to ``format_name``.

    Args:
        archive_path: Cached archive file.
        format_name: One of :data:`ARCHIVE_FORMATS` (``zip``, ``tar.gz``,
            ``rar``, ``tar.bz2``).
        destination: Target directory; created, together with its parents, if
            absent. Existing contents are kept and overwritten member by member.

    Returns:
        Paths of the files and links written, in archive order.

    Raises:
        UnsupportedArchiveFormat: ``format_name`` is not recognised. Raised
            before anything is written.
        ExtractionError: The archive is corrupt or contains unsafe members.
            ``destination`` is left exactly as it was.
    """

    try:
        read_format, read_filter = ARCHIVE_FORMATS[format_name]
    except KeyError:
        raise UnsupportedArchiveFormat(format_name) from None
    if not archive_path.is_file():
        raise ExtractionError(f"Archive not found: {archive_path}")

    destination.parent.mkdir(parents=True, exist_ok=True)
    staging = destination.parent / f".{destination.name}.extract-{uuid.uuid4().hex[:12]}"
    staging.mkdir()
    try:
        written = _write_members(archive_path, read_format, read_filter, staging)
        _promote(staging, destination)
    except (libarchive.ArchiveError, OSError) as exc:
        raise ExtractionError(
            f"Failed to extract {format_name} archive {archive_path}: {exc}"
        ) from exc
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)

    LOGGER.info(
        "extracted archive",
        extra={
            "stage": "extract",
            "archive": str(archive_path),
            "format": format_name,
            "destination": str(destination),
            "files": len(written),
        },
    )
    return [destination / path.relative_to(staging) for path in written]
