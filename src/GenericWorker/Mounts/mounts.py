# === NAVMAP v1 ===
# {
#   "module": "GenericWorker.Mounts.mounts",
#   "purpose": "Mount entry variants decoded from task payloads and their mount/unmount transitions",
#   "sections": [
#     {"id": "mountenvironment", "name": "MountEnvironment", "anchor": "class-mountenvironment", "kind": "class"},
#     {"id": "mountentry", "name": "MountEntry", "anchor": "class-mountentry", "kind": "class"},
#     {"id": "writabledirectorycache", "name": "WritableDirectoryCache", "anchor": "class-writabledirectorycache", "kind": "class"},
#     {"id": "readonlydirectory", "name": "ReadOnlyDirectory", "anchor": "class-readonlydirectory", "kind": "class"},
#     {"id": "filemount", "name": "FileMount", "anchor": "class-filemount", "kind": "class"},
#     {"id": "decode-mount", "name": "decode_mount", "anchor": "function-decode-mount", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Mount entries declared in a task payload.

Every entry is one of three closed variants:

* :class:`WritableDirectoryCache` - a named directory that survives across
  tasks. It is moved into the task's home directory on mount and moved out to
  a fresh slot under the caches directory on unmount.
* :class:`ReadOnlyDirectory` - an archive unpacked into the home directory.
* :class:`FileMount` - a single downloaded file moved into place, and moved
  back into the download cache on unmount.

Each variant moves from *unmounted* to *mounted* once at task start and back
once at task stop. Entry paths are interpreted relative to the task user's
home directory and may not escape it.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator
from pydantic import ValidationError as PydanticValidationError

from .caches import DirectoryCache, DownloadCache
from .content import ContentSource, decode_content, load_json_object
from .errors import MountError, PayloadDecodeError
from .io.filesystem import extract_archive, move_path, random_slot

__all__ = [
    "FileMount",
    "MountEntry",
    "MountEnvironment",
    "ReadOnlyDirectory",
    "WritableDirectoryCache",
    "decode_mount",
]

LOGGER = logging.getLogger("GenericWorker.Mounts.mounts")


@dataclass(frozen=True)
class MountEnvironment:
    """Everything a mount entry touches outside its own declaration."""

    home_dir: Path
    download_cache: DownloadCache
    directory_cache: DirectoryCache


def _relative_task_path(value: str) -> str:
    path = PurePath(value)
    if not value or path.is_absolute() or path.anchor:
        raise ValueError(f"mount path must be relative to the task home directory: {value!r}")
    if not path.parts:
        raise ValueError(f"mount path may not be the task home directory itself: {value!r}")
    if ".." in path.parts:
        raise ValueError(f"mount path may not leave the task home directory: {value!r}")
    return value


def _extract_content(
    env: MountEnvironment, content: ContentSource, format_name: str, target: Path
) -> None:
    # The key lock keeps a concurrent file mount from moving the archive away mid-read.
    with env.download_cache.key_lock(content.unique_key()):
        archive = env.download_cache.ensure_cached(content)
        extract_archive(archive, format_name, target)


class MountEntry(BaseModel, abc.ABC):
    """Common behaviour of the three mount variants."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: ClassVar[str] = "mount"

    content: Optional[Dict[str, Any]] = None

    _fs_content: Optional[ContentSource] = PrivateAttr(default=None)

    def fs_content(self) -> Optional[ContentSource]:
        """Decode and memoise the declared content, or ``None`` when none is declared."""

        if self.content is None:
            return None
        if self._fs_content is None:
            self._fs_content = decode_content(self.content)
        return self._fs_content

    @abc.abstractmethod
    def required_scopes(self) -> List[str]:
        """Scopes needed by the entry itself, excluding those of its content."""

    @abc.abstractmethod
    def target_path(self, env: MountEnvironment) -> Path:
        """Absolute location the entry occupies while mounted."""

    @abc.abstractmethod
    def mount(self, env: MountEnvironment) -> None:
        """Populate :meth:`target_path`."""

    @abc.abstractmethod
    def unmount(self, env: MountEnvironment) -> None:
        """Release :meth:`target_path` back to the caches."""

    def describe(self) -> str:
        fields = ", ".join(
            f"{key}={value!r}"
            for key, value in self.model_dump(by_alias=True, exclude={"content"}).items()
            if value is not None
        )
        return f"{type(self).__name__}({fields})"


class WritableDirectoryCache(MountEntry):
    """Named scratch directory persisted across tasks, optionally preloaded from an archive."""

    kind: ClassVar[str] = "writable-cache"

    cache_name: str = Field(alias="cacheName", min_length=1)
    directory: str
    format: Optional[str] = None

    @field_validator("directory")
    @classmethod
    def validate_directory(cls, value: str) -> str:
        return _relative_task_path(value)

    def required_scopes(self) -> List[str]:
        return [f"generic-worker:cache:{self.cache_name}"]

    def target_path(self, env: MountEnvironment) -> Path:
        return env.home_dir / self.directory

    def mount(self, env: MountEnvironment) -> None:
        target = self.target_path(env)
        directory_cache = env.directory_cache
        with directory_cache.name_lock(self.cache_name):
            existing = directory_cache.lookup(self.cache_name)
            if existing is not None:
                move_path(existing, target)
                directory_cache.pop(self.cache_name)
                LOGGER.info(
                    "reused writable cache",
                    extra={
                        "stage": "mount",
                        "cache_name": self.cache_name,
                        "source": str(existing),
                        "target": str(target),
                    },
                )
                return

            content = self.fs_content()
            if content is not None:
                _extract_content(env, content, self.format or "", target)
                LOGGER.info(
                    "preloaded writable cache",
                    extra={
                        "stage": "mount",
                        "cache_name": self.cache_name,
                        "cache_key": content.unique_key(),
                        "target": str(target),
                    },
                )
                return

            try:
                target.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise MountError(f"Not able to create dir {target}: {exc}") from exc
            LOGGER.info(
                "created empty writable cache",
                extra={"stage": "mount", "cache_name": self.cache_name, "target": str(target)},
            )

    def unmount(self, env: MountEnvironment) -> None:
        target = self.target_path(env)
        directory_cache = env.directory_cache
        slot = random_slot(directory_cache.caches_dir)
        with directory_cache.name_lock(self.cache_name):
            LOGGER.info(
                "releasing writable cache",
                extra={
                    "stage": "unmount",
                    "cache_name": self.cache_name,
                    "source": str(target),
                    "slot": str(slot),
                },
            )
            move_path(target, slot)
            directory_cache.record(self.cache_name, slot)


class ReadOnlyDirectory(MountEntry):
    """Directory unpacked from an archive; discarded with the task's home directory."""

    kind: ClassVar[str] = "read-only-directory"

    directory: str
    format: str
    content: Dict[str, Any]

    @field_validator("directory")
    @classmethod
    def validate_directory(cls, value: str) -> str:
        return _relative_task_path(value)

    def required_scopes(self) -> List[str]:
        return []

    def target_path(self, env: MountEnvironment) -> Path:
        return env.home_dir / self.directory

    def mount(self, env: MountEnvironment) -> None:
        content = self.fs_content()
        assert content is not None
        _extract_content(env, content, self.format, self.target_path(env))

    def unmount(self, env: MountEnvironment) -> None:
        # The archive was never moved out of the download cache.
        return None


class FileMount(MountEntry):
    """Single file moved out of the download cache for the duration of the task."""

    kind: ClassVar[str] = "file"

    file: str
    content: Dict[str, Any]

    @field_validator("file")
    @classmethod
    def validate_file(cls, value: str) -> str:
        return _relative_task_path(value)

    def required_scopes(self) -> List[str]:
        return []

    def target_path(self, env: MountEnvironment) -> Path:
        return env.home_dir / self.file

    def mount(self, env: MountEnvironment) -> None:
        content = self.fs_content()
        assert content is not None
        target = self.target_path(env)
        with env.download_cache.key_lock(content.unique_key()):
            cached = env.download_cache.ensure_cached(content)
            move_path(cached, target)
        LOGGER.info(
            "mounted file",
            extra={"stage": "mount", "cache_key": content.unique_key(), "target": str(target)},
        )

    def unmount(self, env: MountEnvironment) -> None:
        content = self.fs_content()
        assert content is not None
        key = content.unique_key()
        target = self.target_path(env)
        with env.download_cache.key_lock(key):
            slot = env.download_cache.lookup(key)
            if slot is None:
                raise MountError(f"No download cache entry for {key}; cannot release {target}")
            LOGGER.info(
                "returning file to download cache",
                extra={
                    "stage": "unmount",
                    "cache_key": key,
                    "source": str(target),
                    "slot": str(slot),
                },
            )
            move_path(target, slot)


_MOUNT_DISCRIMINATORS: Tuple[Tuple[str, Type[MountEntry]], ...] = (
    ("cacheName", WritableDirectoryCache),
    ("directory", ReadOnlyDirectory),
    ("file", FileMount),
)


def decode_mount(raw: Any) -> Union[WritableDirectoryCache, ReadOnlyDirectory, FileMount]:
    """Decode one payload mount declaration by inspecting which keys are present.

    ``cacheName`` selects a writable cache, otherwise ``directory`` a read-only
    directory, otherwise ``file`` a file mount. Keys with ``null`` values count
    as absent.
    """

    data = load_json_object(raw, what="task mount")
    model: Optional[Type[MountEntry]] = None
    for key, candidate in _MOUNT_DISCRIMINATORS:
        if data.get(key) is not None:
            model = candidate
            break
    if model is None:
        raise PayloadDecodeError(f"Unrecognised mount entry in payload - {data!r}")
    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except PydanticValidationError as exc:
        raise PayloadDecodeError(f"Invalid {model.kind} mount {data!r}: {exc}") from exc
