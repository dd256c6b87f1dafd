"""Process-wide download and directory caches.

Responsibilities
----------------
- :class:`DownloadCache` maps a content unique key to the file it was
  downloaded to, so a given key is fetched at most once per worker process.
- :class:`DirectoryCache` maps a writable cache name to the directory that
  holds the state the last task left behind.

Design Notes
------------
- Neither map is persisted; a worker restart wipes the backing directories
  (see :meth:`GenericWorker.Mounts.feature.MountsFeature.initialise`).
- Each key and cache name has its own re-entrant lock. Callers that need to
  read an entry and then move the file or directory it points at hold that
  lock across both steps, so two mounts cannot race to rename the same path
  and two downloads of one key cannot overlap.
"""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from pathlib import Path
from typing import Dict, Optional

from .content import DEFAULT_SIGNED_URL_VALIDITY, ContentSource
from .queue import ArtifactQueue
from .settings import HttpSettings

__all__ = ["DirectoryCache", "DownloadCache"]

LOGGER = logging.getLogger("GenericWorker.Mounts.caches")


class _KeyedLocks:
    __slots__ = ("_guard", "_locks")

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock


class DownloadCache:
    """Unique key -> downloaded file mapping with at-most-one fetch per key."""

    def __init__(
        self,
        downloads_dir: Path,
        *,
        queue: Optional[ArtifactQueue] = None,
        http_config: Optional[HttpSettings] = None,
        signed_url_validity: timedelta = DEFAULT_SIGNED_URL_VALIDITY,
    ) -> None:
        self.downloads_dir = downloads_dir
        self.queue = queue
        self.http_config = http_config
        self.signed_url_validity = signed_url_validity
        self._entries: Dict[str, Path] = {}
        self._guard = threading.Lock()
        self._locks = _KeyedLocks()

    def key_lock(self, key: str) -> threading.RLock:
        """Return the lock serialising downloads and renames for ``key``."""

        return self._locks.get(key)

    def ensure_cached(self, content: ContentSource) -> Path:
        """Return the local file for ``content``, downloading it on first use.

        A failed download records nothing, so a later call for the same key
        tries again.
        """

        key = content.unique_key()
        with self.key_lock(key):
            cached = self.lookup(key)
            if cached is not None:
                LOGGER.debug("download cache hit", extra={"stage": "download", "cache_key": key})
                return cached
            path = content.download(
                self.downloads_dir,
                queue=self.queue,
                http_config=self.http_config,
                signed_url_validity=self.signed_url_validity,
            )
            self.record(key, path)
            return path

    def lookup(self, key: str) -> Optional[Path]:
        with self._guard:
            return self._entries.get(key)

    def record(self, key: str, path: Path) -> None:
        with self._guard:
            self._entries[key] = path
        LOGGER.debug(
            "recorded download",
            extra={"stage": "download", "cache_key": key, "path": str(path)},
        )

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()

    def __contains__(self, key: object) -> bool:
        with self._guard:
            return key in self._entries

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class DirectoryCache:
    """Cache name -> directory holding the last released state of a writable cache."""

    def __init__(self, caches_dir: Path) -> None:
        self.caches_dir = caches_dir
        self._entries: Dict[str, Path] = {}
        self._guard = threading.Lock()
        self._locks = _KeyedLocks()

    def name_lock(self, name: str) -> threading.RLock:
        return self._locks.get(name)

    def lookup(self, name: str) -> Optional[Path]:
        with self._guard:
            return self._entries.get(name)

    def record(self, name: str, path: Path) -> None:
        """Record ``path`` as the latest location of ``name``, replacing any previous one."""

        with self._guard:
            previous = self._entries.get(name)
            self._entries[name] = path
        if previous is not None and previous != path:
            LOGGER.warning(
                "replacing recorded directory cache location",
                extra={
                    "stage": "unmount",
                    "cache_name": name,
                    "previous": str(previous),
                    "path": str(path),
                },
            )

    def pop(self, name: str) -> Optional[Path]:
        with self._guard:
            return self._entries.pop(name, None)

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()

    def __contains__(self, name: object) -> bool:
        with self._guard:
            return name in self._entries

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
