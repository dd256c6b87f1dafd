# === NAVMAP v1 ===
# {
#   "module": "GenericWorker.Mounts.feature",
#   "purpose": "Worker feature that decodes task mounts, aggregates scopes, and drives mount/unmount",
#   "sections": [
#     {"id": "taskrun", "name": "TaskRun", "anchor": "class-taskrun", "kind": "class"},
#     {"id": "mountsfeature", "name": "MountsFeature", "anchor": "class-mountsfeature", "kind": "class"},
#     {"id": "taskmount", "name": "TaskMount", "anchor": "class-taskmount", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Mounts feature of the task-execution worker.

:class:`MountsFeature` is created once per worker process and owns the shared
download and directory caches. For each accepted task it hands out a
:class:`TaskMount`, which decodes the payload's ``mounts`` list up front,
computes the scopes the task needs, and later mounts and unmounts the entries
when the task starts and stops.

Payload problems are recorded rather than raised when the task is accepted, so
the worker can still report the scopes it derived; they surface when
:meth:`TaskMount.start` is called, before anything touches the filesystem.

A failure part-way through :meth:`TaskMount.start` leaves the entries mounted
so far in place, and a failure in :meth:`TaskMount.stop` leaves later entries
mounted. The worker discards the task's home directory afterwards either way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

from .caches import DirectoryCache, DownloadCache
from .errors import MountError, PayloadDecodeError
from .io.filesystem import ensure_empty_dir
from .mounts import MountEntry, MountEnvironment, decode_mount
from .queue import ArtifactQueue
from .scopes import RequiredScopes
from .settings import MountSettings, get_default_settings

__all__ = ["MountsFeature", "TaskMount", "TaskRun"]

LOGGER = logging.getLogger("GenericWorker.Mounts.feature")


@dataclass
class TaskRun:
    """The parts of a running task the mounts feature reads."""

    task_id: str
    home_dir: Path
    payload: Mapping[str, Any] = field(default_factory=dict)


class MountsFeature:
    """Process-wide mounts feature; one instance per worker."""

    def __init__(
        self,
        settings: Optional[MountSettings] = None,
        *,
        queue: Optional[ArtifactQueue] = None,
    ) -> None:
        self.settings = settings or get_default_settings()
        self.queue = queue
        self.download_cache = DownloadCache(
            self.settings.downloads_dir,
            queue=queue,
            http_config=self.settings.http,
            signed_url_validity=self.settings.signed_url_validity,
        )
        self.directory_cache = DirectoryCache(self.settings.caches_dir)

    def initialise(self) -> None:
        """Empty the caches and downloads directories and forget every cache entry.

        Also applies ``settings.log_level`` to the ``GenericWorker.Mounts`` logger.

        Nothing on disk is reusable after a restart because the key and
        cache-name mappings only ever live in memory.
        """

        for directory in (self.settings.caches_dir, self.settings.downloads_dir):
            try:
                ensure_empty_dir(directory)
            except OSError as exc:
                raise MountError(f"Could not reset directory {directory}: {exc}") from exc
        self.download_cache.clear()
        self.directory_cache.clear()
        logging.getLogger("GenericWorker.Mounts").setLevel(self.settings.log_level)
        LOGGER.info(
            "initialised mounts feature",
            extra={
                "stage": "init",
                "caches_dir": str(self.settings.caches_dir),
                "downloads_dir": str(self.settings.downloads_dir),
            },
        )

    def is_enabled(self, task: TaskRun) -> bool:
        # Every mount is guarded by scopes, so there is no feature flag.
        return True

    def environment_for(self, task: TaskRun) -> MountEnvironment:
        return MountEnvironment(
            home_dir=Path(task.home_dir),
            download_cache=self.download_cache,
            directory_cache=self.directory_cache,
        )

    def new_task_feature(self, task: TaskRun) -> "TaskMount":
        return TaskMount(self, task)


class TaskMount:
    """Mount state of a single task.

    Attributes:
        task: The task whose payload was decoded.
        mounts: Successfully decoded entries, in payload order.
        payload_error: First decode or content-resolution error, reported by
            :meth:`start`.
    """

    def __init__(self, feature: MountsFeature, task: TaskRun) -> None:
        self.feature = feature
        self.task = task
        self.mounts: List[MountEntry] = []
        self.payload_error: Optional[PayloadDecodeError] = None
        self._mounted: List[MountEntry] = []
        self._decode(task.payload.get("mounts") or [])
        self._required_scopes = self._init_required_scopes()

    def _decode(self, raw_mounts: Any) -> None:
        if not isinstance(raw_mounts, Sequence) or isinstance(raw_mounts, (str, bytes)):
            self.payload_error = PayloadDecodeError(
                f"Task mounts must be a list, got {type(raw_mounts).__name__}"
            )
            return
        for index, raw in enumerate(raw_mounts):
            try:
                self.mounts.append(decode_mount(raw))
            except PayloadDecodeError as exc:
                self.payload_error = PayloadDecodeError(f"Could not read task mount {index}: {exc}")
                LOGGER.warning(
                    "invalid task mount",
                    extra={
                        "stage": "decode",
                        "task_id": self.task.task_id,
                        "index": index,
                        "error": str(exc),
                    },
                )
                return

    def _init_required_scopes(self) -> RequiredScopes:
        scopes: List[str] = []
        for index, mount in enumerate(self.mounts):
            scopes.extend(mount.required_scopes())
            try:
                content = mount.fs_content()
            except PayloadDecodeError as exc:
                if self.payload_error is None:
                    self.payload_error = PayloadDecodeError(
                        f"Could not resolve content of task mount {index}: {exc}"
                    )
                break
            # A writable cache without preloaded content has no content scopes.
            if content is not None:
                scopes.extend(content.required_scopes())
        return RequiredScopes.all_of(scopes)

    def required_scopes(self) -> RequiredScopes:
        """Scopes the task must hold before :meth:`start` may run."""

        return self._required_scopes

    @property
    def mounted(self) -> Sequence[MountEntry]:
        return tuple(self._mounted)

    def _log_failure(
        self, message: str, stage: str, index: int, mount: MountEntry, exc: BaseException
    ) -> None:
        LOGGER.error(
            message,
            extra={
                "stage": stage,
                "task_id": self.task.task_id,
                "index": index,
                "mount": mount.describe(),
                "error": str(exc),
            },
        )

    def start(self) -> None:
        """Mount every entry in payload order, stopping at the first failure."""

        if self.payload_error is not None:
            raise self.payload_error
        env = self.feature.environment_for(self.task)
        for index, mount in enumerate(self.mounts):
            try:
                mount.mount(env)
            except (MountError, OSError) as exc:
                self._log_failure("mount failed", "mount", index, mount, exc)
                raise MountError(f"Task mount {index} {mount.describe()} failed: {exc}") from exc
            self._mounted.append(mount)
        LOGGER.info(
            "mounted task mounts",
            extra={"stage": "mount", "task_id": self.task.task_id, "count": len(self.mounts)},
        )

    def stop(self) -> None:
        """Unmount every entry in payload order, stopping at the first failure."""

        env = self.feature.environment_for(self.task)
        for index, mount in enumerate(self.mounts):
            try:
                mount.unmount(env)
            except (MountError, OSError) as exc:
                self._log_failure("unmount failed", "unmount", index, mount, exc)
                raise MountError(
                    f"Task mount {index} {mount.describe()} could not be released: {exc}"
                ) from exc
            self._mounted = [entry for entry in self._mounted if entry is not mount]
        LOGGER.info(
            "released task mounts",
            extra={"stage": "unmount", "task_id": self.task.task_id, "count": len(self.mounts)},
        )
