"""Interface to the queue service that issues signed artifact URLs."""

from __future__ import annotations

from datetime import timedelta
from typing import Protocol, runtime_checkable

__all__ = ["ArtifactQueue"]


@runtime_checkable
class ArtifactQueue(Protocol):
    """Minimal queue client surface needed to fetch task artifacts.

    Implementations return a URL for the latest run's artifact that stays valid
    for ``expires_in``. Any exception raised is reported as a download failure
    for the mount that needed the artifact.
    """

    def get_latest_artifact_signed_url(
        self, task_id: str, name: str, expires_in: timedelta
    ) -> str: ...
