"""Shared fixtures for the mounts test suite."""

from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from GenericWorker.Mounts.feature import MountsFeature, TaskRun
from GenericWorker.Mounts.net import use_mock_http_client
from GenericWorker.Mounts.settings import HttpSettings, MountSettings
from tests.mounts.helpers import ContentServer, FakeQueue


@pytest.fixture
def settings(tmp_path: Path) -> MountSettings:
    return MountSettings(
        caches_dir=tmp_path / "worker" / "caches",
        downloads_dir=tmp_path / "worker" / "downloads",
        http=HttpSettings(max_attempts=3, backoff_base=0.0, backoff_max=0.0),
    )


@pytest.fixture
def queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def server():
    """Install a mock HTTP transport for the duration of a test."""

    content_server = ContentServer()
    with use_mock_http_client(httpx.MockTransport(content_server.handler)):
        yield content_server


@pytest.fixture
def feature(settings: MountSettings, queue: FakeQueue, server: ContentServer) -> MountsFeature:
    mounts_feature = MountsFeature(settings, queue=queue)
    mounts_feature.initialise()
    return mounts_feature


@pytest.fixture
def make_task(tmp_path: Path):
    """Factory building a :class:`TaskRun` with its own home directory."""

    counter = {"n": 0}

    def _make(mounts: object, task_id: str = "") -> TaskRun:
        counter["n"] += 1
        identifier = task_id or f"task-{counter['n']}"
        home = tmp_path / "home" / identifier
        home.mkdir(parents=True, exist_ok=True)
        return TaskRun(task_id=identifier, home_dir=home, payload={"mounts": mounts})

    return _make
