"""Test doubles and archive builders shared by the mounts tests."""

from __future__ import annotations

import io
import tarfile
import threading
import zipfile
from collections import Counter
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union

import httpx


class FakeQueue:
    """In-memory stand-in for the queue service issuing signed artifact URLs."""

    def __init__(self, base_url: str = "https://queue.example.test") -> None:
        self.base_url = base_url
        self.calls: List[Tuple[str, str, timedelta]] = []
        self.fail_with: Optional[Exception] = None

    def get_latest_artifact_signed_url(self, task_id: str, name: str, expires_in: timedelta) -> str:
        self.calls.append((task_id, name, expires_in))
        if self.fail_with is not None:
            raise self.fail_with
        return f"{self.base_url}/task/{task_id}/artifacts/{name}?bewit=c2VjcmV0LXNpZ25hdHVyZQ"


class ContentServer:
    """Serves registered bodies through an HTTPX mock transport and counts requests.

    URLs are matched on scheme, host, and path; query strings are ignored so
    signed artifact URLs can be registered without their signature.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, List[Tuple[int, bytes]]] = {}
        self.requests: Counter = Counter()
        self._lock = threading.Lock()

    def add(self, url: str, *responses: Union[bytes, int]) -> None:
        """Register bodies (or error statuses) for ``url``; the last one repeats."""

        self.routes[url] = [
            (200, response) if isinstance(response, bytes) else (response, b"error")
            for response in responses
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        key = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        with self._lock:
            self.requests[key] += 1
            responses = self.routes.get(key)
            if not responses:
                return httpx.Response(404, content=b"not found")
            status, body = responses.pop(0) if len(responses) > 1 else responses[0]
        return httpx.Response(status, content=body)

    def count(self, url: str) -> int:
        return self.requests[url]

    @property
    def total(self) -> int:
        return sum(self.requests.values())


def make_zip(path: Path, members: Mapping[str, bytes]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(zip_bytes(members))
    return path


def zip_bytes(members: Mapping[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def make_tar(path: Path, members: Mapping[str, bytes], mode: str = "w:gz") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, mode) as archive:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return path
