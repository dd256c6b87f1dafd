from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import List

import httpx
import pytest

from GenericWorker.Mounts.errors import DownloadFailure
from GenericWorker.Mounts.io.network import download_url_to_file, is_retryable_error
from GenericWorker.Mounts.net import get_http_client, reset_http_client
from GenericWorker.Mounts.settings import HttpSettings

URL = "https://files.example.test/tools/bundle.zip"

FAST_RETRIES = HttpSettings(max_attempts=3, backoff_base=0.0, backoff_max=0.0)


def _no_sleep(delay: float) -> None:
    return None


@pytest.mark.parametrize(
    "exc, expected",
    [
        (DownloadFailure("x", status_code=503, retryable=True), True),
        (DownloadFailure("x", status_code=404, retryable=False), False),
        (httpx.ConnectError("boom"), True),
        (httpx.ReadTimeout("slow"), True),
        (ValueError("nope"), False),
    ],
)
def test_is_retryable_error(exc: BaseException, expected: bool) -> None:
    assert is_retryable_error(exc) is expected


def test_is_retryable_error_http_status() -> None:
    request = httpx.Request("GET", URL)
    for status, expected in ((500, True), (429, True), (408, True), (403, False)):
        response = httpx.Response(status, request=request)
        error = httpx.HTTPStatusError("status", request=request, response=response)
        assert is_retryable_error(error) is expected


def test_download_writes_private_file(tmp_path: Path, server) -> None:
    server.add(URL, b"zip-bytes")
    destination = tmp_path / "downloads" / "slot"

    result = download_url_to_file(URL, destination, http_config=FAST_RETRIES, sleep=_no_sleep)

    assert result == destination
    assert destination.read_bytes() == b"zip-bytes"
    assert not destination.with_name("slot.part").exists()
    if os.name != "nt":
        assert stat.S_IMODE(destination.stat().st_mode) == 0o600


def test_download_retries_transient_status(tmp_path: Path, server) -> None:
    server.add(URL, 503, 502, b"finally")
    sleeps: List[float] = []

    destination = download_url_to_file(
        URL, tmp_path / "slot", http_config=FAST_RETRIES, sleep=sleeps.append
    )

    assert destination.read_bytes() == b"finally"
    assert server.count(URL) == 3
    assert len(sleeps) == 2


def test_download_gives_up_after_max_attempts(tmp_path: Path, server) -> None:
    server.add(URL, 503)

    with pytest.raises(DownloadFailure) as excinfo:
        download_url_to_file(URL, tmp_path / "slot", http_config=FAST_RETRIES, sleep=_no_sleep)

    assert excinfo.value.status_code == 503
    assert excinfo.value.retryable is True
    assert server.count(URL) == FAST_RETRIES.max_attempts
    assert list(tmp_path.iterdir()) == []


def test_download_does_not_retry_client_errors(tmp_path: Path, server) -> None:
    server.add(URL, 404)

    with pytest.raises(DownloadFailure) as excinfo:
        download_url_to_file(URL, tmp_path / "slot", http_config=FAST_RETRIES, sleep=_no_sleep)

    assert excinfo.value.status_code == 404
    assert server.count(URL) == 1


def test_transport_errors_wrapped_after_retries(tmp_path: Path) -> None:
    attempts = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["n"] += 1
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    with pytest.raises(DownloadFailure) as excinfo:
        download_url_to_file(
            URL, tmp_path / "slot", http_config=FAST_RETRIES, client=client, sleep=_no_sleep
        )

    assert attempts["n"] == FAST_RETRIES.max_attempts
    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)
    assert not (tmp_path / "slot.part").exists()


def test_signed_url_query_masked_in_logs(tmp_path: Path, server, caplog) -> None:
    server.add(URL, b"data")
    caplog.set_level(logging.INFO, logger="GenericWorker.Mounts")

    download_url_to_file(
        f"{URL}?bewit=c2VjcmV0LXNpZ25hdHVyZQ",
        tmp_path / "slot",
        http_config=FAST_RETRIES,
        sleep=_no_sleep,
    )

    logged = [getattr(record, "url", "") for record in caplog.records]
    assert f"{URL}?***masked***" in logged
    assert "c2VjcmV0LXNpZ25hdHVyZQ" not in caplog.text
    assert all("c2VjcmV0LXNpZ25hdHVyZQ" not in str(url) for url in logged)


def test_shared_client_rebuilt_when_settings_change() -> None:
    reset_http_client()
    try:
        first = get_http_client(HttpSettings(user_agent="agent-a"))
        assert get_http_client() is first
        assert get_http_client(HttpSettings(user_agent="agent-a")) is first

        second = get_http_client(HttpSettings(user_agent="agent-b", timeout_read=5.0))

        assert second is not first
        assert first.is_closed
        assert second.headers["User-Agent"] == "agent-b"
        assert second.timeout.read == 5.0
    finally:
        reset_http_client()


def test_injected_client_kept_regardless_of_settings(server) -> None:
    injected = get_http_client()

    assert get_http_client(HttpSettings(user_agent="other")) is injected
