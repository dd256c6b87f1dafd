# === NAVMAP v1 ===
# {
#   "module": "GenericWorker.Mounts.io.network",
#   "purpose": "Stream remote content to private files with Tenacity-driven retry and backoff",
#   "sections": [
#     {"id": "retry-classification", "name": "is_retryable_error", "anchor": "function-is-retryable-error", "kind": "function"},
#     {"id": "stream-once", "name": "_stream_to_file", "anchor": "function-stream-to-file", "kind": "function"},
#     {"id": "download-url-to-file", "name": "download_url_to_file", "anchor": "function-download-url-to-file", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Network helpers for fetching mount content.

Downloads stream into a ``.part`` sibling that is created with mode ``0600`` so
content fetched for one task is not readable by other task users, and the part
file is only renamed onto the final path once the body has been fully written.
Transient failures (connection errors, timeouts, 429 and 5xx responses) are
retried with full-jitter exponential backoff; everything else fails fast.
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
    wait_random_exponential,
)

from ..errors import DownloadFailure
from ..logging_utils import mask_url
from ..net import get_http_client
from ..settings import HttpSettings

__all__ = ["download_url_to_file", "is_retryable_error"]

LOGGER = logging.getLogger("GenericWorker.Mounts.io.network")

_RETRYABLE_HTTP_STATUSES = {408, 429}
_PRIVATE_FILE_MODE = 0o600


def _is_retryable_status(status_code: Optional[int]) -> bool:
    if status_code is None:
        return True
    if status_code >= 500:
        return True
    return status_code in _RETRYABLE_HTTP_STATUSES


def is_retryable_error(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` represents a transient network failure."""

    if isinstance(exc, DownloadFailure):
        return exc.retryable
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return _is_retryable_status(exc.response.status_code)
    return False


def _part_path(destination: Path) -> Path:
    return destination.with_name(destination.name + ".part")


def _stream_to_file(
    client: httpx.Client,
    url: str,
    destination: Path,
    *,
    chunk_size: int,
) -> int:
    """Perform a single GET of ``url`` into ``destination`` and return bytes written."""

    part_path = _part_path(destination)
    part_path.unlink(missing_ok=True)
    bytes_written = 0
    try:
        with client.stream("GET", url) as response:
            if response.status_code >= 400:
                raise DownloadFailure(
                    f"HTTP {response.status_code} fetching {mask_url(url)}",
                    status_code=response.status_code,
                    retryable=_is_retryable_status(response.status_code),
                )
            fd = os.open(part_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, _PRIVATE_FILE_MODE)
            with os.fdopen(fd, "wb") as stream:
                for chunk in response.iter_bytes(chunk_size):
                    if chunk:
                        stream.write(chunk)
                        bytes_written += len(chunk)
        os.replace(part_path, destination)
    except OSError as exc:
        part_path.unlink(missing_ok=True)
        raise DownloadFailure(f"Failed to write download to {destination}: {exc}") from exc
    except BaseException:
        part_path.unlink(missing_ok=True)
        raise
    return bytes_written


def download_url_to_file(
    url: str,
    destination: Path,
    *,
    http_config: Optional[HttpSettings] = None,
    client: Optional[httpx.Client] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Path:
    """Download ``url`` to ``destination``, retrying transient failures.

    Args:
        url: Absolute URL to fetch. Query strings are masked in log output.
        destination: Final file path. Its parent is created when missing.
        http_config: Timeout and retry settings; defaults apply when omitted.
        client: HTTPX client override; the shared client is used otherwise.
        sleep: Sleep function handed to Tenacity (tests pass a no-op).

    Returns:
        ``destination`` once the body has been written in full.

    Raises:
        DownloadFailure: On a non-retryable HTTP status, a filesystem error, or
            when the retry budget is exhausted.
    """

    config = http_config or HttpSettings()
    destination.parent.mkdir(parents=True, exist_ok=True)
    http = client or get_http_client(config)
    masked = mask_url(url)
    LOGGER.info(
        "downloading url",
        extra={"stage": "download", "url": masked, "destination": str(destination)},
    )

    retrying = Retrying(
        stop=stop_after_attempt(config.max_attempts) | stop_after_delay(config.max_delay_seconds),
        wait=wait_random_exponential(multiplier=config.backoff_base, max=config.backoff_max),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=before_sleep_log(LOGGER, logging.WARNING),
        sleep=sleep,
        reraise=True,
    )
    try:
        bytes_written = retrying(
            _stream_to_file, http, url, destination, chunk_size=config.chunk_size
        )
    except DownloadFailure:
        raise
    except httpx.HTTPError as exc:
        raise DownloadFailure(
            f"Failed to download {masked}: {exc}",
            retryable=is_retryable_error(exc),
        ) from exc

    LOGGER.info(
        "downloaded url",
        extra={
            "stage": "download",
            "url": masked,
            "destination": str(destination),
            "bytes": bytes_written,
        },
    )
    return destination
