"""Shared HTTPX client used for mount content downloads."""

from __future__ import annotations

import contextlib
import logging
import ssl
import threading
from typing import Optional

import certifi
import httpx

from .logging_utils import mask_url
from .settings import HttpSettings

LOGGER = logging.getLogger("GenericWorker.Mounts.net")

_CLIENT_LOCK = threading.RLock()
_HTTP_CLIENT: Optional[httpx.Client] = None
# Settings the shared client was built from; ``None`` for injected clients.
_HTTP_CLIENT_CONFIG: Optional[HttpSettings] = None


def _build_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.load_verify_locations(certifi.where())
    return context


def _response_hook(response: httpx.Response) -> None:
    LOGGER.debug(
        "mounts-http-response",
        extra={
            "stage": "download",
            "url": mask_url(str(response.request.url)),
            "status": response.status_code,
        },
    )


def _build_http_client(config: HttpSettings) -> httpx.Client:
    timeout = httpx.Timeout(
        connect=config.timeout_connect,
        read=config.timeout_read,
        write=config.timeout_read,
        pool=config.timeout_connect,
    )
    return httpx.Client(
        transport=httpx.HTTPTransport(retries=0, verify=_build_ssl_context()),
        timeout=timeout,
        follow_redirects=True,
        headers={"User-Agent": config.user_agent},
        event_hooks={"response": [_response_hook]},
    )


def _close_client_unlocked() -> None:
    global _HTTP_CLIENT, _HTTP_CLIENT_CONFIG
    if _HTTP_CLIENT is not None:
        with contextlib.suppress(Exception):
            _HTTP_CLIENT.close()
    _HTTP_CLIENT = None
    _HTTP_CLIENT_CONFIG = None


def configure_http_client(client: Optional[httpx.Client] = None) -> None:
    """Install ``client`` as the shared HTTPX client (``None`` drops the current one)."""

    global _HTTP_CLIENT
    with _CLIENT_LOCK:
        if client is None or _HTTP_CLIENT is not client:
            _close_client_unlocked()
        _HTTP_CLIENT = client


def reset_http_client() -> None:
    """Close the shared client so the next call builds a fresh default one."""

    with _CLIENT_LOCK:
        _close_client_unlocked()


def get_http_client(config: Optional[HttpSettings] = None) -> httpx.Client:
    """Return the shared HTTPX client, creating it if necessary.

    A client built here is closed and rebuilt when ``config`` differs from the
    settings it was built with; requests still streaming through the old client
    fail. Without ``config`` the current client is returned as is. Clients
    installed through :func:`configure_http_client` are never replaced.
    """

    global _HTTP_CLIENT, _HTTP_CLIENT_CONFIG
    with _CLIENT_LOCK:
        if (
            config is not None
            and _HTTP_CLIENT_CONFIG is not None
            and config != _HTTP_CLIENT_CONFIG
        ):
            LOGGER.debug("rebuilding shared http client", extra={"stage": "download"})
            _close_client_unlocked()
        if _HTTP_CLIENT is None:
            _HTTP_CLIENT_CONFIG = config or HttpSettings()
            _HTTP_CLIENT = _build_http_client(_HTTP_CLIENT_CONFIG)
        return _HTTP_CLIENT


@contextlib.contextmanager
def use_mock_http_client(transport: httpx.BaseTransport, **client_kwargs):
    """Temporarily install an HTTPX client backed by ``transport``."""

    client = httpx.Client(transport=transport, **client_kwargs)
    configure_http_client(client)
    try:
        yield client
    finally:
        reset_http_client()


__all__ = [
    "configure_http_client",
    "get_http_client",
    "reset_http_client",
    "use_mock_http_client",
]
