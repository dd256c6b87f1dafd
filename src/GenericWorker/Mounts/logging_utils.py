"""Structured logging helpers shared across mount provisioning components."""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urlsplit, urlunsplit

__all__ = ["JSONFormatter", "mask_sensitive_data", "mask_url", "setup_logging"]

_SENSITIVE_KEYS = {"authorization", "api_key", "apikey", "token", "secret", "password", "bewit"}
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9+/=_-]{32,}$")
_URL_PATTERN = re.compile(r"^https?://", re.IGNORECASE)
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}


def mask_url(url: str) -> str:
    """Drop the query string from ``url`` so signed URL credentials never reach logs."""

    parts = urlsplit(url)
    if not parts.query:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "***masked***", ""))


def _mask_value(value: object, key_hint: Optional[str] = None) -> object:
    if isinstance(value, dict):
        return {
            sub_key: _mask_value(sub_value, str(sub_key).lower())
            for sub_key, sub_value in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_mask_value(item, key_hint) for item in value)
    if isinstance(value, str):
        if key_hint in _SENSITIVE_KEYS:
            return "***masked***"
        if "bearer " in value.lower():
            return "***masked***"
        if _TOKEN_PATTERN.fullmatch(value):
            return "***masked***"
        if _URL_PATTERN.match(value):
            return mask_url(value)
    return value


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Return a copy of ``payload`` with secrets and signed URL queries masked."""

    masked: Dict[str, object] = {}
    for key, value in payload.items():
        lower = key.lower()
        if lower in _SENSITIVE_KEYS:
            masked[key] = "***masked***"
        else:
            masked[key] = _mask_value(value, lower)
    return masked


class JSONFormatter(logging.Formatter):
    """Formatter emitting masked JSON log entries for mount operations."""

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        payload: Dict[str, object] = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "stage": getattr(record, "stage", None),
            "task_id": getattr(record, "task_id", None),
        }
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in payload:
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(payload), default=str)


def setup_logging(
    *,
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    max_log_size_mb: int = 50,
    propagate: bool = False,
) -> logging.Logger:
    """Configure the ``GenericWorker.Mounts`` logger with console and JSON file output."""

    logger = logging.getLogger("GenericWorker.Mounts")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_mounts_managed", False):
            logger.removeHandler(handler)
            handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    stream_handler._mounts_managed = True  # type: ignore[attr-defined]
    logger.addHandler(stream_handler)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        file_handler = RotatingFileHandler(
            log_dir / f"mounts-{today}.jsonl",
            maxBytes=int(max_log_size_mb * 1024 * 1024),
            backupCount=5,
        )
        file_handler.setFormatter(JSONFormatter())
        file_handler._mounts_managed = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)

    logger.propagate = propagate
    return logger
