# === NAVMAP v1 ===
# {
#   "module": "GenericWorker.Mounts.content",
#   "purpose": "Decode content references and download them into the downloads directory",
#   "sections": [
#     {"id": "artifactcontent", "name": "ArtifactContent", "anchor": "class-artifactcontent", "kind": "class"},
#     {"id": "urlcontent", "name": "URLContent", "anchor": "class-urlcontent", "kind": "class"},
#     {"id": "decode-content", "name": "decode_content", "anchor": "function-decode-content", "kind": "function"},
#     {"id": "load-json-object", "name": "load_json_object", "anchor": "function-load-json-object", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Content sources referenced by mount entries.

A content reference in the task payload is either ``{"taskId", "artifact"}``
(an artifact of another task, fetched through a signed queue URL) or
``{"url"}`` (an arbitrary URL).  Both resolve to a stable unique key so the
download cache can recognise identical content declared by different mounts or
different tasks.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import DownloadFailure, PayloadDecodeError
from .io.filesystem import random_slot
from .io.network import download_url_to_file
from .queue import ArtifactQueue
from .settings import HttpSettings

__all__ = [
    "ArtifactContent",
    "ContentSource",
    "URLContent",
    "decode_content",
    "load_json_object",
]

LOGGER = logging.getLogger("GenericWorker.Mounts.content")

DEFAULT_SIGNED_URL_VALIDITY = timedelta(minutes=30)


class ArtifactContent(BaseModel):
    """Artifact published by a task, addressed by task id and artifact name."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    task_id: str = Field(alias="taskId", min_length=1)
    artifact: str = Field(min_length=1)

    def required_scopes(self) -> List[str]:
        """``queue:get-artifact:<name>`` unless the artifact is under ``public/``."""

        if self.artifact.startswith("public/"):
            return []
        return [f"queue:get-artifact:{self.artifact}"]

    def unique_key(self) -> str:
        return f"artifact:{self.task_id}:{self.artifact}"

    def download(
        self,
        downloads_dir: Path,
        *,
        queue: Optional[ArtifactQueue] = None,
        http_config: Optional[HttpSettings] = None,
        signed_url_validity: timedelta = DEFAULT_SIGNED_URL_VALIDITY,
    ) -> Path:
        """Resolve a signed URL for the artifact and download it to a fresh slot."""

        if queue is None:
            raise DownloadFailure(
                f"Cannot fetch artifact {self.artifact} of task {self.task_id}: "
                "no queue client configured"
            )
        destination = random_slot(downloads_dir)
        try:
            signed_url = queue.get_latest_artifact_signed_url(
                self.task_id, self.artifact, signed_url_validity
            )
        except Exception as exc:
            raise DownloadFailure(
                f"Could not obtain signed URL for artifact {self.artifact} "
                f"of task {self.task_id}: {exc}"
            ) from exc
        LOGGER.debug(
            "resolved signed artifact url",
            extra={"stage": "download", "task_id": self.task_id, "artifact": self.artifact},
        )
        return download_url_to_file(str(signed_url), destination, http_config=http_config)


class URLContent(BaseModel):
    """Content fetched directly from an HTTP(S) URL."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    url: str = Field(min_length=1)

    def required_scopes(self) -> List[str]:
        return []

    def unique_key(self) -> str:
        return f"urlcontent:{self.url}"

    def download(
        self,
        downloads_dir: Path,
        *,
        queue: Optional[ArtifactQueue] = None,
        http_config: Optional[HttpSettings] = None,
        signed_url_validity: timedelta = DEFAULT_SIGNED_URL_VALIDITY,
    ) -> Path:
        """Download the URL to a fresh slot under ``downloads_dir``."""

        return download_url_to_file(self.url, random_slot(downloads_dir), http_config=http_config)


ContentSource = Union[ArtifactContent, URLContent]


def load_json_object(raw: Any, *, what: str) -> Dict[str, Any]:
    """Return ``raw`` as a JSON object, decoding it first when given text or bytes."""

    if isinstance(raw, (str, bytes, bytearray)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise PayloadDecodeError(f"Could not read {what}: {raw!r}\n{exc}") from exc
    if not isinstance(raw, dict):
        raise PayloadDecodeError(f"Could not read {what}: expected a JSON object, got {raw!r}")
    return raw


def decode_content(raw: Any) -> ContentSource:
    """Decode a payload content reference into :class:`ArtifactContent` or :class:`URLContent`.

    Keys are checked in order: ``artifact`` first, then ``url``. A key whose
    value is ``null`` counts as absent.
    """

    data = load_json_object(raw, what="content")
    try:
        if data.get("artifact") is not None:
            return ArtifactContent.model_validate(data)
        if data.get("url") is not None:
            return URLContent.model_validate(data)
    except PydanticValidationError as exc:
        raise PayloadDecodeError(f"Invalid content {data!r}: {exc}") from exc
    raise PayloadDecodeError(f"Unrecognised content in payload - {data!r}")
