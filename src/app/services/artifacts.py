from __future__ import annotations

import json
import logging
from typing import Any, Optional

from starlette.concurrency import run_in_threadpool

from src.app.domain.errors import StorageError
from src.app.domain.models import ArtifactRef
from src.app.infra.storage.base import StorageProvider

logger = logging.getLogger(__name__)

RAW_HTML = "raw.html"
SANITIZED_TEXT = "sanitized.txt"
EXTRACTION_JSON = "extraction.json"
VALIDATION_JSON = "validation.json"
REPAIR_JSON = "repair.json"

_CONTENT_TYPES = {
    ".html": "text/html; charset=utf-8",
    ".txt": "text/plain; charset=utf-8",
    ".json": "application/json",
}


class ArtifactWriter:
    """Stores pipeline evidence; a failed write is logged and skipped."""

    def __init__(self, storage: StorageProvider):
        self._storage = storage

    async def write(self, thread_id: str, task_id: str, name: str, data: Any) -> Optional[ArtifactRef]:
        if isinstance(data, (dict, list)):
            body = json.dumps(data, ensure_ascii=False, indent=2, default=str).encode("utf-8")
        elif isinstance(data, str):
            body = data.encode("utf-8")
        else:
            body = bytes(data)

        suffix = name[name.rfind("."):] if "." in name else ""
        content_type = _CONTENT_TYPES.get(suffix, "application/octet-stream")
        object_key = self._storage.generate_artifact_key(thread_id, task_id, name)

        try:
            uri = await run_in_threadpool(self._storage.put_object, object_key, body, content_type)
        except StorageError as error:
            logger.warning("artifact.write_failed task=%s name=%s error=%s", task_id, name, error)
            return None

        return ArtifactRef(type=name.rsplit(".", 1)[0], uri=uri)

    async def read_text(self, thread_id: str, task_id: str, name: str) -> str:
        """Raises StorageError when the artifact was never written or is gone."""
        object_key = self._storage.generate_artifact_key(thread_id, task_id, name)
        body = await run_in_threadpool(self._storage.get_object, object_key)
        return body.decode("utf-8")
