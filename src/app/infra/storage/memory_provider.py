from __future__ import annotations

from threading import Lock

from src.app.domain.errors import StorageError
from src.app.infra.storage.base import StorageProvider


class InMemoryStorageProvider(StorageProvider):
    def __init__(self) -> None:
        self._objects: dict[str, tuple[bytes, str]] = {}
        self._lock = Lock()

    def put_object(self, object_key: str, data: bytes, content_type: str) -> str:
        with self._lock:
            self._objects[object_key] = (bytes(data), content_type)
        return f"memory://{object_key}"

    def get_object(self, object_key: str) -> bytes:
        with self._lock:
            entry = self._objects.get(object_key)
        if entry is None:
            raise StorageError(f"Object not found: {object_key}")
        return entry[0]

    def delete_object(self, object_key: str) -> bool:
        with self._lock:
            return self._objects.pop(object_key, None) is not None

    def list_objects(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(key for key in self._objects if key.startswith(prefix))

    def keys(self) -> list[str]:
        return self.list_objects()
