# src/app/infra/storage/base.py
"""
Abstract base class for storage providers.
Ingest artifacts (raw pages, extraction payloads) are written through this
interface so the backend can be swapped (R2, S3, in-memory for tests).
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod

ARTIFACT_PREFIX = "artifacts"
_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class StorageProvider(ABC):
    """
    Abstract interface for object storage operations.

    Implementations:
    - R2StorageProvider: Cloudflare R2 (S3-compatible)
    - InMemoryStorageProvider: process-local dict
    """

    @abstractmethod
    def put_object(
        self,
        object_key: str,
        data: bytes,
        content_type: str,
    ) -> str:
        """
        Store an object.

        Args:
            object_key: The key/path where the object will be stored
            data: Object body
            content_type: MIME type of the content (e.g., "text/html")

        Returns:
            URI identifying the stored object
        """
        pass

    @abstractmethod
    def get_object(self, object_key: str) -> bytes:
        """
        Read an object back.

        Args:
            object_key: The key/path of the object

        Returns:
            The object body

        Raises:
            StorageError: the object does not exist or cannot be read
        """
        pass

    @abstractmethod
    def list_objects(self, prefix: str = "") -> list[str]:
        """
        List object keys under a prefix.

        Args:
            prefix: Key prefix to filter on; empty lists the whole bucket

        Returns:
            Matching keys in lexical order

        Raises:
            StorageError: the listing cannot be read
        """
        pass

    @abstractmethod
    def delete_object(self, object_key: str) -> bool:
        """
        Delete an object from storage.

        Args:
            object_key: The key/path of the object to delete

        Returns:
            True if deletion was successful
        """
        pass

    def generate_artifact_key(self, thread_id: str, task_id: str, name: str) -> str:
        """
        Standardized key for a task artifact.

        Format: artifacts/{thread_id}/{task_id}/{name}
        """
        safe_name = _UNSAFE_KEY_CHARS.sub("_", name)
        return f"{ARTIFACT_PREFIX}/{thread_id}/{task_id}/{safe_name}"
