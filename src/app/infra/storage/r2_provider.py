# src/app/infra/storage/r2_provider.py
"""
Ingest artifacts on Cloudflare R2 through its S3-compatible API.
"""
from __future__ import annotations

import logging
import os
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from src.app.domain.errors import StorageError
from src.app.infra.storage.base import StorageProvider

logger = logging.getLogger(__name__)

_MISSING_OBJECT_CODES = ("404", "NoSuchKey")
_REQUIRED_SETTINGS = ("R2_ACCOUNT_ID", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY", "R2_BUCKET_NAME")


class R2StorageProvider(StorageProvider):
    """
    Stores raw pages, sanitized text and pipeline JSON for review and audit.

    Objects are private unless R2_PUBLIC_URL points at a public bucket domain,
    in which case returned URIs are directly fetchable. A boto3 client can be
    passed in for tests; the credentials are only required when it is not.
    """

    def __init__(
        self,
        account_id: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        bucket_name: Optional[str] = None,
        public_url: Optional[str] = None,
        client=None,
    ):
        settings = {
            "R2_ACCOUNT_ID": account_id or os.getenv("R2_ACCOUNT_ID"),
            "R2_ACCESS_KEY_ID": access_key_id or os.getenv("R2_ACCESS_KEY_ID"),
            "R2_SECRET_ACCESS_KEY": secret_access_key or os.getenv("R2_SECRET_ACCESS_KEY"),
            "R2_BUCKET_NAME": bucket_name or os.getenv("R2_BUCKET_NAME"),
        }
        self.bucket_name = settings["R2_BUCKET_NAME"]
        self.public_url = (public_url or os.getenv("R2_PUBLIC_URL") or "").rstrip("/") or None

        if client is None:
            missing = [name for name in _REQUIRED_SETTINGS if not settings[name]]
            if missing:
                raise StorageError(f"Missing R2 configuration: {', '.join(missing)}")
            client = boto3.client(
                "s3",
                endpoint_url=f"https://{settings['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com",
                aws_access_key_id=settings["R2_ACCESS_KEY_ID"],
                aws_secret_access_key=settings["R2_SECRET_ACCESS_KEY"],
                config=Config(signature_version="s3v4", retries={"max_attempts": 3, "mode": "adaptive"}),
                region_name="auto",
            )
        elif not self.bucket_name:
            raise StorageError("Missing R2 configuration: R2_BUCKET_NAME")

        self._client = client
        logger.info("storage.r2_ready bucket=%s public=%s", self.bucket_name, bool(self.public_url))

    def _uri_for(self, object_key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{object_key}"
        return f"r2://{self.bucket_name}/{object_key}"

    def put_object(self, object_key: str, data: bytes, content_type: str) -> str:
        try:
            self._client.put_object(Bucket=self.bucket_name, Key=object_key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            logger.error("storage.put_failed key=%s error=%s", object_key, e)
            raise StorageError(f"Failed to store artifact {object_key}: {e}") from e

        logger.debug("storage.put key=%s bytes=%d", object_key, len(data))
        return self._uri_for(object_key)

    def get_object(self, object_key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket_name, Key=object_key)
            return response["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_OBJECT_CODES:
                raise StorageError(f"Object not found: {object_key}") from e
            logger.error("storage.get_failed key=%s error=%s", object_key, e)
            raise StorageError(f"Failed to read artifact {object_key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to read artifact {object_key}: {e}") from e

    def delete_object(self, object_key: str) -> bool:
        try:
            self._client.delete_object(Bucket=self.bucket_name, Key=object_key)
        except (ClientError, BotoCoreError) as e:
            logger.warning("storage.delete_failed key=%s error=%s", object_key, e)
            return False
        return True

    def list_objects(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                keys.extend(item["Key"] for item in page.get("Contents", ()))
        except (ClientError, BotoCoreError) as e:
            logger.error("storage.list_failed prefix=%s error=%s", prefix, e)
            raise StorageError(f"Failed to list artifacts under {prefix!r}: {e}") from e
        return sorted(keys)
