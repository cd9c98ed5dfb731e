"""
S3 Storage Backend

Works against AWS S3 or any S3-compatible store (MinIO, LocalStack):
  - endpoint_url      custom endpoint; empty = AWS
  - force_path_style  http://host/bucket/key addressing (MinIO needs this)
  - static keys       local dev only; prod uses the task role

Object lifecycle:
  - put_object stores the object metadata as S3 user metadata. Values are
    percent-encoded (UTF-8) because S3 only carries ASCII header values.
  - Pre-signed GET URLs are scoped to the exact key with a configurable TTL.
  - exists() is a HEAD request; delete() HEADs first so it can report
    whether anything was removed (S3 DeleteObject succeeds either way).
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import aioboto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from document_service.core.errors import NotFoundError, StorageBackendError
from document_service.storage.base import StorageBackend

logger = logging.getLogger(__name__)

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


class S3StorageBackend(StorageBackend):
    name = "s3"

    def __init__(
        self,
        bucket:                str,
        region:                str = "us-east-1",
        endpoint_url:          str | None = None,
        aws_access_key_id:     str | None = None,
        aws_secret_access_key: str | None = None,
        force_path_style:      bool = False,
        presigned_url_ttl:     int = 3600,
    ) -> None:
        self._bucket       = bucket
        self._region       = region
        self._endpoint_url = endpoint_url or None
        self._access_key   = aws_access_key_id or None
        self._secret_key   = aws_secret_access_key or None
        self._path_style   = force_path_style
        self._url_ttl      = presigned_url_ttl
        self._session      = aioboto3.Session()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self):
        """Return a scoped async S3 client context manager."""
        kwargs: dict[str, Any] = {"region_name": self._region}
        if self._endpoint_url:
            kwargs["endpoint_url"] = self._endpoint_url
        if self._access_key and self._secret_key:
            kwargs["aws_access_key_id"]     = self._access_key
            kwargs["aws_secret_access_key"] = self._secret_key
        if self._path_style:
            kwargs["config"] = BotoConfig(s3={"addressing_style": "path"})
        return self._session.client("s3", **kwargs)

    def _error(self, action: str, key: str, exc: Exception) -> StorageBackendError:
        logger.error("S3 %s failed | bucket=%s key=%s error=%s", action, self._bucket, key, exc)
        return StorageBackendError(f"S3 {action} failed for {key}: {exc}", backend=self.name, key=key)

    @staticmethod
    def _is_missing(exc: ClientError) -> bool:
        return exc.response.get("Error", {}).get("Code") in _MISSING_CODES

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def put(
        self,
        key:          str,
        body:         bytes,
        content_type: str | None = None,
        metadata:     dict[str, Any] | None = None,
    ) -> str:
        extra: dict[str, Any] = {
            "Metadata": {str(k): quote(str(v), safe="") for k, v in (metadata or {}).items()},
        }
        if content_type:
            extra["ContentType"] = content_type

        try:
            async with self._client() as s3:
                await s3.put_object(Bucket=self._bucket, Key=key, Body=body, **extra)
        except (ClientError, BotoCoreError) as exc:
            raise self._error("upload", key, exc) from exc

        logger.info("S3 upload ok | bucket=%s key=%s size=%d", self._bucket, key, len(body))
        return f"s3://{self._bucket}/{key}"

    async def get(self, key: str) -> bytes:
        try:
            async with self._client() as s3:
                resp = await s3.get_object(Bucket=self._bucket, Key=key)
                return await resp["Body"].read()
        except ClientError as exc:
            if self._is_missing(exc):
                raise NotFoundError("object", key) from exc
            raise self._error("download", key, exc) from exc
        except BotoCoreError as exc:
            raise self._error("download", key, exc) from exc

    async def exists(self, key: str) -> bool:
        try:
            async with self._client() as s3:
                await s3.head_object(Bucket=self._bucket, Key=key)
            return True
        except ClientError as exc:
            if self._is_missing(exc):
                return False
            raise self._error("head", key, exc) from exc
        except BotoCoreError as exc:
            raise self._error("head", key, exc) from exc

    async def delete(self, key: str) -> bool:
        if not await self.exists(key):
            return False
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise self._error("delete", key, exc) from exc

        logger.info("S3 delete | bucket=%s key=%s", self._bucket, key)
        return True

    async def url_for(self, key: str) -> str:
        """Short-lived presigned GET URL for direct download."""
        try:
            async with self._client() as s3:
                return await s3.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": self._bucket, "Key": key},
                    ExpiresIn=self._url_ttl,
                )
        except (ClientError, BotoCoreError) as exc:
            raise self._error("presign", key, exc) from exc
