"""
Storage Gateway: one API over the configured backend.

    stored = await gateway.put(data, tenant_id, user_id, "report.pdf", {"uploaded_by": user_id})
    data   = await gateway.get(stored.key)

`put` accepts raw bytes or a filesystem path; keys are always generated
here (see storage.base.build_object_key), never taken from the caller.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from document_service.core.config import Settings
from document_service.storage.base import StorageBackend, StoredObject, build_object_key

logger = logging.getLogger(__name__)


class StorageGateway:

    def __init__(self, backend: StorageBackend) -> None:
        self._backend = backend

    @property
    def backend_name(self) -> str:
        return self._backend.name

    async def put(
        self,
        source:            bytes | Path | str,
        tenant_id:         str,
        user_id:           str,
        original_filename: str,
        metadata:          dict[str, Any] | None = None,
        content_type:      str | None = None,
    ) -> StoredObject:
        if isinstance(source, (bytes, bytearray)):
            body = bytes(source)
        else:
            loop = asyncio.get_event_loop()
            body = await loop.run_in_executor(None, Path(source).read_bytes)

        key = build_object_key(tenant_id, user_id, original_filename)
        location = await self._backend.put(key, body, content_type=content_type, metadata=metadata)

        logger.info(
            "Stored | backend=%s tenant=%s key=%s size=%d",
            self._backend.name, tenant_id, key, len(body),
        )
        return StoredObject(
            key=key,
            backend=self._backend.name,
            filename=original_filename,
            location=location,
            size_bytes=len(body),
            content_type=content_type,
            metadata=dict(metadata or {}),
        )

    async def get(self, key: str) -> bytes:
        return await self._backend.get(key)

    async def exists(self, key: str) -> bool:
        return await self._backend.exists(key)

    async def delete(self, key: str) -> bool:
        removed = await self._backend.delete(key)
        if not removed:
            logger.warning("Delete of missing object | backend=%s key=%s", self._backend.name, key)
        return removed

    async def url_for(self, key: str) -> str:
        return await self._backend.url_for(key)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_storage_backend(settings: Settings) -> StorageBackend:
    """Instantiate the backend named by STORAGE_BACKEND ("s3" | "local")."""
    backend = settings.storage_backend.lower()

    if backend == "s3":
        from document_service.storage.s3 import S3StorageBackend

        logger.info("Storage backend: s3 bucket=%s", settings.s3_bucket)
        return S3StorageBackend(
            bucket=settings.s3_bucket,
            region=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            force_path_style=settings.s3_force_path_style,
            presigned_url_ttl=settings.s3_presigned_url_ttl,
        )

    if backend == "local":
        from document_service.storage.local import LocalStorageBackend

        logger.info("Storage backend: local path=%s", settings.local_storage_path)
        return LocalStorageBackend(settings.local_storage_path)

    raise ValueError(
        f"Unknown STORAGE_BACKEND: '{settings.storage_backend}'. "
        "Valid options: 's3', 'local'"
    )


def build_storage_gateway(settings: Settings) -> StorageGateway:
    return StorageGateway(build_storage_backend(settings))
