"""
Local filesystem storage backend.

Layout under base_path mirrors the object key:

    <base_path>/<tenant_id>/<user_id>/<uuid><ext>
    <base_path>/<tenant_id>/<user_id>/<uuid><ext>.metadata.json   (only when metadata given)

Served by the HTTP layer under /files/<key>. Keys that resolve outside
base_path are rejected. File I/O runs in the default thread executor.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from document_service.core.errors import NotFoundError, StorageBackendError
from document_service.storage.base import StorageBackend

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".metadata.json"
URL_PREFIX      = "/files"


class LocalStorageBackend(StorageBackend):
    name = "local"

    def __init__(self, base_path: Path | str) -> None:
        self._base = Path(base_path).resolve()

    @property
    def base_path(self) -> Path:
        return self._base

    def _resolve(self, key: str) -> Path:
        path = (self._base / key).resolve()
        if path == self._base or self._base not in path.parents:
            raise StorageBackendError(
                f"Key escapes the storage root: {key}", backend=self.name, key=key,
            )
        return path

    @staticmethod
    def _sidecar(path: Path) -> Path:
        return path.with_name(path.name + METADATA_SUFFIX)

    async def _run(self, func, *args):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, func, *args)

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
        path = self._resolve(key)
        sidecar = dict(metadata or {})
        if content_type and sidecar:
            sidecar.setdefault("content_type", content_type)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(body)
            if sidecar:
                self._sidecar(path).write_text(json.dumps(sidecar, default=str), encoding="utf-8")

        try:
            await self._run(_write)
        except OSError as exc:
            raise StorageBackendError(
                f"Local write failed for {key}: {exc}", backend=self.name, key=key,
            ) from exc

        logger.info("Local upload ok | key=%s size=%d", key, len(body))
        return str(path)

    async def get(self, key: str) -> bytes:
        path = self._resolve(key)
        try:
            return await self._run(path.read_bytes)
        except FileNotFoundError as exc:
            raise NotFoundError("object", key) from exc
        except OSError as exc:
            raise StorageBackendError(
                f"Local read failed for {key}: {exc}", backend=self.name, key=key,
            ) from exc

    async def exists(self, key: str) -> bool:
        path = self._resolve(key)
        return await self._run(path.is_file)

    async def delete(self, key: str) -> bool:
        path = self._resolve(key)

        def _remove() -> bool:
            self._sidecar(path).unlink(missing_ok=True)
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            return True

        try:
            removed = await self._run(_remove)
        except OSError as exc:
            raise StorageBackendError(
                f"Local delete failed for {key}: {exc}", backend=self.name, key=key,
            ) from exc

        if removed:
            logger.info("Local delete | key=%s", key)
        return removed

    async def url_for(self, key: str) -> str:
        self._resolve(key)
        return f"{URL_PREFIX}/{key}"

    async def read_metadata(self, key: str) -> dict[str, Any]:
        """Sidecar metadata written by put(); {} when none was stored."""
        sidecar = self._sidecar(self._resolve(key))

        def _read() -> dict[str, Any]:
            try:
                return json.loads(sidecar.read_text(encoding="utf-8"))
            except FileNotFoundError:
                return {}

        return await self._run(_read)
