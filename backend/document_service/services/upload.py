"""
Document Upload Service

Input boundary of the pipeline. Multipart parsing, auth and tenant
resolution happen upstream; this service receives the raw bytes plus the
caller's tenant and user ids.

  1. Reject empty files
  2. Detect MIME type from magic bytes (declared type / extension as fallback);
     a ZIP counts as DOCX only when its content types declare a Word part
  3. Validate type and per-type size ceiling before touching storage
  4. Images wider than MAX_IMAGE_WIDTH are downscaled; the processed file
     is what gets stored
  5. PDFs get page count / info recorded at upload time (best effort)
  6. Store under {tenant}/{user}/{uuid}{ext}
  7. Insert the document record (status=pending, metadata.storage_backend)
  8. Queue the document-processing task

Invariants enforced here:
  - tenant_id / user_id come from the request context, never from the file.
  - If the record insert fails the stored object is removed again.
  - A broker failure in step 8 does not fail the upload: the document stays
    pending and the stale-pending scan re-queues it.
"""

from __future__ import annotations

import asyncio
import io
import logging
import mimetypes
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from document_service.core.errors import (
    CorruptOrEncryptedFileError,
    EmptyFileError,
    UnsupportedTypeError,
)
from document_service.processing.extraction import ExtractionCoordinator
from document_service.processing.extractors import (
    IMAGE_MIME_TYPES,
    MIME_DOC,
    MIME_DOCX,
    MIME_GIF,
    MIME_JPEG,
    MIME_MARKDOWN,
    MIME_PDF,
    MIME_PNG,
    MIME_TEXT,
    MIME_WEBP,
)
from document_service.queue.base import PROCESSING_QUEUE, Priority, TaskQueue, default_options
from document_service.repositories.base import DocumentRepository
from document_service.schemas.documents import DocumentStatus, UploadResult
from document_service.storage.base import safe_extension
from document_service.storage.gateway import StorageGateway

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File type detection
# ---------------------------------------------------------------------------

# Magic byte signatures, checked against the start of the file
_MAGIC_BYTES: dict[bytes, str] = {
    b"%PDF":                              MIME_PDF,
    b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1":  MIME_DOC,   # legacy .doc (OLE2)
    b"\x89PNG\r\n\x1a\n":                 MIME_PNG,
    b"\xff\xd8\xff":                      MIME_JPEG,
    b"GIF87a":                            MIME_GIF,
    b"GIF89a":                            MIME_GIF,
}

_ZIP_MAGIC         = b"PK\x03\x04"
_ZIP_MIME          = "application/zip"
_CONTENT_TYPES     = "[Content_Types].xml"
_WORD_CONTENT_TYPE = b"wordprocessingml"

_EXTENSION_TYPES: dict[str, str] = {
    ".txt":      MIME_TEXT,
    ".md":       MIME_MARKDOWN,
    ".markdown": MIME_MARKDOWN,
}


def _is_word_package(content: bytes) -> bool:
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            return _WORD_CONTENT_TYPE in archive.read(_CONTENT_TYPES)
    except (zipfile.BadZipFile, KeyError, RuntimeError):
        # RuntimeError: password-protected archive member
        return False


def detect_mime_type(filename: str, content: bytes, declared: str | None = None) -> str:
    """
    Magic bytes first; text formats have none, so fall back to the declared
    type, then the extension.

    `content` is the whole file. Other OOXML packages (.xlsx, .pptx) and plain
    archives share the ZIP signature, so a ZIP is only DOCX when its
    [Content_Types].xml declares a wordprocessingml part.
    """
    if content.startswith(_ZIP_MAGIC):
        return MIME_DOCX if _is_word_package(content) else _ZIP_MIME
    for magic, mime in _MAGIC_BYTES.items():
        if content.startswith(magic):
            return mime
    if content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return MIME_WEBP

    if declared:
        declared = declared.split(";", 1)[0].strip().lower()
        if declared in (MIME_TEXT, MIME_MARKDOWN):
            return declared

    ext = safe_extension(filename)
    if ext in _EXTENSION_TYPES:
        return _EXTENSION_TYPES[ext]

    guessed, _ = mimetypes.guess_type(filename)
    return guessed or declared or "application/octet-stream"


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------

@dataclass
class UploadRequest:
    content:           bytes
    original_filename: str
    mimetype:          str | None
    tenant_id:         str
    user_id:           str
    session_id:        str | None = None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class UploadService:
    """
    Stateless; all dependencies are injected.
    """

    def __init__(
        self,
        repository:  DocumentRepository,
        storage:     StorageGateway,
        coordinator: ExtractionCoordinator,
        task_queue:  TaskQueue,
    ) -> None:
        self._repo        = repository
        self._storage     = storage
        self._coordinator = coordinator
        self._queue       = task_queue

    async def upload(self, request: UploadRequest) -> UploadResult:
        filename = request.original_filename or "upload"

        # ---- Step 1-3: Validate --------------------------------------
        if not request.content:
            raise EmptyFileError(filename)

        mime_type = detect_mime_type(filename, request.content, request.mimetype)
        if not self._coordinator.is_supported(mime_type):
            logger.warning(
                "Upload rejected | tenant=%s file=%s detected=%s",
                request.tenant_id, filename, mime_type,
            )
            raise UnsupportedTypeError(mime_type, filename)
        self._coordinator.validate_size(mime_type, len(request.content))

        logger.info(
            "Upload start | tenant=%s user=%s file=%s type=%s size=%d",
            request.tenant_id, request.user_id, filename, mime_type, len(request.content),
        )

        # ---- Step 4-5: Format-specific preparation -------------------
        body, metadata = await self._prepare(request.content, filename, mime_type)

        # ---- Step 6: Store --------------------------------------------
        stored = await self._storage.put(
            body,
            request.tenant_id,
            request.user_id,
            filename,
            metadata={"uploaded_by": request.user_id, "original_filename": filename},
            content_type=mime_type,
        )
        metadata["storage_backend"] = stored.backend

        # ---- Step 7: Persist document record --------------------------
        try:
            document = await self._repo.create_document(
                tenant_id=request.tenant_id,
                user_id=request.user_id,
                session_id=request.session_id,
                filename=filename,
                storage_key=stored.key,
                mime_type=mime_type,
                size_bytes=stored.size_bytes,
                metadata=metadata,
            )
        except Exception:
            logger.exception("Document insert failed, removing stored object | key=%s", stored.key)
            await self._storage.delete(stored.key)
            raise

        # ---- Step 8: Queue processing (non-fatal on broker failure) ---
        task_id: str | None = None
        try:
            task_id = await self._queue.enqueue(
                PROCESSING_QUEUE,
                {"document_id": str(document.id), "tenant_id": document.tenant_id},
                default_options(PROCESSING_QUEUE, Priority.NORMAL),
            )
        except Exception:
            logger.exception(
                "Processing task not queued, document left pending | doc=%s tenant=%s",
                document.id, document.tenant_id,
            )

        logger.info(
            "Upload complete | doc=%s tenant=%s key=%s task=%s",
            document.id, document.tenant_id, stored.key, task_id,
        )
        return UploadResult(
            document_id=document.id,
            filename=filename,
            storage_key=stored.key,
            storage_backend=stored.backend,
            mime_type=mime_type,
            size_bytes=stored.size_bytes,
            status=DocumentStatus.PENDING,
            task_id=task_id,
            created_at=document.created_at,
        )

    async def upload_many(self, requests: Sequence[UploadRequest]) -> list[UploadResult]:
        return list(await asyncio.gather(*(self.upload(r) for r in requests)))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _prepare(
        self,
        content:   bytes,
        filename:  str,
        mime_type: str,
    ) -> tuple[bytes, dict[str, Any]]:
        """Returns the bytes to store and the initial document metadata."""
        if mime_type not in IMAGE_MIME_TYPES and mime_type != MIME_PDF:
            return content, {}

        loop = asyncio.get_event_loop()
        with tempfile.TemporaryDirectory(prefix="upload-") as workdir:
            path = Path(workdir) / f"upload{safe_extension(filename)}"
            await loop.run_in_executor(None, path.write_bytes, content)

            if mime_type == MIME_PDF:
                try:
                    return content, await self._coordinator.extract_metadata(path, mime_type)
                except CorruptOrEncryptedFileError as exc:
                    # Processing reports this on the document; the upload itself is kept
                    logger.warning("PDF metadata unavailable at upload | file=%s error=%s", filename, exc)
                    return content, {}

            extracted = await self._coordinator.extract(path, mime_type)
            metadata = dict(extracted.metadata)
            if extracted.processed_path is None:
                return content, metadata

            body = await loop.run_in_executor(None, extracted.processed_path.read_bytes)
            metadata["processed"] = True
            return body, metadata
