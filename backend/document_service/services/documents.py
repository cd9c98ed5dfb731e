"""
Document read / management service.

Every call is tenant-scoped: a document id from another tenant behaves
exactly like a missing one (NotFoundError), so ids cannot be enumerated.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from document_service.core.errors import NotFoundError, StorageBackendError
from document_service.queue.base import PROCESSING_QUEUE, Priority, TaskQueue, default_options
from document_service.repositories.base import DocumentRepository
from document_service.schemas.documents import (
    ChunkRecord,
    DocumentRecord,
    DocumentStatistics,
    DocumentStatus,
    DocumentStatusResponse,
    DocumentWithChunks,
)
from document_service.storage.gateway import StorageGateway

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=5)


class DocumentService:

    def __init__(
        self,
        repository: DocumentRepository,
        storage:    StorageGateway,
        task_queue: TaskQueue,
    ) -> None:
        self._repo    = repository
        self._storage = storage
        self._queue   = task_queue

    async def get(self, document_id: UUID, tenant_id: str) -> DocumentRecord:
        document = await self._repo.get_document(document_id, tenant_id)
        if document is None:
            raise NotFoundError("document", document_id)
        return document

    async def get_status(self, document_id: UUID, tenant_id: str) -> DocumentStatusResponse:
        document = await self.get(document_id, tenant_id)
        chunks = await self._repo.list_chunks(document_id)
        return DocumentStatusResponse(
            document_id=document.id,
            status=document.status,
            embedding_status=document.embedding_status,
            chunk_count=document.chunk_count,
            embedded_chunk_count=sum(1 for c in chunks if c.is_embedded),
            error_message=document.error_message,
            updated_at=document.updated_at,
        )

    async def list(
        self,
        tenant_id: str,
        *,
        user_id: str | None = None,
        status:  DocumentStatus | None = None,
        limit:   int = 50,
        offset:  int = 0,
    ) -> list[DocumentRecord]:
        return await self._repo.list_documents(
            tenant_id,
            user_id=user_id,
            status=status,
            limit=max(1, min(limit, 200)),
            offset=max(0, offset),
        )

    async def get_chunks(self, document_id: UUID, tenant_id: str) -> list[ChunkRecord]:
        await self.get(document_id, tenant_id)
        return await self._repo.list_chunks(document_id)

    async def get_with_chunks(self, document_id: UUID, tenant_id: str) -> DocumentWithChunks:
        document = await self.get(document_id, tenant_id)
        return DocumentWithChunks(
            document=document,
            chunks=await self._repo.list_chunks(document_id),
        )

    async def delete(self, document_id: UUID, tenant_id: str, user_id: str | None = None) -> None:
        """
        Removes the stored object, then the document row (chunks cascade).
        With user_id set, only the uploader may delete.
        """
        document = await self.get(document_id, tenant_id)
        if user_id is not None and document.user_id != user_id:
            logger.warning(
                "Delete refused, not owner | doc=%s tenant=%s user=%s",
                document_id, tenant_id, user_id,
            )
            raise NotFoundError("document", document_id)

        try:
            await self._storage.delete(document.storage_key)
        except StorageBackendError as exc:
            # An orphaned object is preferable to a document that cannot be deleted
            logger.error("Stored object not removed | doc=%s key=%s error=%s", document_id, document.storage_key, exc)

        await self._repo.delete_document(document_id, tenant_id)
        logger.info("Document deleted | doc=%s tenant=%s", document_id, tenant_id)

    async def statistics(self, tenant_id: str, user_id: str | None = None) -> DocumentStatistics:
        counts = await self._repo.count_documents_by_status(tenant_id, user_id)
        return DocumentStatistics.from_counts(counts)

    async def requeue_stale_pending(
        self,
        older_than: timedelta = DEFAULT_STALE_AFTER,
        limit:      int = 50,
    ) -> int:
        """
        Re-queue documents still pending after `older_than`, which happens
        when the broker was down at upload time. Returns the number queued.

        Staleness is measured from the last update. metadata.requeued_at and
        requeue_count are stamped before the task is sent, which also moves
        updated_at, so a document waiting in a busy worker backlog is queued
        again at most once per `older_than` window.
        """
        stale = await self._repo.find_stale_pending(older_than, limit)
        queued = 0
        for document in stale:
            try:
                await self._repo.update_document(
                    document.id,
                    metadata={
                        **document.metadata,
                        "requeued_at":   datetime.now(timezone.utc).isoformat(),
                        "requeue_count": int(document.metadata.get("requeue_count", 0)) + 1,
                    },
                )
                await self._queue.enqueue(
                    PROCESSING_QUEUE,
                    {"document_id": str(document.id), "tenant_id": document.tenant_id},
                    default_options(PROCESSING_QUEUE, Priority.LOW),
                )
            except Exception:
                logger.exception("Re-queue failed | doc=%s tenant=%s", document.id, document.tenant_id)
                continue
            queued += 1
            logger.info("Re-queued stale document | doc=%s tenant=%s", document.id, document.tenant_id)
        return queued
