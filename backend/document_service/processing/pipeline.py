"""
Processing Pipeline  —  Document State Machine
═══════════════════════════════════════════════

    pending ──► processing ──► completed
                    │
                    └────────► failed ──► (re-processed) processing …

process_document (document-processing queue)
────────────────────────────────────────────
  1. Load; a completed document is skipped (redelivered message)
  2. status=processing, emit processing.started
  3. Download the stored object to a temp file, extract, persist preview
     and merged metadata
  4. Metadata-only formats (images) complete here with chunk_count=0 and
     embedding_status=skipped; text formats with no text fail
  5. Chunk, then replace the document's chunk rows (delete + insert +
     chunk_count in one transaction), so a re-run never duplicates chunks
  6. embedding_status=processing, emit processing.chunked
  7. Enqueue one document-embedding task per chunk
  Any error in 1–7: status=failed + error_message, emit processing.failed,
  re-raise for the queue's retry policy.

process_embedding (document-embedding queue)
────────────────────────────────────────────
  Embed the chunk (with retry), store embedding_id and embedding_model on
  the chunk, then run check_completion. A failure is recorded as
  metadata.embedding_error on that chunk only and re-raised. A chunk that
  no longer exists (replaced by a re-run) is dropped with a log line.

check_completion
────────────────
  One conditional update in the repository: completed iff status is still
  processing and every chunk (at least one) has an embedding id. Safe to
  call any number of times from any number of workers.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import UUID

from document_service.core.errors import NoExtractableTextError, NotFoundError
from document_service.events import EventBus, ProcessingEvent
from document_service.processing.chunking import (
    ChunkingEngine,
    ChunkingOptions,
    ChunkingStrategy,
)
from document_service.processing.embeddings import EmbeddingClient
from document_service.processing.extraction import ExtractionCoordinator
from document_service.processing.extractors import ExtractedContent
from document_service.queue.base import (
    EMBEDDING_QUEUE,
    PROCESSING_QUEUE,
    Priority,
    TaskQueue,
    default_options,
)
from document_service.repositories.base import DocumentRepository, NewChunk
from document_service.schemas.documents import DocumentRecord, DocumentStatus, EmbeddingStatus
from document_service.storage.base import safe_extension
from document_service.storage.gateway import StorageGateway

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 2000


@dataclass
class ProcessingResult:
    """
    status      : "chunked" | "completed" | "skipped"
    chunk_count : chunks written by this run
    task_ids    : one embedding task id per chunk, in chunk order
    """
    document_id: UUID
    status:      str
    chunk_count: int = 0
    task_ids:    list[str] = field(default_factory=list)
    elapsed_ms:  float = 0.0


class ProcessingPipeline:

    def __init__(
        self,
        repository:        DocumentRepository,
        storage:           StorageGateway,
        coordinator:       ExtractionCoordinator,
        chunker:           ChunkingEngine,
        embeddings:        EmbeddingClient,
        task_queue:        TaskQueue,
        events:            EventBus,
        chunking_strategy: str | ChunkingStrategy = ChunkingStrategy.SENTENCE,
        chunking_options:  ChunkingOptions | None = None,
    ) -> None:
        self._repo        = repository
        self._storage     = storage
        self._coordinator = coordinator
        self._chunker     = chunker
        self._embeddings  = embeddings
        self._queue       = task_queue
        self._events      = events
        self._strategy    = chunking_strategy
        self._options     = chunking_options or ChunkingOptions()

    def register_handlers(self, task_queue: TaskQueue | None = None) -> None:
        queue = task_queue or self._queue
        queue.register(PROCESSING_QUEUE, self.handle_processing_task)
        queue.register(EMBEDDING_QUEUE, self.handle_embedding_task)

    # ------------------------------------------------------------------
    # Queue handlers: payloads are JSON dicts
    # ------------------------------------------------------------------

    async def handle_processing_task(self, payload: dict[str, Any]) -> ProcessingResult:
        return await self.process_document(UUID(str(payload["document_id"])), payload["tenant_id"])

    async def handle_embedding_task(self, payload: dict[str, Any]) -> bool:
        return await self.process_embedding(
            chunk_id=UUID(str(payload["chunk_id"])),
            document_id=UUID(str(payload["document_id"])),
            content=payload["content"],
            tenant_id=payload["tenant_id"],
        )

    # ------------------------------------------------------------------
    # Document stage
    # ------------------------------------------------------------------

    async def process_document(self, document_id: UUID, tenant_id: str) -> ProcessingResult:
        t0 = time.monotonic()
        logger.info("Processing | doc=%s tenant=%s", document_id, tenant_id)

        document = await self._repo.get_document(document_id, tenant_id)
        if document is None:
            logger.error("Document not found | doc=%s tenant=%s", document_id, tenant_id)
            raise NotFoundError("document", document_id)

        if document.status == DocumentStatus.COMPLETED:
            logger.warning("Document already completed, skipping | doc=%s", document_id)
            return ProcessingResult(document_id=document_id, status="skipped", chunk_count=document.chunk_count)

        try:
            await self._repo.update_document(
                document_id, status=DocumentStatus.PROCESSING, error_message=None,
            )
            await self._events.publish(ProcessingEvent.STARTED, document_id, tenant_id)

            content = await self._extract(document)
            await self._repo.update_document(
                document_id,
                extracted_text=content.preview,
                metadata={**document.metadata, **content.metadata},
            )

            if not content.text_extractable:
                return await self._complete_without_text(document, t0)

            if not content.text.strip():
                raise NoExtractableTextError(document_id)

            chunks = self._chunker.chunk(content.text, self._strategy, self._options)
            if not chunks:
                raise NoExtractableTextError(document_id)

            strategy = getattr(self._strategy, "value", self._strategy)
            records = await self._repo.replace_chunks(
                document_id,
                tenant_id,
                [
                    NewChunk(
                        chunk_index=index,
                        content=chunk.content,
                        token_count=chunk.token_count,
                        metadata={
                            "start_index": chunk.start_index,
                            "end_index":   chunk.end_index,
                            "strategy":    strategy,
                        },
                    )
                    for index, chunk in enumerate(chunks)
                ],
            )
            logger.info("Chunked | doc=%s chunks=%d", document_id, len(records))

            await self._repo.update_document(document_id, embedding_status=EmbeddingStatus.PROCESSING)
            await self._events.publish(
                ProcessingEvent.CHUNKED, document_id, tenant_id, chunk_count=len(records),
            )

            options = default_options(EMBEDDING_QUEUE, Priority.NORMAL)
            task_ids = [
                await self._queue.enqueue(
                    EMBEDDING_QUEUE,
                    {
                        "chunk_id":    str(record.id),
                        "document_id": str(document_id),
                        "content":     record.content,
                        "tenant_id":   tenant_id,
                    },
                    options,
                )
                for record in records
            ]
        except Exception as exc:
            logger.exception("Processing failed | doc=%s", document_id)
            await self._mark_failed(document_id, tenant_id, exc)
            raise

        elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "Embedding tasks queued | doc=%s tasks=%d elapsed_ms=%.0f",
            document_id, len(task_ids), elapsed_ms,
        )
        return ProcessingResult(
            document_id=document_id,
            status="chunked",
            chunk_count=len(records),
            task_ids=task_ids,
            elapsed_ms=elapsed_ms,
        )

    async def _extract(self, document: DocumentRecord) -> ExtractedContent:
        data = await self._storage.get(document.storage_key)

        with tempfile.TemporaryDirectory(prefix="document-") as workdir:
            path = Path(workdir) / f"source{safe_extension(document.filename)}"
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, path.write_bytes, data)
            return await self._coordinator.extract(path, document.mime_type)

    async def _complete_without_text(self, document: DocumentRecord, t0: float) -> ProcessingResult:
        await self._repo.replace_chunks(document.id, document.tenant_id, [])
        await self._repo.update_document(
            document.id,
            status=DocumentStatus.COMPLETED,
            embedding_status=EmbeddingStatus.SKIPPED,
        )
        await self._events.publish(
            ProcessingEvent.COMPLETED, document.id, document.tenant_id, chunk_count=0,
        )
        logger.info("Processing complete (metadata only) | doc=%s", document.id)
        return ProcessingResult(
            document_id=document.id,
            status="completed",
            elapsed_ms=(time.monotonic() - t0) * 1000,
        )

    async def _mark_failed(self, document_id: UUID, tenant_id: str, exc: BaseException) -> None:
        message = (str(exc) or type(exc).__name__)[:MAX_ERROR_MESSAGE_LENGTH]
        try:
            await self._repo.update_document(
                document_id, status=DocumentStatus.FAILED, error_message=message,
            )
        except Exception:
            logger.exception("Could not record failure | doc=%s", document_id)
        await self._events.publish(
            ProcessingEvent.FAILED, document_id, tenant_id,
            error=message, error_code=getattr(exc, "code", type(exc).__name__),
        )

    # ------------------------------------------------------------------
    # Embedding stage
    # ------------------------------------------------------------------

    async def process_embedding(
        self,
        chunk_id:    UUID,
        document_id: UUID,
        content:     str,
        tenant_id:   str,
    ) -> bool:
        """Returns True when this chunk's embedding completed the document."""
        chunk = await self._repo.get_chunk(chunk_id)
        if chunk is None:
            logger.warning("Chunk no longer exists, dropping task | chunk=%s doc=%s", chunk_id, document_id)
            return False

        try:
            result = await self._embeddings.generate_embedding_with_retry(
                content,
                {
                    "document_id": str(document_id),
                    "chunk_id":    str(chunk_id),
                    "chunk_index": chunk.chunk_index,
                    "tenant_id":   tenant_id,
                },
            )
        except Exception as exc:
            logger.error("Embedding failed | chunk=%s doc=%s error=%s", chunk_id, document_id, exc)
            await self._repo.update_chunk(
                chunk_id, metadata={**chunk.metadata, "embedding_error": str(exc)},
            )
            raise

        metadata = {k: v for k, v in chunk.metadata.items() if k != "embedding_error"}
        metadata["embedding_model"] = result.model
        updated = await self._repo.update_chunk(
            chunk_id, embedding_id=result.embedding_id, metadata=metadata,
        )
        if updated is None:
            logger.warning("Chunk removed while embedding | chunk=%s doc=%s", chunk_id, document_id)
            return False

        logger.debug("Chunk embedded | chunk=%s doc=%s embedding=%s", chunk_id, document_id, result.embedding_id)
        return await self.check_completion(document_id, tenant_id)

    async def check_completion(self, document_id: UUID, tenant_id: str | None = None) -> bool:
        promoted = await self._repo.mark_completed_if_fully_embedded(document_id)
        if not promoted:
            return False

        if tenant_id is None:
            document = await self._repo.get_document(document_id)
            tenant_id = document.tenant_id if document else ""
        logger.info("Processing complete | doc=%s", document_id)
        await self._events.publish(ProcessingEvent.COMPLETED, document_id, tenant_id)
        return True
