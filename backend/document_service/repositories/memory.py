"""
In-memory repository: same contract as the SQL one, for local runs and tests.

A single asyncio.Lock serializes every mutation, which gives
replace_chunks and mark_completed_if_fully_embedded the same atomicity the
SQL implementation gets from its transaction / single statement.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence
from uuid import UUID

from document_service.core.errors import NotFoundError
from document_service.repositories.base import DocumentRepository, NewChunk
from document_service.schemas.documents import (
    ChunkRecord,
    DocumentRecord,
    DocumentStatus,
    EmbeddingStatus,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryDocumentRepository(DocumentRepository):

    def __init__(self) -> None:
        self._documents: dict[UUID, DocumentRecord] = {}
        self._chunks:    dict[UUID, ChunkRecord]    = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def create_document(
        self,
        *,
        tenant_id:   str,
        user_id:     str,
        filename:    str,
        storage_key: str,
        mime_type:   str,
        size_bytes:  int,
        metadata:    dict[str, Any] | None = None,
        session_id:  str | None = None,
    ) -> DocumentRecord:
        now = _now()
        record = DocumentRecord(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            user_id=user_id,
            session_id=session_id,
            filename=filename,
            storage_key=storage_key,
            mime_type=mime_type,
            size_bytes=size_bytes,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._documents[record.id] = record
        return record

    async def get_document(
        self,
        document_id: UUID,
        tenant_id:   str | None = None,
    ) -> DocumentRecord | None:
        record = self._documents.get(document_id)
        if record is None or (tenant_id is not None and record.tenant_id != tenant_id):
            return None
        return record

    async def update_document(self, document_id: UUID, **fields: Any) -> DocumentRecord:
        async with self._lock:
            record = self._documents.get(document_id)
            if record is None:
                raise NotFoundError("document", document_id)
            updated = record.model_copy(update={**fields, "updated_at": _now()})
            self._documents[document_id] = updated
            return updated

    async def list_documents(
        self,
        tenant_id: str,
        *,
        user_id: str | None = None,
        status:  DocumentStatus | None = None,
        limit:   int = 50,
        offset:  int = 0,
    ) -> list[DocumentRecord]:
        matches = [
            d for d in self._documents.values()
            if d.tenant_id == tenant_id
            and (user_id is None or d.user_id == user_id)
            and (status is None or d.status == status)
        ]
        matches.sort(key=lambda d: d.created_at, reverse=True)
        return matches[offset : offset + limit]

    async def delete_document(self, document_id: UUID, tenant_id: str) -> bool:
        async with self._lock:
            record = self._documents.get(document_id)
            if record is None or record.tenant_id != tenant_id:
                return False
            del self._documents[document_id]
            for chunk_id in [c.id for c in self._chunks.values() if c.document_id == document_id]:
                del self._chunks[chunk_id]
            return True

    async def count_documents_by_status(
        self,
        tenant_id: str,
        user_id:   str | None = None,
    ) -> dict[str, int]:
        counts = Counter(
            DocumentStatus(d.status).value
            for d in self._documents.values()
            if d.tenant_id == tenant_id and (user_id is None or d.user_id == user_id)
        )
        return dict(counts)

    async def find_stale_pending(self, older_than: timedelta, limit: int = 50) -> list[DocumentRecord]:
        cutoff = _now() - older_than
        stale = [
            d for d in self._documents.values()
            if d.status == DocumentStatus.PENDING and d.updated_at <= cutoff
        ]
        stale.sort(key=lambda d: d.updated_at)
        return stale[:limit]

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def replace_chunks(
        self,
        document_id: UUID,
        tenant_id:   str,
        chunks:      Sequence[NewChunk],
    ) -> list[ChunkRecord]:
        async with self._lock:
            document = self._documents.get(document_id)
            if document is None:
                raise NotFoundError("document", document_id)

            for chunk_id in [c.id for c in self._chunks.values() if c.document_id == document_id]:
                del self._chunks[chunk_id]

            now = _now()
            records = [
                ChunkRecord(
                    id=uuid.uuid4(),
                    document_id=document_id,
                    tenant_id=tenant_id,
                    chunk_index=chunk.chunk_index,
                    content=chunk.content,
                    token_count=chunk.token_count,
                    metadata=dict(chunk.metadata),
                    created_at=now,
                    updated_at=now,
                )
                for chunk in chunks
            ]
            for record in records:
                self._chunks[record.id] = record

            self._documents[document_id] = document.model_copy(
                update={"chunk_count": len(records), "updated_at": now},
            )
            return records

    async def get_chunk(self, chunk_id: UUID) -> ChunkRecord | None:
        return self._chunks.get(chunk_id)

    async def list_chunks(self, document_id: UUID) -> list[ChunkRecord]:
        chunks = [c for c in self._chunks.values() if c.document_id == document_id]
        return sorted(chunks, key=lambda c: c.chunk_index)

    async def update_chunk(self, chunk_id: UUID, **fields: Any) -> ChunkRecord | None:
        async with self._lock:
            record = self._chunks.get(chunk_id)
            if record is None:
                return None
            updated = record.model_copy(update={**fields, "updated_at": _now()})
            self._chunks[chunk_id] = updated
            return updated

    async def mark_completed_if_fully_embedded(self, document_id: UUID) -> bool:
        async with self._lock:
            document = self._documents.get(document_id)
            if document is None or document.status != DocumentStatus.PROCESSING:
                return False

            chunks = [c for c in self._chunks.values() if c.document_id == document_id]
            if not chunks or not all(c.is_embedded for c in chunks):
                return False

            self._documents[document_id] = document.model_copy(
                update={
                    "status":           DocumentStatus.COMPLETED,
                    "embedding_status": EmbeddingStatus.COMPLETED,
                    "updated_at":       _now(),
                },
            )
            return True
