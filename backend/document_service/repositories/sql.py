"""
SQLAlchemy async repository (PostgreSQL / asyncpg).

Each public method opens its own session_scope(): one method call, one
transaction. Updates use UPDATE … RETURNING so the fresh row (including
server-side updated_at) comes back without a second round trip.

Completion detection is a single statement:

    UPDATE documents
       SET status = 'completed', embedding_status = 'completed'
     WHERE id = :id
       AND status = 'processing'
       AND (SELECT count(*) FROM document_chunks WHERE document_id = :id) > 0
       AND (SELECT count(*) FROM document_chunks WHERE document_id = :id AND embedding_id <> '')
         = (SELECT count(*) FROM document_chunks WHERE document_id = :id)

Two embedding workers finishing at the same moment both run it; the row
lock makes the second one see status='completed' and match nothing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from document_service.core.errors import NotFoundError
from document_service.db.session import session_scope
from document_service.models.documents import Document, DocumentChunk
from document_service.repositories.base import DocumentRepository, NewChunk
from document_service.schemas.documents import (
    ChunkRecord,
    DocumentRecord,
    DocumentStatus,
    EmbeddingStatus,
)

logger = logging.getLogger(__name__)

# Record field name → ORM attribute name where they differ
_DOCUMENT_COLUMNS = {"metadata": "doc_metadata"}
_CHUNK_COLUMNS    = {"metadata": "chunk_metadata"}


def _to_columns(fields: dict[str, Any], mapping: dict[str, str]) -> dict[str, Any]:
    values = {}
    for name, value in fields.items():
        if isinstance(value, (DocumentStatus, EmbeddingStatus)):
            value = value.value
        values[mapping.get(name, name)] = value
    return values


class SqlDocumentRepository(DocumentRepository):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

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
        document = Document(
            tenant_id=tenant_id,
            user_id=user_id,
            session_id=session_id,
            filename=filename,
            storage_key=storage_key,
            mime_type=mime_type,
            size_bytes=size_bytes,
            status=DocumentStatus.PENDING.value,
            embedding_status=EmbeddingStatus.PENDING.value,
            doc_metadata=dict(metadata or {}),
            chunk_count=0,
        )
        async with session_scope(self._session_factory) as session:
            session.add(document)
            await session.flush()
            await session.refresh(document)
            return DocumentRecord.model_validate(document)

    async def get_document(
        self,
        document_id: UUID,
        tenant_id:   str | None = None,
    ) -> DocumentRecord | None:
        stmt = select(Document).where(Document.id == document_id)
        if tenant_id is not None:
            stmt = stmt.where(Document.tenant_id == tenant_id)

        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            document = result.scalars().first()
            return DocumentRecord.model_validate(document) if document else None

    async def update_document(self, document_id: UUID, **fields: Any) -> DocumentRecord:
        stmt = (
            update(Document)
            .where(Document.id == document_id)
            .values(**_to_columns(fields, _DOCUMENT_COLUMNS), updated_at=func.now())
            .returning(Document)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            document = result.scalars().first()
            if document is None:
                raise NotFoundError("document", document_id)
            return DocumentRecord.model_validate(document)

    async def list_documents(
        self,
        tenant_id: str,
        *,
        user_id: str | None = None,
        status:  DocumentStatus | None = None,
        limit:   int = 50,
        offset:  int = 0,
    ) -> list[DocumentRecord]:
        stmt = select(Document).where(Document.tenant_id == tenant_id)
        if user_id is not None:
            stmt = stmt.where(Document.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Document.status == DocumentStatus(status).value)
        stmt = stmt.order_by(Document.created_at.desc()).limit(limit).offset(offset)

        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [DocumentRecord.model_validate(d) for d in result.scalars().all()]

    async def delete_document(self, document_id: UUID, tenant_id: str) -> bool:
        stmt = (
            delete(Document)
            .where(Document.id == document_id, Document.tenant_id == tenant_id)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return result.rowcount > 0

    async def count_documents_by_status(
        self,
        tenant_id: str,
        user_id:   str | None = None,
    ) -> dict[str, int]:
        stmt = (
            select(Document.status, func.count(Document.id))
            .where(Document.tenant_id == tenant_id)
            .group_by(Document.status)
        )
        if user_id is not None:
            stmt = stmt.where(Document.user_id == user_id)

        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return {status: count for status, count in result.all()}

    async def find_stale_pending(self, older_than: timedelta, limit: int = 50) -> list[DocumentRecord]:
        cutoff = datetime.now(timezone.utc) - older_than
        stmt = (
            select(Document)
            .where(
                Document.status == DocumentStatus.PENDING.value,
                Document.updated_at <= cutoff,
            )
            .order_by(Document.updated_at)
            .limit(limit)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [DocumentRecord.model_validate(d) for d in result.scalars().all()]

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    async def replace_chunks(
        self,
        document_id: UUID,
        tenant_id:   str,
        chunks:      Sequence[NewChunk],
    ) -> list[ChunkRecord]:
        rows = [
            DocumentChunk(
                document_id=document_id,
                tenant_id=tenant_id,
                chunk_index=chunk.chunk_index,
                content=chunk.content,
                token_count=chunk.token_count,
                chunk_metadata=dict(chunk.metadata),
            )
            for chunk in chunks
        ]

        async with session_scope(self._session_factory) as session:
            await session.execute(
                delete(DocumentChunk)
                .where(DocumentChunk.document_id == document_id)
                .execution_options(synchronize_session=False)
            )
            session.add_all(rows)
            await session.flush()

            result = await session.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(chunk_count=len(rows), updated_at=func.now())
                .returning(Document.id)
            )
            if result.scalar_one_or_none() is None:
                raise NotFoundError("document", document_id)

            for row in rows:
                await session.refresh(row)

            logger.info("Chunks replaced | doc=%s chunks=%d", document_id, len(rows))
            return [ChunkRecord.model_validate(row) for row in rows]

    async def get_chunk(self, chunk_id: UUID) -> ChunkRecord | None:
        async with session_scope(self._session_factory) as session:
            chunk = await session.get(DocumentChunk, chunk_id)
            return ChunkRecord.model_validate(chunk) if chunk else None

    async def list_chunks(self, document_id: UUID) -> list[ChunkRecord]:
        stmt = (
            select(DocumentChunk)
            .where(DocumentChunk.document_id == document_id)
            .order_by(DocumentChunk.chunk_index)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [ChunkRecord.model_validate(c) for c in result.scalars().all()]

    async def update_chunk(self, chunk_id: UUID, **fields: Any) -> ChunkRecord | None:
        stmt = (
            update(DocumentChunk)
            .where(DocumentChunk.id == chunk_id)
            .values(**_to_columns(fields, _CHUNK_COLUMNS), updated_at=func.now())
            .returning(DocumentChunk)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            chunk = result.scalars().first()
            return ChunkRecord.model_validate(chunk) if chunk else None

    async def mark_completed_if_fully_embedded(self, document_id: UUID) -> bool:
        total = (
            select(func.count(DocumentChunk.id))
            .where(DocumentChunk.document_id == document_id)
            .scalar_subquery()
        )
        embedded = (
            select(func.count(DocumentChunk.id))
            .where(
                DocumentChunk.document_id == document_id,
                DocumentChunk.embedding_id.is_not(None),
                DocumentChunk.embedding_id != "",
            )
            .scalar_subquery()
        )
        stmt = (
            update(Document)
            .where(
                Document.id == document_id,
                Document.status == DocumentStatus.PROCESSING.value,
                total > 0,
                embedded == total,
            )
            .values(
                status=DocumentStatus.COMPLETED.value,
                embedding_status=EmbeddingStatus.COMPLETED.value,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return result.rowcount == 1
