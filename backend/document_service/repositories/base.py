"""
Document repository contract.

Two implementations ship:
  SqlDocumentRepository     SQLAlchemy async (PostgreSQL / asyncpg)
  InMemoryDocumentRepository asyncio.Lock-guarded dicts (local runs, tests)

Both return pydantic records (DocumentRecord / ChunkRecord), never ORM
objects, so callers cannot lazy-load outside a session.

Two operations carry the pipeline's consistency rules:

  replace_chunks                     delete + insert the document's chunk rows
                                     and write chunk_count, in one transaction
  mark_completed_if_fully_embedded   one conditional update: promote to
                                     completed only while status=processing and
                                     every chunk (at least one) has an embedding id
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Sequence
from uuid import UUID

from document_service.schemas.documents import ChunkRecord, DocumentRecord, DocumentStatus


@dataclass(frozen=True)
class NewChunk:
    chunk_index: int
    content:     str
    token_count: int
    metadata:    dict[str, Any] = field(default_factory=dict)


class DocumentRepository(ABC):

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @abstractmethod
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
    ) -> DocumentRecord: ...

    @abstractmethod
    async def get_document(
        self,
        document_id: UUID,
        tenant_id:   str | None = None,
    ) -> DocumentRecord | None:
        """tenant_id=None is for system jobs; request paths always pass it."""

    @abstractmethod
    async def update_document(self, document_id: UUID, **fields: Any) -> DocumentRecord:
        """Raises NotFoundError when the document does not exist."""

    @abstractmethod
    async def list_documents(
        self,
        tenant_id: str,
        *,
        user_id: str | None = None,
        status:  DocumentStatus | None = None,
        limit:   int = 50,
        offset:  int = 0,
    ) -> list[DocumentRecord]:
        """Newest first."""

    @abstractmethod
    async def delete_document(self, document_id: UUID, tenant_id: str) -> bool:
        """Deletes the document and, by cascade, its chunks."""

    @abstractmethod
    async def count_documents_by_status(
        self,
        tenant_id: str,
        user_id:   str | None = None,
    ) -> dict[str, int]: ...

    @abstractmethod
    async def find_stale_pending(self, older_than: timedelta, limit: int = 50) -> list[DocumentRecord]:
        """Pending documents not updated since now - older_than, across tenants, oldest first."""

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    @abstractmethod
    async def replace_chunks(
        self,
        document_id: UUID,
        tenant_id:   str,
        chunks:      Sequence[NewChunk],
    ) -> list[ChunkRecord]: ...

    @abstractmethod
    async def get_chunk(self, chunk_id: UUID) -> ChunkRecord | None: ...

    @abstractmethod
    async def list_chunks(self, document_id: UUID) -> list[ChunkRecord]:
        """Ordered by chunk_index."""

    @abstractmethod
    async def update_chunk(self, chunk_id: UUID, **fields: Any) -> ChunkRecord | None:
        """None when the chunk no longer exists (superseded by a re-run)."""

    @abstractmethod
    async def mark_completed_if_fully_embedded(self, document_id: UUID) -> bool:
        """True only for the call that performed the promotion."""
