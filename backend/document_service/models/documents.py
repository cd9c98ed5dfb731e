"""
SQLAlchemy ORM Models — Documents & Chunks

2.x declarative mapping with full async support. Every query that takes a
tenant id filters on it; tenant isolation is an application-level rule here.

The JSON column is named `metadata` in PostgreSQL; DeclarativeBase reserves
that attribute, so it is mapped as `doc_metadata` / `chunk_metadata`.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Declarative base shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model (documents)
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks one uploaded file from upload → extraction → chunking → embedding.

    State machine (status column):
        pending    : stored, processing task queued
        processing : worker extracting / chunking, or embeddings outstanding
        completed  : every chunk carries an embedding reference
        failed     : pipeline error (see error_message); may be re-processed

    chunk_count is written in the same transaction as the chunk rows.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="documents_status_check",
        ),
        CheckConstraint(
            "embedding_status IN ('pending', 'processing', 'completed', 'skipped')",
            name="documents_embedding_status_check",
        ),
        Index("idx_documents_tenant_status", "tenant_id", "status"),
        Index("idx_documents_tenant_user",   "tenant_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    tenant_id:  Mapped[str]           = mapped_column(String(128), nullable=False, index=True)
    user_id:    Mapped[str]           = mapped_column(String(128), nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    filename: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Original filename as uploaded (display only, never part of the key)",
    )
    storage_key: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Object key: <tenant_id>/<user_id>/<uuid><ext>",
    )
    mime_type:  Mapped[str] = mapped_column(Text, nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[str] = mapped_column(
        Text, nullable=False, default="pending", server_default="pending",
    )
    embedding_status: Mapped[str] = mapped_column(
        Text, nullable=False, default="pending", server_default="pending",
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )

    extracted_text: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Preview: first 1000 characters of the extracted text",
    )
    doc_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="Upload metadata (storage_backend, image dimensions) + extractor fields",
    )
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    chunks: Mapped[list["DocumentChunk"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentChunk.chunk_index",
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} tenant={self.tenant_id} "
            f"status={self.status} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk model (document_chunks)
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    """
    One chunk of a document's extracted text.
    embedding_id is the reference returned by the embedding service; NULL
    until that chunk's embedding task succeeds.
    """

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_position"),
        Index("idx_document_chunks_document_id", "document_id"),
        Index("idx_document_chunks_tenant_id",   "tenant_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    tenant_id:   Mapped[str] = mapped_column(String(128), nullable=False)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content:     Mapped[str] = mapped_column(Text, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    embedding_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    chunk_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="start_index, end_index, strategy; embedding_model / embedding_error",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    document: Mapped[Document] = relationship(back_populates="chunks")

    def __repr__(self) -> str:
        return (
            f"<DocumentChunk id={self.id} doc={self.document_id} "
            f"index={self.chunk_index} embedded={self.embedding_id is not None}>"
        )
