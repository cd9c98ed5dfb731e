"""
Document Pipeline — Pydantic Schemas

Covers the records handed across component boundaries:
  - DocumentRecord / ChunkRecord   what repositories return (ORM or in-memory)
  - UploadResult                   returned by the upload entry point
  - DocumentStatusResponse         polled status of one document
  - DocumentStatistics             per-tenant counts by status
  - ErrorResponse                  uniform error envelope built from DocumentServiceError

Design decisions:
  - document and chunk ids are server-generated UUID4s.
  - tenant_id / user_id are opaque strings owned by the auth layer.
  - The JSON column is called `metadata` in the database but mapped to
    `doc_metadata` / `chunk_metadata` on the ORM (DeclarativeBase reserves
    `metadata`); the read models accept either name.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# State machines
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to documents.status.
    Transitions: pending → processing → completed | failed
    A failed document may be processed again.
    """
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


class EmbeddingStatus(str, Enum):
    """Aggregate embedding state; `skipped` for metadata-only documents (images)."""
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    SKIPPED    = "skipped"


# ---------------------------------------------------------------------------
# Repository records
# ---------------------------------------------------------------------------

class DocumentRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id:               UUID
    tenant_id:        str
    user_id:          str
    session_id:       str | None = None
    filename:         str
    storage_key:      str
    mime_type:        str
    size_bytes:       int
    status:           DocumentStatus  = DocumentStatus.PENDING
    embedding_status: EmbeddingStatus = EmbeddingStatus.PENDING
    extracted_text:   str | None = None
    metadata:         dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("doc_metadata", "metadata"),
    )
    chunk_count:      int = 0
    error_message:    str | None = None
    created_at:       datetime
    updated_at:       datetime


class ChunkRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id:           UUID
    document_id:  UUID
    tenant_id:    str
    chunk_index:  int
    content:      str
    token_count:  int
    embedding_id: str | None = None
    metadata:     dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("chunk_metadata", "metadata"),
    )
    created_at:   datetime
    updated_at:   datetime

    @property
    def is_embedded(self) -> bool:
        return bool(self.embedding_id)


class DocumentWithChunks(BaseModel):
    document: DocumentRecord
    chunks:   list[ChunkRecord] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Upload result
# ---------------------------------------------------------------------------

class UploadResult(BaseModel):
    """Returned once the file is stored and the processing task is queued."""
    document_id:     UUID            = Field(..., description="Server-generated document UUID")
    filename:        str             = Field(..., description="Original filename as uploaded")
    storage_key:     str             = Field(..., description="{tenant}/{user}/{uuid}{ext}")
    storage_backend: str             = Field(..., description="s3 | local")
    mime_type:       str             = Field(..., description="Detected MIME type")
    size_bytes:      int             = Field(..., description="Stored size (after image downscaling)")
    status:          DocumentStatus  = DocumentStatus.PENDING
    task_id:         str | None      = Field(None, description="None when the queue was unavailable")
    created_at:      datetime


# ---------------------------------------------------------------------------
# Status / statistics
# ---------------------------------------------------------------------------

class DocumentStatusResponse(BaseModel):
    document_id:          UUID
    status:               DocumentStatus
    embedding_status:     EmbeddingStatus
    chunk_count:          int = Field(0, description="Chunks created by the last successful chunking run")
    embedded_chunk_count: int = Field(0, description="Chunks holding an embedding reference")
    error_message:        str | None = None
    updated_at:           datetime

    @property
    def progress(self) -> float:
        if self.chunk_count == 0:
            return 1.0 if self.status == DocumentStatus.COMPLETED else 0.0
        return self.embedded_chunk_count / self.chunk_count


class DocumentStatistics(BaseModel):
    pending:    int = 0
    processing: int = 0
    completed:  int = 0
    failed:     int = 0
    total:      int = 0

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> "DocumentStatistics":
        values = {status.value: counts.get(status.value, 0) for status in DocumentStatus}
        return cls(**values, total=sum(values.values()))


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    field:   str | None = Field(None, description="Input field or attribute that caused the error")
    message: str
    code:    str        = Field(..., description="Machine-readable error code")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope.
    Callers should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    retryable:  bool              = False
    details:    list[ErrorDetail] = Field(default_factory=list)
