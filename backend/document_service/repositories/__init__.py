from document_service.repositories.base import DocumentRepository, NewChunk
from document_service.repositories.memory import InMemoryDocumentRepository
from document_service.repositories.sql import SqlDocumentRepository

__all__ = [
    "DocumentRepository",
    "NewChunk",
    "InMemoryDocumentRepository",
    "SqlDocumentRepository",
]
