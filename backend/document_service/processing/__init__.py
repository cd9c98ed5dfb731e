"""
Document Processing Package
════════════════════════════

Everything between "file is stored" and "every chunk has an embedding":

  Extraction → Chunking → Chunk persistence → Embedding fan-out → Completion

Modules
───────
  extractors.py  One strategy per format (pypdf, python-docx, Pillow, plain text)
  extraction.py  Coordinator: type check, size ceiling, timeout, normalization
  chunking.py    fixed / sentence / paragraph / token chunking with offsets
  embeddings.py  HTTP client for the remote embedding service, with retry
  pipeline.py    The pending → processing → completed | failed state machine

Design principles
─────────────────
  • Every component is stateless and dependency-injected.
  • Blocking library calls run in the thread executor, never on the loop.
  • Tenant id travels with every task payload and every repository lookup.
"""

from document_service.processing.chunking import (
    ChunkingEngine,
    ChunkingOptions,
    ChunkingStrategy,
    TextChunk,
    estimate_token_count,
)
from document_service.processing.embeddings import EmbeddingClient, EmbeddingResult
from document_service.processing.extraction import ExtractionCoordinator, ExtractionLimits
from document_service.processing.extractors import ExtractedContent, ExtractorRegistry
from document_service.processing.pipeline import ProcessingPipeline, ProcessingResult

__all__ = [
    "ChunkingEngine",
    "ChunkingOptions",
    "ChunkingStrategy",
    "TextChunk",
    "estimate_token_count",
    "EmbeddingClient",
    "EmbeddingResult",
    "ExtractionCoordinator",
    "ExtractionLimits",
    "ExtractedContent",
    "ExtractorRegistry",
    "ProcessingPipeline",
    "ProcessingResult",
]
