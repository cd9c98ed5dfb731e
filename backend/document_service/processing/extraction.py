"""
Extraction Coordinator
══════════════════════

The only place that knows the per-type limits. Workers and the upload
service see ExtractionCoordinator.extract() and nothing else.

  1. Reject unsupported MIME types before any extractor is constructed
  2. stat() the file and enforce the per-type size ceiling
  3. Run the extractor under the per-type timeout
  4. Normalize the result (metadata defaults to {}, preview to the first
     1000 characters of text)

  ┌───────────────┬──────────┬─────────┐
  │ type          │ max size │ timeout │
  ├───────────────┼──────────┼─────────┤
  │ pdf           │  50 MB   │  60 s   │
  │ doc / docx    │  20 MB   │  30 s   │
  │ txt / md      │  10 MB   │  10 s   │
  │ png/jpeg/gif… │  10 MB   │  30 s   │
  └───────────────┴──────────┴─────────┘

A timeout abandons the await; the executor thread running the blocking
library call finishes on its own and its result is discarded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from document_service.core.errors import (
    ExtractionTimeoutError,
    SizeLimitExceededError,
    UnsupportedTypeError,
)
from document_service.processing.extractors import (
    MIME_DOC,
    MIME_DOCX,
    MIME_GIF,
    MIME_JPEG,
    MIME_MARKDOWN,
    MIME_PDF,
    MIME_PNG,
    MIME_TEXT,
    MIME_WEBP,
    PREVIEW_LENGTH,
    ExtractedContent,
    ExtractorRegistry,
)

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


@dataclass(frozen=True)
class ExtractionLimits:
    max_size_bytes:  int
    timeout_seconds: float


DEFAULT_LIMITS: dict[str, ExtractionLimits] = {
    MIME_PDF:      ExtractionLimits(50 * _MB, 60.0),
    MIME_DOC:      ExtractionLimits(20 * _MB, 30.0),
    MIME_DOCX:     ExtractionLimits(20 * _MB, 30.0),
    MIME_TEXT:     ExtractionLimits(10 * _MB, 10.0),
    MIME_MARKDOWN: ExtractionLimits(10 * _MB, 10.0),
    MIME_PNG:      ExtractionLimits(10 * _MB, 30.0),
    MIME_JPEG:     ExtractionLimits(10 * _MB, 30.0),
    MIME_GIF:      ExtractionLimits(10 * _MB, 30.0),
    MIME_WEBP:     ExtractionLimits(10 * _MB, 30.0),
}


class ExtractionCoordinator:
    """
    Usage:
        coordinator = ExtractionCoordinator(ExtractorRegistry.default())
        content = await coordinator.extract(path, "application/pdf")
    """

    def __init__(
        self,
        registry: ExtractorRegistry,
        limits:   Mapping[str, ExtractionLimits] | None = None,
    ) -> None:
        self._registry = registry
        self._limits   = dict(DEFAULT_LIMITS if limits is None else limits)

    # ------------------------------------------------------------------
    # Capability queries
    # ------------------------------------------------------------------

    def is_supported(self, mime_type: str) -> bool:
        return mime_type in self._limits and self._registry.is_supported(mime_type)

    def supported_types(self) -> list[str]:
        return [m for m in self._registry.supported_types() if m in self._limits]

    def limits_for(self, mime_type: str) -> ExtractionLimits:
        if not self.is_supported(mime_type):
            raise UnsupportedTypeError(mime_type)
        return self._limits[mime_type]

    def validate_size(self, mime_type: str, size_bytes: int) -> None:
        limits = self.limits_for(mime_type)
        if size_bytes > limits.max_size_bytes:
            raise SizeLimitExceededError(size_bytes, limits.max_size_bytes, mime_type)

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def extract(self, path: Path | str, mime_type: str) -> ExtractedContent:
        path = Path(path)
        limits = self.limits_for(mime_type)
        self.validate_size(mime_type, path.stat().st_size)

        extractor = self._registry.create(mime_type)
        t0 = time.monotonic()
        try:
            result = await asyncio.wait_for(extractor.extract(path), timeout=limits.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.error(
                "Extraction timed out | type=%s timeout=%.0fs file=%s",
                mime_type, limits.timeout_seconds, path.name,
            )
            raise ExtractionTimeoutError(mime_type, limits.timeout_seconds) from exc

        normalized = self._normalize(result)
        logger.info(
            "Extraction | type=%s chars=%d text_extractable=%s elapsed_ms=%.0f",
            mime_type, len(normalized.text), normalized.text_extractable,
            (time.monotonic() - t0) * 1000,
        )
        return normalized

    async def extract_metadata(self, path: Path | str, mime_type: str) -> dict[str, Any]:
        path = Path(path)
        limits = self.limits_for(mime_type)
        extractor = self._registry.create(mime_type)
        try:
            metadata = await asyncio.wait_for(
                extractor.extract_metadata(path), timeout=limits.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ExtractionTimeoutError(mime_type, limits.timeout_seconds) from exc
        return dict(metadata or {})

    @staticmethod
    def _normalize(result: ExtractedContent) -> ExtractedContent:
        text = result.text or ""
        return ExtractedContent(
            text=text,
            metadata=dict(result.metadata or {}),
            preview=result.preview if result.preview is not None else text[:PREVIEW_LENGTH],
            text_extractable=result.text_extractable,
            processed_path=result.processed_path,
        )
