"""
Chunking Engine  —  Overlapping Text Segmentation
══════════════════════════════════════════════════

Four named strategies, all pure functions of (text, options):

  fixed      Character windows of `chunk_size`, advancing by
             `chunk_size - overlap` (never less than 1).
  sentence   Sentences accumulated until the next one would overflow
             `chunk_size`; the next chunk is seeded with the tail of the
             previous one (overlap).
  paragraph  Same accumulation, on blank-line boundaries.
  token      `fixed` with sizes expressed in estimated tokens
             (max_tokens × 4 chars, overlap_tokens × 4 chars).

Unknown strategy names log a warning and fall back to `fixed`.

Offsets
───────
  Every TextChunk satisfies  content == text[start_index:end_index]
  with leading/trailing whitespace trimmed off both the content and the
  offsets, so the pair can be stored and later used to highlight the
  source text without re-searching it.

Overlap seed (sentence / paragraph)
────────────────────────────────────
  Look at the last `overlap` characters of the closed chunk and start the
  next chunk at, in order of preference:
    1. the first sentence start inside that window
    2. the first word start inside that window
    3. the raw window start
  The seed is always strictly after the closed chunk's start, so the
  accumulation always makes progress, even when overlap ≥ chunk_size.

Token counts are an approximation (ceil(len / 4)), not a tokenizer.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

CHARS_PER_TOKEN_EST = 4

DEFAULT_CHUNK_SIZE     = 1000
DEFAULT_OVERLAP        = 200
DEFAULT_MAX_TOKENS     = 500
DEFAULT_OVERLAP_TOKENS = 50

# Sentence punctuation followed by whitespace ends a sentence
_SENTENCE_BREAK_RE  = re.compile(r"(?<=[.!?])\s+")
# One or more blank lines end a paragraph
_PARAGRAPH_BREAK_RE = re.compile(r"\n[ \t]*\n\s*")
_WORD_BREAK_RE      = re.compile(r"\s+")


class ChunkingStrategy(str, Enum):
    FIXED     = "fixed"
    SENTENCE  = "sentence"
    PARAGRAPH = "paragraph"
    TOKEN     = "token"


# ---------------------------------------------------------------------------
# Result / option dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextChunk:
    """
    One chunk of the source text.

    content     : text[start_index:end_index], whitespace-trimmed
    start_index : inclusive character offset into the source text
    end_index   : exclusive character offset into the source text
    """
    content:     str
    start_index: int
    end_index:   int

    @property
    def token_count(self) -> int:
        return estimate_token_count(self.content)


@dataclass(frozen=True)
class ChunkingOptions:
    chunk_size:     int = DEFAULT_CHUNK_SIZE       # characters
    overlap:        int = DEFAULT_OVERLAP          # characters
    max_tokens:     int = DEFAULT_MAX_TOKENS       # token strategy only
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS   # token strategy only


def estimate_token_count(text: str | None) -> int:
    """Approximate token count: one token per four characters, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN_EST)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ChunkingEngine:
    """
    Stateless, safe to share between workers.

    Usage:
        engine = ChunkingEngine()
        chunks = engine.chunk(text, "sentence", ChunkingOptions(chunk_size=1000, overlap=200))
    """

    def chunk(
        self,
        text:     str | None,
        strategy: str | ChunkingStrategy = ChunkingStrategy.SENTENCE,
        options:  ChunkingOptions | None = None,
    ) -> list[TextChunk]:
        if not text:
            return []
        opts = options or ChunkingOptions()

        try:
            resolved = ChunkingStrategy(strategy)
        except ValueError:
            logger.warning("Unknown chunking strategy '%s', falling back to fixed", strategy)
            resolved = ChunkingStrategy.FIXED

        if resolved is ChunkingStrategy.FIXED:
            chunks = self.chunk_fixed(text, opts.chunk_size, opts.overlap)
        elif resolved is ChunkingStrategy.SENTENCE:
            chunks = self.chunk_sentences(text, opts.chunk_size, opts.overlap)
        elif resolved is ChunkingStrategy.PARAGRAPH:
            chunks = self.chunk_paragraphs(text, opts.chunk_size, opts.overlap)
        else:
            chunks = self.chunk_fixed(
                text,
                opts.max_tokens * CHARS_PER_TOKEN_EST,
                opts.overlap_tokens * CHARS_PER_TOKEN_EST,
            )

        logger.debug(
            "Chunked | strategy=%s chars=%d chunks=%d",
            resolved.value, len(text), len(chunks),
        )
        return chunks

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def chunk_fixed(self, text: str, chunk_size: int, overlap: int) -> list[TextChunk]:
        size = max(1, chunk_size)
        step = max(1, size - max(0, overlap))

        chunks: list[TextChunk] = []
        start = 0
        while start < len(text):
            chunk = _trimmed(text, start, min(start + size, len(text)))
            if chunk is not None:
                chunks.append(chunk)
            start += step
        return chunks

    def chunk_sentences(self, text: str, chunk_size: int, overlap: int) -> list[TextChunk]:
        return self._accumulate(text, _split_spans(text, _SENTENCE_BREAK_RE), chunk_size, overlap)

    def chunk_paragraphs(self, text: str, chunk_size: int, overlap: int) -> list[TextChunk]:
        return self._accumulate(text, _split_spans(text, _PARAGRAPH_BREAK_RE), chunk_size, overlap)

    # ------------------------------------------------------------------
    # Accumulation shared by sentence / paragraph
    # ------------------------------------------------------------------

    def _accumulate(
        self,
        text:       str,
        units:      Iterator[tuple[int, int]],
        chunk_size: int,
        overlap:    int,
    ) -> list[TextChunk]:
        size = max(1, chunk_size)
        chunks: list[TextChunk] = []
        chunk_start: int | None = None
        chunk_end = 0

        for unit_start, unit_end in units:
            if chunk_start is None:
                chunk_start, chunk_end = unit_start, unit_end
                continue

            if unit_end - chunk_start > size:
                closed = _trimmed(text, chunk_start, chunk_end)
                if closed is not None:
                    chunks.append(closed)
                seed = _overlap_start(text, chunk_start, chunk_end, overlap)
                chunk_start = seed if seed is not None else unit_start

            chunk_end = unit_end

        if chunk_start is not None:
            last = _trimmed(text, chunk_start, chunk_end)
            if last is not None:
                chunks.append(last)
        return chunks


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _trimmed(text: str, start: int, end: int) -> TextChunk | None:
    """Shrink [start, end) past surrounding whitespace; None if nothing is left."""
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    if start >= end:
        return None
    return TextChunk(content=text[start:end], start_index=start, end_index=end)


def _split_spans(text: str, boundary: re.Pattern[str]) -> Iterator[tuple[int, int]]:
    """Yield trimmed (start, end) spans between boundary matches."""
    start = 0
    for match in boundary.finditer(text):
        span = _trimmed(text, start, match.start())
        if span is not None:
            yield span.start_index, span.end_index
        start = match.end()
    span = _trimmed(text, start, len(text))
    if span is not None:
        yield span.start_index, span.end_index


def _overlap_start(text: str, chunk_start: int, chunk_end: int, overlap: int) -> int | None:
    """Where the next chunk starts so it repeats the tail of [chunk_start, chunk_end)."""
    if overlap <= 0:
        return None

    window_start = max(chunk_start + 1, chunk_end - overlap)
    if window_start >= chunk_end:
        return None

    for pattern in (_SENTENCE_BREAK_RE, _WORD_BREAK_RE):
        match = pattern.search(text, window_start, chunk_end)
        if match is not None and match.end() < chunk_end:
            return match.end()

    return window_start
