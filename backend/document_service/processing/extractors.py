"""
Format Extractors  —  Strategy per MIME type
═════════════════════════════════════════════

  PdfExtractor    pypdf         text of every page, document info, version
  DocxExtractor   python-docx   paragraph + table text, formatting flag
  TextExtractor   stdlib        UTF-8, retried once as Latin-1
  ImageExtractor  Pillow        no text; dimensions, optional downscale

All extractors share one interface:

    content  = await extractor.extract(path)            → ExtractedContent
    metadata = await extractor.extract_metadata(path)   → dict

Library calls are blocking, so `_extract_sync` / `_metadata_sync` run in
the default thread executor. Extractors never retry; failures surface as
CorruptOrEncryptedFileError with a readable reason.

ExtractorRegistry maps MIME types to extractor factories. Nothing is
constructed until a caller asks for a type that is known to be supported.
"""

from __future__ import annotations

import asyncio
import logging
import time
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

from document_service.core.errors import CorruptOrEncryptedFileError, UnsupportedTypeError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

PREVIEW_LENGTH  = 1000   # characters kept on the document as extracted_text
MAX_IMAGE_WIDTH = 2000   # pixels

MIME_PDF      = "application/pdf"
MIME_DOC      = "application/msword"
MIME_DOCX     = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
MIME_TEXT     = "text/plain"
MIME_MARKDOWN = "text/markdown"
MIME_PNG      = "image/png"
MIME_JPEG     = "image/jpeg"
MIME_GIF      = "image/gif"
MIME_WEBP     = "image/webp"

IMAGE_MIME_TYPES = frozenset({MIME_PNG, MIME_JPEG, MIME_GIF, MIME_WEBP})

_FORMATTED_STYLE_PREFIXES = ("Heading", "Title", "List", "Quote")


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class ExtractedContent:
    """
    text             : full extracted text ("" for metadata-only formats)
    metadata         : format-specific fields merged into document.metadata
    preview          : first PREVIEW_LENGTH characters unless the extractor sets one
    text_extractable : False for formats that never yield text (images)
    processed_path   : derived file written next to the source (downscaled image)
    """
    text:             str
    metadata:         dict[str, Any] = field(default_factory=dict)
    preview:          str | None = None
    text_extractable: bool = True
    processed_path:   Path | None = None

    def __post_init__(self) -> None:
        if self.preview is None:
            self.preview = self.text[:PREVIEW_LENGTH]


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseExtractor(ABC):

    @property
    @abstractmethod
    def name(self) -> str:
        """Short name for logging."""

    async def extract(self, path: Path | str) -> ExtractedContent:
        loop = asyncio.get_event_loop()
        t0 = time.monotonic()

        result = await loop.run_in_executor(None, self._extract_sync, Path(path))

        logger.info(
            "Extractor | type=%s chars=%d elapsed_ms=%.0f",
            self.name, len(result.text), (time.monotonic() - t0) * 1000,
        )
        return result

    async def extract_metadata(self, path: Path | str) -> dict[str, Any]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._metadata_sync, Path(path))

    @abstractmethod
    def _extract_sync(self, path: Path) -> ExtractedContent:
        """Blocking extraction, runs in the thread executor."""

    @abstractmethod
    def _metadata_sync(self, path: Path) -> dict[str, Any]:
        """Blocking metadata read, runs in the thread executor."""


# ---------------------------------------------------------------------------
# PDF (pypdf)
# ---------------------------------------------------------------------------

class PdfExtractor(BaseExtractor):
    """
    Reads the native text layer. Scanned PDFs yield little or no text;
    OCR is not attempted.

    Encrypted PDFs are opened with the empty user password (common for
    "print-protected" files); anything else raises with encrypted=True.
    """

    @property
    def name(self) -> str:
        return "pdf"

    def _open(self, path: Path):
        from pypdf import PasswordType, PdfReader
        from pypdf.errors import DependencyError, FileNotDecryptedError, PyPdfError

        try:
            reader = PdfReader(str(path))
            if reader.is_encrypted and reader.decrypt("") == PasswordType.NOT_DECRYPTED:
                raise CorruptOrEncryptedFileError(
                    "PDF is encrypted and requires a password", encrypted=True,
                )
            return reader
        except (FileNotDecryptedError, DependencyError) as exc:
            raise CorruptOrEncryptedFileError(
                f"PDF is encrypted and cannot be read: {exc}", encrypted=True,
            ) from exc
        except (PyPdfError, ValueError, KeyError) as exc:
            raise CorruptOrEncryptedFileError(f"PDF could not be parsed: {exc}") from exc

    def _extract_sync(self, path: Path) -> ExtractedContent:
        from pypdf.errors import PyPdfError

        reader = self._open(path)
        try:
            page_texts = [(page.extract_text() or "").strip() for page in reader.pages]
        except (PyPdfError, ValueError, KeyError) as exc:
            raise CorruptOrEncryptedFileError(f"PDF text layer could not be read: {exc}") from exc

        text = "\n\n".join(t for t in page_texts if t)
        return ExtractedContent(text=text, metadata=self._describe(reader))

    def _metadata_sync(self, path: Path) -> dict[str, Any]:
        return self._describe(self._open(path))

    @staticmethod
    def _describe(reader) -> dict[str, Any]:
        from pypdf.errors import PyPdfError

        # The page tree and info dictionary are resolved lazily by pypdf
        try:
            info = {
                str(key).lstrip("/"): str(value)
                for key, value in (reader.metadata or {}).items()
            }
            pages = len(reader.pages)
        except (PyPdfError, ValueError, KeyError) as exc:
            raise CorruptOrEncryptedFileError(f"PDF structure could not be read: {exc}") from exc

        return {
            "pages":   pages,
            "info":    info,
            "version": reader.pdf_header.replace("%PDF-", ""),
        }


# ---------------------------------------------------------------------------
# DOC / DOCX (python-docx)
# ---------------------------------------------------------------------------

class DocxExtractor(BaseExtractor):
    """
    Paragraph text plus table cell text. python-docx reads OOXML only;
    a legacy binary .doc is reported as unreadable rather than guessed at.

    has_formatting is read from the document structure rather than from an
    HTML rendering: True when the document has a table, a heading, title,
    list or quote paragraph style, or any bold, italic or underlined run.
    Plain paragraphs in the Normal style give False.
    """

    @property
    def name(self) -> str:
        return "docx"

    def _open(self, path: Path):
        import docx
        from docx.opc.exceptions import PackageNotFoundError

        if not zipfile.is_zipfile(path):
            raise CorruptOrEncryptedFileError(
                "Word document is not an OOXML package (legacy .doc or damaged file)",
            )
        try:
            return docx.Document(str(path))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
            raise CorruptOrEncryptedFileError(f"Word document could not be parsed: {exc}") from exc

    def _extract_sync(self, path: Path) -> ExtractedContent:
        document = self._open(path)

        blocks = [p.text for p in document.paragraphs]
        blocks.extend(
            cell.text
            for table in document.tables
            for row in table.rows
            for cell in row.cells
        )
        text = "\n".join(b for b in blocks if b.strip())

        metadata = {
            "has_formatting":  self._has_formatting(document),
            "paragraph_count": len(document.paragraphs),
            "table_count":     len(document.tables),
            "word_count":      len(text.split()),
        }
        return ExtractedContent(text=text, metadata=metadata)

    def _metadata_sync(self, path: Path) -> dict[str, Any]:
        document = self._open(path)
        words = sum(len(p.text.split()) for p in document.paragraphs)
        return {"word_count": words, "paragraph_count": len(document.paragraphs)}

    @staticmethod
    def _has_formatting(document) -> bool:
        if document.tables:
            return True
        for paragraph in document.paragraphs:
            style_name = paragraph.style.name if paragraph.style is not None else ""
            if style_name.startswith(_FORMATTED_STYLE_PREFIXES):
                return True
            if any(run.bold or run.italic or run.underline for run in paragraph.runs):
                return True
        return False


# ---------------------------------------------------------------------------
# TXT / MD
# ---------------------------------------------------------------------------

class TextExtractor(BaseExtractor):

    @property
    def name(self) -> str:
        return "text"

    def _read(self, path: Path) -> tuple[str, str]:
        raw = path.read_bytes()
        try:
            return raw.decode("utf-8"), "utf-8"
        except UnicodeDecodeError:
            logger.info("Text not valid UTF-8, decoding as latin-1 | path=%s", path.name)
            return raw.decode("latin-1"), "latin-1"

    def _extract_sync(self, path: Path) -> ExtractedContent:
        text, encoding = self._read(path)
        return ExtractedContent(
            text=text,
            metadata={
                "encoding":   encoding,
                "length":     len(text),
                "line_count": len(text.splitlines()),
            },
        )

    def _metadata_sync(self, path: Path) -> dict[str, Any]:
        text, encoding = self._read(path)
        return {
            "size":       path.stat().st_size,
            "encoding":   encoding,
            "word_count": len(text.split()),
            "line_count": len(text.splitlines()),
        }


# ---------------------------------------------------------------------------
# Images (Pillow): metadata only
# ---------------------------------------------------------------------------

class ImageExtractor(BaseExtractor):
    """
    Images carry no text. Extraction reports dimensions and, when the image
    is wider than max_width, writes `<stem>_processed<ext>` next to the
    source with the aspect ratio preserved.
    """

    def __init__(self, max_width: int = MAX_IMAGE_WIDTH) -> None:
        self._max_width = max_width

    @property
    def name(self) -> str:
        return "image"

    def _extract_sync(self, path: Path) -> ExtractedContent:
        from PIL import Image, UnidentifiedImageError

        try:
            with Image.open(path) as img:
                width, height = img.size
                fmt = img.format
                metadata: dict[str, Any] = {"width": width, "height": height, "format": fmt}
                processed_path = None

                if width > self._max_width:
                    new_size = (self._max_width, max(1, round(height * self._max_width / width)))
                    processed_path = path.with_name(f"{path.stem}_processed{path.suffix}")
                    img.resize(new_size, Image.Resampling.LANCZOS).save(processed_path, format=fmt)
                    metadata.update(
                        original_width=width,
                        original_height=height,
                        width=new_size[0],
                        height=new_size[1],
                    )
                    logger.info(
                        "Image downscaled | %dx%d -> %dx%d",
                        width, height, new_size[0], new_size[1],
                    )
        except (UnidentifiedImageError, OSError) as exc:
            raise CorruptOrEncryptedFileError(f"Image could not be read: {exc}") from exc

        return ExtractedContent(
            text="",
            metadata=metadata,
            text_extractable=False,
            processed_path=processed_path,
        )

    def _metadata_sync(self, path: Path) -> dict[str, Any]:
        from PIL import Image, UnidentifiedImageError

        try:
            with Image.open(path) as img:
                return {"width": img.size[0], "height": img.size[1], "format": img.format}
        except (UnidentifiedImageError, OSError) as exc:
            raise CorruptOrEncryptedFileError(f"Image could not be read: {exc}") from exc


# ---------------------------------------------------------------------------
# Registry: MIME type → extractor factory
# ---------------------------------------------------------------------------

ExtractorFactory = Callable[[], BaseExtractor]


class ExtractorRegistry:
    """
    Explicit dispatch table; build one per process and inject it.

        registry  = ExtractorRegistry.default(max_image_width=settings.max_image_width)
        extractor = registry.create("application/pdf")
    """

    def __init__(self, factories: Mapping[str, ExtractorFactory] | None = None) -> None:
        self._factories: dict[str, ExtractorFactory] = dict(factories or {})

    @classmethod
    def default(cls, max_image_width: int = MAX_IMAGE_WIDTH) -> ExtractorRegistry:
        image_factory = lambda: ImageExtractor(max_width=max_image_width)  # noqa: E731
        return cls({
            MIME_PDF:      PdfExtractor,
            MIME_DOC:      DocxExtractor,
            MIME_DOCX:     DocxExtractor,
            MIME_TEXT:     TextExtractor,
            MIME_MARKDOWN: TextExtractor,
            MIME_PNG:      image_factory,
            MIME_JPEG:     image_factory,
            MIME_GIF:      image_factory,
            MIME_WEBP:     image_factory,
        })

    def register(self, mime_type: str, factory: ExtractorFactory) -> None:
        self._factories[mime_type] = factory

    def is_supported(self, mime_type: str) -> bool:
        return mime_type in self._factories

    def supported_types(self) -> list[str]:
        return sorted(self._factories)

    def create(self, mime_type: str) -> BaseExtractor:
        factory = self._factories.get(mime_type)
        if factory is None:
            raise UnsupportedTypeError(mime_type)
        return factory()
