"""
Error taxonomy for the document pipeline.

Every failure that crosses a component boundary is one of these. Library
exceptions (botocore, httpx, pypdf, Pillow, OSError) are translated at the
boundary with `raise ... from exc` so callers only branch on this module.

`retryable` tells the task queue whether another attempt can succeed:
a corrupt PDF stays corrupt, a 503 from the embedding service may not.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from document_service.schemas.documents import ErrorDetail, ErrorResponse


class DocumentServiceError(Exception):
    code:      str  = "DOCUMENT_SERVICE_ERROR"
    retryable: bool = True

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error_code=self.code,
            message=self.message,
            retryable=self.retryable,
            details=[
                ErrorDetail(field=key, message=str(value), code=self.code)
                for key, value in self.details.items()
            ],
        )


# ---------------------------------------------------------------------------
# Validation / extraction
# ---------------------------------------------------------------------------

class UnsupportedTypeError(DocumentServiceError):
    code      = "UNSUPPORTED_FILE_TYPE"
    retryable = False

    def __init__(self, mime_type: str, filename: str | None = None) -> None:
        self.mime_type = mime_type
        details: dict[str, Any] = {"mime_type": mime_type}
        if filename:
            details["filename"] = filename
        super().__init__(f"File type '{mime_type}' is not supported.", details=details)


class EmptyFileError(DocumentServiceError):
    code      = "MISSING_FILE"
    retryable = False

    def __init__(self, filename: str) -> None:
        super().__init__(f"Uploaded file '{filename}' is empty.", details={"filename": filename})


class SizeLimitExceededError(DocumentServiceError):
    code      = "FILE_TOO_LARGE"
    retryable = False

    def __init__(self, size_bytes: int, limit_bytes: int, mime_type: str) -> None:
        self.size_bytes  = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            f"File of {size_bytes:,} bytes exceeds the {limit_bytes:,} byte limit for {mime_type}.",
            details={"size_bytes": size_bytes, "limit_bytes": limit_bytes, "mime_type": mime_type},
        )


class CorruptOrEncryptedFileError(DocumentServiceError):
    retryable = False

    def __init__(self, reason: str, *, encrypted: bool = False) -> None:
        self.encrypted = encrypted
        self.code = "ENCRYPTED_FILE" if encrypted else "CORRUPT_FILE"
        super().__init__(reason, details={"encrypted": encrypted})


class NoExtractableTextError(DocumentServiceError):
    code      = "EMPTY_DOCUMENT"
    retryable = False

    def __init__(self, document_id: UUID | str) -> None:
        super().__init__(
            "Extracted text is empty",
            details={"document_id": str(document_id)},
        )


class ExtractionTimeoutError(DocumentServiceError):
    code = "EXTRACTION_TIMEOUT"

    def __init__(self, mime_type: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Extraction of {mime_type} did not finish within {timeout_seconds:g}s.",
            details={"mime_type": mime_type, "timeout_seconds": timeout_seconds},
        )


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class StorageBackendError(DocumentServiceError):
    code = "STORAGE_ERROR"

    def __init__(self, message: str, *, backend: str, key: str | None = None) -> None:
        self.backend = backend
        self.key     = key
        details: dict[str, Any] = {"backend": backend}
        if key:
            details["key"] = key
        super().__init__(message, details=details)


class EmbeddingServiceError(DocumentServiceError):
    """
    status_code   : HTTP status returned by the embedding service, if any
    network_error : True for timeouts and connection failures
    """
    code = "EMBEDDING_SERVICE_ERROR"

    def __init__(
        self,
        message:       str,
        *,
        status_code:   int | None = None,
        network_error: bool = False,
    ) -> None:
        self.status_code   = status_code
        self.network_error = network_error
        details: dict[str, Any] = {"network_error": network_error}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        if self.network_error or self.status_code is None:
            return True
        return self.status_code >= 500 or self.status_code in (408, 429)


class NotFoundError(DocumentServiceError):
    code      = "NOT_FOUND"
    retryable = False

    def __init__(self, resource: str, identifier: UUID | str) -> None:
        self.resource   = resource
        self.identifier = str(identifier)
        super().__init__(
            f"{resource.capitalize()} '{identifier}' not found.",
            details={"resource": resource, "identifier": str(identifier)},
        )


def is_retryable(exc: BaseException) -> bool:
    """Unknown exceptions are retried; taxonomy errors decide for themselves."""
    return bool(getattr(exc, "retryable", True))
