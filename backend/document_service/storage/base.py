"""
Storage backend contract.

Backends only deal in opaque keys and bytes; key construction lives here so
every backend lays tenants out identically:

    {tenant_id}/{user_id}/{uuid4 hex}{ext}

The original filename never appears in the key; only its extension
survives, reduced to [a-z0-9].
"""

from __future__ import annotations

import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

_EXT_UNSAFE_RE  = re.compile(r"[^a-z0-9]")
_SEGMENT_UNSAFE = re.compile(r"[^A-Za-z0-9_\-]")

MAX_EXTENSION_LENGTH = 16


@dataclass(frozen=True)
class StoredObject:
    """Returned by StorageGateway.put()."""
    key:          str
    backend:      str            # "s3" | "local"
    filename:     str            # original filename, kept for display only
    location:     str            # s3://bucket/key or absolute filesystem path
    size_bytes:   int
    content_type: str | None = None
    metadata:     dict[str, Any] = field(default_factory=dict)


def safe_extension(filename: str) -> str:
    """'.PDF' → '.pdf', 'a.t@r' → '.tr', no extension → ''."""
    if "." not in filename:
        return ""
    ext = _EXT_UNSAFE_RE.sub("", filename.rsplit(".", 1)[-1].lower())[:MAX_EXTENSION_LENGTH]
    return f".{ext}" if ext else ""


def build_object_key(tenant_id: str, user_id: str, original_filename: str) -> str:
    """Tenant and user come from server-side context, never from the filename."""
    tenant = _SEGMENT_UNSAFE.sub("_", str(tenant_id))
    user   = _SEGMENT_UNSAFE.sub("_", str(user_id))
    return f"{tenant}/{user}/{uuid.uuid4().hex}{safe_extension(original_filename)}"


class StorageBackend(ABC):
    """
    All implementations:
      - raise NotFoundError from get() when the key does not exist
      - raise StorageBackendError for every other backend failure
      - return False from delete() when there was nothing to delete
    """

    name: str = "abstract"

    @abstractmethod
    async def put(
        self,
        key:          str,
        body:         bytes,
        content_type: str | None = None,
        metadata:     dict[str, Any] | None = None,
    ) -> str:
        """Store body under key; return the backend-specific location."""

    @abstractmethod
    async def get(self, key: str) -> bytes: ...

    @abstractmethod
    async def exists(self, key: str) -> bool: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def url_for(self, key: str) -> str: ...
