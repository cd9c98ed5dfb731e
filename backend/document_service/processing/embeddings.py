"""
Embedding Service Client  —  Remote Vectors over HTTP
══════════════════════════════════════════════════════

The vector model lives in a separate service; this client only speaks its
HTTP contract:

  POST /api/embeddings/generate   {text, metadata}    → {embedding, embeddingId, model}
  POST /api/embeddings/batch      {texts, metadata}   → {embeddings: [{embedding, embeddingId, model}, …]}
  GET  /health                                         → 2xx when ready

Retry policy (generate_embedding_with_retry):
  attempt n failed → wait retry_delay × n → try again, up to max_retries retries
  408 / 429 / 5xx / network errors  → retried
  any other 4xx                     → fail immediately (request will not change)
  exhausted                         → the last EmbeddingServiceError propagates

Batch calls use twice the single-call timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Sequence

import httpx

from document_service.core.errors import EmbeddingServiceError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

GENERATE_PATH = "/api/embeddings/generate"
BATCH_PATH    = "/api/embeddings/batch"
HEALTH_PATH   = "/health"

HEALTH_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class EmbeddingResult:
    embedding:    list[float]
    embedding_id: str
    model:        str | None = None


class EmbeddingClient:
    """
    One instance per process; the underlying httpx.AsyncClient keeps a
    connection pool. Pass `client` to inject a transport in tests.
    """

    def __init__(
        self,
        base_url:    str,
        timeout:     float = 30.0,
        max_retries: int   = 3,
        retry_delay: float = 1.0,
        client:      httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url    = base_url.rstrip("/")
        self._timeout     = timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._client      = client or httpx.AsyncClient(base_url=self._base_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Single / batch
    # ------------------------------------------------------------------

    async def generate_embedding(
        self,
        text:     str,
        metadata: dict[str, Any] | None = None,
    ) -> EmbeddingResult:
        body = await self._post(
            GENERATE_PATH,
            {"text": text, "metadata": metadata or {}},
            timeout=self._timeout,
        )
        return self._parse_result(body)

    async def generate_embeddings_batch(
        self,
        texts:    Sequence[str],
        metadata: Sequence[dict[str, Any]] | None = None,
    ) -> list[EmbeddingResult]:
        if not texts:
            return []

        body = await self._post(
            BATCH_PATH,
            {
                "texts":    list(texts),
                "metadata": list(metadata) if metadata else [{} for _ in texts],
            },
            timeout=self._timeout * 2,
        )

        items = body.get("embeddings")
        if not isinstance(items, list) or len(items) != len(texts):
            raise EmbeddingServiceError(
                f"Batch response returned {len(items) if isinstance(items, list) else 'no'} "
                f"embeddings for {len(texts)} texts",
            )
        return [self._parse_result(item) for item in items]

    # ------------------------------------------------------------------
    # Retry wrapper
    # ------------------------------------------------------------------

    async def generate_embedding_with_retry(
        self,
        text:     str,
        metadata: dict[str, Any] | None = None,
    ) -> EmbeddingResult:
        attempt = 0
        while True:
            try:
                return await self.generate_embedding(text, metadata)
            except EmbeddingServiceError as exc:
                if not exc.retryable:
                    logger.error("Non-retryable embedding error: %s", exc)
                    raise
                if attempt >= self._max_retries:
                    logger.error("Embedding retries exhausted | attempts=%d error=%s", attempt + 1, exc)
                    raise
                attempt += 1
                delay = self._retry_delay * attempt
                logger.warning(
                    "Embedding retry | attempt=%d/%d delay=%.1fs error=%s",
                    attempt, self._max_retries, delay, exc,
                )
            await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> bool:
        try:
            response = await self._client.get(HEALTH_PATH, timeout=HEALTH_TIMEOUT_SECONDS)
        except httpx.HTTPError as exc:
            logger.warning("Embedding service health check failed: %s", exc)
            return False
        return response.is_success

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _post(self, path: str, payload: dict[str, Any], timeout: float) -> dict[str, Any]:
        t0 = time.monotonic()
        try:
            response = await self._client.post(path, json=payload, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise EmbeddingServiceError(
                f"Embedding service timed out after {timeout:g}s", network_error=True,
            ) from exc
        except httpx.TransportError as exc:
            raise EmbeddingServiceError(
                f"Embedding service unreachable: {exc}", network_error=True,
            ) from exc

        if response.is_error:
            raise EmbeddingServiceError(
                f"Embedding service error: {self._error_message(response)}",
                status_code=response.status_code,
            )

        logger.debug(
            "Embedding service | path=%s status=%d api_ms=%.0f",
            path, response.status_code, (time.monotonic() - t0) * 1000,
        )
        try:
            return response.json()
        except ValueError as exc:
            raise EmbeddingServiceError("Embedding service returned invalid JSON") from exc

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.reason_phrase or str(response.status_code)
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return response.reason_phrase or str(response.status_code)

    @staticmethod
    def _parse_result(body: Any) -> EmbeddingResult:
        if not isinstance(body, dict) or "embedding" not in body or not body.get("embeddingId"):
            raise EmbeddingServiceError("Embedding response is missing embedding or embeddingId")
        return EmbeddingResult(
            embedding=list(body["embedding"]),
            embedding_id=str(body["embeddingId"]),
            model=body.get("model"),
        )
