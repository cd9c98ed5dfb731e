"""
Unit Tests — ServiceContainer wiring
═════════════════════════════════════

  ✅ memory backends from settings, pipeline handlers registered on the queue
  ✅ chunking settings reach the pipeline
  ✅ health(): embedding service reachable / unreachable
  ✅ unknown backend names → ValueError
"""

from __future__ import annotations

import httpx
import pytest

from document_service.core.container import ServiceContainer
from document_service.queue.base import EMBEDDING_QUEUE, PROCESSING_QUEUE
from document_service.queue.memory import InMemoryTaskQueue
from document_service.repositories.memory import InMemoryDocumentRepository

pytestmark = pytest.mark.unit


class TestFromSettings:

    async def test_memory_backends(self, test_settings, make_embedding_client, embedding_service):
        container = ServiceContainer.from_settings(
            test_settings, embeddings=make_embedding_client(embedding_service),
        )
        try:
            assert isinstance(container.repository, InMemoryDocumentRepository)
            assert isinstance(container.task_queue, InMemoryTaskQueue)
            assert container.storage.backend_name == "local"
            assert container.engine is None
            assert container.task_queue.handler_for(PROCESSING_QUEUE) == container.pipeline.handle_processing_task
            assert container.task_queue.handler_for(EMBEDDING_QUEUE) == container.pipeline.handle_embedding_task
        finally:
            await container.aclose()

    async def test_health_ok(self, test_settings, make_embedding_client, embedding_service):
        container = ServiceContainer.from_settings(
            test_settings, embeddings=make_embedding_client(embedding_service),
        )
        try:
            assert await container.health() == {"embedding_service": "ok", "status": "ok"}
        finally:
            await container.aclose()

    async def test_health_degraded(self, test_settings, make_embedding_client):
        container = ServiceContainer.from_settings(
            test_settings, embeddings=make_embedding_client(lambda r: httpx.Response(503)),
        )
        try:
            assert await container.health() == {"embedding_service": "error", "status": "degraded"}
        finally:
            await container.aclose()

    @pytest.mark.parametrize("field", ["repository_backend", "task_queue_backend"])
    def test_unknown_backend(self, test_settings, field):
        settings = test_settings.model_copy(update={field: "carrier-pigeon"})

        with pytest.raises(ValueError, match="carrier-pigeon"):
            ServiceContainer.from_settings(settings)
