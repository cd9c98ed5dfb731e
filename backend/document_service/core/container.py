"""
Service wiring.

ServiceContainer.from_settings() builds every component from Settings and
connects them; pass any of the keyword overrides to swap a component
(tests use the in-memory repository / queue and a mock embedding transport).

    settings ─┬─► StorageGateway ───────────┐
              ├─► ExtractionCoordinator ────┤
              ├─► EmbeddingClient ──────────┼─► ProcessingPipeline ─► TaskQueue handlers
              ├─► DocumentRepository ───────┤
              └─► TaskQueue ────────────────┘
                                             ├─► UploadService
                                             └─► DocumentService
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from document_service.core.config import Settings, get_settings
from document_service.events import EventBus
from document_service.processing.chunking import ChunkingEngine, ChunkingOptions
from document_service.processing.embeddings import EmbeddingClient
from document_service.processing.extraction import ExtractionCoordinator
from document_service.processing.extractors import ExtractorRegistry
from document_service.processing.pipeline import ProcessingPipeline
from document_service.queue.base import EMBEDDING_QUEUE, PROCESSING_QUEUE, TaskQueue
from document_service.repositories.base import DocumentRepository
from document_service.services.documents import DocumentService
from document_service.services.upload import UploadService
from document_service.storage.gateway import StorageGateway, build_storage_gateway

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings:    Settings
    repository:  DocumentRepository
    storage:     StorageGateway
    task_queue:  TaskQueue
    embeddings:  EmbeddingClient
    coordinator: ExtractionCoordinator
    events:      EventBus
    pipeline:    ProcessingPipeline
    uploads:     UploadService
    documents:   DocumentService
    engine:      Any = None   # AsyncEngine when the SQL repository is in use

    @classmethod
    def from_settings(
        cls,
        settings:   Settings | None = None,
        *,
        repository: DocumentRepository | None = None,
        task_queue: TaskQueue | None = None,
        storage:    StorageGateway | None = None,
        embeddings: EmbeddingClient | None = None,
    ) -> ServiceContainer:
        settings = settings or get_settings()

        engine = None
        if repository is None:
            repository, engine = _build_repository(settings)
        if task_queue is None:
            task_queue = _build_task_queue(settings)
        if storage is None:
            storage = build_storage_gateway(settings)
        if embeddings is None:
            embeddings = EmbeddingClient(
                base_url=settings.embedding_service_url,
                timeout=settings.embedding_service_timeout,
                max_retries=settings.embedding_service_max_retries,
                retry_delay=settings.embedding_service_retry_delay,
            )

        coordinator = ExtractionCoordinator(ExtractorRegistry.default(settings.max_image_width))
        events = EventBus()
        pipeline = ProcessingPipeline(
            repository=repository,
            storage=storage,
            coordinator=coordinator,
            chunker=ChunkingEngine(),
            embeddings=embeddings,
            task_queue=task_queue,
            events=events,
            chunking_strategy=settings.chunking_strategy,
            chunking_options=ChunkingOptions(
                chunk_size=settings.chunk_size,
                overlap=settings.chunk_overlap,
                max_tokens=settings.chunk_max_tokens,
                overlap_tokens=settings.chunk_overlap_tokens,
            ),
        )
        pipeline.register_handlers(task_queue)

        logger.info(
            "Services ready | repository=%s queue=%s storage=%s chunking=%s",
            type(repository).__name__, type(task_queue).__name__,
            storage.backend_name, settings.chunking_strategy,
        )
        return cls(
            settings=settings,
            repository=repository,
            storage=storage,
            task_queue=task_queue,
            embeddings=embeddings,
            coordinator=coordinator,
            events=events,
            pipeline=pipeline,
            uploads=UploadService(repository, storage, coordinator, task_queue),
            documents=DocumentService(repository, storage, task_queue),
            engine=engine,
        )

    async def health(self) -> dict[str, Any]:
        checks: dict[str, Any] = {
            "embedding_service": "ok" if await self.embeddings.health_check() else "error",
        }
        if self.engine is not None:
            from document_service.db.session import check_db_health

            checks["database"] = (await check_db_health(self.engine))["status"]
        checks["status"] = "ok" if all(v == "ok" for v in checks.values()) else "degraded"
        return checks

    async def aclose(self) -> None:
        await self.embeddings.aclose()
        close = getattr(self.task_queue, "close", None)
        if close is not None:
            await close()
        if self.engine is not None:
            await self.engine.dispose()


def _build_repository(settings: Settings) -> tuple[DocumentRepository, Any]:
    backend = settings.repository_backend.lower()

    if backend == "memory":
        from document_service.repositories.memory import InMemoryDocumentRepository

        return InMemoryDocumentRepository(), None

    if backend == "sql":
        from document_service.db.session import create_engine, create_session_factory
        from document_service.repositories.sql import SqlDocumentRepository

        engine = create_engine(settings)
        return SqlDocumentRepository(create_session_factory(engine)), engine

    raise ValueError(
        f"Unknown REPOSITORY_BACKEND: '{settings.repository_backend}'. "
        "Valid options: 'sql', 'memory'"
    )


def _build_task_queue(settings: Settings) -> TaskQueue:
    backend = settings.task_queue_backend.lower()

    if backend == "memory":
        from document_service.queue.memory import InMemoryTaskQueue

        return InMemoryTaskQueue({
            PROCESSING_QUEUE: settings.document_worker_concurrency,
            EMBEDDING_QUEUE:  settings.embedding_worker_concurrency,
        })

    if backend == "celery":
        from document_service.queue.celery_queue import CeleryTaskQueue
        from document_service.workers.celery_app import celery_app

        return CeleryTaskQueue(celery_app)

    raise ValueError(
        f"Unknown TASK_QUEUE_BACKEND: '{settings.task_queue_backend}'. "
        "Valid options: 'celery', 'memory'"
    )
