"""
Integration Tests — Upload → process → embed → complete
════════════════════════════════════════════════════════

The full container runs in-process: in-memory repository and task queue,
local storage under tmp_path, embedding service behind httpx.MockTransport.
Queue workers run on the test's event loop; join() waits for the whole
fan-out (processing task plus every embedding task) to drain.

  ✅ text upload reaches completed with every chunk embedded
  ✅ PDF upload: page text chunked, page count kept from upload
  ✅ image upload completes without chunks (embedding skipped)
  ✅ corrupt PDF: document failed, job not retried
  ✅ embedding service 4xx: chunks carry the error, document stays processing
  ✅ broker down at upload: stale-pending scan picks the document up later
  ✅ tenants never see each other's documents
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

from document_service.core.container import ServiceContainer
from document_service.core.errors import NotFoundError
from document_service.events import ProcessingEvent
from document_service.schemas.documents import DocumentStatus, EmbeddingStatus
from document_service.services.upload import UploadRequest

pytestmark = pytest.mark.integration


@pytest_asyncio.fixture
async def make_container(test_settings, make_embedding_client, embedding_service):
    containers: list[ServiceContainer] = []

    def _make(handler=None) -> ServiceContainer:
        container = ServiceContainer.from_settings(
            test_settings,
            embeddings=make_embedding_client(handler or embedding_service),
        )
        containers.append(container)
        return container

    yield _make
    for container in containers:
        await container.aclose()


@pytest.fixture
def container(make_container) -> ServiceContainer:
    return make_container()


def _request(content: bytes, filename: str, mimetype: str | None = None, tenant_id: str = "tenant-acme") -> UploadRequest:
    return UploadRequest(
        content=content,
        original_filename=filename,
        mimetype=mimetype,
        tenant_id=tenant_id,
        user_id="user-alice",
    )


class TestHappyPath:

    async def test_text_document_completes(self, container, sample_text):
        events: list = []
        container.events.subscribe(None, events.append)

        upload = await container.uploads.upload(_request(sample_text.encode(), "q3-report.txt", "text/plain"))
        await container.task_queue.join()

        status = await container.documents.get_status(upload.document_id, "tenant-acme")
        assert status.status == DocumentStatus.COMPLETED
        assert status.embedding_status == EmbeddingStatus.COMPLETED
        assert status.chunk_count > 1
        assert status.embedded_chunk_count == status.chunk_count

        chunks = await container.documents.get_chunks(upload.document_id, "tenant-acme")
        assert [c.chunk_index for c in chunks] == list(range(status.chunk_count))
        assert len({c.embedding_id for c in chunks}) == len(chunks)
        assert all(c.metadata["embedding_model"] == "test-embed-v1" for c in chunks)

        assert [e.name for e in events] == [
            ProcessingEvent.STARTED, ProcessingEvent.CHUNKED, ProcessingEvent.COMPLETED,
        ]
        assert len(container.task_queue.failed) == 0

    async def test_pdf_document(self, container, pdf_factory):
        pdf = pdf_factory(["Quarterly revenue grew.", "Costs were flat."])

        upload = await container.uploads.upload(_request(pdf, "q3.pdf", "application/pdf"))
        await container.task_queue.join()

        doc = await container.documents.get(upload.document_id, "tenant-acme")
        assert doc.status == DocumentStatus.COMPLETED
        assert doc.metadata["pages"] == 2
        assert "Quarterly revenue grew." in doc.extracted_text

    async def test_image_completes_without_chunks(self, container, png_factory):
        upload = await container.uploads.upload(_request(png_factory(32, 32), "logo.png", "image/png"))
        await container.task_queue.join()

        doc = await container.documents.get(upload.document_id, "tenant-acme")
        assert doc.status == DocumentStatus.COMPLETED
        assert doc.embedding_status == EmbeddingStatus.SKIPPED
        assert doc.chunk_count == 0
        assert doc.metadata["width"] == 32

    async def test_statistics_after_runs(self, container, sample_text):
        await container.uploads.upload_many([
            _request(sample_text.encode(), "a.txt"),
            _request(b"Short note.", "b.txt"),
        ])
        await container.task_queue.join()

        stats = await container.documents.statistics("tenant-acme")
        assert (stats.completed, stats.total) == (2, 2)


class TestFailures:

    async def test_corrupt_pdf_fails_once(self, container):
        upload = await container.uploads.upload(
            _request(b"%PDF-1.4\nthis is not really a pdf", "broken.pdf", "application/pdf"),
        )
        await container.task_queue.join()

        doc = await container.documents.get(upload.document_id, "tenant-acme")
        assert doc.status == DocumentStatus.FAILED
        assert doc.error_message
        assert len(container.task_queue.failed) == 1
        assert container.task_queue.failed[0].attempts_made == 1

    async def test_embedding_rejected(self, make_container):
        container = make_container(lambda r: httpx.Response(400, json={"error": "bad input"}))

        upload = await container.uploads.upload(_request(b"One sentence. Another one.", "n.txt", "text/plain"))
        await container.task_queue.join()

        status = await container.documents.get_status(upload.document_id, "tenant-acme")
        assert status.status == DocumentStatus.PROCESSING
        assert status.embedded_chunk_count == 0

        chunks = await container.documents.get_chunks(upload.document_id, "tenant-acme")
        assert all("bad input" in c.metadata["embedding_error"] for c in chunks)
        assert len(container.task_queue.failed) == len(chunks)

    async def test_broker_down_then_stale_scan(self, container, sample_text):
        with patch.object(container.task_queue, "enqueue", AsyncMock(side_effect=ConnectionError("broker down"))):
            upload = await container.uploads.upload(_request(sample_text.encode(), "later.txt", "text/plain"))

        assert upload.task_id is None
        assert (await container.documents.get(upload.document_id, "tenant-acme")).status == DocumentStatus.PENDING

        assert await container.documents.requeue_stale_pending(older_than=timedelta(0)) == 1
        await container.task_queue.join()

        assert (await container.documents.get(upload.document_id, "tenant-acme")).status == DocumentStatus.COMPLETED


class TestTenantIsolation:

    async def test_other_tenant_cannot_read_or_delete(self, container):
        upload = await container.uploads.upload(_request(b"Private memo.", "memo.txt", "text/plain"))
        await container.task_queue.join()

        with pytest.raises(NotFoundError):
            await container.documents.get(upload.document_id, "tenant-other")
        with pytest.raises(NotFoundError):
            await container.documents.delete(upload.document_id, "tenant-other")

        assert await container.documents.list("tenant-other") == []
        assert len(await container.documents.list("tenant-acme")) == 1
