"""
Unit Tests — DocumentService
═════════════════════════════

  ✅ get / status: tenant-scoped, other tenant behaves like a missing id
  ✅ status: embedded chunk count
  ✅ list: limit clamped, negative offset treated as 0
  ✅ delete: object + row removed; non-owner refused; storage failure tolerated
  ✅ statistics: every status present, total summed
  ✅ requeue_stale_pending: LOW priority, broker failure skips the document
  ✅ requeue_stale_pending: re-queued document not queued again within the window
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from document_service.core.errors import NotFoundError, StorageBackendError
from document_service.queue.base import PROCESSING_QUEUE, Priority
from document_service.repositories.base import NewChunk
from document_service.schemas.documents import DocumentStatus, EmbeddingStatus
from document_service.services.documents import DocumentService

pytestmark = pytest.mark.unit


@pytest.fixture
def service(repository, storage, recording_queue) -> DocumentService:
    return DocumentService(repository, storage, recording_queue)


async def _stored(repository, storage, tenant_id="tenant-acme", user_id="user-alice", body=b"some text"):
    stored = await storage.put(body, tenant_id, user_id, "doc.txt")
    return await repository.create_document(
        tenant_id=tenant_id,
        user_id=user_id,
        filename="doc.txt",
        storage_key=stored.key,
        mime_type="text/plain",
        size_bytes=stored.size_bytes,
        metadata={"storage_backend": stored.backend},
    )


class TestRead:

    async def test_get(self, service, repository, storage):
        doc = await _stored(repository, storage)

        assert (await service.get(doc.id, "tenant-acme")).id == doc.id

    async def test_other_tenant_is_not_found(self, service, repository, storage):
        doc = await _stored(repository, storage)

        with pytest.raises(NotFoundError) as exc_info:
            await service.get(doc.id, "tenant-evil")

        assert exc_info.value.code == "NOT_FOUND"

    async def test_status_counts_embedded_chunks(self, service, repository, storage):
        doc = await _stored(repository, storage)
        await repository.update_document(doc.id, status=DocumentStatus.PROCESSING)
        chunks = await repository.replace_chunks(
            doc.id, doc.tenant_id, [NewChunk(chunk_index=i, content=f"c{i}", token_count=1) for i in range(3)],
        )
        await repository.update_chunk(chunks[0].id, embedding_id="emb-0")

        status = await service.get_status(doc.id, "tenant-acme")

        assert status.status == DocumentStatus.PROCESSING
        assert status.embedding_status == EmbeddingStatus.PENDING
        assert status.chunk_count == 3
        assert status.embedded_chunk_count == 1

    async def test_with_chunks(self, service, repository, storage):
        doc = await _stored(repository, storage)
        await repository.replace_chunks(doc.id, doc.tenant_id, [NewChunk(chunk_index=0, content="only", token_count=1)])

        result = await service.get_with_chunks(doc.id, "tenant-acme")

        assert result.document.id == doc.id
        assert [c.content for c in result.chunks] == ["only"]

    async def test_chunks_of_missing_document(self, service):
        with pytest.raises(NotFoundError):
            await service.get_chunks(uuid4(), "tenant-acme")

    async def test_list_clamps_paging(self, service, repository):
        repository.list_documents = AsyncMock(return_value=[])

        await service.list("tenant-acme", limit=10_000, offset=-5)
        await service.list("tenant-acme", limit=0)

        first, second = repository.list_documents.await_args_list
        assert first.kwargs["limit"] == 200
        assert first.kwargs["offset"] == 0
        assert second.kwargs["limit"] == 1


class TestDelete:

    async def test_removes_object_and_row(self, service, repository, storage):
        doc = await _stored(repository, storage)

        await service.delete(doc.id, "tenant-acme", user_id="user-alice")

        assert await repository.get_document(doc.id) is None
        assert await storage.exists(doc.storage_key) is False

    async def test_non_owner_refused(self, service, repository, storage):
        doc = await _stored(repository, storage)

        with pytest.raises(NotFoundError):
            await service.delete(doc.id, "tenant-acme", user_id="user-mallory")

        assert await repository.get_document(doc.id) is not None
        assert await storage.exists(doc.storage_key) is True

    async def test_storage_failure_still_deletes_row(self, service, repository, storage):
        doc = await _stored(repository, storage)
        storage.delete = AsyncMock(side_effect=StorageBackendError("access denied", backend="s3", key=doc.storage_key))

        await service.delete(doc.id, "tenant-acme")

        assert await repository.get_document(doc.id) is None

    async def test_missing(self, service):
        with pytest.raises(NotFoundError):
            await service.delete(uuid4(), "tenant-acme")


class TestStatistics:

    async def test_counts(self, service, repository, storage):
        a = await _stored(repository, storage)
        await _stored(repository, storage)
        await _stored(repository, storage, user_id="user-bob")
        await repository.update_document(a.id, status=DocumentStatus.FAILED)

        stats = await service.statistics("tenant-acme")
        mine = await service.statistics("tenant-acme", user_id="user-alice")

        assert (stats.pending, stats.failed, stats.completed, stats.total) == (2, 1, 0, 3)
        assert mine.total == 2

    async def test_empty_tenant(self, service):
        stats = await service.statistics("tenant-nobody")

        assert stats.total == 0
        assert stats.processing == 0


class TestRequeueStalePending:

    async def test_requeues_at_low_priority(self, service, repository, storage, recording_queue):
        pending = await _stored(repository, storage)
        started = await _stored(repository, storage)
        await repository.update_document(started.id, status=DocumentStatus.PROCESSING)

        queued = await service.requeue_stale_pending(older_than=timedelta(0))

        assert queued == 1
        queue_name, payload, options = recording_queue.jobs[0]
        assert queue_name == PROCESSING_QUEUE
        assert payload == {"document_id": str(pending.id), "tenant_id": "tenant-acme"}
        assert options.priority == Priority.LOW

    async def test_recent_documents_left_alone(self, service, repository, storage, recording_queue):
        await _stored(repository, storage)

        assert await service.requeue_stale_pending() == 0
        assert recording_queue.jobs == []

    async def test_broker_failure_counted_out(self, service, repository, storage, recording_queue):
        await _stored(repository, storage)
        recording_queue.fail_with = ConnectionError("broker unreachable")

        assert await service.requeue_stale_pending(older_than=timedelta(0)) == 0

    async def test_requeued_document_waits_a_full_window(self, service, repository, storage, recording_queue):
        doc = await _stored(repository, storage)

        assert await service.requeue_stale_pending(older_than=timedelta(0)) == 1
        assert await service.requeue_stale_pending(older_than=timedelta(minutes=5)) == 0
        assert len(recording_queue.jobs) == 1

        marked = await repository.get_document(doc.id)
        assert marked.status == DocumentStatus.PENDING
        assert marked.metadata["requeue_count"] == 1
        assert marked.metadata["requeued_at"]
        assert marked.metadata["storage_backend"] == "local"

    async def test_still_pending_after_window_requeued_again(self, service, repository, storage, recording_queue):
        doc = await _stored(repository, storage)

        await service.requeue_stale_pending(older_than=timedelta(0))
        await service.requeue_stale_pending(older_than=timedelta(0))

        assert len(recording_queue.jobs) == 2
        assert (await repository.get_document(doc.id)).metadata["requeue_count"] == 2
