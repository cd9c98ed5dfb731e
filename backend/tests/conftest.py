"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : settings, repository, storage, coordinator, task queues,
                    embedding client factory, sample file builders

Environment strategy:
  - No PostgreSQL, broker or S3 needed: the in-memory repository and task
    queue stand in, storage is a LocalStorageBackend under tmp_path, and the
    embedding service is an httpx.MockTransport.
  - S3 tests patch aioboto3.Session; SQL tests compile the statements.

How to run:
  pytest                                 # all tests
  pytest -m unit                         # unit tests only
  pytest -m "unit and chunking"          # one area
  pytest tests/unit/test_pipeline.py     # single file
"""

from __future__ import annotations

import io
import os
from typing import Any, Callable

import httpx
import pytest
import pytest_asyncio

# ─────────────────────────────────────────────────────────────────────────────
# Environment BEFORE any package imports so Settings() reads test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("REPOSITORY_BACKEND",    "memory")
os.environ.setdefault("TASK_QUEUE_BACKEND",    "memory")
os.environ.setdefault("STORAGE_BACKEND",       "local")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("EMBEDDING_SERVICE_URL", "http://embeddings.test")
os.environ.setdefault("APP_ENV",               "development")

from document_service.core.config import Settings  # noqa: E402
from document_service.events import EventBus  # noqa: E402
from document_service.processing.embeddings import EmbeddingClient  # noqa: E402
from document_service.processing.extraction import ExtractionCoordinator  # noqa: E402
from document_service.processing.extractors import ExtractorRegistry  # noqa: E402
from document_service.queue.base import JobOptions, TaskQueue  # noqa: E402
from document_service.queue.memory import InMemoryTaskQueue  # noqa: E402
from document_service.repositories.memory import InMemoryDocumentRepository  # noqa: E402
from document_service.storage.gateway import StorageGateway  # noqa: E402
from document_service.storage.local import LocalStorageBackend  # noqa: E402

TEST_TENANT = "tenant-acme"
TEST_USER   = "user-alice"


# ─────────────────────────────────────────────────────────────────────────────
# Identity
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def tenant_id() -> str:
    return TEST_TENANT


@pytest.fixture
def user_id() -> str:
    return TEST_USER


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        repository_backend="memory",
        task_queue_backend="memory",
        storage_backend="local",
        local_storage_path=str(tmp_path / "storage"),
        embedding_service_url="http://embeddings.test",
        embedding_service_max_retries=0,
        embedding_service_retry_delay=0.0,
        chunking_strategy="sentence",
        chunk_size=200,
        chunk_overlap=40,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Components
# ─────────────────────────────────────────────────────────────────────────────

class RecordingTaskQueue(TaskQueue):
    """Records every enqueue; nothing runs. Set `fail_with` to simulate a broker outage."""

    def __init__(self) -> None:
        super().__init__()
        self.jobs: list[tuple[str, dict[str, Any], JobOptions | None]] = []
        self.fail_with: BaseException | None = None

    async def enqueue(self, queue_name, payload, options=None) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.jobs.append((queue_name, dict(payload), options))
        return f"task-{len(self.jobs)}"

    def payloads(self, queue_name: str) -> list[dict[str, Any]]:
        return [payload for name, payload, _ in self.jobs if name == queue_name]


@pytest.fixture
def repository() -> InMemoryDocumentRepository:
    return InMemoryDocumentRepository()


@pytest.fixture
def local_backend(tmp_path) -> LocalStorageBackend:
    return LocalStorageBackend(tmp_path / "storage")


@pytest.fixture
def storage(local_backend) -> StorageGateway:
    return StorageGateway(local_backend)


@pytest.fixture
def coordinator() -> ExtractionCoordinator:
    return ExtractionCoordinator(ExtractorRegistry.default(max_image_width=2000))


@pytest.fixture
def recording_queue() -> RecordingTaskQueue:
    return RecordingTaskQueue()


@pytest_asyncio.fixture
async def memory_queue():
    queue = InMemoryTaskQueue()
    yield queue
    await queue.close()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def captured_events(event_bus) -> list:
    events: list = []
    event_bus.subscribe(None, events.append)
    return events


# ─────────────────────────────────────────────────────────────────────────────
# Embedding service (httpx.MockTransport)
# ─────────────────────────────────────────────────────────────────────────────

EmbeddingHandler = Callable[[httpx.Request], httpx.Response]


def fake_embedding_service(model: str = "test-embed-v1") -> EmbeddingHandler:
    """Answers /api/embeddings/generate with a deterministic id per call."""
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        calls["n"] += 1
        return httpx.Response(
            200,
            json={"embedding": [0.1, 0.2, 0.3], "embeddingId": f"emb-{calls['n']}", "model": model},
        )

    return handler


@pytest.fixture
def embedding_service():
    return fake_embedding_service()


@pytest_asyncio.fixture
async def make_embedding_client():
    clients: list[EmbeddingClient] = []

    def _make(handler: EmbeddingHandler, **kwargs: Any) -> EmbeddingClient:
        base_url = "http://embeddings.test"
        http = httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(handler))
        kwargs.setdefault("retry_delay", 0.0)
        client = EmbeddingClient(base_url, client=http, **kwargs)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.aclose()


# ─────────────────────────────────────────────────────────────────────────────
# Sample files
# ─────────────────────────────────────────────────────────────────────────────

def build_pdf(pages: list[str]) -> bytes:
    """Minimal valid PDF: one Helvetica text line per page, real xref offsets."""
    objects: dict[int, bytes] = {
        1: b"<< /Type /Catalog /Pages 2 0 R >>",
        3: b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    }
    kids = []
    next_id = 4
    for text in pages:
        page_id, content_id = next_id, next_id + 1
        next_id += 2
        kids.append(f"{page_id} 0 R")
        escaped = text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
        stream = f"BT /F1 12 Tf 72 720 Td ({escaped}) Tj ET".encode("latin-1")
        objects[page_id] = (
            f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
            f"/Resources << /Font << /F1 3 0 R >> >> /Contents {content_id} 0 R >>"
        ).encode("latin-1")
        objects[content_id] = b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream"
    objects[2] = f"<< /Type /Pages /Kids [{' '.join(kids)}] /Count {len(pages)} >>".encode("latin-1")

    out = bytearray(b"%PDF-1.4\n")
    offsets: dict[int, int] = {}
    for obj_id in range(1, next_id):
        offsets[obj_id] = len(out)
        out += b"%d 0 obj\n" % obj_id + objects[obj_id] + b"\nendobj\n"

    xref_at = len(out)
    out += b"xref\n0 %d\n" % next_id
    out += b"0000000000 65535 f \n"
    for obj_id in range(1, next_id):
        out += b"%010d 00000 n \n" % offsets[obj_id]
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (next_id, xref_at)
    return bytes(out)


def build_encrypted_pdf(password: str = "secret") -> bytes:
    from pypdf import PdfReader, PdfWriter

    writer = PdfWriter()
    writer.append(PdfReader(io.BytesIO(build_pdf(["Confidential payroll figures"]))))
    writer.encrypt(user_password=password, owner_password=password, algorithm="RC4-128")
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


def build_docx(paragraphs: list[str], table: list[list[str]] | None = None, heading: str | None = None) -> bytes:
    import docx

    document = docx.Document()
    if heading:
        document.add_heading(heading, level=1)
    for text in paragraphs:
        document.add_paragraph(text)
    if table:
        grid = document.add_table(rows=len(table), cols=len(table[0]))
        for r, row in enumerate(table):
            for c, value in enumerate(row):
                grid.cell(r, c).text = value
    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


def build_png(width: int, height: int) -> bytes:
    from PIL import Image

    buf = io.BytesIO()
    Image.new("RGB", (width, height), color=(200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def pdf_factory():
    return build_pdf


@pytest.fixture
def encrypted_pdf_bytes() -> bytes:
    return build_encrypted_pdf()


@pytest.fixture
def docx_factory():
    return build_docx


@pytest.fixture
def png_factory():
    return build_png


@pytest.fixture
def sample_text() -> str:
    return (
        "Acme Corp closed the quarter with record revenue. Growth came from the "
        "enterprise segment! Churn fell for the third quarter in a row.\n\n"
        "The board approved a new data retention policy. Documents older than "
        "seven years are archived. Legal holds override the schedule?\n\n"
        "Hiring remains focused on engineering and support. Two regional offices "
        "open next year. The outlook for the coming fiscal year is positive."
    )
