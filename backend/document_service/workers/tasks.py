"""
Celery Tasks — Document Pipeline

Task: process_document            (queue document-processing)
Task: generate_chunk_embedding    (queue document-embedding)
  Both deliver the JSON payload to the handler the ProcessingPipeline
  registered for that queue. On failure the task retries through
  self.retry() using the attempts/backoff carried in the message, unless
  the error is not retryable (corrupt file, unsupported type, 4xx from the
  embedding service) or attempts are exhausted.

Task: requeue_stale_documents     (beat, every 60 s)
  Re-queues documents stuck in 'pending' for longer than
  STALE_PENDING_MINUTES; covers broker failures during upload.

Task: health_check
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import timedelta
from functools import lru_cache
from typing import Any
from uuid import UUID

from celery import Task

from document_service.core.container import ServiceContainer
from document_service.core.errors import is_retryable
from document_service.queue.base import EMBEDDING_QUEUE, PROCESSING_QUEUE, Backoff, default_options
from document_service.queue.celery_queue import CeleryTaskQueue, options_to_message
from document_service.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# One event loop per worker process: the DB pool and the httpx client are
# bound to the loop they were first used on.
# ---------------------------------------------------------------------------

_loop: asyncio.AbstractEventLoop | None = None


def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    return _loop.run_until_complete(coro)


@lru_cache(maxsize=1)
def get_container() -> ServiceContainer:
    return ServiceContainer.from_settings(task_queue=CeleryTaskQueue(celery_app))


def _to_json(result: Any) -> Any:
    if dataclasses.is_dataclass(result):
        return {
            key: str(value) if isinstance(value, UUID) else value
            for key, value in dataclasses.asdict(result).items()
        }
    return result


def _run_handler(
    task:       Task,
    queue_name: str,
    payload:    dict[str, Any],
    options:    dict[str, Any] | None,
) -> Any:
    opts = options or options_to_message(default_options(queue_name))
    handler = get_container().task_queue.handler_for(queue_name)

    try:
        return _to_json(run_async(handler(payload)))
    except Exception as exc:
        attempts = int(opts.get("attempts", 1))
        attempt = task.request.retries + 1
        if not is_retryable(exc) or attempt >= attempts:
            logger.error(
                "Task giving up | queue=%s doc=%s attempt=%d/%d error=%s",
                queue_name, payload.get("document_id", "?"), attempt, attempts, exc,
            )
            raise

        backoff = Backoff(
            kind=opts.get("backoff_kind", "exponential"),
            delay_seconds=float(opts.get("backoff_delay", 2.0)),
        )
        countdown = backoff.delay_for(attempt)
        logger.warning(
            "Task retrying | queue=%s doc=%s attempt=%d/%d countdown=%.1fs error=%s",
            queue_name, payload.get("document_id", "?"), attempt, attempts, countdown, exc,
        )
        raise task.retry(exc=exc, countdown=countdown, max_retries=attempts - 1)


# ---------------------------------------------------------------------------
# Pipeline tasks
# ---------------------------------------------------------------------------

@celery_app.task(
    name="document_service.workers.tasks.process_document",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=270,
    time_limit=330,
)
def process_document(self: Task, *, payload: dict[str, Any], options: dict[str, Any] | None = None) -> Any:
    return _run_handler(self, PROCESSING_QUEUE, payload, options)


@celery_app.task(
    name="document_service.workers.tasks.generate_chunk_embedding",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    soft_time_limit=120,
    time_limit=150,
)
def generate_chunk_embedding(self: Task, *, payload: dict[str, Any], options: dict[str, Any] | None = None) -> Any:
    return _run_handler(self, EMBEDDING_QUEUE, payload, options)


# ---------------------------------------------------------------------------
# Stale-pending scanner, every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="document_service.workers.tasks.requeue_stale_documents",
    acks_late=True,
    soft_time_limit=55,
    time_limit=60,
)
def requeue_stale_documents() -> dict[str, int]:
    container = get_container()
    older_than = timedelta(minutes=container.settings.stale_pending_minutes)
    return {"requeued": run_async(container.documents.requeue_stale_pending(older_than))}


@celery_app.task(name="document_service.workers.tasks.health_check")
def health_check() -> dict[str, Any]:
    return {"worker": "healthy", **run_async(get_container().health())}
