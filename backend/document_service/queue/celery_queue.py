"""
Celery-backed task queue.

enqueue() publishes with `send_task` by name, so the producer never imports
the worker task functions. The job options travel with the message; the
worker task (workers/tasks.py) applies attempts and backoff through
Celery's own retry.

Priorities: our scale is 1 (high) … 10 (low); RabbitMQ's x-max-priority
scale is 0 (low) … 10 (high), so the value is flipped on the way out.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from celery import Celery

from document_service.queue.base import (
    EMBEDDING_QUEUE,
    PROCESSING_QUEUE,
    JobOptions,
    TaskQueue,
    default_options,
)

logger = logging.getLogger(__name__)

TASK_NAMES: dict[str, str] = {
    PROCESSING_QUEUE: "document_service.workers.tasks.process_document",
    EMBEDDING_QUEUE:  "document_service.workers.tasks.generate_chunk_embedding",
}

MAX_BROKER_PRIORITY = 10


def broker_priority(priority: int) -> int:
    return max(0, min(MAX_BROKER_PRIORITY, MAX_BROKER_PRIORITY - int(priority)))


def options_to_message(options: JobOptions) -> dict[str, Any]:
    return {
        "attempts":      options.attempts,
        "backoff_kind":  options.backoff.kind,
        "backoff_delay": options.backoff.delay_seconds,
    }


class CeleryTaskQueue(TaskQueue):

    def __init__(self, celery_app: Celery) -> None:
        super().__init__()
        self._app = celery_app

    async def enqueue(
        self,
        queue_name: str,
        payload:    dict[str, Any],
        options:    JobOptions | None = None,
    ) -> str:
        if queue_name not in TASK_NAMES:
            raise LookupError(f"Unknown queue '{queue_name}'")
        opts = options or default_options(queue_name)

        # send_task blocks on the broker connection; keep it off the event loop
        loop = asyncio.get_event_loop()
        result = await loop.run_in_executor(
            None,
            lambda: self._app.send_task(
                TASK_NAMES[queue_name],
                kwargs={"payload": payload, "options": options_to_message(opts)},
                queue=queue_name,
                routing_key=queue_name,
                priority=broker_priority(opts.priority),
            ),
        )
        logger.info(
            "Task published | queue=%s task_id=%s doc=%s",
            queue_name, result.id, payload.get("document_id", "?"),
        )
        return result.id
