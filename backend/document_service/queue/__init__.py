from document_service.queue.base import (
    EMBEDDING_QUEUE,
    PROCESSING_QUEUE,
    QUEUE_DEFAULTS,
    Backoff,
    JobOptions,
    Priority,
    TaskHandler,
    TaskQueue,
    default_options,
)
from document_service.queue.memory import InMemoryTaskQueue

__all__ = [
    "EMBEDDING_QUEUE",
    "PROCESSING_QUEUE",
    "QUEUE_DEFAULTS",
    "Backoff",
    "JobOptions",
    "Priority",
    "TaskHandler",
    "TaskQueue",
    "default_options",
    "InMemoryTaskQueue",
]
