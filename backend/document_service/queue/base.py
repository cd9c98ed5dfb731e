"""
Task queue contract.

Queues
──────
  document-processing   one task per uploaded document
  document-embedding    one task per chunk

Job options
───────────
  priority   HIGH=1 · NORMAL=5 · LOW=10   (lower value runs first)
  attempts   total tries, including the first
  backoff    delay before attempt n+1: exponential base×2^(n-1) or fixed base

  ┌──────────────────────┬──────────┬──────────────────────┐
  │ queue                │ attempts │ backoff              │
  ├──────────────────────┼──────────┼──────────────────────┤
  │ document-processing  │    3     │ exponential, 2 s     │
  │ document-embedding   │    3     │ exponential, 3 s     │
  └──────────────────────┴──────────┴──────────────────────┘

Errors whose `retryable` attribute is False are never re-attempted.

Handlers are plain coroutines taking the JSON payload dict; the pipeline
registers them with register() and each backend delivers to handler_for().
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any, Awaitable, Callable

PROCESSING_QUEUE = "document-processing"
EMBEDDING_QUEUE  = "document-embedding"

TaskHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class Priority(IntEnum):
    HIGH   = 1
    NORMAL = 5
    LOW    = 10


@dataclass(frozen=True)
class Backoff:
    kind:          str   = "exponential"   # "exponential" | "fixed"
    delay_seconds: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        if self.kind == "fixed":
            return self.delay_seconds
        return self.delay_seconds * (2 ** max(0, attempt - 1))


@dataclass(frozen=True)
class JobOptions:
    priority: Priority = Priority.NORMAL
    attempts: int      = 3
    backoff:  Backoff  = field(default_factory=Backoff)


QUEUE_DEFAULTS: dict[str, JobOptions] = {
    PROCESSING_QUEUE: JobOptions(attempts=3, backoff=Backoff("exponential", 2.0)),
    EMBEDDING_QUEUE:  JobOptions(attempts=3, backoff=Backoff("exponential", 3.0)),
}


def default_options(queue_name: str, priority: Priority | None = None) -> JobOptions:
    options = QUEUE_DEFAULTS.get(queue_name, JobOptions())
    return replace(options, priority=priority) if priority is not None else options


class TaskQueue(ABC):

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}

    def register(self, queue_name: str, handler: TaskHandler) -> None:
        self._handlers[queue_name] = handler

    def handler_for(self, queue_name: str) -> TaskHandler:
        try:
            return self._handlers[queue_name]
        except KeyError:
            raise LookupError(f"No handler registered for queue '{queue_name}'") from None

    @abstractmethod
    async def enqueue(
        self,
        queue_name: str,
        payload:    dict[str, Any],
        options:    JobOptions | None = None,
    ) -> str:
        """Queue one job; returns the task id."""
