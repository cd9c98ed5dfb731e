"""
In-process task queue on asyncio.

One asyncio.PriorityQueue per queue name and `concurrency[queue]` worker
tasks draining it, started lazily on the first enqueue. Failed jobs are
re-queued after their backoff delay until attempts run out or the error is
not retryable; then they land in `failed`.

join() waits until every job enqueued so far (including the ones enqueued
by handlers while it waits) has finished for good.

`completed` and `failed` keep only the most recent `history_limit` jobs.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Mapping

from document_service.core.errors import is_retryable
from document_service.queue.base import JobOptions, TaskQueue, default_options

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY   = 1
DEFAULT_HISTORY_LIMIT = 1000


@dataclass
class Job:
    id:         str
    queue_name: str
    payload:    dict[str, Any]
    options:    JobOptions
    attempt:    int = 1


@dataclass
class FailedJob:
    job:   Job
    error: BaseException
    attempts_made: int = 0


class InMemoryTaskQueue(TaskQueue):

    def __init__(
        self,
        concurrency:   Mapping[str, int] | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        super().__init__()
        self._concurrency = dict(concurrency or {})
        self._queues:  dict[str, asyncio.PriorityQueue] = {}
        self._workers: list[asyncio.Task] = []
        self._timers:  set[asyncio.Task] = set()
        self._sequence = itertools.count()
        self._outstanding = 0
        self._idle: asyncio.Event | None = None

        self.completed: deque[Job] = deque(maxlen=history_limit)
        self.failed:    deque[FailedJob] = deque(maxlen=history_limit)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        queue_name: str,
        payload:    dict[str, Any],
        options:    JobOptions | None = None,
    ) -> str:
        job = Job(
            id=uuid.uuid4().hex,
            queue_name=queue_name,
            payload=dict(payload),
            options=options or default_options(queue_name),
        )
        self._outstanding += 1
        self._idle_event().clear()
        self._put(job)
        logger.debug("Enqueued | queue=%s job=%s priority=%d", queue_name, job.id, job.options.priority)
        return job.id

    async def join(self) -> None:
        await self._idle_event().wait()

    async def close(self) -> None:
        for task in [*self._workers, *self._timers]:
            task.cancel()
        await asyncio.gather(*self._workers, *self._timers, return_exceptions=True)
        self._workers.clear()
        self._timers.clear()
        self._queues.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _idle_event(self) -> asyncio.Event:
        if self._idle is None:
            self._idle = asyncio.Event()
            self._idle.set()
        return self._idle

    def _put(self, job: Job) -> None:
        queue = self._queues.get(job.queue_name)
        if queue is None:
            queue = self._queues[job.queue_name] = asyncio.PriorityQueue()
            workers = self._concurrency.get(job.queue_name, DEFAULT_CONCURRENCY)
            for n in range(max(1, workers)):
                self._workers.append(
                    asyncio.create_task(self._worker(job.queue_name, queue), name=f"{job.queue_name}-{n}")
                )
        queue.put_nowait((int(job.options.priority), next(self._sequence), job))

    def _finish(self) -> None:
        self._outstanding -= 1
        if self._outstanding == 0:
            self._idle_event().set()

    async def _requeue_later(self, job: Job, delay: float) -> None:
        await asyncio.sleep(delay)
        self._put(job)

    async def _worker(self, queue_name: str, queue: asyncio.PriorityQueue) -> None:
        while True:
            _, _, job = await queue.get()
            try:
                await self._run(job)
            finally:
                queue.task_done()

    async def _run(self, job: Job) -> None:
        try:
            handler = self.handler_for(job.queue_name)
            await handler(job.payload)
        except Exception as exc:
            retry = is_retryable(exc) and job.attempt < job.options.attempts
            if retry:
                delay = job.options.backoff.delay_for(job.attempt)
                logger.warning(
                    "Job failed, retrying | queue=%s job=%s attempt=%d/%d delay=%.1fs error=%s",
                    job.queue_name, job.id, job.attempt, job.options.attempts, delay, exc,
                )
                job.attempt += 1
                timer = asyncio.create_task(self._requeue_later(job, delay))
                self._timers.add(timer)
                timer.add_done_callback(self._timers.discard)
                return

            logger.error(
                "Job failed | queue=%s job=%s attempts=%d error=%s",
                job.queue_name, job.id, job.attempt, exc,
            )
            self.failed.append(FailedJob(job=job, error=exc, attempts_made=job.attempt))
            self._finish()
            return

        self.completed.append(job)
        self._finish()
