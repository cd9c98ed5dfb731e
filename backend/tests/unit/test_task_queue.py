"""
Unit Tests — Task queue
════════════════════════

  ✅ job options: per-queue defaults, priority override, backoff delays
  ✅ handler registry: unknown queue → LookupError
  ✅ in-memory: lower priority value runs first
  ✅ in-memory: retryable failure re-attempted, then succeeds
  ✅ in-memory: non-retryable failure not re-attempted
  ✅ in-memory: attempts exhausted → recorded in failed
  ✅ in-memory: join() waits for jobs enqueued by handlers
  ✅ in-memory: completed / failed history keeps only the newest jobs
  ✅ celery: send_task by name, queue routing, flipped broker priority
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from document_service.core.errors import CorruptOrEncryptedFileError
from document_service.queue.base import (
    EMBEDDING_QUEUE,
    PROCESSING_QUEUE,
    Backoff,
    JobOptions,
    Priority,
    default_options,
)
from document_service.queue.celery_queue import (
    TASK_NAMES,
    CeleryTaskQueue,
    broker_priority,
    options_to_message,
)

pytestmark = [pytest.mark.unit, pytest.mark.queue]

NO_DELAY = Backoff("fixed", 0.0)


class TestJobOptions:

    def test_queue_defaults(self):
        processing = default_options(PROCESSING_QUEUE)
        embedding = default_options(EMBEDDING_QUEUE)

        assert processing.attempts == 3
        assert processing.backoff == Backoff("exponential", 2.0)
        assert embedding.backoff == Backoff("exponential", 3.0)
        assert processing.priority == Priority.NORMAL

    def test_priority_override_keeps_defaults(self):
        options = default_options(EMBEDDING_QUEUE, Priority.HIGH)

        assert options.priority == Priority.HIGH
        assert options.backoff.delay_seconds == 3.0

    def test_unknown_queue_gets_generic_defaults(self):
        assert default_options("reports") == JobOptions()

    @pytest.mark.parametrize("attempt, expected", [(1, 2.0), (2, 4.0), (3, 8.0)])
    def test_exponential_backoff(self, attempt, expected):
        assert Backoff("exponential", 2.0).delay_for(attempt) == expected

    def test_fixed_backoff(self):
        assert Backoff("fixed", 5.0).delay_for(4) == 5.0


class TestInMemoryQueue:

    async def test_unregistered_queue(self, memory_queue):
        with pytest.raises(LookupError):
            memory_queue.handler_for("nowhere")

    async def test_priority_order(self, memory_queue):
        order: list[str] = []
        gate = asyncio.Event()

        async def handler(payload):
            if payload["name"] == "blocker":
                await gate.wait()
            order.append(payload["name"])

        memory_queue.register(PROCESSING_QUEUE, handler)
        await memory_queue.enqueue(PROCESSING_QUEUE, {"name": "blocker"})
        await asyncio.sleep(0)   # worker picks up the blocker

        await memory_queue.enqueue(PROCESSING_QUEUE, {"name": "low"}, JobOptions(priority=Priority.LOW))
        await memory_queue.enqueue(PROCESSING_QUEUE, {"name": "normal"}, JobOptions(priority=Priority.NORMAL))
        await memory_queue.enqueue(PROCESSING_QUEUE, {"name": "high"}, JobOptions(priority=Priority.HIGH))
        gate.set()
        await memory_queue.join()

        assert order == ["blocker", "high", "normal", "low"]

    async def test_retry_then_success(self, memory_queue):
        calls = {"n": 0}

        async def flaky(payload):
            calls["n"] += 1
            if calls["n"] < 3:
                raise ConnectionError("broker hiccup")

        memory_queue.register(PROCESSING_QUEUE, flaky)
        await memory_queue.enqueue(PROCESSING_QUEUE, {}, JobOptions(attempts=3, backoff=NO_DELAY))
        await memory_queue.join()

        assert calls["n"] == 3
        assert len(memory_queue.completed) == 1
        assert len(memory_queue.failed) == 0

    async def test_non_retryable_not_reattempted(self, memory_queue):
        calls = {"n": 0}

        async def corrupt(payload):
            calls["n"] += 1
            raise CorruptOrEncryptedFileError("bad pdf")

        memory_queue.register(PROCESSING_QUEUE, corrupt)
        await memory_queue.enqueue(PROCESSING_QUEUE, {}, JobOptions(attempts=3, backoff=NO_DELAY))
        await memory_queue.join()

        assert calls["n"] == 1
        assert len(memory_queue.failed) == 1
        assert memory_queue.failed[0].attempts_made == 1

    async def test_attempts_exhausted(self, memory_queue):
        async def broken(payload):
            raise RuntimeError("still down")

        memory_queue.register(EMBEDDING_QUEUE, broken)
        await memory_queue.enqueue(EMBEDDING_QUEUE, {"chunk_id": "c"}, JobOptions(attempts=2, backoff=NO_DELAY))
        await memory_queue.join()

        assert len(memory_queue.failed) == 1
        failed = memory_queue.failed[0]
        assert failed.attempts_made == 2
        assert str(failed.error) == "still down"
        assert failed.job.payload == {"chunk_id": "c"}

    async def test_join_waits_for_follow_up_jobs(self, memory_queue):
        seen: list[str] = []

        async def parent(payload):
            for i in range(3):
                await memory_queue.enqueue(EMBEDDING_QUEUE, {"i": i})

        async def child(payload):
            await asyncio.sleep(0.01)
            seen.append(payload["i"])

        memory_queue.register(PROCESSING_QUEUE, parent)
        memory_queue.register(EMBEDDING_QUEUE, child)
        await memory_queue.enqueue(PROCESSING_QUEUE, {})
        await memory_queue.join()

        assert sorted(seen) == [0, 1, 2]

    async def test_concurrency_per_queue(self):
        from document_service.queue.memory import InMemoryTaskQueue

        queue = InMemoryTaskQueue({EMBEDDING_QUEUE: 3})
        running = {"now": 0, "peak": 0}

        async def handler(payload):
            running["now"] += 1
            running["peak"] = max(running["peak"], running["now"])
            await asyncio.sleep(0.01)
            running["now"] -= 1

        queue.register(EMBEDDING_QUEUE, handler)
        for i in range(6):
            await queue.enqueue(EMBEDDING_QUEUE, {"i": i})
        await queue.join()
        await queue.close()

        assert running["peak"] == 3

    async def test_history_is_capped(self):
        from document_service.queue.memory import InMemoryTaskQueue

        queue = InMemoryTaskQueue(history_limit=3)

        async def handler(payload):
            if payload["i"] % 2:
                raise CorruptOrEncryptedFileError("bad pdf")

        queue.register(PROCESSING_QUEUE, handler)
        for i in range(10):
            await queue.enqueue(PROCESSING_QUEUE, {"i": i})
        await queue.join()
        await queue.close()

        assert [job.payload["i"] for job in queue.completed] == [4, 6, 8]
        assert [f.job.payload["i"] for f in queue.failed] == [5, 7, 9]


class TestCeleryQueue:

    def test_broker_priority_is_flipped(self):
        assert broker_priority(Priority.HIGH) == 9
        assert broker_priority(Priority.NORMAL) == 5
        assert broker_priority(Priority.LOW) == 0

    def test_options_to_message(self):
        assert options_to_message(default_options(EMBEDDING_QUEUE)) == {
            "attempts": 3, "backoff_kind": "exponential", "backoff_delay": 3.0,
        }

    async def test_enqueue_sends_task_by_name(self):
        app = MagicMock()
        app.send_task.return_value.id = "celery-task-1"
        queue = CeleryTaskQueue(app)

        task_id = await queue.enqueue(
            PROCESSING_QUEUE,
            {"document_id": "d1", "tenant_id": "t1"},
            default_options(PROCESSING_QUEUE, Priority.HIGH),
        )

        assert task_id == "celery-task-1"
        app.send_task.assert_called_once_with(
            TASK_NAMES[PROCESSING_QUEUE],
            kwargs={
                "payload": {"document_id": "d1", "tenant_id": "t1"},
                "options": {"attempts": 3, "backoff_kind": "exponential", "backoff_delay": 2.0},
            },
            queue=PROCESSING_QUEUE,
            routing_key=PROCESSING_QUEUE,
            priority=9,
        )

    async def test_unknown_queue(self):
        with pytest.raises(LookupError):
            await CeleryTaskQueue(MagicMock()).enqueue("reports", {})
