"""
Celery Application Factory

Broker: RabbitMQ (amqp://) in production; Redis (redis://) works for local dev.
Result backend: Redis (optional; document state lives in PostgreSQL).

Queue topology:
  document-processing    one task per uploaded document (priority 0-10)
  document-embedding     one task per chunk (priority 0-10)
  document-maintenance   beat jobs: stale-pending re-queue, health check

Concurrency is per worker process; run one worker per queue:
  celery -A document_service.workers.celery_app worker -Q document-processing -c 2
  celery -A document_service.workers.celery_app worker -Q document-embedding  -c 5

Task payloads carry ids and chunk text only, never file bytes; workers load
the file from storage.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from document_service.core.config import Settings, get_settings
from document_service.core.logging import configure_logging
from document_service.queue.base import EMBEDDING_QUEUE, PROCESSING_QUEUE

logger = logging.getLogger(__name__)

MAINTENANCE_QUEUE = "document-maintenance"

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        PROCESSING_QUEUE,
        exchange=DOCUMENTS_EXCHANGE,
        routing_key=PROCESSING_QUEUE,
        queue_arguments={"x-max-priority": 10},
        durable=True,
    ),
    Queue(
        EMBEDDING_QUEUE,
        exchange=DOCUMENTS_EXCHANGE,
        routing_key=EMBEDDING_QUEUE,
        queue_arguments={"x-max-priority": 10},
        durable=True,
    ),
    Queue(
        MAINTENANCE_QUEUE,
        exchange=DOCUMENTS_EXCHANGE,
        routing_key=MAINTENANCE_QUEUE,
        durable=True,
    ),
)

TASK_ROUTES = {
    "document_service.workers.tasks.process_document":         {"queue": PROCESSING_QUEUE},
    "document_service.workers.tasks.generate_chunk_embedding": {"queue": EMBEDDING_QUEUE},
    "document_service.workers.tasks.requeue_stale_documents":  {"queue": MAINTENANCE_QUEUE},
    "document_service.workers.tasks.health_check":             {"queue": MAINTENANCE_QUEUE},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app(settings: Settings | None = None) -> Celery:
    settings = settings or get_settings()
    app = Celery("document_service")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (JSON only) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue=PROCESSING_QUEUE,
        task_default_exchange="documents",
        task_default_routing_key=PROCESSING_QUEUE,
        task_queue_max_priority=10,
        task_default_priority=5,

        # --- Reliability ---
        task_acks_late=True,             # ack only after the task finishes
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts ---
        task_soft_time_limit=300,
        task_time_limit=360,

        # --- Result TTL ---
        result_expires=3600,

        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (stale-pending scanner) ---
        beat_schedule={
            "requeue-stale-pending-every-60s": {
                "task":     "document_service.workers.tasks.requeue_stale_documents",
                "schedule": 60,
                "options":  {"queue": MAINTENANCE_QUEUE},
            },
        },

        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["document_service.workers"])
    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals: one log line per task transition
# ---------------------------------------------------------------------------

def _payload(kwargs: dict | None) -> dict:
    return (kwargs or {}).get("payload") or {}


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    payload = _payload(kwargs)
    logger.info(
        "Task start | task_id=%s task=%s doc=%s tenant=%s",
        task_id, task.name,
        payload.get("document_id", "?"),
        payload.get("tenant_id", "?"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s doc=%s",
        task_id, task.name, state, _payload(kwargs).get("document_id", "?"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, _payload(kwargs).get("document_id", "?"), exception,
    )


configure_logging(get_settings())
