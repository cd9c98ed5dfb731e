"""
Lifecycle events published by the processing pipeline.

    processing.started    document picked up by a worker
    processing.chunked    chunk rows written, embedding tasks about to be queued
    processing.completed  every chunk embedded (or metadata-only document done)
    processing.failed     pipeline error recorded on the document

Notifications are fire-and-forget: a subscriber that raises is logged and
the pipeline carries on.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import UUID

logger = logging.getLogger(__name__)


class ProcessingEvent(str, Enum):
    STARTED   = "processing.started"
    CHUNKED   = "processing.chunked"
    COMPLETED = "processing.completed"
    FAILED    = "processing.failed"


@dataclass(frozen=True)
class LifecycleEvent:
    name:        ProcessingEvent
    document_id: UUID
    tenant_id:   str
    data:        dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[LifecycleEvent], "Awaitable[None] | None"]


class EventBus:
    """
    Usage:
        bus = EventBus()
        bus.subscribe(ProcessingEvent.COMPLETED, notify_user)
        bus.subscribe(None, audit_everything)        # every event
    """

    def __init__(self) -> None:
        self._handlers: dict[ProcessingEvent | None, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event: ProcessingEvent | None, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    def unsubscribe(self, event: ProcessingEvent | None, handler: EventHandler) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    async def publish(
        self,
        name:        ProcessingEvent,
        document_id: UUID,
        tenant_id:   str,
        **data:      Any,
    ) -> LifecycleEvent:
        event = LifecycleEvent(name=name, document_id=document_id, tenant_id=tenant_id, data=data)
        logger.info("Event | name=%s doc=%s tenant=%s", name.value, document_id, tenant_id)

        for handler in [*self._handlers.get(name, []), *self._handlers.get(None, [])]:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Event subscriber failed | name=%s doc=%s handler=%r",
                    name.value, document_id, handler,
                )
        return event
