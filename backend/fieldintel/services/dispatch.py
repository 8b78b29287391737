"""Durable stage-to-stage handoff.

A finishing stage calls :meth:`PipelineDispatcher.publish`. The event is
written to the ``pipeline_events`` outbox first, then delivered to the next
stage on a background task the publisher does not await. Anything left
undelivered is picked up later by :class:`PipelineEventRelay`.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, ClassVar

from fieldintel.core.exceptions import DatabaseError
from fieldintel.db.supabase import SupabaseClient
from fieldintel.models.events import DeliveryStatus, PipelineEvent, PipelineEventType

logger = logging.getLogger(__name__)

StageHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class PipelineDispatcher:
    """Routes pipeline events to the stage registered for each event type."""

    _instance: ClassVar["PipelineDispatcher | None"] = None

    def __init__(self, db: Any = SupabaseClient) -> None:
        self._db = db
        self._handlers: dict[PipelineEventType, StageHandler] = {}
        self._inflight: set[asyncio.Task[bool]] = set()

    @classmethod
    def get_instance(cls) -> "PipelineDispatcher":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None

    def register(self, event_type: PipelineEventType, handler: StageHandler) -> None:
        self._handlers[event_type] = handler
        logger.debug("Registered pipeline handler", extra={"event_type": event_type.value})

    def has_handler(self, event_type: PipelineEventType) -> bool:
        return event_type in self._handlers

    async def publish(
        self,
        event_type: PipelineEventType,
        recording_id: str,
        payload: dict[str, Any],
    ) -> PipelineEvent:
        """Persist an event and schedule its delivery without waiting for it.

        If the outbox write fails the event is still delivered in-process,
        but it cannot be redelivered by the relay.

        Returns:
            The published event (``id`` is None if the outbox write failed).
        """
        event = PipelineEvent(event_type=event_type, recording_id=recording_id, payload=payload)
        try:
            row = await self._db.insert_pipeline_event(event.to_row())
            event.id = row.get("id")
        except DatabaseError:
            logger.exception(
                "Pipeline event not persisted; delivering without outbox",
                extra={"event_type": event_type.value, "recording_id": recording_id},
            )

        task = asyncio.create_task(self.deliver(event))
        self._inflight.add(task)
        task.add_done_callback(self._on_delivery_done)

        logger.info(
            "Pipeline event published",
            extra={"event_type": event_type.value, "recording_id": recording_id, "event_id": event.id},
        )
        return event

    def _on_delivery_done(self, task: "asyncio.Task[bool]") -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Pipeline delivery task crashed", exc_info=exc)

    async def deliver(self, event: PipelineEvent) -> bool:
        """Run the handler for one event and record the delivery result.

        Returns:
            True if the handler completed.
        """
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.warning(
                "No handler registered for pipeline event",
                extra={"event_type": event.event_type.value, "event_id": event.id},
            )
            return False

        event.attempts += 1
        try:
            await handler(event.payload)
        except Exception as e:
            event.status = DeliveryStatus.FAILED
            event.last_error = str(e)[:1000]
            logger.warning(
                "Pipeline event delivery failed",
                extra={
                    "event_type": event.event_type.value,
                    "event_id": event.id,
                    "recording_id": event.recording_id,
                    "attempts": event.attempts,
                    "error": event.last_error,
                },
            )
            await self._record(event)
            return False

        event.status = DeliveryStatus.DELIVERED
        event.last_error = None
        await self._record(event, delivered=True)
        return True

    async def _record(self, event: PipelineEvent, delivered: bool = False) -> None:
        if event.id is None:
            return
        values: dict[str, Any] = {
            "status": event.status.value,
            "attempts": event.attempts,
            "last_error": event.last_error,
        }
        if delivered:
            values["delivered_at"] = datetime.now(UTC).isoformat()
        await self._db.update_pipeline_event(event.id, values)

    async def drain(self) -> None:
        """Wait for every in-flight delivery (shutdown and tests)."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)


def get_pipeline_dispatcher() -> PipelineDispatcher:
    """Get the process-wide dispatcher."""
    return PipelineDispatcher.get_instance()
