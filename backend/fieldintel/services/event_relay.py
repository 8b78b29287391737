"""Background redelivery of pipeline events.

Runs every ``interval_seconds`` and re-delivers outbox events that are still
``pending`` or ``failed`` after a grace period, until they reach the attempt
limit. Together with idempotent stages this gives at-least-once handoff.

Usage:
    # In FastAPI startup
    relay = get_event_relay()
    await relay.start()

    # In FastAPI shutdown
    await relay.stop()
"""

import asyncio
import contextlib
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from fieldintel.core.config import settings
from fieldintel.db.supabase import SupabaseClient
from fieldintel.models.events import PipelineEvent
from fieldintel.services.dispatch import PipelineDispatcher, get_pipeline_dispatcher

logger = logging.getLogger(__name__)


class PipelineEventRelay:
    """Periodically redelivers undelivered pipeline events."""

    def __init__(
        self,
        dispatcher: PipelineDispatcher,
        db: Any = SupabaseClient,
        interval_seconds: int = 60,
        grace_seconds: int = 120,
        max_attempts: int = 5,
    ) -> None:
        """Initialize the relay.

        Args:
            dispatcher: Dispatcher whose handlers perform delivery.
            db: Persistence layer exposing ``list_undelivered_events``.
            interval_seconds: Sleep between sweeps.
            grace_seconds: Minimum event age before it is retried, so
                in-flight first deliveries are left alone.
            max_attempts: Events with this many attempts are left ``failed``.
        """
        self._dispatcher = dispatcher
        self._db = db
        self._interval_seconds = interval_seconds
        self._grace = timedelta(seconds=grace_seconds)
        self._max_attempts = max_attempts
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.debug("Event relay already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._relay_loop())
        logger.info(
            "Event relay started",
            extra={"interval_seconds": self._interval_seconds, "max_attempts": self._max_attempts},
        )

    async def stop(self) -> None:
        if not self._running:
            logger.debug("Event relay not running")
            return
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        logger.info("Event relay stopped")

    async def _relay_loop(self) -> None:
        while self._running:
            try:
                await self.redeliver_due()
            except Exception:
                # Keep sweeping; the next pass retries
                logger.exception("Error in event relay loop")
            await asyncio.sleep(self._interval_seconds)

    async def redeliver_due(self, now: datetime | None = None) -> tuple[int, int]:
        """Run one sweep.

        Returns:
            (delivered, failed) counts for this sweep.
        """
        cutoff = (now or datetime.now(UTC)) - self._grace
        rows = await self._db.list_undelivered_events(cutoff.isoformat(), self._max_attempts)
        if not rows:
            return 0, 0

        logger.info("Redelivering pipeline events", extra={"count": len(rows)})
        delivered = failed = 0
        # Sequential on purpose: each redelivery runs a whole stage
        for row in rows:
            event = PipelineEvent.from_row(row)
            if await self._dispatcher.deliver(event):
                delivered += 1
            else:
                failed += 1

        logger.info(
            "Event relay sweep finished",
            extra={"delivered": delivered, "failed": failed},
        )
        return delivered, failed


_event_relay: PipelineEventRelay | None = None


def get_event_relay() -> PipelineEventRelay:
    """Get or create the event relay singleton."""
    global _event_relay
    if _event_relay is None:
        _event_relay = PipelineEventRelay(
            get_pipeline_dispatcher(),
            interval_seconds=settings.EVENT_RELAY_INTERVAL_SECONDS,
            grace_seconds=settings.EVENT_RELAY_GRACE_SECONDS,
            max_attempts=settings.EVENT_RELAY_MAX_ATTEMPTS,
        )
    return _event_relay
