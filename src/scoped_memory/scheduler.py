"""Lifecycle scheduler.

Hooks publish lifecycle events (session start and end, pre-compaction,
periodic maintenance) onto an asyncio.Queue; the scheduler consumes them
and runs the matching cool-path jobs on the memory service. A failed job
is logged and dropped; it runs again at the next trigger.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from loguru import logger

from .config import SchedulerConfig
from .memory_service import MemoryService
from .models import Scope, SessionContext


class LifecycleEvent(str, Enum):
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    PRE_COMPACT = "pre_compact"
    MAINTENANCE = "maintenance"


@dataclass
class ScheduledEvent:
    event: LifecycleEvent
    context: SessionContext
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class LifecycleScheduler:
    """Consumes lifecycle events and invokes promotion and consolidation."""

    def __init__(self, service: MemoryService, config: SchedulerConfig | None = None):
        self._service = service
        self._config = config or SchedulerConfig()
        self._queue: asyncio.Queue[ScheduledEvent] = asyncio.Queue(
            maxsize=self._config.max_pending_events,
        )
        self._processed = 0
        self._failed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def stats(self) -> dict[str, int]:
        return {"processed": self._processed, "failed": self._failed, "pending": self.pending}

    def publish(self, event: LifecycleEvent | str, ctx: SessionContext) -> bool:
        """Enqueue an event without blocking.

        Returns:
            False when the scheduler is disabled or the queue is full
        """
        if not self._config.enabled:
            return False
        try:
            self._queue.put_nowait(ScheduledEvent(LifecycleEvent(event), ctx))
        except asyncio.QueueFull:
            logger.warning(f"Lifecycle queue full, dropping {LifecycleEvent(event).value}")
            return False
        return True

    async def drain(self) -> int:
        """Process every event currently queued.

        Returns:
            Number of events handled
        """
        handled = 0
        while not self._queue.empty():
            scheduled = self._queue.get_nowait()
            try:
                await self._dispatch(scheduled)
            finally:
                self._queue.task_done()
            handled += 1
        return handled

    async def run(self, shutdown_event: asyncio.Event, poll_interval: float = 1.0) -> None:
        """Consume events until shutdown_event is set."""
        logger.info("LifecycleScheduler started")
        while not shutdown_event.is_set():
            try:
                scheduled = await asyncio.wait_for(self._queue.get(), timeout=poll_interval)
            except asyncio.TimeoutError:
                continue
            try:
                await self._dispatch(scheduled)
            finally:
                self._queue.task_done()
        logger.info("LifecycleScheduler stopped")

    async def _dispatch(self, scheduled: ScheduledEvent) -> None:
        event, ctx = scheduled.event, scheduled.context
        logger.debug(f"Handling {event.value} for session {ctx.session_id}")
        try:
            await self.handle(event, ctx)
        except Exception as e:
            self._failed += 1
            logger.error(f"Lifecycle job {event.value} failed: {e}")
        else:
            self._processed += 1

    async def handle(self, event: LifecycleEvent, ctx: SessionContext) -> None:
        """Run the jobs bound to one lifecycle event."""
        if event == LifecycleEvent.SESSION_START:
            await self._service.reconnect(ctx)
        elif event == LifecycleEvent.PRE_COMPACT:
            await self._service.run_auto_promotion(ctx, Scope.SESSION)
        elif event == LifecycleEvent.SESSION_END:
            await self._service.end_session(ctx)
            if self._config.consolidate_on_session_end:
                await self._maintenance(ctx)
        elif event == LifecycleEvent.MAINTENANCE:
            await self._maintenance(ctx)

    async def _maintenance(self, ctx: SessionContext) -> None:
        if not self._service.config.consolidation.enabled:
            return
        for scope in (Scope.PROJECT, Scope.USER):
            await self._service.consolidate(ctx, scope, strategy="all", dry_run=False)
