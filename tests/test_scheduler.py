"""
Lifecycle scheduler tests.

The service is replaced with a MagicMock whose coroutine methods are
AsyncMocks, except for the end-to-end test at the bottom.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from scoped_memory.config import MemoryConfig, SchedulerConfig
from scoped_memory.exceptions import ConnectionUnavailable
from scoped_memory.models import Scope
from scoped_memory.scheduler import LifecycleEvent, LifecycleScheduler


@pytest.fixture
def mock_service():
    service = MagicMock()
    service.config = MemoryConfig()
    service.reconnect = AsyncMock(return_value=True)
    service.run_auto_promotion = AsyncMock(return_value=[])
    service.end_session = AsyncMock(return_value=[])
    service.consolidate = AsyncMock(return_value=[])
    return service


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


class TestPublish:
    def test_publish_accepts_strings(self, mock_service, ctx):
        scheduler = LifecycleScheduler(mock_service)
        assert scheduler.publish("session_start", ctx) is True
        assert scheduler.pending == 1

    def test_disabled_scheduler_drops_events(self, mock_service, ctx):
        scheduler = LifecycleScheduler(mock_service, SchedulerConfig(enabled=False))
        assert scheduler.publish(LifecycleEvent.MAINTENANCE, ctx) is False
        assert scheduler.pending == 0

    def test_full_queue(self, mock_service, ctx):
        scheduler = LifecycleScheduler(mock_service, SchedulerConfig(max_pending_events=1))
        assert scheduler.publish(LifecycleEvent.MAINTENANCE, ctx) is True
        assert scheduler.publish(LifecycleEvent.MAINTENANCE, ctx) is False


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    async def test_events_map_to_jobs(self, mock_service, ctx):
        scheduler = LifecycleScheduler(mock_service)
        for event in LifecycleEvent:
            scheduler.publish(event, ctx)

        assert await scheduler.drain() == 4

        mock_service.reconnect.assert_awaited_once_with(ctx)
        mock_service.run_auto_promotion.assert_awaited_once_with(ctx, Scope.SESSION)
        mock_service.end_session.assert_awaited_once_with(ctx)
        assert [c.args[1] for c in mock_service.consolidate.await_args_list] == [
            Scope.PROJECT, Scope.USER,
        ]
        assert mock_service.consolidate.await_args_list[0].kwargs == {
            "strategy": "all", "dry_run": False,
        }
        assert scheduler.stats == {"processed": 4, "failed": 0, "pending": 0}

    async def test_session_end_can_trigger_maintenance(self, mock_service, ctx):
        scheduler = LifecycleScheduler(
            mock_service, SchedulerConfig(consolidate_on_session_end=True),
        )
        await scheduler.handle(LifecycleEvent.SESSION_END, ctx)
        assert mock_service.consolidate.await_count == 2

    async def test_maintenance_respects_disabled_consolidation(self, mock_service, ctx):
        mock_service.config = MemoryConfig(consolidation={"enabled": False})
        scheduler = LifecycleScheduler(mock_service)
        await scheduler.handle(LifecycleEvent.MAINTENANCE, ctx)
        mock_service.consolidate.assert_not_awaited()

    async def test_failed_job_is_logged_and_dropped(self, mock_service, ctx):
        mock_service.consolidate.side_effect = ConnectionUnavailable("project")
        scheduler = LifecycleScheduler(mock_service)
        scheduler.publish(LifecycleEvent.MAINTENANCE, ctx)
        scheduler.publish(LifecycleEvent.SESSION_START, ctx)

        await scheduler.drain()

        assert scheduler.stats == {"processed": 1, "failed": 1, "pending": 0}
        mock_service.reconnect.assert_awaited_once()

    async def test_run_until_shutdown(self, mock_service, ctx):
        scheduler = LifecycleScheduler(mock_service)
        shutdown = asyncio.Event()
        task = asyncio.create_task(scheduler.run(shutdown, poll_interval=0.01))

        scheduler.publish(LifecycleEvent.PRE_COMPACT, ctx)
        for _ in range(100):
            if scheduler.stats["processed"]:
                break
            await asyncio.sleep(0.01)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)

        mock_service.run_auto_promotion.assert_awaited_once_with(ctx, Scope.SESSION)


async def test_session_end_against_real_service(service, ctx):
    stored = await service.store(
        ctx, "Deploys go through the release branch", "convention", "session",
        importance=0.9, confidence=0.9,
    )
    scheduler = LifecycleScheduler(service)

    scheduler.publish(LifecycleEvent.SESSION_END, ctx)
    await scheduler.drain()

    assert await service.store_for(ctx, Scope.PROJECT).get(stored.id) is not None
    assert scheduler.stats["processed"] == 1
