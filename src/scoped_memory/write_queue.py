"""Bounded local write queue for degraded mode.

Writes that hit an unreachable backing store are parked here, keyed by an
idempotency token, and replayed in arrival order once the store is back.
Enqueueing a token that is already queued is a no-op, so a caller that
retries the same write cannot create a duplicate.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from loguru import logger

from .exceptions import ConnectionUnavailable, MemoryEngineError, MemoryTimeout
from .models import SessionContext


@dataclass
class QueuedWrite:
    token: str
    operation: str  # "store", "forget" or "promote"
    context: SessionContext
    payload: dict[str, Any]
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = 0


class WriteQueue:
    """FIFO of pending writes, unique by token, with a hard size limit."""

    def __init__(self, max_size: int = 1000):
        self._max_size = max_size
        self._entries: OrderedDict[str, QueuedWrite] = OrderedDict()
        self._failures = 0
        self._flush_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, token: str) -> bool:
        return token in self._entries

    @property
    def depth(self) -> int:
        return len(self._entries)

    @property
    def failures(self) -> int:
        """Writes dropped because the queue was full or replay failed."""
        return self._failures

    def pending(self) -> list[QueuedWrite]:
        return list(self._entries.values())

    def enqueue(
        self,
        token: str,
        operation: str,
        context: SessionContext,
        payload: dict[str, Any],
    ) -> bool:
        """Park a write until the store is reachable.

        Returns:
            False if the queue is full and the write was dropped
        """
        if token in self._entries:
            return True
        if len(self._entries) >= self._max_size:
            self._failures += 1
            logger.warning(
                f"Write queue full ({self._max_size}), dropping {operation} {token[:12]}"
            )
            return False
        self._entries[token] = QueuedWrite(
            token=token, operation=operation, context=context, payload=payload,
        )
        logger.debug(f"Queued {operation} {token[:12]} (depth={len(self._entries)})")
        return True

    async def flush(
        self,
        handler: Callable[[QueuedWrite], Awaitable[None]],
    ) -> int:
        """Replay queued writes in order.

        Stops at the first write whose store is still unreachable or too
        slow; it and everything after it stay queued. A write that fails for
        any other engine error is dropped and counted as a failure. Flushes
        never overlap: a second caller waits and then replays what is left.

        Returns:
            Number of writes applied
        """
        async with self._flush_lock:
            return await self._flush(handler)

    async def _flush(self, handler: Callable[[QueuedWrite], Awaitable[None]]) -> int:
        applied = 0
        while self._entries:
            token, entry = next(iter(self._entries.items()))
            entry.attempts += 1
            try:
                await handler(entry)
            except (ConnectionUnavailable, MemoryTimeout) as e:
                logger.info(f"Flush paused with {len(self._entries)} queued writes: {e}")
                break
            except MemoryEngineError as e:
                self._failures += 1
                logger.error(f"Dropping queued {entry.operation} {token[:12]}: {e}")
            else:
                applied += 1
            self._entries.pop(token, None)

        if applied:
            logger.info(f"Flushed {applied} queued writes, {len(self._entries)} remaining")
        return applied
