"""Scope Store: lifecycle rules for one scope on top of a backing store.

Each ScopeStore wraps exactly one BackingStore (one logical database) and
only ever reads or writes records of its own scope. Backend failures are
translated into ConnectionUnavailable so that callers deal with a single
error type. Writes are serialized through a per-scope asyncio.Lock, which
is what makes promotion_chain appends compare-and-append instead of
last-writer-wins.
"""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timezone
from typing import Awaitable, TypeVar

from loguru import logger

from .exceptions import ConnectionUnavailable, NotFound, ValidationError
from .interfaces import BackingStore
from .models import (
    ALLOWED_TRANSITIONS,
    AuditEntry,
    Entity,
    MemoryRecord,
    PromotionEntry,
    RecordFilter,
    RecordStatus,
    Scope,
)

T = TypeVar("T")

# Errors that mean "the store is unreachable" rather than "bad request"
_BACKEND_ERRORS = (OSError, sqlite3.Error)


class ScopeStore:
    """CRUD and search primitives for a single scope."""

    def __init__(
        self,
        scope: Scope,
        backend: BackingStore,
        key: str = "",
        chain_warn_length: int = 50,
    ):
        """Initialize scope store.

        Args:
            scope: The scope this store serves
            backend: Backing store for this scope's logical database
            key: Logical database key (session id, project key or user id)
            chain_warn_length: Log a warning when a promotion_chain grows past this
        """
        self.scope = scope
        self.key = key
        self._backend = backend
        self._write_lock = asyncio.Lock()
        self._chain_warn_length = chain_warn_length
        self._connected = False

    def __repr__(self) -> str:
        return f"ScopeStore(scope={self.scope.value!r}, key={self.key!r})"

    @property
    def ephemeral(self) -> bool:
        """Session records are discarded on teardown unless promoted."""
        return self.scope == Scope.SESSION

    @property
    def write_lock(self) -> asyncio.Lock:
        return self._write_lock

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except _BACKEND_ERRORS as e:
            logger.debug(f"{self!r} {operation} failed: {e}")
            raise ConnectionUnavailable(self.scope.value, f"{operation}: {e}") from e

    async def connect(self) -> None:
        await self._call("connect", self._backend.connect())
        self._connected = True

    async def ensure_connected(self) -> None:
        if not self._connected:
            await self.connect()

    async def ping(self) -> bool:
        try:
            if not self._connected:
                await self.connect()
            return bool(await self._call("ping", self._backend.ping()))
        except ConnectionUnavailable:
            return False

    async def close(self) -> None:
        if self._connected:
            await self._call("close", self._backend.close())
            self._connected = False

    async def teardown(self) -> None:
        """Close the store; for the session scope this discards every record."""
        await self.close()
        logger.info(f"{self!r} torn down")

    def _check_scope(self, record: MemoryRecord) -> None:
        if record.scope != self.scope:
            raise ValidationError(
                "scope",
                f"record {record.id} has scope {record.scope.value}, "
                f"store serves {self.scope.value}",
            )

    async def _audit(self, entry: AuditEntry) -> None:
        await self._call("append_audit", self._backend.append_audit(entry))

    # ── Primitives ──────────────────────────────────────────────────────

    async def put(self, record: MemoryRecord) -> MemoryRecord:
        """Insert or replace a record of this scope."""
        self._check_scope(record)
        await self.ensure_connected()
        async with self._write_lock:
            existing = await self._call("get", self._backend.get(record.id))
            await self._call("upsert", self._backend.upsert(record))
            if existing is None:
                await self._audit(AuditEntry(
                    record_id=record.id,
                    scope=self.scope,
                    event="created",
                    new_status=record.status.value,
                ))
        return record

    async def get(self, record_id: str) -> MemoryRecord | None:
        await self.ensure_connected()
        return await self._call("get", self._backend.get(record_id))

    async def require(self, record_id: str) -> MemoryRecord:
        record = await self.get(record_id)
        if record is None:
            raise NotFound(record_id)
        return record

    async def query(self, record_filter: RecordFilter | None = None) -> list[MemoryRecord]:
        await self.ensure_connected()
        return await self._call(
            "query", self._backend.query(record_filter or RecordFilter()),
        )

    async def vector_search(
        self,
        embedding: list[float],
        k: int,
        record_filter: RecordFilter | None = None,
    ) -> list[tuple[MemoryRecord, float]]:
        await self.ensure_connected()
        return await self._call(
            "vector_search",
            self._backend.vector_search(embedding, k, record_filter or RecordFilter()),
        )

    async def keyword_search(
        self,
        text: str,
        k: int,
        record_filter: RecordFilter | None = None,
    ) -> list[tuple[MemoryRecord, float]]:
        await self.ensure_connected()
        return await self._call(
            "keyword_search",
            self._backend.keyword_search(text, k, record_filter or RecordFilter()),
        )

    async def delete(self, record_id: str) -> bool:
        await self.ensure_connected()
        async with self._write_lock:
            deleted = await self._call("delete", self._backend.delete(record_id))
            if deleted:
                await self._audit(AuditEntry(
                    record_id=record_id, scope=self.scope, event="deleted",
                ))
        return deleted

    async def count_by(self, field: str) -> dict[str, int]:
        await self.ensure_connected()
        return await self._call("count_by", self._backend.count_by(field))

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def transition(
        self,
        record_id: str,
        new_status: RecordStatus,
        detail: str = "",
    ) -> MemoryRecord:
        """Move a record to a new status.

        Re-applying the current status is a no-op so that replays are safe.

        Raises:
            NotFound: If the record does not exist in this scope.
            ValidationError: If the transition is not allowed.
        """
        await self.ensure_connected()
        async with self._write_lock:
            record = await self._call("get", self._backend.get(record_id))
            if record is None:
                raise NotFound(record_id)
            if record.status == new_status:
                return record
            if new_status not in ALLOWED_TRANSITIONS[record.status]:
                raise ValidationError(
                    "status",
                    f"cannot move {record_id} from {record.status.value} "
                    f"to {new_status.value}",
                )

            old_status = record.status
            record.status = new_status
            record.updated_at = datetime.now(timezone.utc)
            await self._call("upsert", self._backend.upsert(record))
            await self._audit(AuditEntry(
                record_id=record_id,
                scope=self.scope,
                event="status_change",
                old_status=old_status.value,
                new_status=new_status.value,
                detail=detail,
            ))
        logger.debug(
            f"{self!r} {record_id}: {old_status.value} -> {new_status.value}"
        )
        return record

    async def touch(self, record_ids: list[str], now: datetime | None = None) -> int:
        """Record a recall: bump access_count and last_accessed.

        Returns:
            Number of records updated
        """
        if not record_ids:
            return 0
        now = now or datetime.now(timezone.utc)
        await self.ensure_connected()
        touched = 0
        async with self._write_lock:
            for record_id in record_ids:
                record = await self._call("get", self._backend.get(record_id))
                if record is None or record.status != RecordStatus.ACTIVE:
                    continue
                record.access_count += 1
                record.last_accessed = now
                await self._call("upsert", self._backend.upsert(record))
                touched += 1
        return touched

    async def merge_into(
        self,
        target_id: str,
        candidate: MemoryRecord,
        confidence_boost: float = 0.05,
    ) -> tuple[MemoryRecord, bool]:
        """Merge a promotion candidate into an existing record of this scope.

        The read-check-append happens under the write lock: if the target's
        promotion_chain already references the candidate, nothing changes.

        Returns:
            (target record, applied) where applied is False for a replay
        """
        await self.ensure_connected()
        async with self._write_lock:
            target = await self._call("get", self._backend.get(target_id))
            if target is None:
                raise NotFound(target_id)
            if target.chain_mentions(candidate.id) is not None:
                return target, False

            now = datetime.now(timezone.utc)
            target.importance = max(target.importance, candidate.importance)
            target.confidence = min(target.confidence + confidence_boost, 1.0)
            target.access_count += 1
            target.tags = target.tags + [t for t in candidate.tags if t not in target.tags]
            target.updated_at = now
            target.promotion_chain = target.promotion_chain + [
                PromotionEntry(
                    scope=candidate.scope,
                    record_id=candidate.id,
                    action="merged",
                    timestamp=now,
                )
            ]
            self._warn_chain(target)
            await self._call("upsert", self._backend.upsert(target))
            await self._audit(AuditEntry(
                record_id=target.id,
                scope=self.scope,
                event="merge",
                detail=f"merged {candidate.scope.value}:{candidate.id}",
            ))
        return target, True

    async def create_promoted(self, record: MemoryRecord) -> tuple[MemoryRecord, bool]:
        """Insert a record created by promotion unless it already exists.

        Returns:
            (stored record, applied) where applied is False for a replay
        """
        self._check_scope(record)
        await self.ensure_connected()
        async with self._write_lock:
            existing = await self._call("get", self._backend.get(record.id))
            if existing is not None:
                return existing, False
            self._warn_chain(record)
            await self._call("upsert", self._backend.upsert(record))
            last = record.promotion_chain[-1] if record.promotion_chain else None
            await self._audit(AuditEntry(
                record_id=record.id,
                scope=self.scope,
                event="promotion",
                new_status=record.status.value,
                detail=f"created from {last.scope.value}:{last.record_id}" if last else "",
            ))
        return record, True

    def _warn_chain(self, record: MemoryRecord) -> None:
        if len(record.promotion_chain) > self._chain_warn_length:
            logger.warning(
                f"promotion_chain of {record.id} has {len(record.promotion_chain)} entries"
            )

    async def find_by_chain_source(self, record_id: str) -> list[MemoryRecord]:
        await self.ensure_connected()
        return await self._call(
            "find_by_chain_source", self._backend.find_by_chain_source(record_id),
        )

    # ── Graph / audit ───────────────────────────────────────────────────

    async def link_entities(self, record_id: str, entities: list[Entity]) -> None:
        if not entities:
            return
        await self.ensure_connected()
        async with self._write_lock:
            await self._call(
                "link_entities", self._backend.link_entities(record_id, entities),
            )

    async def related_records(self, entity_name: str, limit: int = 10) -> list[MemoryRecord]:
        await self.ensure_connected()
        return await self._call(
            "related_records", self._backend.related_records(entity_name, limit),
        )

    async def audit_trail(self, record_id: str) -> list[AuditEntry]:
        await self.ensure_connected()
        return await self._call("audit_trail", self._backend.audit_trail(record_id))

    async def changes(self, since: datetime | None = None) -> list[AuditEntry]:
        await self.ensure_connected()
        return await self._call("changes", self._backend.changes(since))
