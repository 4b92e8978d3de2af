"""Memory Service - facade for the scoped memory engine.

Every call takes an explicit SessionContext naming the session, project
and user whose stores it operates on. The service owns the degraded-mode
state machine:

    connected --(ConnectionUnavailable)--> degraded --(reconnect)--> connected

While degraded, writes are parked in a bounded local queue keyed by an
idempotency token and replayed in order on reconnect; reads return what
the reachable scopes and the recall cache can offer, flagged degraded.
Read paths never raise on backend failure.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from .cache import RecallCache
from .config import MemoryConfig
from .consolidation import ConsolidationEngine
from .decay import DecayEngine
from .embedding import create_embedding_provider
from .exceptions import (
    ConnectionUnavailable,
    DuplicateConflict,
    EmbeddingFailure,
    MemoryTimeout,
    NotFound,
    ValidationError,
)
from .inspection import PARTITION_KEYS, partition_records, peek_summary
from .interfaces import BackingStore, EmbeddingProvider, Summarizer
from .models import (
    AuditEntry,
    ConnectionState,
    ConsolidationCandidate,
    Entity,
    ForgetResult,
    MemoryRecord,
    MemoryType,
    PromotionOutcome,
    RecallHit,
    RecallResult,
    RecordFilter,
    RecordStatus,
    Scope,
    ServiceStatus,
    SessionContext,
    WriteResult,
    content_hash,
    validate_metadata_value,
)
from .promotion import PromotionEngine
from .retrieval import STRATEGIES, HybridRetriever
from .scope_store import ScopeStore
from .storage import InMemoryBackend, SQLiteBackend
from .write_queue import QueuedWrite, WriteQueue

T = TypeVar("T")

BackendFactory = Callable[[Scope, str], BackingStore]

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def _parse_scope(value: Scope | str) -> Scope:
    try:
        return Scope(value)
    except ValueError:
        raise ValidationError("scope", f"unknown scope {value!r}") from None


def _parse_type(value: MemoryType | str) -> MemoryType:
    try:
        return MemoryType(value)
    except ValueError:
        raise ValidationError("memory_type", f"unknown memory type {value!r}") from None


def _check_fraction(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(name, f"must be a number, got {type(value).__name__}")
    return float(value)


def _file_key(key: str) -> str:
    """File-system safe name for a project key or user id."""
    safe = _UNSAFE_KEY_CHARS.sub("_", key).strip(".")
    if not safe:
        safe = hashlib.md5(key.encode("utf-8")).hexdigest()
    return safe


class MemoryService:
    """Main memory service facade.

    Provides:
    - store / recall / promote / forget / consolidate / status
    - Degraded mode with a local write queue and a recall cache
    - Lifecycle hooks: auto-promotion and session teardown
    - Overviews: peek, partition, related records, audit trail

    Scope stores are created lazily and cached per (scope, key), so every
    session served by this process shares one write lock per project or
    user database.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        embedder: EmbeddingProvider | None = None,
        backend_factory: BackendFactory | None = None,
        summarizer: Summarizer | None = None,
    ):
        """Initialize memory service.

        Args:
            config: Memory configuration (uses defaults if not provided)
            embedder: Embedding provider (built from config if not provided)
            backend_factory: Builds the backing store for a (scope, key)
            summarizer: Content producer for consolidated records
        """
        self.config = config or MemoryConfig()
        self._owns_embedder = embedder is None
        self._embedder = embedder or create_embedding_provider(self.config.embedding)
        self._backend_factory = backend_factory or self._default_backend

        self._decay = DecayEngine(self.config.decay)
        self._retriever = HybridRetriever(self._embedder, self._decay, self.config.retrieval)
        self._promoter = PromotionEngine(self.config.promotion)
        self._consolidator = ConsolidationEngine(
            self.config.consolidation, self._decay, summarizer,
        )

        self._stores: dict[tuple[Scope, str], ScopeStore] = {}
        self._queue = WriteQueue(self.config.degraded.queue_max_size)
        self._cache = RecallCache(self.config.degraded.recall_cache_size)
        self._state = ConnectionState.CONNECTED
        self._unavailable: set[tuple[Scope, str]] = set()
        self._last_reconnect_attempt = 0.0

        logger.info(
            f"MemoryService initialized: backend={self.config.storage.backend}, "
            f"data_dir={self.config.storage.data_dir!r}"
        )

    async def __aenter__(self) -> "MemoryService":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def write_queue(self) -> WriteQueue:
        return self._queue

    # ── Store management ────────────────────────────────────────────────

    def _default_backend(self, scope: Scope, key: str) -> BackingStore:
        if scope == Scope.SESSION or self.config.storage.backend == "memory":
            return InMemoryBackend(f"{scope.value}:{key}")
        subdir = "projects" if scope == Scope.PROJECT else "users"
        path = Path(self.config.storage.data_dir) / subdir / f"{_file_key(key)}.db"
        return SQLiteBackend(str(path))

    def store_for(self, ctx: SessionContext, scope: Scope) -> ScopeStore:
        """The (cached) scope store for ctx's session, project or user."""
        key = (scope, ctx.key_for(scope))
        store = self._stores.get(key)
        if store is None:
            store = ScopeStore(
                scope,
                self._backend_factory(scope, key[1]),
                key=key[1],
                chain_warn_length=self.config.promotion.promotion_chain_warn_length,
            )
            self._stores[key] = store
        return store

    def _mark_unavailable(self, ctx: SessionContext, scope: Scope) -> None:
        self._unavailable.add((scope, ctx.key_for(scope)))
        if self._state == ConnectionState.CONNECTED:
            self._state = ConnectionState.DEGRADED
            self._last_reconnect_attempt = time.monotonic()
            logger.warning(f"Entering degraded mode: {scope.value} scope unavailable")

    def _is_unavailable(self, ctx: SessionContext, scope: Scope) -> bool:
        return (scope, ctx.key_for(scope)) in self._unavailable

    async def _hot(
        self, awaitable: Awaitable[T], operation: str, scope: Scope | None = None,
    ) -> T:
        timeout = self.config.degraded.hot_path_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise MemoryTimeout(operation, timeout, scope.value if scope else None) from None

    async def _maybe_reconnect(self, ctx: SessionContext) -> None:
        if self._state != ConnectionState.DEGRADED:
            return
        elapsed = time.monotonic() - self._last_reconnect_attempt
        if elapsed >= self.config.degraded.reconnect_interval_seconds:
            await self.reconnect(ctx)

    async def reconnect(self, ctx: SessionContext | None = None) -> bool:
        """Ping unreachable stores and flush queued writes once all are back.

        Returns:
            True when the service ends up connected
        """
        self._last_reconnect_attempt = time.monotonic()
        for key in list(self._unavailable):
            store = self._stores.get(key)
            if store is None or await store.ping():
                self._unavailable.discard(key)

        if self._unavailable:
            logger.info(
                f"Reconnect: {len(self._unavailable)} stores still unavailable, "
                f"{self._queue.depth} writes queued"
            )
            return False

        if self._state == ConnectionState.DEGRADED:
            self._state = ConnectionState.CONNECTED
            logger.info("Reconnected, leaving degraded mode")

        await self._queue.flush(self._replay)
        return self._state == ConnectionState.CONNECTED

    async def _replay(self, entry: QueuedWrite) -> None:
        ctx = entry.context
        try:
            if entry.operation == "store":
                await self._apply_store(ctx, entry.payload["record"], entry.payload["entities"])
            elif entry.operation == "forget":
                await self._forget_now(ctx, entry.payload["record_id"], entry.payload["reason"])
            elif entry.operation == "promote":
                await self._promote_now(
                    ctx, entry.payload["record_id"],
                    entry.payload["target_scope"], entry.payload["reason"],
                )
            else:
                raise ValidationError("operation", f"unknown queued operation {entry.operation!r}")
        except (ConnectionUnavailable, MemoryTimeout) as e:
            if e.scope is not None:
                self._mark_unavailable(ctx, Scope(e.scope))
            raise

    def _enqueue(
        self,
        token: str,
        operation: str,
        ctx: SessionContext,
        payload: dict[str, Any],
    ) -> bool:
        return self._queue.enqueue(token, operation, ctx, payload)

    # ── store ───────────────────────────────────────────────────────────

    async def store(
        self,
        ctx: SessionContext,
        content: str,
        memory_type: MemoryType | str,
        scope: Scope | str,
        importance: float = 0.5,
        confidence: float = 0.7,
        tags: list[str] | None = None,
        related_entities: list[str | Entity] | None = None,
        summary: str | None = None,
        domain: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WriteResult:
        """Store a memory record.

        Embedding failures are non-fatal: the record is stored keyword-only
        and the result carries an ``embedding_failed`` warning. When the
        store is unreachable the write is queued (status ``queued``).

        Raises:
            ValidationError: On an unknown type or scope, empty content or
                unsupported metadata values.
        """
        scope = _parse_scope(scope)
        memory_type = _parse_type(memory_type)
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content", "must be a non-empty string")
        importance = _check_fraction("importance", importance)
        confidence = _check_fraction("confidence", confidence)
        try:
            metadata = validate_metadata_value(metadata or {})
        except ValueError as e:
            raise ValidationError("metadata", str(e)) from None
        entities = [
            e if isinstance(e, Entity) else Entity(name=str(e))
            for e in (related_entities or [])
        ]

        token = content_hash(f"{scope.value}:{ctx.key_for(scope)}", content)
        if token in self._queue:
            queued = next(w for w in self._queue.pending() if w.token == token)
            return WriteResult(id=queued.payload["record"].id, scope=scope, status="queued")

        warnings: list[str] = []
        embedding = None
        try:
            embedding = await self._embedder.embed(content)
        except EmbeddingFailure as e:
            logger.warning(f"Storing keyword-only, embedding failed: {e}")
            warnings.append("embedding_failed")

        record = MemoryRecord(
            scope=scope,
            memory_type=memory_type,
            content=content,
            summary=summary,
            embedding=embedding,
            importance=importance,
            confidence=confidence,
            tags=tags or [],
            domain=domain,
            source_session=ctx.session_id,
            source_project=ctx.project_key,
            metadata=metadata,
        )

        await self._maybe_reconnect(ctx)
        if self._state == ConnectionState.DEGRADED:
            return self._queue_store(ctx, token, record, entities, warnings)

        try:
            record_id, extra = await self._apply_store(ctx, record, entities)
        except (ConnectionUnavailable, MemoryTimeout) as e:
            logger.warning(f"Store of {record.id} deferred: {e}")
            self._mark_unavailable(ctx, scope)
            return self._queue_store(ctx, token, record, entities, warnings)

        logger.info(f"Stored {memory_type.value} memory {record_id} in {scope.value} scope")
        return WriteResult(id=record_id, scope=scope, warnings=warnings + extra)

    def _queue_store(
        self,
        ctx: SessionContext,
        token: str,
        record: MemoryRecord,
        entities: list[Entity],
        warnings: list[str],
    ) -> WriteResult:
        if not self._enqueue(token, "store", ctx, {"record": record, "entities": entities}):
            return WriteResult(
                id=record.id, scope=record.scope, status="dropped",
                warnings=warnings + ["queue_full"],
            )
        return WriteResult(id=record.id, scope=record.scope, status="queued", warnings=warnings)

    async def _apply_store(
        self,
        ctx: SessionContext,
        record: MemoryRecord,
        entities: list[Entity],
    ) -> tuple[str, list[str]]:
        """Write a record unless it (or identical content) is already there.

        Returns:
            (id of the stored or existing record, warnings)
        """
        store = self.store_for(ctx, record.scope)
        existing = await self._hot(store.get(record.id), "store", record.scope)
        if existing is not None:
            if existing.content_hash != record.content_hash:
                raise DuplicateConflict(record.id, existing.id)
            return existing.id, []

        same_content = await self._hot(
            store.keyword_search(record.content, 5, RecordFilter()), "store", record.scope,
        )
        for other, _ in same_content:
            if other.content_hash == record.content_hash:
                logger.debug(f"Identical content already stored as {other.id}")
                return other.id, ["duplicate_content"]

        await self._hot(store.put(record), "store", record.scope)

        warnings: list[str] = []
        if entities:
            try:
                await store.link_entities(record.id, entities)
            except ConnectionUnavailable as e:
                logger.warning(f"Entity linking for {record.id} failed: {e}")
                warnings.append("entity_link_failed")
        return record.id, warnings

    # ── recall ──────────────────────────────────────────────────────────

    async def recall(
        self,
        ctx: SessionContext,
        query: str,
        scopes: list[Scope | str] | None = None,
        types: list[MemoryType | str] | None = None,
        strategy: str = "hybrid",
        limit: int = 10,
        min_strength: float = 0.0,
        profile: str | None = None,
    ) -> RecallResult:
        """Ranked records across scopes; never raises on backend failure.

        Raises:
            ValidationError: On unknown scopes, types, strategy or profile.
        """
        scope_list = [_parse_scope(s) for s in scopes] if scopes else list(Scope)
        type_list = [_parse_type(t) for t in types] if types else None

        await self._maybe_reconnect(ctx)

        cache_key = RecallCache.make_key(
            ctx.session_id, ctx.project_key, ctx.user_id, query,
            sorted(s.value for s in scope_list),
            sorted(t.value for t in type_list or []),
            strategy, limit, min_strength, profile,
        )

        stores = {
            scope: self.store_for(ctx, scope)
            for scope in scope_list
            if not self._is_unavailable(ctx, scope)
        }
        skipped = [scope for scope in scope_list if scope not in stores]

        if stores:
            result = await self._retriever.retrieve(
                query, stores,
                types=type_list,
                strategy=strategy,
                limit=limit,
                min_strength=min_strength,
                profile=profile,
            )
        else:
            if strategy not in STRATEGIES:
                raise ValidationError("strategy", f"must be one of {STRATEGIES}, got {strategy!r}")
            self._retriever.scope_weights(profile)
            result = RecallResult()

        for scope in result.failed_scopes:
            self._mark_unavailable(ctx, scope)
        failed = set(result.failed_scopes) | set(skipped)

        if not failed:
            self._cache.set(cache_key, result)
            return result
        return self._degraded_recall(cache_key, result, failed, limit)

    def _degraded_recall(
        self,
        cache_key: str,
        partial: RecallResult,
        failed: set[Scope],
        limit: int,
    ) -> RecallResult:
        hits: list[RecallHit] = list(partial.results)
        cached = self._cache.get(cache_key)
        if cached is not None:
            present = {(h.scope, h.record.id) for h in hits}
            hits.extend(
                h for h in cached.results
                if h.scope in failed and (h.scope, h.record.id) not in present
            )
            hits.sort(key=lambda h: h.score, reverse=True)
        return RecallResult(
            results=hits[:limit],
            degraded=True,
            failed_scopes=sorted(failed, key=lambda s: s.rank),
        )

    # ── promote ─────────────────────────────────────────────────────────

    async def promote(
        self,
        ctx: SessionContext,
        record_id: str,
        target_scope: Scope | str,
        reason: str = "",
    ) -> PromotionOutcome:
        """Explicitly promote a record into a broader scope.

        Bypasses the eligibility threshold. Replaying a promotion that
        already happened is a no-op reported with ``replayed=True``.

        Raises:
            NotFound: If no scope holds the record.
            ValidationError: If target_scope is not strictly broader than
                the record's scope.
        """
        target = _parse_scope(target_scope)
        token = f"promote:{ctx.key_for(target)}:{record_id}:{target.value}"
        payload = {"record_id": record_id, "target_scope": target, "reason": reason}

        await self._maybe_reconnect(ctx)
        if self._state == ConnectionState.DEGRADED:
            return self._queue_promote(ctx, token, payload)

        try:
            return await self._promote_now(ctx, record_id, target, reason)
        except ConnectionUnavailable as e:
            logger.warning(f"Promotion of {record_id} deferred: {e}")
            self._mark_unavailable(ctx, Scope(e.scope))
            return self._queue_promote(ctx, token, payload)

    def _queue_promote(
        self,
        ctx: SessionContext,
        token: str,
        payload: dict[str, Any],
    ) -> PromotionOutcome:
        self._enqueue(token, "promote", ctx, payload)
        target: Scope = payload["target_scope"]
        return PromotionOutcome(
            action="queued",
            target_id="",
            source_id=payload["record_id"],
            target_scope=target,
            reason=payload["reason"],
            queued=True,
        )

    async def _locate_source(
        self,
        ctx: SessionContext,
        record_id: str,
        target: Scope,
    ) -> tuple[ScopeStore, MemoryRecord]:
        # Broadest narrower scope first: a record promoted by creation keeps
        # its id, so the most recent copy lives in the broader scope
        narrower = sorted(
            (s for s in Scope if target.is_broader_than(s)),
            key=lambda s: s.rank, reverse=True,
        )
        for scope in narrower:
            store = self.store_for(ctx, scope)
            record = await store.get(record_id)
            if record is not None:
                return store, record

        for scope in Scope:
            if scope in narrower:
                continue
            if await self.store_for(ctx, scope).get(record_id) is not None:
                raise ValidationError(
                    "target_scope",
                    f"{target.value} is not broader than {scope.value}",
                )
        raise NotFound(record_id)

    async def _promote_now(
        self,
        ctx: SessionContext,
        record_id: str,
        target: Scope,
        reason: str,
    ) -> PromotionOutcome:
        source, record = await self._locate_source(ctx, record_id, target)
        return await self._promoter.promote(
            record, source, self.store_for(ctx, target), reason=reason or "explicit",
        )

    async def run_auto_promotion(
        self,
        ctx: SessionContext,
        source_scope: Scope | str = Scope.SESSION,
    ) -> list[PromotionOutcome]:
        """Promote every eligible record of source_scope one scope up."""
        source_scope = _parse_scope(source_scope)
        target_scope = source_scope.next_scope()
        if target_scope is None:
            return []
        if self._state == ConnectionState.DEGRADED:
            logger.warning(
                f"Skipping auto-promotion {source_scope.value} -> {target_scope.value} "
                f"while degraded"
            )
            return []
        return await self._promoter.run_auto(
            self.store_for(ctx, source_scope), self.store_for(ctx, target_scope),
        )

    # ── forget ──────────────────────────────────────────────────────────

    async def forget(
        self,
        ctx: SessionContext,
        record_id: str,
        reason: str = "",
    ) -> ForgetResult:
        """Soft-delete a record (status archived). Idempotent.

        Raises:
            NotFound: If no scope holds the record.
        """
        token = f"forget:{record_id}"
        payload = {"record_id": record_id, "reason": reason}

        await self._maybe_reconnect(ctx)
        if self._state == ConnectionState.DEGRADED:
            self._enqueue(token, "forget", ctx, payload)
            return ForgetResult(id=record_id, status="queued")

        try:
            return await self._forget_now(ctx, record_id, reason)
        except ConnectionUnavailable as e:
            logger.warning(f"Forget of {record_id} deferred: {e}")
            self._mark_unavailable(ctx, Scope(e.scope))
            self._enqueue(token, "forget", ctx, payload)
            return ForgetResult(id=record_id, status="queued")

    async def _forget_now(
        self,
        ctx: SessionContext,
        record_id: str,
        reason: str,
    ) -> ForgetResult:
        found: list[tuple[ScopeStore, MemoryRecord]] = []
        for scope in Scope:
            store = self.store_for(ctx, scope)
            record = await store.get(record_id)
            if record is not None:
                found.append((store, record))
        if not found:
            raise NotFound(record_id)

        live = [
            (store, record) for store, record in found
            if record.status in (RecordStatus.ACTIVE, RecordStatus.CONSOLIDATED)
        ]
        if live:
            for store, record in live:
                await store.transition(
                    record.id, RecordStatus.ARCHIVED, detail=f"forget: {reason or '-'}",
                )
            self._cache.invalidate()
            logger.info(f"Forgot memory {record_id} ({reason or 'no reason given'})")
            return ForgetResult(id=record_id, status="archived")

        if any(record.status == RecordStatus.ARCHIVED for _, record in found):
            return ForgetResult(id=record_id, status="already_archived")
        raise ValidationError(
            "status", f"{record_id} was promoted; forget the record it was merged into",
        )

    # ── consolidate / status ────────────────────────────────────────────

    async def consolidate(
        self,
        ctx: SessionContext,
        scope: Scope | str,
        strategy: str = "all",
        dry_run: bool = True,
    ) -> list[ConsolidationCandidate]:
        """Cluster, archive and prune one scope; no side effects when dry_run.

        Raises:
            ConnectionUnavailable: If the scope's store is unreachable.
        """
        scope = _parse_scope(scope)
        try:
            candidates = await self._consolidator.consolidate(
                self.store_for(ctx, scope), strategy=strategy, dry_run=dry_run,
            )
        except ConnectionUnavailable:
            self._mark_unavailable(ctx, scope)
            raise
        if candidates and not dry_run:
            self._cache.invalidate()
        return candidates

    async def status(self, ctx: SessionContext) -> ServiceStatus:
        """Connection state, record counts and queue health. Never raises."""
        counts_by_scope: dict[str, int] = {}
        counts_by_type: dict[str, int] = {}
        unavailable: list[Scope] = []

        for scope in Scope:
            try:
                by_status = await self._hot(
                    self.store_for(ctx, scope).count_by("status"), "status",
                )
                by_type = await self._hot(
                    self.store_for(ctx, scope).count_by("memory_type"), "status",
                )
            except (ConnectionUnavailable, MemoryTimeout) as e:
                logger.warning(f"Status of {scope.value} scope unavailable: {e}")
                self._mark_unavailable(ctx, scope)
                unavailable.append(scope)
                continue
            except Exception as e:
                logger.warning(f"Status of {scope.value} scope failed: {e!r}")
                unavailable.append(scope)
                continue
            counts_by_scope[scope.value] = sum(by_status.values())
            for memory_type, count in by_type.items():
                counts_by_type[memory_type] = counts_by_type.get(memory_type, 0) + count

        return ServiceStatus(
            connection_state=self._state,
            counts_by_scope=counts_by_scope,
            counts_by_type=counts_by_type,
            queue_depth=self._queue.depth,
            queue_failures=self._queue.failures,
            unavailable_scopes=unavailable,
        )

    # ── Session lifecycle ───────────────────────────────────────────────

    async def end_session(self, ctx: SessionContext) -> list[PromotionOutcome]:
        """Auto-promote session -> project -> user, then drop the session store.

        While degraded the session store is kept so that its records can
        still be promoted at a later trigger.
        """
        outcomes = await self.run_auto_promotion(ctx, Scope.SESSION)
        outcomes += await self.run_auto_promotion(ctx, Scope.PROJECT)

        if self._state == ConnectionState.DEGRADED:
            logger.warning(f"Session {ctx.session_id} kept: service is degraded")
            return outcomes

        store = self._stores.pop((Scope.SESSION, ctx.session_id), None)
        if store is not None:
            try:
                await store.teardown()
            except ConnectionUnavailable as e:
                logger.warning(f"Session store teardown failed: {e}")
        logger.info(f"Session {ctx.session_id} ended, {len(outcomes)} promotions")
        return outcomes

    # ── Overviews ───────────────────────────────────────────────────────

    async def _gather_records(
        self,
        ctx: SessionContext,
        scopes: list[Scope],
        record_filter: RecordFilter,
    ) -> tuple[list[tuple[Scope, MemoryRecord]], bool]:
        records: list[tuple[Scope, MemoryRecord]] = []
        degraded = False
        for scope in scopes:
            try:
                for record in await self.store_for(ctx, scope).query(record_filter):
                    records.append((scope, record))
            except ConnectionUnavailable as e:
                logger.warning(f"Skipping {scope.value} scope: {e}")
                self._mark_unavailable(ctx, scope)
                degraded = True
        return records, degraded

    async def peek(
        self,
        ctx: SessionContext,
        scope: Scope | str | None = None,
        sample_n: int = 5,
        focus: str | None = None,
    ) -> dict:
        """Statistical overview of one or all scopes with sample records."""
        scopes = [_parse_scope(scope)] if scope else list(Scope)
        records, degraded = await self._gather_records(
            ctx, scopes, RecordFilter(statuses=list(RecordStatus)),
        )

        samples: list[tuple[Scope, MemoryRecord]] = []
        if focus:
            for s in scopes:
                try:
                    hits = await self.store_for(ctx, s).keyword_search(
                        focus, sample_n, RecordFilter(),
                    )
                except ConnectionUnavailable:
                    degraded = True
                    continue
                samples.extend((s, record) for record, _ in hits)
        else:
            samples = [(s, r) for s, r in records if r.status == RecordStatus.ACTIVE]

        summary = peek_summary(records, samples, sample_n)
        summary["scopes_queried"] = [s.value for s in scopes]
        summary["degraded"] = degraded
        return summary

    async def partition(
        self,
        ctx: SessionContext,
        by: str,
        scope: Scope | str | None = None,
        max_partitions: int = 4,
    ) -> list[dict]:
        """Partition descriptors (key, count, avg_importance) for planning sub-queries."""
        if by not in PARTITION_KEYS:
            raise ValidationError("partition_by", f"must be one of {PARTITION_KEYS}, got {by!r}")
        if by == "scope" or not scope:
            scopes = list(Scope)
        else:
            scopes = [_parse_scope(scope)]
        records, _ = await self._gather_records(ctx, scopes, RecordFilter())
        return partition_records(records, by, max_partitions)

    async def related(
        self,
        ctx: SessionContext,
        entity_name: str,
        scopes: list[Scope | str] | None = None,
        limit: int = 10,
    ) -> list[MemoryRecord]:
        """Active records linked to an entity, most important first."""
        scope_list = [_parse_scope(s) for s in scopes] if scopes else list(Scope)
        records: list[MemoryRecord] = []
        for scope in scope_list:
            try:
                records.extend(
                    await self.store_for(ctx, scope).related_records(entity_name, limit)
                )
            except ConnectionUnavailable as e:
                logger.warning(f"Related lookup in {scope.value} scope failed: {e}")
                self._mark_unavailable(ctx, scope)
        records.sort(key=lambda r: r.importance, reverse=True)
        return records[:limit]

    async def audit_trail(self, ctx: SessionContext, record_id: str) -> list[AuditEntry]:
        """Lifecycle events for a record id across every scope, oldest first."""
        entries: list[AuditEntry] = []
        for scope in Scope:
            try:
                entries.extend(await self.store_for(ctx, scope).audit_trail(record_id))
            except ConnectionUnavailable as e:
                logger.warning(f"Audit trail in {scope.value} scope unavailable: {e}")
        entries.sort(key=lambda e: e.timestamp)
        return entries

    async def close(self) -> None:
        """Close every open scope store and the embedder this service built."""
        for store in list(self._stores.values()):
            try:
                await store.close()
            except ConnectionUnavailable as e:
                logger.warning(f"Closing {store!r} failed: {e}")
        self._stores.clear()
        if self._owns_embedder:
            await self._embedder.close()
        logger.info("MemoryService closed")
