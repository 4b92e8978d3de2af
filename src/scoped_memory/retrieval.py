"""Cross-scope hybrid retrieval.

Per scope, a vector search and a keyword search run over active records
with strength >= min_strength. The two ranked lists are fused with
Reciprocal Rank Fusion and every candidate gets a final score:

  final = rrf_weight * rrf_normalized + importance_weight * importance
          + strength_weight * strength

Scopes are searched in parallel, each under its own timeout. A scope that
times out or errors contributes nothing and marks the result
degraded. The merged list is multiplied by the scope weight profile,
deduplicated by embedding similarity, sorted and cut to ``limit``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Mapping

from loguru import logger

from .config import RetrievalConfig
from .decay import DecayEngine
from .embedding import EmbeddingService
from .exceptions import ConnectionUnavailable, EmbeddingFailure, ValidationError
from .fusion import max_rrf_score, reciprocal_rank_fusion
from .interfaces import EmbeddingProvider
from .models import (
    MemoryRecord,
    MemoryType,
    RecallHit,
    RecallResult,
    RecordFilter,
    Scope,
)
from .scope_store import ScopeStore

STRATEGIES = ("hybrid", "vector", "keyword")

# Final scores closer than this are treated as a tie during dedup
_TIE_EPSILON = 1e-9

# Runs one ranked search with the given result window
_Search = Callable[[int], Awaitable[list[tuple[MemoryRecord, float]]]]


@dataclass
class ScoredCandidate:
    record: MemoryRecord
    scope: Scope
    rrf_score: float
    strength: float
    final: float
    sources: list[str] = field(default_factory=list)


class HybridRetriever:
    """Hybrid retrieval over session, project and user scope stores."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        decay: DecayEngine | None = None,
        config: RetrievalConfig | None = None,
    ):
        """Initialize hybrid retriever.

        Args:
            embedder: Provider used to embed the query
            decay: Strength computation
            config: Retrieval configuration
        """
        self._embedder = embedder
        self._decay = decay or DecayEngine()
        self._config = config or RetrievalConfig()

    def scope_weights(self, profile: str | None = None) -> dict[Scope, float]:
        name = profile or self._config.default_profile
        weights = self._config.scope_weight_profiles.get(name)
        if weights is None:
            raise ValidationError("profile", f"unknown scope weight profile {name!r}")
        return {scope: float(weights.get(scope.value, 0.0)) for scope in Scope}

    async def retrieve(
        self,
        query: str,
        stores: Mapping[Scope, ScopeStore],
        types: list[MemoryType] | None = None,
        strategy: str = "hybrid",
        limit: int = 10,
        min_strength: float = 0.0,
        profile: str | None = None,
        now: datetime | None = None,
    ) -> RecallResult:
        """Retrieve ranked records across the given scope stores.

        Args:
            query: Search text
            stores: Scope stores to search, one per scope
            types: Optional memory type filter
            strategy: "hybrid", "vector" or "keyword"
            limit: Maximum number of results
            min_strength: Records weaker than this are excluded
            profile: Scope weight profile name
            now: Reference time for strength

        Returns:
            RecallResult, degraded when any scope could not be searched
        """
        if strategy not in STRATEGIES:
            raise ValidationError("strategy", f"must be one of {STRATEGIES}, got {strategy!r}")
        if limit <= 0:
            return RecallResult()

        weights = self.scope_weights(profile)
        now = now or datetime.now(timezone.utc)

        query_embedding: list[float] | None = None
        if strategy in ("hybrid", "vector"):
            query_embedding = await self._embed_query(query)

        record_filter = RecordFilter(memory_types=types or None)
        scopes = list(stores)
        outcomes = await asyncio.gather(*(
            self._search_with_timeout(
                scope, stores[scope], query, query_embedding,
                record_filter, strategy, min_strength, now,
            )
            for scope in scopes
        ))

        candidates: list[ScoredCandidate] = []
        failed: list[Scope] = []
        for scope, outcome in zip(scopes, outcomes):
            if outcome is None:
                failed.append(scope)
                continue
            for candidate in outcome:
                candidate.final *= weights[scope]
                candidates.append(candidate)

        candidates.sort(key=lambda c: (-c.final, -c.scope.rank, c.record.id))
        kept = self._deduplicate(candidates)[:limit]

        await self._touch(kept, stores, now)

        logger.info(
            f"Recall '{query[:40]}' strategy={strategy}: {len(kept)} results "
            f"from {len(candidates)} candidates"
            + (f", failed scopes={[s.value for s in failed]}" if failed else "")
        )
        return RecallResult(
            results=[
                RecallHit(
                    record=c.record,
                    scope=c.scope,
                    score=c.final,
                    rrf_score=c.rrf_score,
                    strength=c.strength,
                    sources=c.sources,
                )
                for c in kept
            ],
            degraded=bool(failed),
            failed_scopes=failed,
        )

    async def _embed_query(self, query: str) -> list[float] | None:
        try:
            return await self._embedder.embed(query)
        except EmbeddingFailure as e:
            logger.warning(f"Query embedding failed, keyword search only: {e}")
            return None

    async def _search_with_timeout(
        self,
        scope: Scope,
        store: ScopeStore,
        query: str,
        query_embedding: list[float] | None,
        record_filter: RecordFilter,
        strategy: str,
        min_strength: float,
        now: datetime,
    ) -> list[ScoredCandidate] | None:
        """Search one scope; None means the scope failed or timed out."""
        try:
            return await asyncio.wait_for(
                self.search_scope(
                    scope, store, query, query_embedding,
                    record_filter, strategy, min_strength, now,
                ),
                timeout=self._config.scope_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Recall in {scope.value} scope timed out after "
                f"{self._config.scope_timeout_seconds}s"
            )
        except ConnectionUnavailable as e:
            logger.warning(f"Recall in {scope.value} scope unavailable: {e}")
        except Exception as e:
            logger.warning(f"Recall in {scope.value} scope failed: {e!r}")
        return None

    async def search_scope(
        self,
        scope: Scope,
        store: ScopeStore,
        query: str,
        query_embedding: list[float] | None,
        record_filter: RecordFilter,
        strategy: str = "hybrid",
        min_strength: float = 0.0,
        now: datetime | None = None,
    ) -> list[ScoredCandidate]:
        """Fused, scored candidates for one scope (before scope weighting)."""
        now = now or datetime.now(timezone.utc)
        k = self._config.candidate_k

        searches: dict[str, _Search] = {}
        if query_embedding and strategy in ("hybrid", "vector"):
            searches["vector"] = lambda n: store.vector_search(query_embedding, n, record_filter)
        if query.strip() and strategy in ("hybrid", "keyword"):
            searches["keyword"] = lambda n: store.keyword_search(query, n, record_filter)
        if not searches:
            return []

        strengths: dict[str, float] = {}
        results = await asyncio.gather(*(
            self._strong_hits(search, k, min_strength, strengths, now)
            for search in searches.values()
        ))

        records: dict[str, MemoryRecord] = {}
        ranked_lists: dict[str, list[str]] = {}
        for source, hits in zip(searches, results):
            for record in hits:
                records[record.id] = record
            ranked_lists[source] = [record.id for record in hits]

        fused = reciprocal_rank_fusion(ranked_lists, k=self._config.rrf_k)
        ceiling = max_rrf_score(len(ranked_lists), self._config.rrf_k)

        candidates = []
        for item in fused:
            record = records[item.id]
            rrf_normalized = item.score / ceiling if ceiling else 0.0
            strength = strengths[item.id]
            final = (
                self._config.rrf_weight * rrf_normalized
                + self._config.importance_weight * record.importance
                + self._config.strength_weight * strength
            )
            candidates.append(ScoredCandidate(
                record=record,
                scope=scope,
                rrf_score=item.score,
                strength=strength,
                final=final,
                sources=item.sources,
            ))
        return candidates

    async def _strong_hits(
        self,
        search: _Search,
        k: int,
        min_strength: float,
        strengths: dict[str, float],
        now: datetime,
    ) -> list[MemoryRecord]:
        """Top k hits with strength >= min_strength.

        Strength is computed, not stored, so the backend cannot filter on it.
        Weak hits are dropped and the search is repeated with a doubled
        window until k strong hits remain or the store runs out of matches.
        """
        fetch = k
        while True:
            hits = await search(fetch)
            strong = []
            for record, _ in hits:
                if record.id not in strengths:
                    strengths[record.id] = self._decay.strength(record, now)
                if strengths[record.id] >= min_strength:
                    strong.append(record)
            if len(strong) >= k or len(hits) < fetch:
                return strong[:k]
            fetch *= 2

    def is_duplicate(self, a: MemoryRecord, b: MemoryRecord) -> bool:
        """Same normalized content, or embeddings above the dedup threshold."""
        if " ".join(a.content.split()).lower() == " ".join(b.content.split()).lower():
            return True
        if a.embedding and b.embedding:
            similarity = EmbeddingService.cosine_similarity(a.embedding, b.embedding)
            return similarity > self._config.dedup_similarity
        return False

    def _prefer(self, kept: ScoredCandidate, challenger: ScoredCandidate) -> ScoredCandidate:
        """Pick the representative of a duplicate pair."""
        if challenger.final > kept.final + _TIE_EPSILON:
            return challenger
        if kept.final > challenger.final + _TIE_EPSILON or kept.scope == challenger.scope:
            return kept

        broader, narrower = (
            (kept, challenger) if kept.scope.is_broader_than(challenger.scope)
            else (challenger, kept)
        )
        if narrower.strength > self._config.dedup_strength_ratio * broader.strength:
            return narrower
        return broader

    def _deduplicate(self, candidates: list[ScoredCandidate]) -> list[ScoredCandidate]:
        """Collapse near-duplicates, keeping one representative per group.

        ``candidates`` must be sorted by final score descending.
        """
        kept: list[ScoredCandidate] = []
        for candidate in candidates:
            for i, existing in enumerate(kept):
                if self.is_duplicate(existing.record, candidate.record):
                    kept[i] = self._prefer(existing, candidate)
                    break
            else:
                kept.append(candidate)

        kept.sort(key=lambda c: (-c.final, -c.scope.rank, c.record.id))
        return kept

    async def _touch(
        self,
        kept: list[ScoredCandidate],
        stores: Mapping[Scope, ScopeStore],
        now: datetime,
    ) -> None:
        by_scope: dict[Scope, list[str]] = {}
        for candidate in kept:
            by_scope.setdefault(candidate.scope, []).append(candidate.record.id)

        for scope, ids in by_scope.items():
            try:
                await asyncio.wait_for(
                    stores[scope].touch(ids, now),
                    timeout=self._config.scope_timeout_seconds,
                )
            except Exception as e:
                logger.warning(f"Could not record access in {scope.value} scope: {e!r}")
