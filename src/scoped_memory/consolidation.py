"""Scope-local consolidation and archival.

Three maintenance operations, all confined to one scope store:
- Cluster: group active records of the same memory_type inside a time
  window by embedding similarity; each large enough cluster becomes one
  derived ``pattern`` record and the originals are marked consolidated
- Archive: mark weak, old, rarely accessed active records archived
- Prune: delete archived project records past the retention period;
  user scope only ever archives

With ``dry_run`` nothing is written; the returned candidates describe
what would change.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone

import numpy as np
from loguru import logger

from .config import ConsolidationConfig
from .decay import SECONDS_PER_DAY, DecayEngine
from .embedding import EmbeddingService
from .exceptions import ValidationError
from .interfaces import Summarizer
from .models import (
    ConsolidationCandidate,
    MemoryRecord,
    MemoryType,
    RecordFilter,
    RecordStatus,
    Scope,
)
from .scope_store import ScopeStore

STRATEGIES = ("cluster", "archive", "prune", "all")

_PREVIEW_CHARS = 120


class ExtractiveSummarizer:
    """Builds a derived record's content from the cluster members themselves."""

    def __init__(self, max_chars: int = 600):
        self._max_chars = max_chars

    async def summarize(self, contents: list[str]) -> str:
        seen: set[str] = set()
        lines: list[str] = []
        for content in contents:
            first_line = content.strip().splitlines()[0] if content.strip() else ""
            key = first_line.lower()
            if not first_line or key in seen:
                continue
            seen.add(key)
            lines.append(first_line)

        summary = f"Recurring pattern across {len(contents)} memories: " + "; ".join(lines)
        if len(summary) > self._max_chars:
            summary = summary[: self._max_chars - 3].rstrip() + "..."
        return summary


class ConsolidationEngine:
    """Clusters, archives and prunes records of a single scope."""

    def __init__(
        self,
        config: ConsolidationConfig | None = None,
        decay: DecayEngine | None = None,
        summarizer: Summarizer | None = None,
    ):
        """Initialize consolidation engine.

        Args:
            config: Consolidation configuration
            decay: Strength computation used by archival
            summarizer: Produces derived record content (extractive by default)
        """
        self._config = config or ConsolidationConfig()
        self._decay = decay or DecayEngine()
        self._summarizer = summarizer or ExtractiveSummarizer()

    async def consolidate(
        self,
        store: ScopeStore,
        strategy: str = "all",
        dry_run: bool = True,
        now: datetime | None = None,
    ) -> list[ConsolidationCandidate]:
        """Run maintenance on one scope store.

        Args:
            store: The scope store to maintain
            strategy: "cluster", "archive", "prune" or "all"
            dry_run: Report candidates without writing anything
            now: Reference time

        Returns:
            Candidates found (and applied unless dry_run)
        """
        if strategy not in STRATEGIES:
            raise ValidationError("strategy", f"must be one of {STRATEGIES}, got {strategy!r}")
        now = now or datetime.now(timezone.utc)

        candidates: list[ConsolidationCandidate] = []
        if strategy in ("cluster", "all"):
            candidates.extend(await self._cluster(store, dry_run, now))
        if strategy in ("archive", "all"):
            candidates.extend(await self._archive(store, dry_run, now))
        if strategy in ("prune", "all"):
            candidates.extend(await self._prune(store, dry_run, now))

        counts = defaultdict(int)
        for candidate in candidates:
            counts[candidate.action] += 1
        logger.info(
            f"Consolidation of {store.scope.value} scope "
            f"({'dry run' if dry_run else 'applied'}): {dict(counts) or 'nothing to do'}"
        )
        return candidates

    # ── Clustering ──────────────────────────────────────────────────────

    def find_clusters(self, records: list[MemoryRecord]) -> list[list[MemoryRecord]]:
        """Greedy seed clustering by cosine similarity within memory_type.

        Each unassigned record seeds a cluster that absorbs every other
        unassigned record of the same type at or above cluster_similarity.
        Only clusters of at least min_cluster_size are returned.
        """
        by_type: dict[MemoryType, list[MemoryRecord]] = defaultdict(list)
        for record in records:
            if record.embedding:
                by_type[record.memory_type].append(record)

        clusters: list[list[MemoryRecord]] = []
        for group in by_type.values():
            if len(group) < self._config.min_cluster_size:
                continue
            # Oldest first keeps seeding deterministic
            group.sort(key=lambda r: (r.created_at, r.id))
            assigned: set[str] = set()
            for i, seed in enumerate(group):
                if seed.id in assigned:
                    continue
                members = [seed]
                for other in group[i + 1:]:
                    if other.id in assigned:
                        continue
                    similarity = EmbeddingService.cosine_similarity(
                        seed.embedding, other.embedding,
                    )
                    if similarity >= self._config.cluster_similarity:
                        members.append(other)
                if len(members) >= self._config.min_cluster_size:
                    assigned.update(m.id for m in members)
                    clusters.append(members)
        return clusters

    async def _cluster(
        self,
        store: ScopeStore,
        dry_run: bool,
        now: datetime,
    ) -> list[ConsolidationCandidate]:
        records = await store.query(RecordFilter(
            created_after=now - timedelta(days=self._config.window_days),
        ))
        # Derived records are not re-clustered
        records = [r for r in records if not r.derived_from]
        if len(records) > self._config.max_candidates:
            records.sort(key=lambda r: r.last_accessed, reverse=True)
            records = records[: self._config.max_candidates]

        candidates: list[ConsolidationCandidate] = []
        for members in self.find_clusters(records):
            candidate = ConsolidationCandidate(
                action="cluster",
                scope=store.scope,
                record_ids=[m.id for m in members],
                memory_type=members[0].memory_type,
                preview=members[0].content[:_PREVIEW_CHARS],
            )
            if not dry_run:
                derived = await self._derive(store, members)
                candidate.derived_id = derived.id
            candidates.append(candidate)
        return candidates

    async def _derive(self, store: ScopeStore, members: list[MemoryRecord]) -> MemoryRecord:
        content = await self._summarizer.summarize([m.content for m in members])

        centroid = np.mean(np.asarray([m.embedding for m in members], dtype=np.float32), axis=0)
        norm = float(np.linalg.norm(centroid))
        if norm > 0:
            centroid = centroid / norm

        tags: list[str] = []
        for member in members:
            tags.extend(member.tags)

        derived = MemoryRecord(
            scope=store.scope,
            memory_type=MemoryType.PATTERN,
            content=content,
            embedding=centroid.tolist(),
            importance=max(m.importance for m in members),
            confidence=sum(m.confidence for m in members) / len(members),
            tags=tags,
            domain=members[0].domain,
            source_session=members[0].source_session,
            source_project=members[0].source_project,
            derived_from=[m.id for m in members],
            metadata={
                "abstraction_level": "pattern",
                "source_memory_type": members[0].memory_type.value,
                "cluster_size": len(members),
            },
        )
        # Derived record first so lineage exists before originals change status
        await store.put(derived)
        for member in members:
            await store.transition(
                member.id, RecordStatus.CONSOLIDATED, detail=f"derived into {derived.id}",
            )
        logger.debug(f"Consolidated {len(members)} records into {derived.id}")
        return derived

    # ── Archival ────────────────────────────────────────────────────────

    def _archive_rules(self, scope: Scope) -> tuple[float, float] | None:
        if scope == Scope.PROJECT:
            return self._config.project_archive_threshold, self._config.project_min_dwell_days
        if scope == Scope.USER:
            return self._config.user_archive_threshold, self._config.user_min_dwell_days
        return None

    def should_archive(self, record: MemoryRecord, now: datetime | None = None) -> bool:
        rules = self._archive_rules(record.scope)
        if rules is None or record.status != RecordStatus.ACTIVE:
            return False
        threshold, dwell_days = rules
        return (
            self._decay.strength(record, now) < threshold
            and DecayEngine.age_days(record, now) > dwell_days
            and record.access_count < self._config.archive_max_access
        )

    async def _archive(
        self,
        store: ScopeStore,
        dry_run: bool,
        now: datetime,
    ) -> list[ConsolidationCandidate]:
        if self._archive_rules(store.scope) is None:
            return []

        candidates = []
        for record in await store.query(RecordFilter()):
            if not self.should_archive(record, now):
                continue
            candidates.append(ConsolidationCandidate(
                action="archive",
                scope=store.scope,
                record_ids=[record.id],
                memory_type=record.memory_type,
                preview=record.content[:_PREVIEW_CHARS],
            ))
            if not dry_run:
                await store.transition(
                    record.id, RecordStatus.ARCHIVED,
                    detail=f"strength {self._decay.strength(record, now):.4f} below threshold",
                )
        return candidates

    async def _prune(
        self,
        store: ScopeStore,
        dry_run: bool,
        now: datetime,
    ) -> list[ConsolidationCandidate]:
        if store.scope != Scope.PROJECT:
            return []

        retention = self._config.project_delete_after_days
        candidates = []
        for record in await store.query(RecordFilter(statuses=[RecordStatus.ARCHIVED])):
            # updated_at is the archival time for archived records
            archived_days = (now - record.updated_at).total_seconds() / SECONDS_PER_DAY
            if archived_days <= retention:
                continue
            candidates.append(ConsolidationCandidate(
                action="delete",
                scope=store.scope,
                record_ids=[record.id],
                memory_type=record.memory_type,
                preview=record.content[:_PREVIEW_CHARS],
            ))
            if not dry_run:
                await store.delete(record.id)
        return candidates
