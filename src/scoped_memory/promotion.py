"""Promotion of records into broader scopes.

Promotion is create-then-mark-source: the target scope is written first
(merge into a near-duplicate or create a copy with the same id), then the
source record is marked ``promoted``. Because there is no cross-scope
transaction, every step is idempotent and a replay after a crash between
the two writes only finishes the job.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone

from loguru import logger

from .config import PromotionConfig
from .exceptions import ConnectionUnavailable, MemoryEngineError, ValidationError
from .models import (
    MemoryRecord,
    MemoryType,
    PromotionEntry,
    PromotionOutcome,
    RecordFilter,
    RecordStatus,
    Scope,
)
from .scope_store import ScopeStore

TYPE_BONUS: dict[MemoryType, float] = {
    MemoryType.PATTERN: 0.10,
    MemoryType.CONVENTION: 0.10,
    MemoryType.PROCEDURE: 0.10,
    MemoryType.DECISION: 0.08,
    MemoryType.ERROR_FIX: 0.08,
    MemoryType.ARCHITECTURE: 0.08,
    MemoryType.PREFERENCE: 0.06,
    MemoryType.FACT: 0.06,
}

EMBEDDING_BONUS = 0.05


def eligibility_score(record: MemoryRecord) -> float:
    """How strongly a record qualifies for promotion.

    score = importance*0.4 + confidence*0.3 + min(log10(access_count+1)/2, 0.2)
            + type_bonus + embedding_bonus
    """
    access_term = min(math.log10(record.access_count + 1) / 2.0, 0.2)
    return (
        record.importance * 0.4
        + record.confidence * 0.3
        + access_term
        + TYPE_BONUS.get(record.memory_type, 0.0)
        + (EMBEDDING_BONUS if record.embedding else 0.0)
    )


class PromotionEngine:
    """Moves records from session to project and from project to user."""

    def __init__(self, config: PromotionConfig | None = None):
        self._config = config or PromotionConfig()

    def is_auto_eligible(self, record: MemoryRecord) -> bool:
        """Whether lifecycle-driven promotion should pick up this record."""
        if record.status != RecordStatus.ACTIVE:
            return False
        if record.memory_type.value in self._config.excluded_types:
            return False

        score = eligibility_score(record)
        if record.scope == Scope.SESSION:
            return score >= self._config.session_to_project_threshold
        if record.scope == Scope.PROJECT:
            return (
                score >= self._config.project_to_user_threshold
                and record.access_count >= self._config.project_to_user_min_access
            )
        return False

    def _pick_merge_target(
        self,
        neighbors: list[tuple[MemoryRecord, float]],
    ) -> tuple[MemoryRecord, float] | None:
        """Closest neighbor within merge distance.

        Several neighbors may qualify: highest similarity wins, then higher
        importance, then the older record.
        """
        min_similarity = 1.0 - self._config.merge_distance
        qualifying = [(r, s) for r, s in neighbors if s > min_similarity]
        if not qualifying:
            return None
        qualifying.sort(key=lambda pair: (-pair[1], -pair[0].importance, pair[0].created_at))
        return qualifying[0]

    async def _find_previous(
        self,
        candidate: MemoryRecord,
        target: ScopeStore,
    ) -> tuple[str, str] | None:
        """(action, target_id) of an earlier promotion of candidate into target."""
        if await target.get(candidate.id) is not None:
            return "created", candidate.id
        for record in await target.find_by_chain_source(candidate.id):
            entry = record.chain_mentions(candidate.id)
            if entry is not None and entry.action == "merged":
                return "merged", record.id
        return None

    async def promote(
        self,
        candidate: MemoryRecord,
        source: ScopeStore,
        target: ScopeStore,
        reason: str = "",
    ) -> PromotionOutcome:
        """Promote one record from source into target.

        Args:
            candidate: Record currently stored in ``source``
            source: Store of the candidate's scope
            target: Store of a strictly broader scope
            reason: Free-text reason kept in the audit log

        Returns:
            PromotionOutcome; ``replayed`` is True when the promotion had
            already happened and nothing was changed in the target

        Raises:
            ValidationError: If target is not broader, or the record is not
                promotable from its current status.
            ConnectionUnavailable: If either store is unreachable.
        """
        if not target.scope.is_broader_than(candidate.scope):
            raise ValidationError(
                "target_scope",
                f"{target.scope.value} is not broader than {candidate.scope.value}",
            )

        previous = await self._find_previous(candidate, target)
        if previous is not None:
            action, target_id = previous
            if candidate.status == RecordStatus.ACTIVE:
                # Crashed between writing the target and marking the source
                await source.transition(
                    candidate.id, RecordStatus.PROMOTED,
                    detail=f"{action} into {target.scope.value}:{target_id} (recovered)",
                )
            return self._finish(candidate, target, action, target_id, reason, replayed=True)

        if candidate.status != RecordStatus.ACTIVE:
            raise ValidationError(
                "status",
                f"record {candidate.id} is {candidate.status.value} and cannot be promoted",
            )

        action, target_id, applied = await self._write_target(candidate, target)

        await source.transition(
            candidate.id, RecordStatus.PROMOTED,
            detail=f"{action} into {target.scope.value}:{target_id}",
        )
        return self._finish(candidate, target, action, target_id, reason, replayed=not applied)

    async def _write_target(
        self,
        candidate: MemoryRecord,
        target: ScopeStore,
    ) -> tuple[str, str, bool]:
        if candidate.embedding:
            neighbors = await target.vector_search(
                candidate.embedding, self._config.neighbor_k, RecordFilter(),
            )
            best = self._pick_merge_target(neighbors)
            if best is not None:
                existing, similarity = best
                logger.debug(
                    f"Merging {candidate.id} into {existing.id} (similarity={similarity:.3f})"
                )
                merged, applied = await target.merge_into(
                    existing.id, candidate, self._config.confidence_boost,
                )
                return "merged", merged.id, applied

        now = datetime.now(timezone.utc)
        promoted = candidate.model_copy(
            deep=True,
            update={
                "scope": target.scope,
                "status": RecordStatus.ACTIVE,
                "source_scope": candidate.scope,
                "updated_at": now,
                "promotion_chain": candidate.promotion_chain + [
                    PromotionEntry(
                        scope=candidate.scope,
                        record_id=candidate.id,
                        action="created",
                        timestamp=now,
                    )
                ],
            },
        )
        created, applied = await target.create_promoted(promoted)
        return "created", created.id, applied

    def _finish(
        self,
        candidate: MemoryRecord,
        target: ScopeStore,
        action: str,
        target_id: str,
        reason: str,
        replayed: bool,
    ) -> PromotionOutcome:
        logger.info(
            f"Promotion source={candidate.scope.value}:{candidate.id} "
            f"target={target.scope.value}:{target_id} action={action} "
            f"reason={reason or '-'}" + (" (replay)" if replayed else "")
        )
        return PromotionOutcome(
            action=action,
            target_id=target_id,
            source_id=candidate.id,
            source_scope=candidate.scope,
            target_scope=target.scope,
            reason=reason,
            replayed=replayed,
        )

    async def run_auto(
        self,
        source: ScopeStore,
        target: ScopeStore,
    ) -> list[PromotionOutcome]:
        """Promote every auto-eligible active record of source into target.

        Per-record failures are logged and skipped; they are retried at the
        next lifecycle trigger. An unreachable store stops the pass.
        """
        outcomes: list[PromotionOutcome] = []
        try:
            records = await source.query(RecordFilter())
        except ConnectionUnavailable as e:
            logger.warning(f"Auto-promotion from {source.scope.value} skipped: {e}")
            return outcomes

        eligible = [r for r in records if self.is_auto_eligible(r)]
        eligible.sort(key=eligibility_score, reverse=True)

        for record in eligible:
            try:
                outcomes.append(await self.promote(
                    record, source, target,
                    reason=f"auto: score={eligibility_score(record):.3f}",
                ))
            except ConnectionUnavailable as e:
                logger.warning(f"Auto-promotion into {target.scope.value} stopped: {e}")
                break
            except MemoryEngineError as e:
                logger.error(f"Auto-promotion of {record.id} failed: {e}")

        logger.info(
            f"Auto-promotion {source.scope.value} -> {target.scope.value}: "
            f"{len(outcomes)}/{len(eligible)} eligible records promoted"
        )
        return outcomes
