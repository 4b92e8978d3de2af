"""
Promotion engine tests.

Covers eligibility scoring, merge-vs-create, and replay after a crash
between writing the target and marking the source.
"""
from datetime import timedelta

import pytest
from conftest import make_record

from scoped_memory.config import PromotionConfig
from scoped_memory.exceptions import ValidationError
from scoped_memory.models import RecordStatus, Scope
from scoped_memory.promotion import PromotionEngine, eligibility_score


@pytest.fixture
def engine():
    return PromotionEngine(PromotionConfig())


def embedded(embedder, scope, content, **kwargs):
    return make_record(scope, content, embedder.vector(content), **kwargs)


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------


def test_eligibility_formula():
    record = make_record(
        Scope.SESSION, importance=1.0, confidence=1.0, access_count=9,
        memory_type="pattern", embedding=[1.0],
    )
    assert eligibility_score(record) == pytest.approx(0.4 + 0.3 + 0.2 + 0.10 + 0.05)


def test_eligibility_increases_with_each_input():
    base = dict(importance=0.5, confidence=0.5, access_count=1, memory_type="observation")
    score = eligibility_score(make_record(Scope.SESSION, **base))
    for field, value in (("importance", 0.6), ("confidence", 0.6), ("access_count", 3)):
        bumped = make_record(Scope.SESSION, **{**base, field: value})
        assert eligibility_score(bumped) > score


class TestAutoEligibility:
    def test_session_threshold(self, engine):
        strong = make_record(Scope.SESSION, importance=0.9, confidence=0.9, embedding=[1.0])
        weak = make_record(Scope.SESSION, importance=0.2, confidence=0.3)
        assert engine.is_auto_eligible(strong)
        assert not engine.is_auto_eligible(weak)

    @pytest.mark.parametrize("memory_type", ["scratchpad", "tool_outcome"])
    def test_excluded_types(self, engine, memory_type):
        record = make_record(
            Scope.SESSION, importance=1.0, confidence=1.0, memory_type=memory_type,
        )
        assert not engine.is_auto_eligible(record)

    def test_project_requires_access(self, engine):
        kwargs = dict(importance=0.9, confidence=0.9, embedding=[1.0])
        assert engine.is_auto_eligible(make_record(Scope.PROJECT, access_count=3, **kwargs))
        assert not engine.is_auto_eligible(make_record(Scope.PROJECT, access_count=2, **kwargs))

    def test_user_and_inactive_never_eligible(self, engine):
        assert not engine.is_auto_eligible(
            make_record(Scope.USER, importance=1.0, confidence=1.0, access_count=50)
        )
        assert not engine.is_auto_eligible(
            make_record(Scope.SESSION, importance=1.0, confidence=1.0,
                        status=RecordStatus.PROMOTED)
        )


class TestMergeTarget:
    def test_nothing_within_distance(self, engine):
        assert engine._pick_merge_target([(make_record(), 0.85)]) is None

    def test_tie_break_order(self, engine, now):
        older = make_record(importance=0.5, created_at=now - timedelta(days=3))
        newer = make_record(importance=0.5, created_at=now)
        important = make_record(importance=0.9, created_at=now)
        closest = make_record(importance=0.1, created_at=now)

        assert engine._pick_merge_target([(newer, 0.9), (older, 0.9)])[0] is older
        assert engine._pick_merge_target([(older, 0.9), (important, 0.9)])[0] is important
        assert engine._pick_merge_target([(important, 0.9), (closest, 0.95)])[0] is closest


# ---------------------------------------------------------------------------
# Promote
# ---------------------------------------------------------------------------


class TestPromote:
    async def test_creates_copy_with_same_id(
        self, engine, embedder, session_store, project_store,
    ):
        await project_store.put(embedded(embedder, Scope.PROJECT, "CSS grid layout"))
        candidate = await session_store.put(
            embedded(embedder, Scope.SESSION, "Use JWT auth", tags=["auth"])
        )

        outcome = await engine.promote(candidate, session_store, project_store, reason="manual")

        assert outcome.action == "created"
        assert outcome.target_id == candidate.id
        assert outcome.replayed is False
        copy = await project_store.get(candidate.id)
        assert copy.scope == Scope.PROJECT
        assert copy.status == RecordStatus.ACTIVE
        assert copy.source_scope == Scope.SESSION
        assert copy.tags == ["auth"]
        assert copy.promotion_chain[-1].action == "created"
        assert (await session_store.get(candidate.id)).status == RecordStatus.PROMOTED

    async def test_merges_into_near_duplicate(
        self, engine, embedder, session_store, project_store,
    ):
        existing = await project_store.put(
            embedded(embedder, Scope.PROJECT, "Use JWT auth", importance=0.4)
        )
        candidate = await session_store.put(
            embedded(embedder, Scope.SESSION, "Use JWT auth", importance=0.8)
        )

        outcome = await engine.promote(candidate, session_store, project_store)

        assert outcome.action == "merged"
        assert outcome.target_id == existing.id
        merged = await project_store.get(existing.id)
        assert merged.importance == 0.8
        assert merged.access_count == 1
        assert merged.chain_mentions(candidate.id).action == "merged"
        assert len(await project_store.query()) == 1

    async def test_replay_after_merge_changes_nothing(
        self, engine, embedder, session_store, project_store,
    ):
        existing = await project_store.put(embedded(embedder, Scope.PROJECT, "Use JWT auth"))
        candidate = await session_store.put(embedded(embedder, Scope.SESSION, "Use JWT auth"))

        await engine.promote(candidate, session_store, project_store)
        # Stale copy of the candidate, as a retried caller would hold
        second = await engine.promote(candidate, session_store, project_store)

        assert second.replayed is True
        assert second.action == "merged"
        merged = await project_store.get(existing.id)
        assert merged.access_count == 1
        assert len(merged.promotion_chain) == 1

    async def test_replay_after_create(self, engine, embedder, session_store, project_store):
        candidate = await session_store.put(embedded(embedder, Scope.SESSION, "Use JWT auth"))

        await engine.promote(candidate, session_store, project_store)
        promoted_source = await session_store.get(candidate.id)
        second = await engine.promote(promoted_source, session_store, project_store)

        assert second.replayed is True
        assert second.action == "created"
        assert len(await project_store.query()) == 1

    async def test_recovers_half_finished_promotion(
        self, engine, embedder, session_store, project_store,
    ):
        candidate = await session_store.put(embedded(embedder, Scope.SESSION, "Use JWT auth"))
        # Target written, source never marked
        await engine._write_target(candidate, project_store)
        assert (await session_store.get(candidate.id)).status == RecordStatus.ACTIVE

        outcome = await engine.promote(candidate, session_store, project_store)

        assert outcome.replayed is True
        assert (await session_store.get(candidate.id)).status == RecordStatus.PROMOTED
        assert len(await project_store.query()) == 1

    async def test_record_without_embedding_is_created(
        self, engine, session_store, project_store,
    ):
        candidate = await session_store.put(make_record(Scope.SESSION, "no vector"))
        outcome = await engine.promote(candidate, session_store, project_store)
        assert outcome.action == "created"

    async def test_rejects_narrower_target(self, engine, project_store, session_store):
        record = await project_store.put(make_record(Scope.PROJECT))
        with pytest.raises(ValidationError):
            await engine.promote(record, project_store, session_store)

    async def test_rejects_archived_record(self, engine, session_store, project_store):
        record = await session_store.put(make_record(Scope.SESSION))
        archived = await session_store.transition(record.id, RecordStatus.ARCHIVED)
        with pytest.raises(ValidationError):
            await engine.promote(archived, session_store, project_store)

    async def test_chain_accumulates_across_hops(
        self, engine, embedder, session_store, project_store, user_store,
    ):
        candidate = await session_store.put(embedded(embedder, Scope.SESSION, "Use JWT auth"))
        await engine.promote(candidate, session_store, project_store)
        project_copy = await project_store.get(candidate.id)

        await engine.promote(project_copy, project_store, user_store)

        user_copy = await user_store.get(candidate.id)
        assert [e.scope for e in user_copy.promotion_chain] == [Scope.SESSION, Scope.PROJECT]
        assert user_copy.source_scope == Scope.PROJECT


# ---------------------------------------------------------------------------
# Auto promotion
# ---------------------------------------------------------------------------


async def test_run_auto_promotes_only_eligible(engine, embedder, session_store, project_store):
    keep = await session_store.put(embedded(
        embedder, Scope.SESSION, "Deploys go through the release branch",
        importance=0.9, confidence=0.9, memory_type="convention",
    ))
    scratch = await session_store.put(embedded(
        embedder, Scope.SESSION, "try the other flag",
        importance=1.0, confidence=1.0, memory_type="scratchpad",
    ))
    weak = await session_store.put(make_record(
        Scope.SESSION, "maybe", importance=0.1, confidence=0.1,
    ))

    outcomes = await engine.run_auto(session_store, project_store)

    assert [o.source_id for o in outcomes] == [keep.id]
    assert (await session_store.get(scratch.id)).status == RecordStatus.ACTIVE
    assert (await session_store.get(weak.id)).status == RecordStatus.ACTIVE
    assert await project_store.get(keep.id) is not None
