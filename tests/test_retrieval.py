"""
Hybrid retrieval tests.

Covers per-scope fusion, scope weighting, cross-scope dedup and the
timeout / unavailable-scope paths.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import FlakyBackend, make_record

from scoped_memory.config import RetrievalConfig
from scoped_memory.decay import DecayEngine
from scoped_memory.exceptions import ValidationError
from scoped_memory.models import Scope
from scoped_memory.retrieval import HybridRetriever, ScoredCandidate
from scoped_memory.scope_store import ScopeStore


@pytest.fixture
def retriever(embedder):
    return HybridRetriever(embedder, DecayEngine(), RetrievalConfig())


async def add(store, embedder, content, now, **kwargs):
    kwargs.setdefault("last_accessed", now)
    record = make_record(store.scope, content, embedder.vector(content), **kwargs)
    return await store.put(record)


def stores_of(*stores):
    return {store.scope: store for store in stores}


# ---------------------------------------------------------------------------
# Basic retrieval
# ---------------------------------------------------------------------------


class TestRetrieve:
    """End-to-end ranking over real scope stores."""

    async def test_relevant_record_ranks_first(self, retriever, embedder, project_store, now):
        target = await add(project_store, embedder, "We use JWT auth for the API", now,
                           importance=0.9)
        await add(project_store, embedder, "CSS grid layout for the dashboard", now)
        await add(project_store, embedder, "Database migrations run nightly", now)

        result = await retriever.retrieve(
            "JWT auth", stores_of(project_store), now=now,
        )

        assert result.degraded is False
        assert result.results[0].record.id == target.id
        assert result.results[0].sources == ["vector", "keyword"]

    async def test_score_formula(self, retriever, embedder, project_store, now):
        record = await add(project_store, embedder, "only record here", now,
                           importance=0.5, confidence=1.0)

        result = await retriever.retrieve(
            "only record here", stores_of(project_store), now=now,
        )

        hit = result.results[0]
        assert hit.record.id == record.id
        # First in both lists: normalized RRF is exactly 1
        expected = (0.6 * 1.0 + 0.2 * 0.5 + 0.2 * 0.5) * 0.35
        assert hit.score == pytest.approx(expected)
        assert hit.rrf_score == pytest.approx(2 / 60)

    async def test_recall_updates_access(self, retriever, embedder, project_store, now):
        record = await add(project_store, embedder, "JWT tokens", now)

        await retriever.retrieve("JWT tokens", stores_of(project_store), now=now)

        stored = await project_store.get(record.id)
        assert stored.access_count == 1

    async def test_limit_and_zero_limit(self, retriever, embedder, project_store, now):
        for content in (
            "deploy builds the image",
            "deploy pushes release tags",
            "deploy waits for health checks",
            "deploy notifies the channel",
        ):
            await add(project_store, embedder, content, now)

        limited = await retriever.retrieve("deploy", stores_of(project_store), limit=2, now=now)
        empty = await retriever.retrieve("deploy", stores_of(project_store), limit=0, now=now)

        assert len(limited.results) == 2
        assert empty.results == []

    async def test_min_strength_filters_weak_records(self, retriever, embedder, project_store, now):
        strong = await add(project_store, embedder, "deploy script alpha", now,
                           importance=0.9, confidence=1.0)
        await add(project_store, embedder, "deploy script beta", now,
                  importance=0.2, confidence=0.5)

        result = await retriever.retrieve(
            "deploy script", stores_of(project_store), min_strength=0.5, now=now,
        )

        assert result.ids == [strong.id]

    async def test_min_strength_looks_past_weak_top_hits(self, embedder, project_store, now):
        retriever = HybridRetriever(embedder, DecayEngine(), RetrievalConfig(candidate_k=5))
        for i in range(12):
            await add(project_store, embedder, f"deploy script {i}", now - timedelta(days=365),
                      importance=0.9)
        strong = await add(
            project_store, embedder,
            "the deploy script for staging runs after the nightly backup completes",
            now, importance=0.9,
        )

        result = await retriever.retrieve(
            "deploy script", stores_of(project_store), min_strength=0.1, now=now,
        )

        assert result.ids == [strong.id]

    async def test_min_strength_with_only_weak_records(self, retriever, embedder,
                                                       project_store, now):
        for i in range(3):
            await add(project_store, embedder, f"deploy script {i}", now - timedelta(days=365))

        result = await retriever.retrieve(
            "deploy script", stores_of(project_store), min_strength=0.1, now=now,
        )

        assert result.results == []

    async def test_type_filter(self, retriever, embedder, project_store, now):
        decision = await add(project_store, embedder, "use postgres", now, memory_type="decision")
        await add(project_store, embedder, "use postgres in tests", now, memory_type="fact")

        result = await retriever.retrieve(
            "postgres", stores_of(project_store), types=["decision"], now=now,
        )

        assert result.ids == [decision.id]


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class TestStrategies:
    async def test_keyword_strategy_skips_embedding(self, retriever, embedder, project_store, now):
        await add(project_store, embedder, "JWT auth", now)

        result = await retriever.retrieve(
            "JWT", stores_of(project_store), strategy="keyword", now=now,
        )

        assert embedder.calls == 0
        assert result.results[0].sources == ["keyword"]

    async def test_vector_strategy(self, retriever, embedder, project_store, now):
        await add(project_store, embedder, "JWT auth", now)

        result = await retriever.retrieve(
            "JWT auth", stores_of(project_store), strategy="vector", now=now,
        )

        assert result.results[0].sources == ["vector"]

    async def test_invalid_strategy(self, retriever, project_store):
        with pytest.raises(ValidationError):
            await retriever.retrieve("x", stores_of(project_store), strategy="fuzzy")

    async def test_unknown_profile(self, retriever, project_store):
        with pytest.raises(ValidationError):
            await retriever.retrieve("x", stores_of(project_store), profile="nope")

    async def test_embedding_failure_falls_back_to_keyword(
        self, retriever, embedder, project_store, now,
    ):
        record = await add(project_store, embedder, "JWT auth", now)
        embedder.fail = True

        result = await retriever.retrieve("JWT", stores_of(project_store), now=now)

        assert result.ids == [record.id]
        assert result.results[0].sources == ["keyword"]


# ---------------------------------------------------------------------------
# Cross-scope merge and dedup
# ---------------------------------------------------------------------------


class TestCrossScope:
    async def test_duplicates_across_scopes_collapse(
        self, retriever, embedder, project_store, user_store, now,
    ):
        project_copy = await add(project_store, embedder, "Prefer tabs over spaces", now)
        await add(user_store, embedder, "prefer  tabs over SPACES", now)

        result = await retriever.retrieve(
            "tabs over spaces", stores_of(project_store, user_store), now=now,
        )

        assert result.ids == [project_copy.id]

    async def test_profile_changes_scope_order(
        self, retriever, embedder, session_store, user_store, now,
    ):
        session_rec = await add(session_store, embedder, "lint with ruff", now)
        user_rec = await add(user_store, embedder, "lint using flake8", now)

        default = await retriever.retrieve(
            "lint", stores_of(session_store, user_store), now=now,
        )
        long_term = await retriever.retrieve(
            "lint", stores_of(session_store, user_store), profile="long_term", now=now,
        )

        assert default.ids[0] == session_rec.id
        assert long_term.ids[0] == user_rec.id


class TestPrefer:
    """Representative selection between duplicates."""

    def candidate(self, scope, final, strength):
        return ScoredCandidate(
            record=make_record(scope, "same"), scope=scope,
            rrf_score=0.0, strength=strength, final=final,
        )

    def test_higher_score_wins(self, retriever):
        low = self.candidate(Scope.USER, 0.3, 0.9)
        high = self.candidate(Scope.SESSION, 0.4, 0.1)
        assert retriever._prefer(low, high) is high
        assert retriever._prefer(high, low) is high

    def test_tie_prefers_broader_scope(self, retriever):
        narrow = self.candidate(Scope.SESSION, 0.5, 0.3)
        broad = self.candidate(Scope.USER, 0.5, 0.2)
        assert retriever._prefer(narrow, broad) is broad
        assert retriever._prefer(broad, narrow) is broad

    def test_tie_prefers_much_stronger_narrow_record(self, retriever):
        narrow = self.candidate(Scope.PROJECT, 0.5, 0.5)
        broad = self.candidate(Scope.USER, 0.5 + 1e-12, 0.2)
        assert retriever._prefer(broad, narrow) is narrow


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class TestDegraded:
    async def test_unreachable_scope_is_skipped(self, retriever, embedder, project_store, now):
        backend = FlakyBackend("user")
        user_store = ScopeStore(Scope.USER, backend, key="u")
        await user_store.connect()
        record = await add(project_store, embedder, "JWT auth", now)
        backend.online = False

        result = await retriever.retrieve(
            "JWT", stores_of(project_store, user_store), now=now,
        )

        assert result.degraded is True
        assert result.failed_scopes == [Scope.USER]
        assert result.ids == [record.id]

    async def test_broken_scope_is_reported_not_raised(
        self, retriever, embedder, project_store, now,
    ):
        backend = FlakyBackend("user")
        user_store = ScopeStore(Scope.USER, backend, key="u")
        await user_store.connect()
        record = await add(project_store, embedder, "JWT auth", now)
        backend.errors["keyword_search"] = RuntimeError("index corrupted")

        result = await retriever.retrieve(
            "JWT", stores_of(project_store, user_store), now=now,
        )

        assert result.degraded is True
        assert result.failed_scopes == [Scope.USER]
        assert result.ids == [record.id]

    async def test_slow_scope_times_out(self, embedder, project_store, now):
        retriever = HybridRetriever(
            embedder, DecayEngine(), RetrievalConfig(scope_timeout_seconds=0.05),
        )

        async def hang(*args, **kwargs):
            await asyncio.sleep(5)
            return []

        slow = MagicMock(spec=ScopeStore)
        slow.scope = Scope.USER
        slow.vector_search = AsyncMock(side_effect=hang)
        slow.keyword_search = AsyncMock(side_effect=hang)
        record = await add(project_store, embedder, "JWT auth", now)

        result = await retriever.retrieve(
            "JWT", {Scope.PROJECT: project_store, Scope.USER: slow}, now=now,
        )

        assert result.degraded is True
        assert result.failed_scopes == [Scope.USER]
        assert result.ids == [record.id]
        slow.touch.assert_not_called()

    async def test_touch_failure_does_not_fail_recall(self, retriever, embedder, now):
        backend = FlakyBackend("project")
        store = ScopeStore(Scope.PROJECT, backend, key="p")
        await add(store, embedder, "JWT auth", now)
        store.touch = AsyncMock(side_effect=asyncio.TimeoutError())

        result = await retriever.retrieve("JWT", stores_of(store), now=now)

        assert len(result.results) == 1
        assert result.degraded is False
