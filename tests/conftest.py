"""
Scoped memory test fixtures.

Shared doubles: a deterministic hashing embedder standing in for the
sentence-transformers model, and a backend wrapper that can be switched
offline to simulate an unreachable store.
"""
import asyncio
import hashlib
import math
import re
from datetime import datetime, timezone

import pytest

from scoped_memory.config import MemoryConfig
from scoped_memory.exceptions import EmbeddingFailure
from scoped_memory.memory_service import MemoryService
from scoped_memory.models import MemoryRecord, Scope, SessionContext
from scoped_memory.scope_store import ScopeStore
from scoped_memory.storage.memory_store import InMemoryBackend

_WORD_RE = re.compile(r"\w+")


class HashingEmbedder:
    """Bag of words plus character trigrams, hashed into a fixed dimension.

    Texts sharing words or word fragments get a positive cosine similarity;
    identical texts get exactly 1.0.
    """

    def __init__(self, dimension: int = 256):
        self._dimension = dimension
        self.calls = 0
        self.fail = False

    @property
    def dimension(self) -> int:
        return self._dimension

    def _bucket(self, feature: str) -> int:
        digest = hashlib.md5(feature.encode("utf-8")).hexdigest()
        return int(digest, 16) % self._dimension

    def vector(self, text: str) -> list[float]:
        values = [0.0] * self._dimension
        for word in _WORD_RE.findall(text.lower()):
            values[self._bucket(f"w:{word}")] += 1.0
            padded = f"#{word}#"
            for i in range(len(padded) - 2):
                values[self._bucket(f"t:{padded[i:i + 3]}")] += 0.5
        norm = math.sqrt(sum(v * v for v in values))
        return [v / norm for v in values] if norm else values

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.fail:
            raise EmbeddingFailure("embedder switched off")
        return self.vector(text)


class FlakyBackend:
    """Delegates to an InMemoryBackend unless switched offline.

    ``delays`` and ``errors`` map a method name to a sleep in seconds or an
    exception to raise, to simulate slow or broken stores.
    """

    def __init__(self, name: str = "flaky"):
        self.inner = InMemoryBackend(name)
        self.online = True
        self.delays: dict[str, float] = {}
        self.errors: dict[str, Exception] = {}

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if not callable(attr):
            return attr

        async def guarded(*args, **kwargs):
            if not self.online:
                raise ConnectionError(f"backend offline during {name}")
            if name in self.errors:
                raise self.errors[name]
            if name in self.delays:
                await asyncio.sleep(self.delays[name])
            return await attr(*args, **kwargs)

        return guarded


class FlakyFactory:
    """Backend factory for MemoryService that remembers what it built."""

    def __init__(self):
        self.backends: dict[tuple[Scope, str], FlakyBackend] = {}

    def __call__(self, scope: Scope, key: str) -> FlakyBackend:
        backend = FlakyBackend(f"{scope.value}:{key}")
        self.backends[(scope, key)] = backend
        return backend

    def set_online(self, online: bool) -> None:
        for backend in self.backends.values():
            backend.online = online


def make_record(
    scope: Scope = Scope.PROJECT,
    content: str = "a memory",
    embedding: list[float] | None = None,
    **kwargs,
) -> MemoryRecord:
    return MemoryRecord(
        scope=scope,
        memory_type=kwargs.pop("memory_type", "fact"),
        content=content,
        embedding=embedding,
        **kwargs,
    )


@pytest.fixture
def now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def ctx():
    return SessionContext(session_id="sess-1", project_key="proj-a", user_id="user-1")


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def memory_config():
    """In-memory backends everywhere, reconnect only when asked."""
    return MemoryConfig(
        storage={"backend": "memory"},
        degraded={"reconnect_interval_seconds": 3600},
    )


@pytest.fixture
def flaky_factory():
    return FlakyFactory()


@pytest.fixture
async def service(memory_config, embedder, flaky_factory):
    svc = MemoryService(
        config=memory_config, embedder=embedder, backend_factory=flaky_factory,
    )
    yield svc
    flaky_factory.set_online(True)
    await svc.close()


@pytest.fixture
async def project_store():
    store = ScopeStore(Scope.PROJECT, InMemoryBackend("project"), key="proj-a")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
async def session_store():
    store = ScopeStore(Scope.SESSION, InMemoryBackend("session"), key="sess-1")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
async def user_store():
    store = ScopeStore(Scope.USER, InMemoryBackend("user"), key="user-1")
    await store.connect()
    yield store
    await store.close()
