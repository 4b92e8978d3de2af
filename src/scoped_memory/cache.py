"""LRU cache of recent recall results, served while degraded."""

from __future__ import annotations

from collections import OrderedDict

from .models import RecallResult


class RecallCache:
    """Least-recently-used cache keyed by the normalized recall request.

    Only filled from successful (non-degraded) recalls.
    """

    def __init__(self, maxsize: int = 128):
        self._maxsize = maxsize
        self._cache: OrderedDict[str, RecallResult] = OrderedDict()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0}

    @staticmethod
    def make_key(*parts: object) -> str:
        return "|".join(str(p).strip().lower() for p in parts)

    def get(self, key: str) -> RecallResult | None:
        result = self._cache.get(key)
        if result is None:
            self._stats["misses"] += 1
            return None
        self._cache.move_to_end(key)
        self._stats["hits"] += 1
        return result.model_copy(deep=True)

    def set(self, key: str, result: RecallResult) -> None:
        if self._maxsize <= 0:
            return
        if key in self._cache:
            self._cache.move_to_end(key)
        self._cache[key] = result.model_copy(deep=True)
        while len(self._cache) > self._maxsize:
            self._cache.popitem(last=False)
            self._stats["evictions"] += 1

    def invalidate(self) -> None:
        """Drop every entry; cached results may hold archived records."""
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)
