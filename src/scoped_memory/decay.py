"""Memory strength: time- and access-weighted decay.

    strength = importance * confidence * 0.5 ** (days_since_access / half_life)
    half_life = base_half_life(scope) * (1 + access_bonus * access_count)

Strength is recomputed on every read and never persisted. Session scope
has no base half-life, so session records do not decay while the session
is alive.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone

from .config import DecayConfig
from .models import MemoryRecord, Scope, ensure_utc

SECONDS_PER_DAY = 86400.0


class DecayEngine:
    """Computes strength for records without mutating them."""

    def __init__(self, config: DecayConfig | None = None):
        self._config = config or DecayConfig()

    def base_half_life(self, scope: Scope) -> float:
        """Base half-life in days; math.inf when the scope does not decay."""
        if scope == Scope.SESSION:
            value = self._config.session_half_life_days
        elif scope == Scope.PROJECT:
            value = self._config.project_half_life_days
        else:
            value = self._config.user_half_life_days
        if value is None or value <= 0:
            return math.inf
        return value

    def half_life(self, scope: Scope, access_count: int) -> float:
        base = self.base_half_life(scope)
        if math.isinf(base):
            return base
        return base * (1.0 + self._config.access_bonus * max(0, access_count))

    def strength(self, record: MemoryRecord, now: datetime | None = None) -> float:
        now = ensure_utc(now) if now else datetime.now(timezone.utc)
        base = record.importance * record.confidence
        half_life = self.half_life(record.scope, record.access_count)
        if math.isinf(half_life):
            return base

        # Clock skew can put last_accessed slightly in the future
        elapsed = max(0.0, (now - record.last_accessed).total_seconds())
        days = elapsed / SECONDS_PER_DAY
        return base * math.pow(0.5, days / half_life)

    @staticmethod
    def age_days(record: MemoryRecord, now: datetime | None = None) -> float:
        now = ensure_utc(now) if now else datetime.now(timezone.utc)
        return max(0.0, (now - record.created_at).total_seconds()) / SECONDS_PER_DAY
