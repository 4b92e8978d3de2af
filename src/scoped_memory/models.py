"""Scoped memory data models."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def content_hash(scope: str, content: str) -> str:
    """Idempotency token for a piece of content within a scope."""
    normalized = " ".join(content.split()).lower()
    return hashlib.sha256(f"{scope}\x00{normalized}".encode("utf-8")).hexdigest()


class Scope(str, Enum):
    SESSION = "session"
    PROJECT = "project"
    USER = "user"

    @property
    def rank(self) -> int:
        """Breadth of the scope: session=0, project=1, user=2."""
        return _SCOPE_ORDER.index(self)

    def next_scope(self) -> "Scope | None":
        """The scope a record is promoted into, or None for user."""
        if self.rank + 1 < len(_SCOPE_ORDER):
            return _SCOPE_ORDER[self.rank + 1]
        return None

    def is_broader_than(self, other: "Scope") -> bool:
        return self.rank > other.rank


_SCOPE_ORDER = [Scope.SESSION, Scope.PROJECT, Scope.USER]


class MemoryType(str, Enum):
    OBSERVATION = "observation"
    DECISION = "decision"
    PATTERN = "pattern"
    CONVENTION = "convention"
    FACT = "fact"
    PREFERENCE = "preference"
    ERROR_FIX = "error_fix"
    ARCHITECTURE = "architecture"
    PROCEDURE = "procedure"
    ENTITY = "entity"
    SCRATCHPAD = "scratchpad"
    TOOL_OUTCOME = "tool_outcome"


class RecordStatus(str, Enum):
    ACTIVE = "active"
    CONSOLIDATED = "consolidated"
    ARCHIVED = "archived"
    PROMOTED = "promoted"


# active -> {consolidated, archived, promoted}; consolidated records may
# still be archived by maintenance. archived and promoted are terminal.
ALLOWED_TRANSITIONS: dict[RecordStatus, frozenset[RecordStatus]] = {
    RecordStatus.ACTIVE: frozenset(
        {RecordStatus.CONSOLIDATED, RecordStatus.ARCHIVED, RecordStatus.PROMOTED}
    ),
    RecordStatus.CONSOLIDATED: frozenset({RecordStatus.ARCHIVED}),
    RecordStatus.ARCHIVED: frozenset(),
    RecordStatus.PROMOTED: frozenset(),
}


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DEGRADED = "degraded"


def validate_metadata_value(value: Any, path: str = "metadata") -> Any:
    """Check that a metadata value is string/number/bool/list/map.

    Raises:
        ValueError: For None or any other type.
    """
    if isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (list, tuple)):
        return [validate_metadata_value(v, f"{path}[{i}]") for i, v in enumerate(value)]
    if isinstance(value, dict):
        validated = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path} keys must be strings, got {type(key).__name__}")
            validated[key] = validate_metadata_value(item, f"{path}.{key}")
        return validated
    raise ValueError(f"{path} has unsupported type {type(value).__name__}")


class PromotionEntry(BaseModel):
    """One step in a record's lineage across scopes."""

    scope: Scope
    record_id: str
    action: str  # "created", "merged", "consolidated"
    timestamp: datetime = Field(default_factory=_utcnow)


class MemoryRecord(BaseModel):
    """A single memory in one scope."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=_uuid, frozen=True)
    scope: Scope
    memory_type: MemoryType
    content: str
    summary: str | None = None
    embedding: list[float] | None = None
    importance: float = 0.5
    confidence: float = 0.7
    access_count: int = 0
    last_accessed: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    status: RecordStatus = RecordStatus.ACTIVE
    tags: list[str] = Field(default_factory=list)
    domain: str | None = None
    promotion_chain: list[PromotionEntry] = Field(default_factory=list)
    source_session: str | None = None
    source_project: str | None = None
    source_scope: Scope | None = None
    derived_from: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("importance", "confidence", mode="before")
    @classmethod
    def _clamp_unit(cls, value: Any) -> float:
        return max(0.0, min(1.0, float(value)))

    @field_validator("access_count")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("access_count must be non-negative")
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _dedupe_tags(cls, value: Any) -> list[str]:
        if value is None:
            return []
        seen: dict[str, None] = {}
        for tag in value:
            tag = str(tag).strip()
            if tag:
                seen.setdefault(tag, None)
        return list(seen)

    @field_validator("last_accessed", "created_at", "updated_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _check_metadata(cls, value: Any) -> dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("metadata must be a mapping")
        return validate_metadata_value(value)

    @property
    def content_hash(self) -> str:
        return content_hash(self.scope.value, self.content)

    def chain_mentions(self, record_id: str) -> PromotionEntry | None:
        """Return the promotion_chain entry that references record_id, if any."""
        for entry in self.promotion_chain:
            if entry.record_id == record_id:
                return entry
        return None


class Entity(BaseModel):
    """Knowledge graph node referenced from memory records."""

    name: str
    entity_type: str = "concept"
    description: str = ""
    mention_count: int = 1
    created_at: datetime = Field(default_factory=_utcnow)


class Relation(BaseModel):
    """Knowledge graph edge between a record or entity and another entity."""

    source: str
    target: str
    relation_type: str = "mentions"
    weight: float = 0.5
    created_at: datetime = Field(default_factory=_utcnow)


class AuditEntry(BaseModel):
    """A lifecycle event recorded by a scope store."""

    record_id: str
    scope: Scope
    event: str  # "created", "status_change", "promotion", "merge", "deleted"
    old_status: str | None = None
    new_status: str | None = None
    detail: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)


class SessionContext(BaseModel):
    """Identifies which logical stores a call operates on."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    project_key: str
    user_id: str

    def key_for(self, scope: Scope) -> str:
        if scope == Scope.SESSION:
            return self.session_id
        if scope == Scope.PROJECT:
            return self.project_key
        return self.user_id


class RecordFilter(BaseModel):
    """Filter applied by backends to query, vector and keyword searches."""

    statuses: list[RecordStatus] = Field(default_factory=lambda: [RecordStatus.ACTIVE])
    memory_types: list[MemoryType] | None = None
    tags: list[str] | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    limit: int | None = None

    def matches(self, record: MemoryRecord) -> bool:
        if self.statuses and record.status not in self.statuses:
            return False
        if self.memory_types and record.memory_type not in self.memory_types:
            return False
        if self.tags and not set(self.tags).intersection(record.tags):
            return False
        if self.created_after and record.created_at < ensure_utc(self.created_after):
            return False
        if self.created_before and record.created_at > ensure_utc(self.created_before):
            return False
        return True


class RecallHit(BaseModel):
    """A record returned by recall with its scoring breakdown."""

    record: MemoryRecord
    scope: Scope
    score: float
    rrf_score: float = 0.0
    strength: float = 0.0
    sources: list[str] = Field(default_factory=list)


class RecallResult(BaseModel):
    """Ranked recall output; degraded is True when any scope was unreachable."""

    results: list[RecallHit] = Field(default_factory=list)
    degraded: bool = False
    failed_scopes: list[Scope] = Field(default_factory=list)

    @property
    def ids(self) -> list[str]:
        return [hit.record.id for hit in self.results]


class WriteResult(BaseModel):
    """Outcome of a store call."""

    id: str
    scope: Scope
    status: str = "stored"  # "stored" or "queued"
    warnings: list[str] = Field(default_factory=list)


class PromotionOutcome(BaseModel):
    """Outcome of moving a record into a broader scope."""

    action: str  # "merged" or "created"
    target_id: str
    source_id: str
    source_scope: Scope | None = None
    target_scope: Scope
    reason: str = ""
    replayed: bool = False
    queued: bool = False


class ForgetResult(BaseModel):
    id: str
    status: str  # "archived", "already_archived" or "queued"


class ConsolidationCandidate(BaseModel):
    """A change the consolidation engine would make (or made)."""

    action: str  # "cluster", "archive" or "delete"
    scope: Scope
    record_ids: list[str]
    memory_type: MemoryType | None = None
    preview: str = ""
    derived_id: str | None = None


class ServiceStatus(BaseModel):
    connection_state: ConnectionState
    counts_by_scope: dict[str, int] = Field(default_factory=dict)
    counts_by_type: dict[str, int] = Field(default_factory=dict)
    queue_depth: int = 0
    queue_failures: int = 0
    unavailable_scopes: list[Scope] = Field(default_factory=list)
