"""
Collaborator interfaces.

Protocol classes keep the engine independent of a particular persistence
engine, embedding model or summarizer.
"""

from datetime import datetime
from typing import Protocol, runtime_checkable

from .models import AuditEntry, Entity, MemoryRecord, RecordFilter


@runtime_checkable
class BackingStore(Protocol):
    """Persistence for one logical database (one scope instance).

    Implementations raise OSError-style exceptions when unreachable;
    ScopeStore translates them into ConnectionUnavailable.
    """

    async def connect(self) -> None:
        """Open connections and create schema if needed."""
        ...

    async def close(self) -> None:
        ...

    async def ping(self) -> bool:
        """Cheap reachability check."""
        ...

    async def upsert(self, record: MemoryRecord) -> None:
        """Insert or replace a record by id."""
        ...

    async def get(self, record_id: str) -> MemoryRecord | None:
        ...

    async def query(self, record_filter: RecordFilter) -> list[MemoryRecord]:
        """Records matching the filter, most recently updated first."""
        ...

    async def vector_search(
        self,
        embedding: list[float],
        k: int,
        record_filter: RecordFilter,
    ) -> list[tuple[MemoryRecord, float]]:
        """Top-k records by cosine similarity, best first."""
        ...

    async def keyword_search(
        self,
        text: str,
        k: int,
        record_filter: RecordFilter,
    ) -> list[tuple[MemoryRecord, float]]:
        """Top-k records by keyword relevance, best first."""
        ...

    async def delete(self, record_id: str) -> bool:
        ...

    async def find_by_chain_source(self, record_id: str) -> list[MemoryRecord]:
        """Records whose promotion_chain references record_id."""
        ...

    async def link_entities(self, record_id: str, entities: list[Entity]) -> None:
        """Upsert entity nodes and record->entity 'mentions' edges."""
        ...

    async def related_records(self, entity_name: str, limit: int) -> list[MemoryRecord]:
        """Active records linked to the named entity."""
        ...

    async def append_audit(self, entry: AuditEntry) -> None:
        ...

    async def audit_trail(self, record_id: str) -> list[AuditEntry]:
        ...

    async def changes(self, since: datetime | None = None) -> list[AuditEntry]:
        """Changefeed: audit entries after ``since`` in order."""
        ...

    async def count_by(self, field: str) -> dict[str, int]:
        """Counts of records grouped by 'memory_type' or 'status'."""
        ...


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Text to fixed-dimension vector."""

    @property
    def dimension(self) -> int:
        ...

    async def embed(self, text: str) -> list[float]:
        """Raises EmbeddingFailure when no vector can be produced."""
        ...


@runtime_checkable
class Summarizer(Protocol):
    """Produces the content of a consolidated (derived) record."""

    async def summarize(self, contents: list[str]) -> str:
        ...
