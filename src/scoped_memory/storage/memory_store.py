"""In-process backing store.

Holds records in a dict for the lifetime of the object. Used for the
ephemeral session scope (discarded on teardown) and for tests. Vector
search is brute-force cosine with numpy; keyword search is BM25 over a
lowercase word tokenizer.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from datetime import datetime

import numpy as np
from loguru import logger

from ..models import AuditEntry, Entity, MemoryRecord, RecordFilter, RecordStatus

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

BM25_K1 = 1.2
BM25_B = 0.75


def tokenize(text: str) -> list[str]:
    return [t.lower() for t in _TOKEN_RE.findall(text)]


def bm25_rank(
    query: str,
    documents: list[tuple[str, str]],
) -> list[tuple[str, float]]:
    """Rank (doc_id, text) pairs against a query with Okapi BM25.

    Returns:
        (doc_id, score) for documents with a positive score, best first
    """
    terms = set(tokenize(query))
    if not terms or not documents:
        return []

    tokenized = [(doc_id, tokenize(text)) for doc_id, text in documents]
    n_docs = len(tokenized)
    avg_len = sum(len(tokens) for _, tokens in tokenized) / n_docs or 1.0
    doc_freq = Counter()
    for _, tokens in tokenized:
        doc_freq.update(set(tokens) & terms)

    scored: list[tuple[str, float]] = []
    for doc_id, tokens in tokenized:
        counts = Counter(tokens)
        score = 0.0
        for term in terms:
            tf = counts.get(term, 0)
            if tf == 0:
                continue
            idf = math.log(1 + (n_docs - doc_freq[term] + 0.5) / (doc_freq[term] + 0.5))
            norm = tf + BM25_K1 * (1 - BM25_B + BM25_B * len(tokens) / avg_len)
            score += idf * tf * (BM25_K1 + 1) / norm
        if score > 0:
            scored.append((doc_id, score))

    scored.sort(key=lambda pair: (-pair[1], pair[0]))
    return scored


class InMemoryBackend:
    """Dict-backed implementation of the BackingStore protocol."""

    def __init__(self, name: str = "memory"):
        self.name = name
        self._records: dict[str, MemoryRecord] = {}
        self._entities: dict[str, Entity] = {}
        self._links: dict[str, set[str]] = {}  # entity name -> record ids
        self._audit: list[AuditEntry] = []
        self._connected = False

    async def connect(self) -> None:
        self._connected = True
        logger.debug(f"InMemoryBackend '{self.name}' connected")

    async def close(self) -> None:
        self._connected = False
        self._records.clear()
        self._entities.clear()
        self._links.clear()
        self._audit.clear()
        logger.debug(f"InMemoryBackend '{self.name}' closed")

    async def ping(self) -> bool:
        return self._connected

    def _require_connection(self) -> None:
        if not self._connected:
            raise ConnectionError(f"InMemoryBackend '{self.name}' is not connected")

    async def upsert(self, record: MemoryRecord) -> None:
        self._require_connection()
        self._records[record.id] = record.model_copy(deep=True)

    async def get(self, record_id: str) -> MemoryRecord | None:
        self._require_connection()
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record else None

    def _filtered(self, record_filter: RecordFilter) -> list[MemoryRecord]:
        return [r for r in self._records.values() if record_filter.matches(r)]

    async def query(self, record_filter: RecordFilter) -> list[MemoryRecord]:
        self._require_connection()
        records = sorted(
            self._filtered(record_filter), key=lambda r: r.updated_at, reverse=True,
        )
        if record_filter.limit is not None:
            records = records[: record_filter.limit]
        return [r.model_copy(deep=True) for r in records]

    async def vector_search(
        self,
        embedding: list[float],
        k: int,
        record_filter: RecordFilter,
    ) -> list[tuple[MemoryRecord, float]]:
        self._require_connection()
        candidates = [
            r for r in self._filtered(record_filter)
            if r.embedding and len(r.embedding) == len(embedding)
        ]
        if not candidates or not embedding:
            return []

        query = np.asarray(embedding, dtype=np.float32)
        matrix = np.asarray([r.embedding for r in candidates], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        similarities = matrix @ query / norms

        order = np.argsort(-similarities, kind="stable")[:k]
        return [
            (candidates[i].model_copy(deep=True), float(similarities[i]))
            for i in order
        ]

    async def keyword_search(
        self,
        text: str,
        k: int,
        record_filter: RecordFilter,
    ) -> list[tuple[MemoryRecord, float]]:
        self._require_connection()
        candidates = {r.id: r for r in self._filtered(record_filter)}
        ranked = bm25_rank(
            text,
            [(r.id, f"{r.content} {r.summary or ''} {' '.join(r.tags)}")
             for r in candidates.values()],
        )
        return [
            (candidates[doc_id].model_copy(deep=True), score)
            for doc_id, score in ranked[:k]
        ]

    async def delete(self, record_id: str) -> bool:
        self._require_connection()
        for linked in self._links.values():
            linked.discard(record_id)
        return self._records.pop(record_id, None) is not None

    async def find_by_chain_source(self, record_id: str) -> list[MemoryRecord]:
        self._require_connection()
        return [
            r.model_copy(deep=True)
            for r in self._records.values()
            if r.chain_mentions(record_id) is not None
        ]

    async def link_entities(self, record_id: str, entities: list[Entity]) -> None:
        self._require_connection()
        for entity in entities:
            key = entity.name.lower()
            existing = self._entities.get(key)
            if existing:
                existing.mention_count += 1
            else:
                self._entities[key] = entity.model_copy()
            self._links.setdefault(key, set()).add(record_id)

    async def related_records(self, entity_name: str, limit: int) -> list[MemoryRecord]:
        self._require_connection()
        ids = self._links.get(entity_name.lower(), set())
        records = [
            self._records[i] for i in ids
            if i in self._records and self._records[i].status == RecordStatus.ACTIVE
        ]
        records.sort(key=lambda r: r.importance, reverse=True)
        return [r.model_copy(deep=True) for r in records[:limit]]

    async def append_audit(self, entry: AuditEntry) -> None:
        self._require_connection()
        self._audit.append(entry.model_copy())

    async def audit_trail(self, record_id: str) -> list[AuditEntry]:
        self._require_connection()
        return [e.model_copy() for e in self._audit if e.record_id == record_id]

    async def changes(self, since: datetime | None = None) -> list[AuditEntry]:
        self._require_connection()
        return [
            e.model_copy() for e in self._audit
            if since is None or e.timestamp > since
        ]

    async def count_by(self, field: str) -> dict[str, int]:
        self._require_connection()
        if field not in ("memory_type", "status"):
            raise ValueError(f"Cannot count by {field!r}")
        counts: Counter[str] = Counter()
        for record in self._records.values():
            counts[getattr(record, field).value] += 1
        return dict(counts)
