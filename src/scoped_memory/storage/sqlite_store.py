"""SQLite backing store.

One database file per logical store (a project key or a user id), accessed
with aiosqlite. Keyword search uses an FTS5 virtual table kept in sync with
the memories table by triggers; vector search loads the float32 embedding
BLOBs of matching rows and ranks them by cosine similarity.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import aiosqlite
import numpy as np
from loguru import logger

from ..embedding import EmbeddingService
from ..models import AuditEntry, Entity, MemoryRecord, RecordFilter, Relation, ensure_utc

_RECORD_COLUMNS = (
    "id, scope, memory_type, content, summary, embedding, importance, "
    "confidence, access_count, last_accessed, created_at, updated_at, status, "
    "tags, domain, promotion_chain, source_session, source_project, "
    "source_scope, derived_from, metadata"
)


class SQLiteBackend:
    """aiosqlite implementation of the BackingStore protocol.

    Uses WAL mode so that concurrent sessions on the same project can read
    while one of them writes.
    """

    def __init__(self, db_path: str):
        """Initialize SQLite backend.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        logger.debug(f"SQLiteBackend created with db_path: {db_path}")

    async def connect(self) -> None:
        """Open the database and create tables and indexes if needed."""
        if self._db is not None:
            return

        db_dir = Path(self.db_path).parent
        db_dir.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")

        await self._create_tables()
        await self._create_indexes()
        await self._db.commit()
        logger.info(f"SQLite memory store ready: {self.db_path}")

    async def _create_tables(self) -> None:
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                scope TEXT NOT NULL,
                memory_type TEXT NOT NULL,
                content TEXT NOT NULL,
                summary TEXT,
                embedding BLOB,
                importance REAL DEFAULT 0.5,
                confidence REAL DEFAULT 0.7,
                access_count INTEGER DEFAULT 0,
                last_accessed TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                tags TEXT NOT NULL DEFAULT '[]',
                domain TEXT,
                promotion_chain TEXT NOT NULL DEFAULT '[]',
                source_session TEXT,
                source_project TEXT,
                source_scope TEXT,
                derived_from TEXT NOT NULL DEFAULT '[]',
                metadata TEXT NOT NULL DEFAULT '{}'
            )
        """)

        await self._db.execute("""
            CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts
            USING fts5(content, summary, tags, content=memories, content_rowid=rowid)
        """)

        await self._db.execute("""
            CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
                INSERT INTO memories_fts(rowid, content, summary, tags)
                VALUES (new.rowid, new.content, new.summary, new.tags);
            END
        """)

        await self._db.execute("""
            CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
                INSERT INTO memories_fts(memories_fts, rowid, content, summary, tags)
                VALUES ('delete', old.rowid, old.content, old.summary, old.tags);
            END
        """)

        await self._db.execute("""
            CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE ON memories BEGIN
                INSERT INTO memories_fts(memories_fts, rowid, content, summary, tags)
                VALUES ('delete', old.rowid, old.content, old.summary, old.tags);
                INSERT INTO memories_fts(rowid, content, summary, tags)
                VALUES (new.rowid, new.content, new.summary, new.tags);
            END
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS entities (
                name_key TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                description TEXT DEFAULT '',
                mention_count INTEGER DEFAULT 1,
                created_at TEXT NOT NULL
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS relations (
                source TEXT NOT NULL,
                target TEXT NOT NULL,
                relation_type TEXT NOT NULL,
                weight REAL DEFAULT 0.5,
                created_at TEXT NOT NULL,
                PRIMARY KEY (source, target, relation_type)
            )
        """)

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id TEXT NOT NULL,
                scope TEXT NOT NULL,
                event TEXT NOT NULL,
                old_status TEXT,
                new_status TEXT,
                detail TEXT DEFAULT '',
                timestamp TEXT NOT NULL
            )
        """)

    async def _create_indexes(self) -> None:
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_memories_status ON memories(status)"
        )
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_memories_type ON memories(memory_type)"
        )
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_memories_updated ON memories(updated_at)"
        )
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_relations_target ON relations(target)"
        )
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_record ON audit_log(record_id)"
        )

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None
            logger.info(f"SQLite memory store closed: {self.db_path}")

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise ConnectionError(f"SQLite store not connected: {self.db_path}")
        return self._db

    async def ping(self) -> bool:
        try:
            async with self._conn().execute("SELECT 1") as cursor:
                await cursor.fetchone()
            return True
        except (ConnectionError, aiosqlite.Error) as e:
            logger.debug(f"SQLite ping failed for {self.db_path}: {e}")
            return False

    # ── Serialization ───────────────────────────────────────────────────

    @staticmethod
    def _record_params(record: MemoryRecord) -> tuple:
        data = record.model_dump(mode="json")
        embedding = (
            EmbeddingService.serialize_embedding(record.embedding)
            if record.embedding else None
        )
        return (
            record.id,
            record.scope.value,
            record.memory_type.value,
            record.content,
            record.summary,
            embedding,
            record.importance,
            record.confidence,
            record.access_count,
            record.last_accessed.isoformat(),
            record.created_at.isoformat(),
            record.updated_at.isoformat(),
            record.status.value,
            json.dumps(data["tags"]),
            record.domain,
            json.dumps(data["promotion_chain"]),
            record.source_session,
            record.source_project,
            record.source_scope.value if record.source_scope else None,
            json.dumps(data["derived_from"]),
            json.dumps(data["metadata"]),
        )

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> MemoryRecord:
        blob = row["embedding"]
        return MemoryRecord.model_validate({
            "id": row["id"],
            "scope": row["scope"],
            "memory_type": row["memory_type"],
            "content": row["content"],
            "summary": row["summary"],
            "embedding": EmbeddingService.deserialize_embedding(blob) if blob else None,
            "importance": row["importance"],
            "confidence": row["confidence"],
            "access_count": row["access_count"],
            "last_accessed": row["last_accessed"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
            "status": row["status"],
            "tags": json.loads(row["tags"] or "[]"),
            "domain": row["domain"],
            "promotion_chain": json.loads(row["promotion_chain"] or "[]"),
            "source_session": row["source_session"],
            "source_project": row["source_project"],
            "source_scope": row["source_scope"],
            "derived_from": json.loads(row["derived_from"] or "[]"),
            "metadata": json.loads(row["metadata"] or "{}"),
        })

    @staticmethod
    def _filter_clause(record_filter: RecordFilter, alias: str = "m") -> tuple[str, list]:
        clauses: list[str] = []
        params: list = []
        if record_filter.statuses:
            marks = ", ".join("?" for _ in record_filter.statuses)
            clauses.append(f"{alias}.status IN ({marks})")
            params.extend(s.value for s in record_filter.statuses)
        if record_filter.memory_types:
            marks = ", ".join("?" for _ in record_filter.memory_types)
            clauses.append(f"{alias}.memory_type IN ({marks})")
            params.extend(t.value for t in record_filter.memory_types)
        if record_filter.tags:
            marks = ", ".join("?" for _ in record_filter.tags)
            clauses.append(
                f"EXISTS (SELECT 1 FROM json_each({alias}.tags) WHERE value IN ({marks}))"
            )
            params.extend(record_filter.tags)
        if record_filter.created_after:
            clauses.append(f"{alias}.created_at >= ?")
            params.append(ensure_utc(record_filter.created_after).isoformat())
        if record_filter.created_before:
            clauses.append(f"{alias}.created_at <= ?")
            params.append(ensure_utc(record_filter.created_before).isoformat())
        where = " AND ".join(clauses) if clauses else "1=1"
        return where, params

    @staticmethod
    def _sanitize_fts_query(query: str) -> str:
        """Quote each word so FTS5 operators in user text are inert."""
        words = [w.replace('"', "") for w in query.split()]
        safe_words = [f'"{w}"' for w in words if w.strip()]
        return " OR ".join(safe_words)

    # ── Records ─────────────────────────────────────────────────────────

    async def upsert(self, record: MemoryRecord) -> None:
        db = self._conn()
        placeholders = ", ".join("?" for _ in _RECORD_COLUMNS.split(","))
        updates = ", ".join(
            f"{col.strip()} = excluded.{col.strip()}"
            for col in _RECORD_COLUMNS.split(",")
            if col.strip() != "id"
        )
        await db.execute(
            f"""
            INSERT INTO memories ({_RECORD_COLUMNS})
            VALUES ({placeholders})
            ON CONFLICT(id) DO UPDATE SET {updates}
            """,
            self._record_params(record),
        )
        await db.commit()
        logger.debug(f"Memory upserted: {record.id}")

    async def get(self, record_id: str) -> MemoryRecord | None:
        async with self._conn().execute(
            f"SELECT {_RECORD_COLUMNS} FROM memories WHERE id = ?",
            (record_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_record(row) if row else None

    async def query(self, record_filter: RecordFilter) -> list[MemoryRecord]:
        where, params = self._filter_clause(record_filter)
        sql = f"SELECT {_RECORD_COLUMNS} FROM memories m WHERE {where} ORDER BY m.updated_at DESC"
        if record_filter.limit is not None:
            sql += " LIMIT ?"
            params.append(record_filter.limit)
        async with self._conn().execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def vector_search(
        self,
        embedding: list[float],
        k: int,
        record_filter: RecordFilter,
    ) -> list[tuple[MemoryRecord, float]]:
        if not embedding:
            return []
        where, params = self._filter_clause(record_filter)
        async with self._conn().execute(
            f"SELECT {_RECORD_COLUMNS} FROM memories m "
            f"WHERE m.embedding IS NOT NULL AND {where}",
            params,
        ) as cursor:
            rows = await cursor.fetchall()

        records = [self._row_to_record(row) for row in rows]
        records = [r for r in records if r.embedding and len(r.embedding) == len(embedding)]
        if not records:
            return []

        query = np.asarray(embedding, dtype=np.float32)
        matrix = np.asarray([r.embedding for r in records], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        norms[norms == 0] = 1.0
        similarities = matrix @ query / norms
        order = np.argsort(-similarities, kind="stable")[:k]
        return [(records[i], float(similarities[i])) for i in order]

    async def keyword_search(
        self,
        text: str,
        k: int,
        record_filter: RecordFilter,
    ) -> list[tuple[MemoryRecord, float]]:
        fts_query = self._sanitize_fts_query(text)
        if not fts_query:
            return []
        where, params = self._filter_clause(record_filter)
        sql = f"""
            SELECT {", ".join(f"m.{c.strip()}" for c in _RECORD_COLUMNS.split(","))},
                   bm25(memories_fts) AS fts_rank
            FROM memories_fts
            JOIN memories m ON m.rowid = memories_fts.rowid
            WHERE memories_fts MATCH ? AND {where}
            ORDER BY fts_rank
            LIMIT ?
        """
        try:
            async with self._conn().execute(sql, [fts_query, *params, k]) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.OperationalError as e:
            # Malformed MATCH expressions are a query problem, not an outage
            if "fts5" in str(e).lower() or "syntax" in str(e).lower():
                logger.warning(f"FTS search failed for query '{text}': {e}")
                return []
            raise
        # bm25() is lower-is-better and negative; flip to a positive relevance
        return [(self._row_to_record(row), -float(row["fts_rank"])) for row in rows]

    async def delete(self, record_id: str) -> bool:
        db = self._conn()
        cursor = await db.execute("DELETE FROM memories WHERE id = ?", (record_id,))
        await db.execute("DELETE FROM relations WHERE source = ?", (record_id,))
        await db.commit()
        deleted = cursor.rowcount > 0
        if deleted:
            logger.debug(f"Memory deleted: {record_id}")
        return deleted

    async def find_by_chain_source(self, record_id: str) -> list[MemoryRecord]:
        async with self._conn().execute(
            f"""
            SELECT {_RECORD_COLUMNS} FROM memories m
            WHERE EXISTS (
                SELECT 1 FROM json_each(m.promotion_chain)
                WHERE json_extract(value, '$.record_id') = ?
            )
            """,
            (record_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    # ── Knowledge graph ─────────────────────────────────────────────────

    async def link_entities(self, record_id: str, entities: list[Entity]) -> None:
        db = self._conn()
        for entity in entities:
            key = entity.name.lower()
            await db.execute(
                """
                INSERT INTO entities
                    (name_key, name, entity_type, description, mention_count, created_at)
                VALUES (?, ?, ?, ?, 1, ?)
                ON CONFLICT(name_key) DO UPDATE SET
                    mention_count = entities.mention_count + 1
                """,
                (key, entity.name, entity.entity_type, entity.description,
                 entity.created_at.isoformat()),
            )
            edge = Relation(source=record_id, target=key, created_at=entity.created_at)
            await db.execute(
                """
                INSERT OR IGNORE INTO relations
                    (source, target, relation_type, weight, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (edge.source, edge.target, edge.relation_type, edge.weight,
                 edge.created_at.isoformat()),
            )
        await db.commit()
        logger.debug(f"Linked {len(entities)} entities to {record_id}")

    async def related_records(self, entity_name: str, limit: int) -> list[MemoryRecord]:
        async with self._conn().execute(
            f"""
            SELECT {", ".join(f"m.{c.strip()}" for c in _RECORD_COLUMNS.split(","))}
            FROM relations r
            JOIN memories m ON m.id = r.source
            WHERE r.target = ? AND r.relation_type = 'mentions' AND m.status = 'active'
            ORDER BY m.importance DESC
            LIMIT ?
            """,
            (entity_name.lower(), limit),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    # ── Audit / changefeed ──────────────────────────────────────────────

    async def append_audit(self, entry: AuditEntry) -> None:
        db = self._conn()
        await db.execute(
            """
            INSERT INTO audit_log
                (record_id, scope, event, old_status, new_status, detail, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.record_id,
                entry.scope.value,
                entry.event,
                entry.old_status,
                entry.new_status,
                entry.detail,
                entry.timestamp.isoformat(),
            ),
        )
        await db.commit()

    @staticmethod
    def _row_to_audit(row: aiosqlite.Row) -> AuditEntry:
        return AuditEntry(
            record_id=row["record_id"],
            scope=row["scope"],
            event=row["event"],
            old_status=row["old_status"],
            new_status=row["new_status"],
            detail=row["detail"] or "",
            timestamp=row["timestamp"],
        )

    async def audit_trail(self, record_id: str) -> list[AuditEntry]:
        async with self._conn().execute(
            "SELECT * FROM audit_log WHERE record_id = ? ORDER BY seq",
            (record_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_audit(row) for row in rows]

    async def changes(self, since: datetime | None = None) -> list[AuditEntry]:
        if since is None:
            sql, params = "SELECT * FROM audit_log ORDER BY seq", ()
        else:
            sql = "SELECT * FROM audit_log WHERE timestamp > ? ORDER BY seq"
            params = (ensure_utc(since).isoformat(),)
        async with self._conn().execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_audit(row) for row in rows]

    async def count_by(self, field: str) -> dict[str, int]:
        if field not in ("memory_type", "status"):
            raise ValueError(f"Cannot count by {field!r}")
        async with self._conn().execute(
            f"SELECT {field}, COUNT(*) FROM memories GROUP BY {field}"
        ) as cursor:
            rows = await cursor.fetchall()
        return {row[0]: row[1] for row in rows}
