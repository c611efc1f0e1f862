# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
SQLite relational store.

Async SQLite storage for memories, concepts, relationships and the merge audit
log, using aiosqlite. Open maps (context, metadata) are stored as JSON text.
One connection is held for the lifetime of the store so that ``:memory:``
databases survive between calls.
"""

import json
import logging
import os
import time
from typing import Any

import aiosqlite

from ..exceptions import DuplicateContentError, NotFoundError, StorageError
from ..models.audit_log import MergeAuditRecord
from ..models.memory import Concept, Memory, Relationship
from .base import RelationalStore

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS memories (
        id TEXT PRIMARY KEY,
        content TEXT NOT NULL,
        content_hash TEXT NOT NULL,
        context TEXT NOT NULL DEFAULT '{}',
        importance INTEGER NOT NULL DEFAULT 1,
        status TEXT NOT NULL DEFAULT 'active',
        access_count INTEGER NOT NULL DEFAULT 0,
        last_accessed_at REAL,
        embedding_reference TEXT,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL,
        creator TEXT,
        metadata TEXT NOT NULL DEFAULT '{}'
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_memories_hash ON memories(content_hash)",
    # At most one active memory per content hash
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_memories_active_hash ON memories(content_hash) WHERE status = 'active'",
    "CREATE INDEX IF NOT EXISTS idx_memories_status ON memories(status)",
    "CREATE INDEX IF NOT EXISTS idx_memories_creator ON memories(creator)",
    "CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at)",
    """
    CREATE TABLE IF NOT EXISTS concepts (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        type TEXT NOT NULL DEFAULT 'topic',
        confidence REAL NOT NULL DEFAULT 0.8,
        extracted_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS memory_concepts (
        memory_id TEXT NOT NULL REFERENCES memories(id),
        concept_id TEXT NOT NULL REFERENCES concepts(id),
        linked_at REAL NOT NULL,
        PRIMARY KEY (memory_id, concept_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS relationships (
        id TEXT PRIMARY KEY,
        source_id TEXT NOT NULL REFERENCES memories(id),
        target_id TEXT NOT NULL REFERENCES memories(id),
        relationship_type TEXT NOT NULL,
        strength REAL NOT NULL DEFAULT 1.0,
        bidirectional INTEGER NOT NULL DEFAULT 0,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_relationships_source ON relationships(source_id)",
    "CREATE INDEX IF NOT EXISTS idx_relationships_target ON relationships(target_id)",
    """
    CREATE TABLE IF NOT EXISTS memory_merges (
        id TEXT PRIMARY KEY,
        primary_memory_id TEXT NOT NULL,
        merged_memory_ids TEXT NOT NULL,
        strategy TEXT NOT NULL,
        created_at REAL NOT NULL,
        created_by TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_merges_primary ON memory_merges(primary_memory_id)",
]

MEMORY_COLUMNS = (
    "id, content, content_hash, context, importance, status, access_count, "
    "last_accessed_at, embedding_reference, created_at, updated_at, creator, metadata"
)


def _row_to_memory(row: aiosqlite.Row) -> Memory:
    return Memory(
        id=row["id"],
        content=row["content"],
        content_hash=row["content_hash"],
        context=json.loads(row["context"] or "{}"),
        importance=row["importance"],
        status=row["status"],
        access_count=row["access_count"],
        last_accessed_at=row["last_accessed_at"],
        embedding_reference=row["embedding_reference"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        creator=row["creator"],
        metadata=json.loads(row["metadata"] or "{}"),
    )


def _row_to_concept(row: aiosqlite.Row) -> Concept:
    return Concept(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        type=row["type"],
        confidence=row["confidence"],
        extracted_at=row["extracted_at"],
    )


def _row_to_relationship(row: aiosqlite.Row) -> Relationship:
    return Relationship(
        id=row["id"],
        source_id=row["source_id"],
        target_id=row["target_id"],
        relationship_type=row["relationship_type"],
        strength=row["strength"],
        bidirectional=bool(row["bidirectional"]),
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SQLiteMemoryStore(RelationalStore):
    """Async SQLite implementation of ``RelationalStore``."""

    def __init__(self, db_path: str):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ``:memory:``
        """
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the connection and create the schema if missing."""
        if self._db is not None:
            return

        if self.db_path != ":memory:":
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        for statement in SCHEMA:
            await self._db.execute(statement)
        await self._db.commit()
        logger.info(f"Memory graph database initialized at {self.db_path}")

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StorageError("SQLiteMemoryStore used before initialize()")
        return self._db

    async def _fetchall(self, sql: str, params: tuple | list = ()) -> list[aiosqlite.Row]:
        async with self.db.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    async def _fetchone(self, sql: str, params: tuple | list = ()) -> aiosqlite.Row | None:
        async with self.db.execute(sql, params) as cursor:
            return await cursor.fetchone()

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    async def create_memory(self, memory: Memory) -> Memory:
        try:
            await self.db.execute(
                f"INSERT INTO memories ({MEMORY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    memory.id,
                    memory.content,
                    memory.content_hash,
                    json.dumps(memory.context),
                    memory.importance,
                    memory.status,
                    memory.access_count,
                    memory.last_accessed_at,
                    memory.embedding_reference,
                    memory.created_at,
                    memory.updated_at,
                    memory.creator,
                    json.dumps(memory.metadata),
                ),
            )
            await self.db.commit()
        except aiosqlite.IntegrityError as e:
            if memory.status == "active" and "content_hash" in str(e):
                raise DuplicateContentError(memory.content_hash) from e
            raise StorageError(f"Failed to create memory {memory.id}: {e}") from e
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to create memory {memory.id}: {e}") from e
        return memory

    async def get_memory(self, memory_id: str) -> Memory | None:
        row = await self._fetchone(f"SELECT {MEMORY_COLUMNS} FROM memories WHERE id = ?", (memory_id,))
        return _row_to_memory(row) if row else None

    async def update_memory(self, memory: Memory) -> Memory:
        try:
            cursor = await self.db.execute(
                """
                UPDATE memories SET
                    content = ?, content_hash = ?, context = ?, importance = ?, status = ?,
                    access_count = ?, last_accessed_at = ?, embedding_reference = ?,
                    updated_at = ?, creator = ?, metadata = ?
                WHERE id = ?
                """,
                (
                    memory.content,
                    memory.content_hash,
                    json.dumps(memory.context),
                    memory.importance,
                    memory.status,
                    memory.access_count,
                    memory.last_accessed_at,
                    memory.embedding_reference,
                    memory.updated_at,
                    memory.creator,
                    json.dumps(memory.metadata),
                    memory.id,
                ),
            )
            await self.db.commit()
        except aiosqlite.IntegrityError as e:
            if "content_hash" in str(e):
                raise DuplicateContentError(memory.content_hash) from e
            raise StorageError(f"Failed to update memory {memory.id}: {e}") from e
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to update memory {memory.id}: {e}") from e
        if cursor.rowcount == 0:
            raise NotFoundError(memory.id)
        return memory

    async def search_memories(
        self,
        *,
        ids: list[str] | None = None,
        content_hash: str | None = None,
        status: str | None = None,
        creator: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Memory]:
        clauses: list[str] = []
        params: list[Any] = []

        if ids is not None:
            if not ids:
                return []
            clauses.append(f"id IN ({', '.join('?' for _ in ids)})")
            params.extend(ids)
        if content_hash is not None:
            clauses.append("content_hash = ?")
            params.append(content_hash)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if creator is not None:
            clauses.append("creator = ?")
            params.append(creator)

        sql = f"SELECT {MEMORY_COLUMNS} FROM memories"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None or offset:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit if limit is not None else -1, offset])

        rows = await self._fetchall(sql, params)
        return [_row_to_memory(row) for row in rows]

    # ------------------------------------------------------------------
    # Concepts
    # ------------------------------------------------------------------

    async def create_concept(self, concept: Concept) -> Concept:
        try:
            await self.db.execute(
                """
                INSERT INTO concepts (id, name, description, type, confidence, extracted_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    concept.id,
                    concept.name,
                    concept.description,
                    concept.type,
                    concept.confidence,
                    concept.extracted_at,
                ),
            )
            await self.db.commit()
        except aiosqlite.IntegrityError:
            # Lost a race on the unique name; return the winner
            existing = await self.find_concept_by_name(concept.name)
            if existing is None:
                raise
            return existing
        return concept

    async def find_concept_by_name(self, name: str) -> Concept | None:
        row = await self._fetchone(
            "SELECT id, name, description, type, confidence, extracted_at FROM concepts WHERE name = ?",
            (name,),
        )
        return _row_to_concept(row) if row else None

    async def link_memory_concept(self, memory_id: str, concept_id: str) -> None:
        await self.db.execute(
            "INSERT OR IGNORE INTO memory_concepts (memory_id, concept_id, linked_at) VALUES (?, ?, ?)",
            (memory_id, concept_id, time.time()),
        )
        await self.db.commit()

    async def get_memory_concepts(self, memory_id: str) -> list[Concept]:
        rows = await self._fetchall(
            """
            SELECT c.id, c.name, c.description, c.type, c.confidence, c.extracted_at
            FROM concepts c
            JOIN memory_concepts mc ON mc.concept_id = c.id
            WHERE mc.memory_id = ?
            ORDER BY mc.linked_at, c.name
            """,
            (memory_id,),
        )
        return [_row_to_concept(row) for row in rows]

    async def clear_memory_concepts(self, memory_id: str) -> None:
        await self.db.execute("DELETE FROM memory_concepts WHERE memory_id = ?", (memory_id,))
        await self.db.commit()

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def create_relationship(self, relationship: Relationship) -> Relationship:
        try:
            await self.db.execute(
                """
                INSERT INTO relationships
                (id, source_id, target_id, relationship_type, strength, bidirectional,
                 metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    relationship.id,
                    relationship.source_id,
                    relationship.target_id,
                    relationship.relationship_type,
                    relationship.strength,
                    int(relationship.bidirectional),
                    json.dumps(relationship.metadata),
                    relationship.created_at,
                    relationship.updated_at,
                ),
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to create relationship {relationship.id}: {e}") from e
        return relationship

    async def get_relationships(self, memory_id: str) -> list[Relationship]:
        rows = await self._fetchall(
            """
            SELECT id, source_id, target_id, relationship_type, strength, bidirectional,
                   metadata, created_at, updated_at
            FROM relationships
            WHERE source_id = ? OR target_id = ?
            ORDER BY strength DESC, created_at
            """,
            (memory_id, memory_id),
        )
        return [_row_to_relationship(row) for row in rows]

    async def delete_relationship(self, relationship_id: str) -> bool:
        cursor = await self.db.execute("DELETE FROM relationships WHERE id = ?", (relationship_id,))
        await self.db.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Merge audit
    # ------------------------------------------------------------------

    async def append_merge_audit(self, record: MergeAuditRecord) -> None:
        try:
            await self.db.execute(
                """
                INSERT INTO memory_merges
                (id, primary_memory_id, merged_memory_ids, strategy, created_at, created_by)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.primary_id,
                    json.dumps(list(record.absorbed_ids)),
                    record.strategy,
                    record.created_at,
                    record.created_by,
                ),
            )
            await self.db.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to write merge audit {record.id}: {e}") from e

    async def get_merge_audits(self, primary_id: str | None = None) -> list[MergeAuditRecord]:
        sql = "SELECT id, primary_memory_id, merged_memory_ids, strategy, created_at, created_by FROM memory_merges"
        params: tuple = ()
        if primary_id is not None:
            sql += " WHERE primary_memory_id = ?"
            params = (primary_id,)
        sql += " ORDER BY created_at"
        rows = await self._fetchall(sql, params)
        return [
            MergeAuditRecord(
                id=row["id"],
                primary_id=row["primary_memory_id"],
                absorbed_ids=tuple(json.loads(row["merged_memory_ids"])),
                strategy=row["strategy"],
                created_at=row["created_at"],
                created_by=row["created_by"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_stats(self, top_n: int = 10) -> dict[str, Any]:
        """
        Aggregate counts over the whole graph.

        Memory counts and averages cover active memories only; concept
        frequencies count links from active memories.
        """
        active = await self._fetchone(
            "SELECT COUNT(*) AS total, AVG(importance) AS avg_importance FROM memories WHERE status = 'active'"
        )
        relationships = await self._fetchone("SELECT COUNT(*) AS total FROM relationships")
        concepts = await self._fetchone("SELECT COUNT(*) AS total FROM concepts")

        status_rows = await self._fetchall("SELECT status, COUNT(*) AS count FROM memories GROUP BY status")

        creator_rows = await self._fetchall(
            """
            SELECT creator, COUNT(*) AS count FROM memories
            WHERE status = 'active' AND creator IS NOT NULL
            GROUP BY creator ORDER BY count DESC, creator LIMIT ?
            """,
            (top_n,),
        )

        project_rows = await self._fetchall(
            """
            SELECT json_extract(context, '$.project') AS project, COUNT(*) AS count FROM memories
            WHERE status = 'active' AND json_extract(context, '$.project') IS NOT NULL
            GROUP BY project ORDER BY count DESC, project LIMIT ?
            """,
            (top_n,),
        )

        type_rows = await self._fetchall("SELECT type, COUNT(*) AS count FROM concepts GROUP BY type")

        top_concept_rows = await self._fetchall(
            """
            SELECT c.name AS name, COUNT(*) AS count
            FROM memory_concepts mc
            JOIN concepts c ON c.id = mc.concept_id
            JOIN memories m ON m.id = mc.memory_id
            WHERE m.status = 'active'
            GROUP BY c.name ORDER BY count DESC, c.name LIMIT ?
            """,
            (top_n,),
        )

        return {
            "total_memories": active["total"],
            "total_relationships": relationships["total"],
            "total_concepts": concepts["total"],
            "average_importance": float(active["avg_importance"] or 0.0),
            "status_counts": {row["status"]: row["count"] for row in status_rows},
            "most_active_creators": [{"creator": row["creator"], "count": row["count"]} for row in creator_rows],
            "top_projects": [{"project": str(row["project"]), "count": row["count"]} for row in project_rows],
            "concept_distribution": {row["type"]: row["count"] for row in type_rows},
            "top_concepts": [{"name": row["name"], "count": row["count"]} for row in top_concept_rows],
        }
