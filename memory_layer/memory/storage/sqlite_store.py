"""Relational memory store with an optional vector similarity index."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from memory_layer.core.exceptions import DuplicateError, PersistenceError, ValidationError

from ..filters import MemoryFilter, TagMatch
from ..memory_records import (
    MemoryRecord,
    MemoryScope,
    MemorySource,
    MemoryType,
    ensure_utc,
    parse_timestamp,
)
from ..similarity import rank_by_similarity
from .base import BaseMemoryStore, ScoredMemory, VectorIndex
from .sqlite_utils import connect


_SCHEMA = """
CREATE TABLE IF NOT EXISTS memories (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT UNIQUE NOT NULL,
    user_id TEXT NOT NULL,
    content TEXT NOT NULL,
    type TEXT NOT NULL,
    scope TEXT NOT NULL,
    source_url TEXT,
    source_platform TEXT,
    source_timestamp TEXT,
    source_page_title TEXT,
    source_conversation_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    confidence REAL NOT NULL,
    embedding TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memories_user_type_scope ON memories (user_id, type, scope);
CREATE INDEX IF NOT EXISTS idx_memories_platform ON memories (source_platform);
CREATE INDEX IF NOT EXISTS idx_memories_created_at ON memories (created_at);
CREATE TABLE IF NOT EXISTS memory_tags (
    memory_seq INTEGER NOT NULL REFERENCES memories (seq) ON DELETE CASCADE,
    tag TEXT NOT NULL,
    position INTEGER NOT NULL,
    PRIMARY KEY (memory_seq, tag)
);
CREATE INDEX IF NOT EXISTS idx_memory_tags_tag ON memory_tags (tag);
"""

_COLUMNS = (
    "seq, id, user_id, content, type, scope, source_url, source_platform, source_timestamp, "
    "source_page_title, source_conversation_id, created_at, updated_at, confidence, embedding"
)

# Tie tolerance when deciding whether the FAISS cut-off may hide equal scores.
_SCORE_EPSILON = 1e-6


def _timestamp(value: datetime) -> str:
    # Fixed-width UTC strings so SQL range comparisons match datetime order.
    return ensure_utc(value).isoformat(timespec="microseconds")


class SqliteMemoryStore(BaseMemoryStore):
    """Persist memories as typed rows, with tags in an indexed side table.

    Saving an id that already exists raises ``DuplicateError``. When a
    :class:`VectorIndex` is supplied it narrows ``search_by_embedding`` to the
    nearest rows; final scores are always recomputed exactly.
    """

    upsert_on_save = False

    def __init__(
        self,
        database_path: str | Path,
        *,
        dimension: Optional[int] = None,
        tag_match: TagMatch | str = TagMatch.ALL,
        vector_index: VectorIndex | None = None,
    ) -> None:
        index_dimension = getattr(vector_index, "dimension", None) if vector_index is not None else None
        if dimension is None:
            dimension = index_dimension
        elif index_dimension is not None and index_dimension != dimension:
            raise ValidationError(
                f"Store dimension {dimension} does not match vector index dimension {index_dimension}"
            )
        super().__init__(dimension=dimension, tag_match=tag_match)
        self._path = Path(database_path)
        self._vector_index = vector_index
        self._initialised = False
        self._init_lock = asyncio.Lock()

    @property
    def vector_index(self) -> VectorIndex | None:
        return self._vector_index

    async def init(self) -> None:
        if self._initialised:
            return
        async with self._init_lock:
            if self._initialised:
                return
            entries = await asyncio.to_thread(self._initialise)
            if self._vector_index is not None and entries and not len(self._vector_index):
                populate = getattr(self._vector_index, "populate", None)
                if populate is not None:
                    populate(entries)
                else:
                    for seq, embedding in entries:
                        self._vector_index.add(seq, embedding)
            self._initialised = True
        self._logger.debug("SQLite memory store initialised at %s", self._path)

    # -- primitives --------------------------------------------------------

    async def _load(self, memory_id: str) -> Optional[MemoryRecord]:
        rows = await asyncio.to_thread(self._select, "WHERE m.id = ?", [memory_id])
        return rows[0][1] if rows else None

    async def _load_all(self) -> List[MemoryRecord]:
        rows = await asyncio.to_thread(self._select, "", [])
        return [memory for _, memory in rows]

    async def _insert(self, memory: MemoryRecord) -> None:
        seq = await asyncio.to_thread(self._insert_row, memory)
        if self._vector_index is None:
            return
        try:
            self._vector_index.add(seq, memory.embedding)
        except Exception:
            await asyncio.to_thread(self._delete_row, memory.id)
            raise

    async def _replace(self, memory: MemoryRecord) -> None:
        previous = await self._load(memory.id) if self._vector_index is not None else None
        seq = await asyncio.to_thread(self._update_row, memory)
        if self._vector_index is None:
            return
        try:
            self._vector_index.add(seq, memory.embedding)
        except Exception:
            # Put the committed row back; the index still holds the old vector.
            if previous is not None:
                await asyncio.to_thread(self._update_row, previous)
            raise

    async def _remove(self, memory_id: str) -> bool:
        seq = await asyncio.to_thread(self._delete_row, memory_id)
        if seq is None:
            return False
        if self._vector_index is not None:
            self._vector_index.remove(seq)
        return True

    async def _candidates(self, memory_filter: Optional[MemoryFilter]) -> List[MemoryRecord]:
        return [memory for _, memory in await self._filtered_rows(memory_filter)]

    async def search_with_scores(
        self,
        query: Sequence[float],
        limit: int,
        memory_filter: Optional[MemoryFilter] = None,
    ) -> List[ScoredMemory]:
        if self._vector_index is None:
            return await super().search_with_scores(query, limit, memory_filter)
        await self.init()
        self._check_query(query)
        if limit <= 0:
            return []

        candidates = dict(await self._filtered_rows(memory_filter))
        if not candidates:
            return []
        selected = self._nearest_candidates(query, candidates, limit)
        memories = [candidates[seq] for seq in selected]
        scores = rank_by_similarity(query, [memory.embedding for memory in memories])
        ranked = sorted(zip(selected, memories, scores), key=lambda item: (-item[2], item[0]))
        return [(memory, score) for _, memory, score in ranked[:limit]]

    # -- vector index narrowing --------------------------------------------

    def _nearest_candidates(
        self,
        query: Sequence[float],
        candidates: Dict[int, MemoryRecord],
        limit: int,
    ) -> List[int]:
        """Widen the index search until ``limit`` candidates and all ties are in."""
        index = self._vector_index
        total = len(index)
        top_k = min(total, max(limit * 4, 32))
        while True:
            hits = index.search(query, top_k=top_k)
            selected = [hit for hit in hits if hit.record_id in candidates]
            if top_k >= total:
                break
            if len(selected) >= limit and hits[-1].score < selected[limit - 1].score - _SCORE_EPSILON:
                break
            top_k = min(total, top_k * 2)
        seqs = [hit.record_id for hit in selected]
        indexed = set(seqs)
        missing = [seq for seq in candidates if seq not in indexed]
        if missing and len(seqs) < limit:
            # Rows committed after the index was last touched.
            seqs.extend(missing)
        return seqs

    # -- SQL ---------------------------------------------------------------

    async def _filtered_rows(self, memory_filter: Optional[MemoryFilter]) -> List[Tuple[int, MemoryRecord]]:
        where, params = self._where_clause(memory_filter)
        rows = await asyncio.to_thread(self._select, where, params)
        if memory_filter is None:
            return rows
        return [(seq, memory) for seq, memory in rows if self._matches(memory, memory_filter)]

    def _where_clause(self, memory_filter: Optional[MemoryFilter]) -> Tuple[str, List[Any]]:
        if memory_filter is None:
            return "", []
        conditions: List[str] = []
        params: List[Any] = []
        if memory_filter.user_id is not None:
            conditions.append("m.user_id = ?")
            params.append(memory_filter.user_id)
        if memory_filter.type is not None:
            conditions.append("m.type = ?")
            params.append(memory_filter.type.value)
        if memory_filter.scope is not None:
            conditions.append("m.scope = ?")
            params.append(memory_filter.scope.value)
        if memory_filter.platform is not None:
            conditions.append("m.source_platform = ?")
            params.append(memory_filter.platform)
        if memory_filter.start_date is not None:
            conditions.append("m.created_at >= ?")
            params.append(_timestamp(memory_filter.start_date))
        if memory_filter.end_date is not None:
            conditions.append("m.created_at <= ?")
            params.append(_timestamp(memory_filter.end_date))
        tags = list(dict.fromkeys(memory_filter.tags))
        if tags:
            placeholders = ", ".join("?" for _ in tags)
            if self._tag_match is TagMatch.ALL:
                conditions.append(
                    f"m.seq IN (SELECT memory_seq FROM memory_tags WHERE tag IN ({placeholders}) "
                    "GROUP BY memory_seq HAVING COUNT(DISTINCT tag) = ?)"
                )
                params.extend(tags)
                params.append(len(tags))
            else:
                conditions.append(f"m.seq IN (SELECT memory_seq FROM memory_tags WHERE tag IN ({placeholders}))")
                params.extend(tags)
        if not conditions:
            return "", []
        return "WHERE " + " AND ".join(conditions), params

    def _initialise(self) -> List[Tuple[int, List[float]]]:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Could not create {self._path.parent}: {exc}") from exc
        with connect(self._path) as conn:
            conn.executescript(_SCHEMA)
            rows = conn.execute("SELECT seq, embedding FROM memories ORDER BY seq").fetchall()
        entries = [(seq, json.loads(embedding)) for seq, embedding in rows]
        if entries and self._dimension is None:
            self._dimension = len(entries[0][1])
        return entries

    def _select(self, where: str, params: Sequence[Any]) -> List[Tuple[int, MemoryRecord]]:
        with connect(self._path) as conn:
            rows = conn.execute(f"SELECT {_COLUMNS} FROM memories AS m {where} ORDER BY m.seq", params).fetchall()
            if not rows:
                return []
            seqs = [row[0] for row in rows]
            tags_by_seq: Dict[int, List[str]] = {seq: [] for seq in seqs}
            placeholders = ", ".join("?" for _ in seqs)
            for memory_seq, tag in conn.execute(
                f"SELECT memory_seq, tag FROM memory_tags WHERE memory_seq IN ({placeholders}) "
                "ORDER BY memory_seq, position",
                seqs,
            ):
                tags_by_seq[memory_seq].append(tag)
        return [(row[0], self._row_to_record(row, tags_by_seq[row[0]])) for row in rows]

    def _insert_row(self, memory: MemoryRecord) -> int:
        try:
            with connect(self._path) as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO memories
                    (id, user_id, content, type, scope, source_url, source_platform, source_timestamp,
                     source_page_title, source_conversation_id, created_at, updated_at, confidence, embedding)
                    VALUES (:id, :user_id, :content, :type, :scope, :source_url, :source_platform, :source_timestamp,
                            :source_page_title, :source_conversation_id, :created_at, :updated_at, :confidence, :embedding)
                    """,
                    self._record_to_row(memory),
                )
                seq = int(cursor.lastrowid)
                self._write_tags(conn, seq, memory.tags)
        except sqlite3.IntegrityError as exc:
            raise DuplicateError(memory.id) from exc
        return seq

    def _update_row(self, memory: MemoryRecord) -> int:
        with connect(self._path) as conn:
            row = conn.execute("SELECT seq FROM memories WHERE id = ?", (memory.id,)).fetchone()
            if row is None:  # pragma: no cover - guarded by update()
                raise PersistenceError(f"Memory {memory.id} vanished during update")
            seq = int(row[0])
            conn.execute(
                """
                UPDATE memories SET
                    user_id = :user_id,
                    content = :content,
                    type = :type,
                    scope = :scope,
                    source_url = :source_url,
                    source_platform = :source_platform,
                    source_timestamp = :source_timestamp,
                    source_page_title = :source_page_title,
                    source_conversation_id = :source_conversation_id,
                    updated_at = :updated_at,
                    confidence = :confidence,
                    embedding = :embedding
                WHERE id = :id
                """,
                self._record_to_row(memory),
            )
            conn.execute("DELETE FROM memory_tags WHERE memory_seq = ?", (seq,))
            self._write_tags(conn, seq, memory.tags)
        return seq

    def _delete_row(self, memory_id: str) -> Optional[int]:
        with connect(self._path) as conn:
            row = conn.execute("SELECT seq FROM memories WHERE id = ?", (memory_id,)).fetchone()
            if row is None:
                return None
            seq = int(row[0])
            conn.execute("DELETE FROM memory_tags WHERE memory_seq = ?", (seq,))
            conn.execute("DELETE FROM memories WHERE seq = ?", (seq,))
        return seq

    @staticmethod
    def _write_tags(conn: sqlite3.Connection, seq: int, tags: Sequence[str]) -> None:
        conn.executemany(
            "INSERT INTO memory_tags (memory_seq, tag, position) VALUES (?, ?, ?)",
            [(seq, tag, position) for position, tag in enumerate(tags)],
        )

    @staticmethod
    def _record_to_row(memory: MemoryRecord) -> Dict[str, Any]:
        return {
            "id": memory.id,
            "user_id": memory.user_id,
            "content": memory.content,
            "type": memory.type.value,
            "scope": memory.scope.value,
            "source_url": memory.source.url,
            "source_platform": memory.source.platform,
            "source_timestamp": _timestamp(memory.source.timestamp),
            "source_page_title": memory.source.page_title,
            "source_conversation_id": memory.source.conversation_id,
            "created_at": _timestamp(memory.created_at),
            "updated_at": _timestamp(memory.updated_at),
            "confidence": memory.confidence,
            "embedding": json.dumps(memory.embedding),
        }

    def _row_to_record(self, row: Sequence[Any], tags: List[str]) -> MemoryRecord:
        try:
            return MemoryRecord(
                id=row[1],
                user_id=row[2],
                content=row[3],
                type=MemoryType(row[4]),
                scope=MemoryScope(row[5]),
                source=MemorySource(
                    url=row[6] or "",
                    platform=row[7],
                    timestamp=parse_timestamp(row[8]) if row[8] else parse_timestamp(row[11]),
                    page_title=row[9],
                    conversation_id=row[10],
                ),
                created_at=parse_timestamp(row[11]),
                updated_at=parse_timestamp(row[12]),
                confidence=row[13],
                tags=tags,
                embedding=json.loads(row[14]),
            )
        except (ValueError, TypeError, ValidationError) as exc:
            raise PersistenceError(f"Corrupt memory row {row[1]!r} in {self._path}: {exc}") from exc
