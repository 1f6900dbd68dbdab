"""Embedded key/value memory store: one JSON document per memory id."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from pathlib import Path
from typing import List, Optional

from memory_layer.core.exceptions import DuplicateError, PersistenceError, ValidationError

from ..filters import TagMatch
from ..memory_records import MemoryRecord
from .base import BaseMemoryStore
from .sqlite_utils import connect


_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    key TEXT UNIQUE NOT NULL,
    value TEXT NOT NULL
);
"""


class KeyValueMemoryStore(BaseMemoryStore):
    """Store each memory as a document keyed by its id.

    Saving an id that is already present raises ``DuplicateError``; use
    :meth:`update` to change an existing record.
    """

    upsert_on_save = False

    def __init__(
        self,
        database_path: str | Path,
        *,
        dimension: Optional[int] = None,
        tag_match: TagMatch | str = TagMatch.ALL,
    ) -> None:
        super().__init__(dimension=dimension, tag_match=tag_match)
        self._path = Path(database_path)
        self._initialised = False
        self._init_lock = asyncio.Lock()

    async def init(self) -> None:
        if self._initialised:
            return
        async with self._init_lock:
            if self._initialised:
                return
            await asyncio.to_thread(self._initialise)
            self._initialised = True

    async def _load(self, memory_id: str) -> Optional[MemoryRecord]:
        return await asyncio.to_thread(self._get_document, memory_id)

    async def _load_all(self) -> List[MemoryRecord]:
        return await asyncio.to_thread(self._all_documents)

    async def _insert(self, memory: MemoryRecord) -> None:
        await asyncio.to_thread(self._add_document, memory)

    async def _replace(self, memory: MemoryRecord) -> None:
        await asyncio.to_thread(self._put_document, memory)

    async def _remove(self, memory_id: str) -> bool:
        return await asyncio.to_thread(self._delete_document, memory_id)

    def _initialise(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Could not create {self._path.parent}: {exc}") from exc
        with connect(self._path) as conn:
            conn.executescript(_SCHEMA)
            if self._dimension is None:
                row = conn.execute("SELECT value FROM records ORDER BY seq LIMIT 1").fetchone()
                if row:
                    self._dimension = len(json.loads(row[0]).get("embedding") or []) or None
        self._logger.debug("Key/value memory store initialised at %s", self._path)

    def _get_document(self, memory_id: str) -> Optional[MemoryRecord]:
        with connect(self._path) as conn:
            row = conn.execute("SELECT value FROM records WHERE key = ?", (memory_id,)).fetchone()
        return self._decode(row[0]) if row else None

    def _all_documents(self) -> List[MemoryRecord]:
        with connect(self._path) as conn:
            rows = conn.execute("SELECT value FROM records ORDER BY seq").fetchall()
        return [self._decode(row[0]) for row in rows]

    def _add_document(self, memory: MemoryRecord) -> None:
        try:
            with connect(self._path) as conn:
                conn.execute(
                    "INSERT INTO records (key, value) VALUES (?, ?)",
                    (memory.id, self._encode(memory)),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateError(memory.id) from exc

    def _put_document(self, memory: MemoryRecord) -> None:
        with connect(self._path) as conn:
            conn.execute("UPDATE records SET value = ? WHERE key = ?", (self._encode(memory), memory.id))

    def _delete_document(self, memory_id: str) -> bool:
        with connect(self._path) as conn:
            cursor = conn.execute("DELETE FROM records WHERE key = ?", (memory_id,))
            return cursor.rowcount > 0

    @staticmethod
    def _encode(memory: MemoryRecord) -> str:
        return json.dumps(memory.to_document(), ensure_ascii=False)

    def _decode(self, value: str) -> MemoryRecord:
        try:
            return MemoryRecord.from_document(json.loads(value))
        except (ValueError, KeyError, TypeError, ValidationError) as exc:
            raise PersistenceError(f"Corrupt memory document in {self._path}: {exc}") from exc
