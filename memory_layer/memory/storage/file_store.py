"""JSON snapshot backed memory store."""

from __future__ import annotations

import asyncio
import copy
import json
import os
import tempfile
from pathlib import Path
from typing import List, Optional

from memory_layer.core.exceptions import PersistenceError, ValidationError

from ..filters import TagMatch
from ..memory_records import MemoryRecord
from .base import BaseMemoryStore


class FileMemoryStore(BaseMemoryStore):
    """Keep memories in a list and mirror it to a single JSON array on disk.

    Every mutation rewrites the whole file through a temporary file and
    ``os.replace``. The in-memory list is swapped only after the write
    succeeds, so readers never observe uncommitted state. Saving an id that
    already exists overwrites that record in place.
    """

    upsert_on_save = True

    def __init__(
        self,
        path: str | Path,
        *,
        dimension: Optional[int] = None,
        tag_match: TagMatch | str = TagMatch.ALL,
    ) -> None:
        super().__init__(dimension=dimension, tag_match=tag_match)
        self._path = Path(path)
        self._records: List[MemoryRecord] = []
        self._initialised = False
        self._init_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def init(self) -> None:
        if self._initialised:
            return
        async with self._init_lock:
            if self._initialised:
                return
            if self._path.exists():
                self._records = await asyncio.to_thread(self._read_snapshot)
            else:
                await asyncio.to_thread(self._write_snapshot, [])
                self._records = []
            if self._records:
                self._adopt_dimension(self._records)
            self._initialised = True
        self._logger.debug("File memory store initialised at %s (%d records)", self._path, len(self._records))

    async def _load(self, memory_id: str) -> Optional[MemoryRecord]:
        for memory in self._records:
            if memory.id == memory_id:
                return copy.deepcopy(memory)
        return None

    async def _load_all(self) -> List[MemoryRecord]:
        return copy.deepcopy(self._records)

    async def _insert(self, memory: MemoryRecord) -> None:
        records = list(self._records)
        index = self._index_of(memory.id)
        if index is None:
            records.append(memory)
        else:
            records[index] = memory
        await self._commit(records)

    async def _replace(self, memory: MemoryRecord) -> None:
        index = self._index_of(memory.id)
        if index is None:  # pragma: no cover - guarded by update()
            raise PersistenceError(f"Memory {memory.id} vanished during update")
        records = list(self._records)
        records[index] = memory
        await self._commit(records)

    async def _remove(self, memory_id: str) -> bool:
        index = self._index_of(memory_id)
        if index is None:
            return False
        records = list(self._records)
        del records[index]
        await self._commit(records)
        return True

    async def _commit(self, records: List[MemoryRecord]) -> None:
        await asyncio.to_thread(self._write_snapshot, records)
        self._records = records

    def _index_of(self, memory_id: str) -> Optional[int]:
        for index, memory in enumerate(self._records):
            if memory.id == memory_id:
                return index
        return None

    def _adopt_dimension(self, records: List[MemoryRecord]) -> None:
        dimensions = {len(memory.embedding) for memory in records}
        if len(dimensions) > 1:
            raise ValidationError(f"{self._path} holds embeddings of mixed dimensions: {sorted(dimensions)}")
        found = dimensions.pop()
        if self._dimension is None:
            self._dimension = found
        elif self._dimension != found:
            raise ValidationError(f"{self._path} holds {found}-dimensional embeddings, expected {self._dimension}")

    def _read_snapshot(self) -> List[MemoryRecord]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Could not read memory snapshot {self._path}: {exc}") from exc
        if not raw.strip():
            return []
        try:
            payload = json.loads(raw)
            if not isinstance(payload, list):
                raise ValueError("snapshot root is not a JSON array")
            return [MemoryRecord.from_document(item) for item in payload]
        except (ValueError, KeyError, TypeError, ValidationError) as exc:
            raise PersistenceError(f"Memory snapshot {self._path} is corrupt: {exc}") from exc

    def _write_snapshot(self, records: List[MemoryRecord]) -> None:
        payload = json.dumps([memory.to_document() for memory in records], ensure_ascii=False, indent=2)
        tmp_path: Optional[str] = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)
            tmp_path = None
        except OSError as exc:
            self._logger.error("Failed to write memory snapshot %s: %s", self._path, exc)
            raise PersistenceError(f"Could not write memory snapshot {self._path}: {exc}") from exc
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
