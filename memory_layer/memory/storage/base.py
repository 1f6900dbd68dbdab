"""Interfaces for memory storage and vector index operations."""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from memory_layer.core.exceptions import NotFoundError, ValidationError
from memory_layer.core.logger import get_logger

from ..filters import MemoryFilter, TagMatch, matches_filter
from ..memory_records import MemoryRecord, MemorySource, ensure_list, ensure_utc, utcnow
from ..similarity import rank_by_similarity

ScoredMemory = Tuple[MemoryRecord, float]

_PATCHABLE_FIELDS = frozenset(
    {"content", "type", "scope", "source", "confidence", "tags", "embedding", "user_id", "updated_at"}
)
_IMMUTABLE_FIELDS = frozenset({"id", "created_at"})
_MIN_TICK = timedelta(microseconds=1)


class BaseMemoryStore(ABC):
    """Async persistence contract shared by every memory backend.

    Public operations live here so that validation, timestamp handling,
    filter evaluation and ranking behave identically everywhere. Backends
    implement the ``_load*``/``_insert``/``_replace``/``_remove`` primitives.
    Writes run one at a time under ``_write_lock``.
    """

    #: ``True`` when re-saving an existing id overwrites it instead of raising ``DuplicateError``.
    upsert_on_save: bool = False

    def __init__(
        self,
        *,
        dimension: Optional[int] = None,
        tag_match: TagMatch | str = TagMatch.ALL,
    ) -> None:
        if dimension is not None and dimension <= 0:
            raise ValidationError("Embedding dimension must be positive.")
        self._dimension = dimension
        self._tag_match = TagMatch(tag_match)
        self._write_lock = asyncio.Lock()
        self._logger = get_logger(self.__class__.__name__)

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    @property
    def tag_match(self) -> TagMatch:
        return self._tag_match

    async def init(self) -> None:
        """Open or create the underlying storage. Safe to call repeatedly."""

    # -- public contract -------------------------------------------------

    async def save(self, memory: MemoryRecord) -> str:
        await self.init()
        async with self._write_lock:
            self._validate(memory)
            await self._insert(copy.deepcopy(memory))
            if self._dimension is None:
                self._dimension = len(memory.embedding)
        self._logger.debug("Saved memory %s", memory.id)
        return memory.id

    async def save_many(self, memories: Iterable[MemoryRecord]) -> List[str]:
        """Save records one by one; a failure leaves earlier ones committed."""
        return [await self.save(memory) for memory in memories]

    async def update(self, memory_id: str, patch: Mapping[str, Any]) -> None:
        changes = self._prepare_patch(patch)
        await self.init()
        async with self._write_lock:
            current = await self._load(memory_id)
            if current is None:
                raise NotFoundError(memory_id)
            try:
                updated = replace(current, **changes, updated_at=self._next_timestamp(current))
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Invalid patch for memory {memory_id}: {exc}") from exc
            self._validate(updated)
            await self._replace(updated)
        self._logger.debug("Updated memory %s (%s)", memory_id, ", ".join(sorted(changes)) or "touch")

    async def delete(self, memory_id: str) -> None:
        await self.init()
        async with self._write_lock:
            removed = await self._remove(memory_id)
        if not removed:
            raise NotFoundError(memory_id)
        self._logger.debug("Deleted memory %s", memory_id)

    async def get(self, memory_id: str) -> Optional[MemoryRecord]:
        await self.init()
        return await self._load(memory_id)

    async def search_by_embedding(
        self,
        query: Sequence[float],
        limit: int,
        memory_filter: Optional[MemoryFilter] = None,
    ) -> List[MemoryRecord]:
        return [memory for memory, _ in await self.search_with_scores(query, limit, memory_filter)]

    async def search_with_scores(
        self,
        query: Sequence[float],
        limit: int,
        memory_filter: Optional[MemoryFilter] = None,
    ) -> List[ScoredMemory]:
        """Filter, rank by cosine similarity, and keep the best ``limit``.

        Equal scores keep stored order.
        """
        await self.init()
        self._check_query(query)
        if limit <= 0:
            return []
        candidates = await self._candidates(memory_filter)
        scores = rank_by_similarity(query, [memory.embedding for memory in candidates])
        ranked = sorted(zip(candidates, scores), key=lambda pair: -pair[1])
        return ranked[:limit]

    async def list(
        self,
        limit: int,
        memory_filter: Optional[MemoryFilter] = None,
        *,
        offset: int = 0,
    ) -> List[MemoryRecord]:
        """Filtered records, most recently updated first."""
        if limit <= 0:
            return []
        await self.init()
        candidates = await self._candidates(memory_filter)
        ordered = sorted(candidates, key=lambda memory: memory.updated_at, reverse=True)
        start = max(offset, 0)
        return ordered[start : start + limit]

    async def search_by_text(
        self,
        query: str,
        limit: int,
        memory_filter: Optional[MemoryFilter] = None,
    ) -> List[MemoryRecord]:
        """Case-insensitive substring match on content, newest first."""
        needle = query.strip().casefold()
        if not needle or limit <= 0:
            return []
        await self.init()
        candidates = await self._candidates(memory_filter)
        hits = [memory for memory in candidates if needle in memory.content.casefold()]
        hits.sort(key=lambda memory: memory.updated_at, reverse=True)
        return hits[:limit]

    async def list_updated_after(self, timestamp: datetime) -> List[MemoryRecord]:
        since = ensure_utc(timestamp)
        await self.init()
        records = [memory for memory in await self._load_all() if memory.updated_at > since]
        records.sort(key=lambda memory: memory.updated_at, reverse=True)
        return records

    async def count(self, memory_filter: Optional[MemoryFilter] = None) -> int:
        await self.init()
        return len(await self._candidates(memory_filter))

    # -- backend primitives ----------------------------------------------

    @abstractmethod
    async def _load(self, memory_id: str) -> Optional[MemoryRecord]:
        """Return a detached copy of the committed record, or ``None``."""

    @abstractmethod
    async def _load_all(self) -> List[MemoryRecord]:
        """Return detached copies of every committed record in stored order."""

    @abstractmethod
    async def _insert(self, memory: MemoryRecord) -> None:
        """Persist a new record, honouring ``upsert_on_save``."""

    @abstractmethod
    async def _replace(self, memory: MemoryRecord) -> None:
        """Overwrite an existing record in place."""

    @abstractmethod
    async def _remove(self, memory_id: str) -> bool:
        """Delete a record; return ``False`` if it did not exist."""

    async def _candidates(self, memory_filter: Optional[MemoryFilter]) -> List[MemoryRecord]:
        records = await self._load_all()
        if memory_filter is None:
            return records
        return [memory for memory in records if self._matches(memory, memory_filter)]

    # -- helpers -----------------------------------------------------------

    def _matches(self, memory: MemoryRecord, memory_filter: Optional[MemoryFilter]) -> bool:
        return matches_filter(memory, memory_filter, tag_match=self._tag_match)

    def _check_query(self, query: Sequence[float]) -> None:
        if self._dimension is not None and len(query) != self._dimension:
            raise ValidationError(f"Embedding dimension mismatch: {len(query)} != {self._dimension}")

    def _validate(self, memory: MemoryRecord) -> None:
        if not isinstance(memory.id, str) or not memory.id.strip():
            raise ValidationError("Memory id must be a non-empty string.")
        if not isinstance(memory.user_id, str) or not memory.user_id.strip():
            raise ValidationError("Memory user_id must be a non-empty string.")
        if not isinstance(memory.content, str) or not memory.content.strip():
            raise ValidationError("Memory content must be non-empty.")
        if not 0.0 <= memory.confidence <= 1.0:
            raise ValidationError(f"Confidence must be within [0, 1], got {memory.confidence}.")
        if not memory.embedding:
            raise ValidationError("Memory embedding must not be empty.")
        if self._dimension is not None and len(memory.embedding) != self._dimension:
            raise ValidationError(
                f"Embedding dimension mismatch: {len(memory.embedding)} != {self._dimension}"
            )
        if memory.updated_at < memory.created_at:
            raise ValidationError("updated_at must not precede created_at.")

    @staticmethod
    def _prepare_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
        keys = set(patch)
        immutable = keys & _IMMUTABLE_FIELDS
        if immutable:
            raise ValidationError(f"Cannot patch immutable fields: {', '.join(sorted(immutable))}")
        unknown = keys - _PATCHABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown memory fields: {', '.join(sorted(unknown))}")

        changes = {key: value for key, value in patch.items() if key != "updated_at"}
        source = changes.get("source")
        if isinstance(source, Mapping):
            changes["source"] = MemorySource.from_document(dict(source))
        for key in ("tags", "embedding"):
            if key in changes:
                changes[key] = ensure_list(key, changes[key])
        return changes

    @staticmethod
    def _next_timestamp(current: MemoryRecord) -> datetime:
        """Now, or one tick past the previous value when the clock has not moved."""
        return max(utcnow(), current.updated_at + _MIN_TICK)


class VectorIndex(ABC):
    """Vector similarity index keyed by integer row ids."""

    @abstractmethod
    def add(self, record_id: int, embedding: Sequence[float]) -> None:
        """Insert or replace the embedding for a record."""

    @abstractmethod
    def remove(self, record_id: int) -> None:
        """Drop a record from the index if present."""

    @abstractmethod
    def search(self, embedding: Sequence[float], *, top_k: int = 5) -> Sequence["VectorIndexResult"]:
        """Return the most similar stored embeddings, best first."""

    @abstractmethod
    def __len__(self) -> int:
        """Number of indexed vectors."""


class VectorIndexResult:
    """Result entry returned by vector similarity searches."""

    __slots__ = ("record_id", "score")

    def __init__(self, record_id: int, score: float) -> None:
        self.record_id = record_id
        self.score = score

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"VectorIndexResult(record_id={self.record_id!r}, score={self.score!r})"
