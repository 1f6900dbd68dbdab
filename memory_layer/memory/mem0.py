"""Mem0-compatible facade over the pipeline and store."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from memory_layer.core.exceptions import ValidationError
from memory_layer.core.logger import get_logger
from memory_layer.llm_provider import LLMProvider

from .filters import MemoryFilter
from .memory_records import MemoryRecord, MemorySource
from .metrics import MemoryMetrics
from .pipeline import MemoryPipeline
from .storage import BaseMemoryStore

_FILTER_KEYS = frozenset({"type", "scope", "platform", "tags", "start_date", "end_date"})


class MemoryItem(BaseModel):
    id: str
    memory: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    score: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None


class SearchResult(BaseModel):
    results: List[MemoryItem] = Field(default_factory=list)


class Mem0Memory:
    """Expose ``add``/``search``/``get_all`` in the shape Mem0 clients expect."""

    def __init__(
        self,
        store: BaseMemoryStore,
        provider: LLMProvider,
        pipeline: MemoryPipeline | None = None,
        *,
        metrics: MemoryMetrics | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._pipeline = pipeline or MemoryPipeline(store, provider)
        self._metrics = metrics or self._pipeline.metrics
        self._logger = get_logger(self.__class__.__name__)

    async def add(
        self,
        messages: str | Sequence[str],
        *,
        user_id: str,
        agent_id: Optional[str] = None,
        run_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SearchResult:
        inputs = [messages] if isinstance(messages, str) else list(messages)
        source = MemorySource(
            url=str((metadata or {}).get("url") or "mem0-manual-add"),
            platform=str((metadata or {}).get("platform") or "manual"),
            conversation_id=run_id or agent_id,
        )
        results: List[MemoryItem] = []
        for text in inputs:
            for memory_id in await self._pipeline.run(text, source, user_id):
                memory = await self._store.get(memory_id)
                if memory is not None:
                    results.append(self._to_item(memory))
        return SearchResult(results=results)

    async def search(
        self,
        query: str,
        *,
        user_id: Optional[str] = None,
        limit: int = 10,
        filters: Optional[Dict[str, Any]] = None,
    ) -> SearchResult:
        started = time.perf_counter()
        embedding = await self._provider.generate_embedding(query)
        memory_filter = self._build_filter(filters, user_id)
        scored = await self._store.search_with_scores(embedding, limit, memory_filter)
        self._metrics.record_retrieval(
            operation="search",
            match_count=len(scored),
            latency_ms=(time.perf_counter() - started) * 1000,
        )
        return SearchResult(results=[self._to_item(memory, score) for memory, score in scored])

    async def get_all(self, *, user_id: Optional[str] = None, limit: int = 100) -> SearchResult:
        memory_filter = MemoryFilter(user_id=user_id) if user_id else None
        memories = await self._store.list(limit, memory_filter)
        return SearchResult(results=[self._to_item(memory) for memory in memories])

    async def get(self, memory_id: str) -> Optional[MemoryItem]:
        memory = await self._store.get(memory_id)
        return self._to_item(memory) if memory is not None else None

    async def delete(self, memory_id: str) -> None:
        await self._store.delete(memory_id)

    @staticmethod
    def _build_filter(filters: Optional[Dict[str, Any]], user_id: Optional[str]) -> Optional[MemoryFilter]:
        if not filters and not user_id:
            return None
        supplied = dict(filters or {})
        unknown = set(supplied) - _FILTER_KEYS - {"user_id"}
        if unknown:
            raise ValidationError(f"Unsupported filter keys: {', '.join(sorted(unknown))}")
        try:
            return MemoryFilter(
                user_id=user_id or supplied.get("user_id"),
                **{key: value for key, value in supplied.items() if key in _FILTER_KEYS},
            )
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid filter: {exc}") from exc

    @staticmethod
    def _to_item(memory: MemoryRecord, score: Optional[float] = None) -> MemoryItem:
        metadata: Dict[str, Any] = {**memory.source.to_document(), "type": memory.type.value, "scope": memory.scope.value}
        if memory.tags:
            metadata["tags"] = list(memory.tags)
        return MemoryItem(
            id=memory.id,
            memory=memory.content,
            created_at=memory.created_at.isoformat(),
            updated_at=memory.updated_at.isoformat(),
            score=score,
            metadata=metadata,
            user_id=memory.user_id,
        )
