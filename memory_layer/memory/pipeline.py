"""Ingestion pipeline: extract, embed, recall, and consolidate memories."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from memory_layer.core.exceptions import ValidationError
from memory_layer.core.logger import get_logger
from memory_layer.llm_provider import LLMProvider

from .extraction import DEFAULT_MIN_CONFIDENCE, ExtractedMemory, ExtractionService
from .filters import MemoryFilter
from .memory_records import MemoryRecord, MemorySource, normalise_tags
from .metrics import MemoryMetrics
from .storage import BaseMemoryStore

DEFAULT_DEDUP_THRESHOLD = 0.95
DEFAULT_UPDATE_THRESHOLD = 0.85
DEFAULT_RECALL_LIMIT = 5


class ConsolidationAction(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DEDUPLICATE = "deduplicate"


class MemoryExtractor(Protocol):
    async def extract_memories(
        self, text: str, context: Optional[Dict[str, Any]] = None
    ) -> Sequence[ExtractedMemory]:
        ...


@dataclass(slots=True)
class ConsolidationResult:
    memory_id: str
    action: ConsolidationAction
    score: Optional[float]
    candidate: ExtractedMemory


class MemoryPipeline:
    """Turn raw conversation text into stored, consolidated memories.

    Each candidate is compared with the closest memory of the same type and
    scope. Above ``dedup_threshold`` it is a duplicate and only the timestamp
    moves; above ``update_threshold`` the existing memory keeps its content
    and takes the higher confidence; otherwise a new memory is added.
    """

    def __init__(
        self,
        store: BaseMemoryStore,
        provider: LLMProvider,
        *,
        extractor: MemoryExtractor | None = None,
        dedup_threshold: float = DEFAULT_DEDUP_THRESHOLD,
        update_threshold: float = DEFAULT_UPDATE_THRESHOLD,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        recall_limit: int = DEFAULT_RECALL_LIMIT,
        merge_tags: bool = False,
        metrics: MemoryMetrics | None = None,
    ) -> None:
        if not update_threshold < dedup_threshold:
            raise ValidationError("update_threshold must be lower than dedup_threshold")
        self._store = store
        self._provider = provider
        self._extractor = extractor or ExtractionService(provider, min_confidence=min_confidence)
        self._dedup_threshold = dedup_threshold
        self._update_threshold = update_threshold
        self._recall_limit = recall_limit
        self._merge_tags = merge_tags
        self._metrics = metrics or MemoryMetrics()
        self._logger = get_logger(self.__class__.__name__)

    @property
    def metrics(self) -> MemoryMetrics:
        return self._metrics

    async def run(self, text: str, source: MemorySource, user_id: str = "local_user") -> List[str]:
        """Ingest ``text`` and return one memory id per extracted candidate."""
        results = await self.run_detailed(text, source, user_id)
        return [result.memory_id for result in results]

    async def run_detailed(
        self,
        text: str,
        source: MemorySource,
        user_id: str = "local_user",
    ) -> List[ConsolidationResult]:
        self._metrics.record_run()
        context = {
            "url": source.url,
            "platform": source.platform,
            "conversation_id": source.conversation_id,
        }
        try:
            candidates = await self._extractor.extract_memories(text, context)
        except Exception:
            self._metrics.record_failure()
            raise

        results: List[ConsolidationResult] = []
        for candidate in candidates:
            try:
                result = await self._consolidate(candidate, source, user_id)
            except Exception:
                self._metrics.record_failure()
                raise
            self._metrics.record_decision(result.action.value)
            results.append(result)
        return results

    async def _consolidate(
        self,
        candidate: ExtractedMemory,
        source: MemorySource,
        user_id: str,
    ) -> ConsolidationResult:
        embedding = await self._provider.generate_embedding(candidate.content)

        recall_filter = MemoryFilter(type=candidate.type, scope=candidate.scope, user_id=user_id)
        recalled = await self._store.search_with_scores(embedding, self._recall_limit, recall_filter)

        if recalled:
            existing, score = recalled[0]
            if score > self._dedup_threshold:
                await self._store.update(existing.id, {})
                self._logger.info("Deduplicated candidate into memory %s (score=%.3f)", existing.id, score)
                return ConsolidationResult(existing.id, ConsolidationAction.DEDUPLICATE, score, candidate)
            if score > self._update_threshold:
                patch: Dict[str, Any] = {"confidence": max(existing.confidence, candidate.confidence)}
                if self._merge_tags:
                    patch["tags"] = normalise_tags([*existing.tags, *candidate.tags])
                await self._store.update(existing.id, patch)
                self._logger.info("Merged candidate into memory %s (score=%.3f)", existing.id, score)
                return ConsolidationResult(existing.id, ConsolidationAction.UPDATE, score, candidate)
            best_score: Optional[float] = score
        else:
            best_score = None

        memory = MemoryRecord(
            user_id=user_id,
            content=candidate.content,
            type=candidate.type,
            scope=candidate.scope,
            source=source,
            confidence=candidate.confidence,
            tags=list(candidate.tags),
            embedding=embedding,
        )
        memory_id = await self._store.save(memory)
        self._logger.info("Added memory %s (%s/%s)", memory_id, memory.type.value, memory.scope.value)
        return ConsolidationResult(memory_id, ConsolidationAction.ADD, best_score, candidate)
