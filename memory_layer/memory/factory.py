"""Factory helpers that wire the store, provider, and pipeline together."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from memory_layer.core.config import Config
from memory_layer.core.exceptions import ConfigError, ProviderError
from memory_layer.core.logger import get_logger, setup_logging
from memory_layer.llm_provider import GeminiProvider, LLMProvider

from .extraction import ExtractionService
from .filters import TagMatch
from .mem0 import Mem0Memory
from .metrics import MemoryMetrics
from .pipeline import MemoryPipeline
from .storage import BaseMemoryStore, FileMemoryStore, KeyValueMemoryStore, SqliteMemoryStore, VectorIndex

# Allow duplicated OpenMP runtimes (FAISS and numpy on macOS can each bundle libomp).
os.environ.setdefault("KMP_DUPLICATE_LIB_OK", "TRUE")


@dataclass(slots=True)
class MemoryContext:
    """Everything a caller needs, built once at startup and passed around."""

    config: Config
    store: BaseMemoryStore
    provider: LLMProvider
    extractor: ExtractionService
    pipeline: MemoryPipeline
    metrics: MemoryMetrics
    mem0: Mem0Memory


def create_memory_store(
    config: Config,
    *,
    dimension: Optional[int] = None,
    vector_index: VectorIndex | None = None,
) -> BaseMemoryStore:
    """Instantiate the backend named by ``config.memory_backend``."""
    tag_match = TagMatch(config.tag_match)
    dimension = dimension or config.embedding_dimension
    path = config.memory_store_path

    if config.memory_backend == "file":
        return FileMemoryStore(path, dimension=dimension, tag_match=tag_match)
    if config.memory_backend == "kv":
        return KeyValueMemoryStore(path, dimension=dimension, tag_match=tag_match)
    if config.memory_backend == "sqlite":
        if vector_index is None and config.use_vector_index and dimension:
            from .storage.vector_index import FaissVectorIndex

            vector_index = FaissVectorIndex(dimension)
        return SqliteMemoryStore(path, dimension=dimension, tag_match=tag_match, vector_index=vector_index)
    raise ConfigError(f"Unsupported memory backend '{config.memory_backend}'")


async def build_memory_context(
    config: Config,
    *,
    provider: LLMProvider | None = None,
    store: BaseMemoryStore | None = None,
) -> MemoryContext:
    """Build the provider, store, and pipeline described by ``config``."""
    setup_logging(config.log_level)
    logger = get_logger("MemoryContextFactory")
    provider = provider or GeminiProvider(config)

    if store is None:
        dimension = config.embedding_dimension
        if dimension is None and config.memory_backend == "sqlite" and config.use_vector_index:
            sample = await provider.generate_embedding("dimension check")
            if not sample:
                raise ProviderError("Embedding provider returned an empty vector.")
            dimension = len(sample)
        store = create_memory_store(config, dimension=dimension)
    await store.init()
    logger.debug(
        "Memory context ready",
        extra={"backend": config.memory_backend, "store_path": str(config.memory_store_path)},
    )

    metrics = MemoryMetrics()
    extractor = ExtractionService(provider, min_confidence=config.min_confidence)
    pipeline = MemoryPipeline(
        store,
        provider,
        extractor=extractor,
        dedup_threshold=config.dedup_threshold,
        update_threshold=config.update_threshold,
        metrics=metrics,
    )
    mem0 = Mem0Memory(store, provider, pipeline, metrics=metrics)
    return MemoryContext(
        config=config,
        store=store,
        provider=provider,
        extractor=extractor,
        pipeline=pipeline,
        metrics=metrics,
        mem0=mem0,
    )
