"""Memory capture, storage, and consolidation primitives."""

from .extraction import ExtractedMemory, ExtractionService
from .factory import MemoryContext, build_memory_context, create_memory_store
from .filters import MemoryFilter, TagMatch, matches_filter
from .mem0 import Mem0Memory, MemoryItem, SearchResult
from .memory_records import MemoryRecord, MemoryScope, MemorySource, MemoryType
from .metrics import MemoryMetrics
from .pipeline import ConsolidationAction, ConsolidationResult, MemoryPipeline
from .similarity import cosine_similarity, rank_by_similarity
from .storage import (
    BaseMemoryStore,
    FileMemoryStore,
    KeyValueMemoryStore,
    SqliteMemoryStore,
    VectorIndex,
    VectorIndexResult,
)

__all__ = [
    "BaseMemoryStore",
    "ConsolidationAction",
    "ConsolidationResult",
    "ExtractedMemory",
    "ExtractionService",
    "FileMemoryStore",
    "KeyValueMemoryStore",
    "Mem0Memory",
    "MemoryContext",
    "MemoryFilter",
    "MemoryItem",
    "MemoryMetrics",
    "MemoryPipeline",
    "MemoryRecord",
    "MemoryScope",
    "MemorySource",
    "MemoryType",
    "SearchResult",
    "SqliteMemoryStore",
    "TagMatch",
    "VectorIndex",
    "VectorIndexResult",
    "build_memory_context",
    "cosine_similarity",
    "create_memory_store",
    "matches_filter",
    "rank_by_similarity",
]
