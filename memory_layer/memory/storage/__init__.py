"""Storage backends for memory records."""

from .base import BaseMemoryStore, ScoredMemory, VectorIndex, VectorIndexResult
from .file_store import FileMemoryStore
from .kv_store import KeyValueMemoryStore
from .sqlite_store import SqliteMemoryStore

__all__ = [
    "BaseMemoryStore",
    "FileMemoryStore",
    "KeyValueMemoryStore",
    "ScoredMemory",
    "SqliteMemoryStore",
    "VectorIndex",
    "VectorIndexResult",
]
