"""FAISS-based vector index for memory embeddings."""

from __future__ import annotations

from typing import Iterable, Sequence, Tuple

import faiss
import numpy as np

from memory_layer.core.exceptions import ValidationError
from memory_layer.core.logger import get_logger

from .base import VectorIndex, VectorIndexResult


class FaissVectorIndex(VectorIndex):
    """Exact cosine search over L2-normalised vectors keyed by row id."""

    def __init__(self, dimension: int) -> None:
        if dimension <= 0:
            raise ValidationError("Vector index dimension must be positive.")
        self._dimension = dimension
        self._logger = get_logger(self.__class__.__name__)
        self._index = faiss.IndexIDMap2(faiss.IndexFlatIP(dimension))

    @property
    def dimension(self) -> int:
        return self._dimension

    def __len__(self) -> int:
        return int(self._index.ntotal)

    def add(self, record_id: int, embedding: Sequence[float]) -> None:
        vector = self._prepare(embedding)
        self.remove(record_id)
        self._index.add_with_ids(vector, np.asarray([record_id], dtype="int64"))

    def remove(self, record_id: int) -> None:
        self._index.remove_ids(np.asarray([record_id], dtype="int64"))

    def search(self, embedding: Sequence[float], *, top_k: int = 5) -> Sequence[VectorIndexResult]:
        total = len(self)
        if total == 0 or top_k <= 0:
            return []
        similarities, ids = self._index.search(self._prepare(embedding), min(top_k, total))
        results: list[VectorIndexResult] = []
        for score, record_id in zip(similarities[0], ids[0]):
            if record_id == -1:
                continue
            results.append(VectorIndexResult(int(record_id), float(score)))
        return results

    def populate(self, entries: Iterable[Tuple[int, Sequence[float]]]) -> None:
        """Bulk-load ``(record_id, embedding)`` pairs into an empty index."""
        if len(self):
            return
        ids: list[int] = []
        vectors: list[Sequence[float]] = []
        for record_id, embedding in entries:
            ids.append(record_id)
            vectors.append(embedding)
        if not vectors:
            return
        matrix = np.asarray(vectors, dtype="float32")
        if matrix.ndim != 2 or matrix.shape[1] != self._dimension:
            raise ValidationError(f"Cannot index vectors of shape {matrix.shape}; expected width {self._dimension}")
        faiss.normalize_L2(matrix)
        self._index.add_with_ids(matrix, np.asarray(ids, dtype="int64"))
        self._logger.debug("FAISS index populated with %d vectors", len(ids))

    def _prepare(self, embedding: Sequence[float]) -> np.ndarray:
        vector = np.asarray(embedding, dtype="float32").reshape(1, -1)
        if vector.shape[1] != self._dimension:
            raise ValidationError(f"Embedding dimension mismatch: {vector.shape[1]} != {self._dimension}")
        vector = np.ascontiguousarray(vector)
        faiss.normalize_L2(vector)
        return vector
