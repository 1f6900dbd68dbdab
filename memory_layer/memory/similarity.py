"""Cosine similarity over fixed-length embedding vectors."""

from __future__ import annotations

from typing import List, Sequence

import numpy as np

from memory_layer.core.exceptions import ValidationError


def _as_vector(values: Sequence[float]) -> np.ndarray:
    vector = np.asarray(values, dtype=np.float64)
    if vector.ndim != 1:
        raise ValidationError(f"Embedding must be one-dimensional, got shape {vector.shape}")
    return vector


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Return dot(a, b) / (|a| * |b|), or 0.0 when either vector has zero norm.

    Raises ``ValidationError`` when the vectors differ in length.
    """
    left = _as_vector(a)
    right = _as_vector(b)
    if left.shape[0] != right.shape[0]:
        raise ValidationError(f"Embedding dimension mismatch: {left.shape[0]} != {right.shape[0]}")

    norm_left = float(np.linalg.norm(left))
    norm_right = float(np.linalg.norm(right))
    if norm_left == 0.0 or norm_right == 0.0:
        return 0.0
    score = float(np.dot(left, right)) / (norm_left * norm_right)
    return float(np.clip(score, -1.0, 1.0))


def rank_by_similarity(query: Sequence[float], vectors: Sequence[Sequence[float]]) -> List[float]:
    """Score every vector against ``query`` in one pass.

    Follows the same rules as :func:`cosine_similarity`; any vector of the
    wrong length fails the whole call.
    """
    if not vectors:
        return []
    query_vector = _as_vector(query)
    for vector in vectors:
        if len(vector) != query_vector.shape[0]:
            raise ValidationError(f"Embedding dimension mismatch: {query_vector.shape[0]} != {len(vector)}")

    matrix = np.asarray(vectors, dtype=np.float64)
    query_norm = float(np.linalg.norm(query_vector))
    if query_norm == 0.0:
        return [0.0] * len(vectors)

    row_norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ query_vector
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(row_norms > 0.0, dots / (row_norms * query_norm), 0.0)
    return [float(value) for value in np.clip(scores, -1.0, 1.0)]
