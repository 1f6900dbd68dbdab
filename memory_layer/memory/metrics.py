"""Counters for memory consolidation and retrieval."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict


@dataclass(slots=True)
class CaptureMetrics:
    runs: int = 0
    candidates: int = 0
    added: int = 0
    updated: int = 0
    deduplicated: int = 0
    failures: int = 0

    def as_dict(self) -> Dict[str, float | int]:
        merge_rate = ((self.updated + self.deduplicated) / self.candidates) if self.candidates else 0.0
        return {
            "runs": self.runs,
            "candidates": self.candidates,
            "added": self.added,
            "updated": self.updated,
            "deduplicated": self.deduplicated,
            "failures": self.failures,
            "merge_rate": round(merge_rate, 3),
        }


@dataclass(slots=True)
class RetrievalMetrics:
    requests: int = 0
    hits: int = 0
    misses: int = 0
    total_latency_ms: float = 0.0
    operation_counts: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_operation(self, operation: str) -> None:
        key = operation.lower().strip() or "unknown"
        self.operation_counts[key] += 1

    def as_dict(self) -> Dict[str, float | int | Dict[str, int]]:
        hit_rate = (self.hits / self.requests) if self.requests else 0.0
        avg_latency = (self.total_latency_ms / self.requests) if self.requests else 0.0
        return {
            "requests": self.requests,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(hit_rate, 3),
            "avg_latency_ms": round(avg_latency, 2),
            "operation_counts": dict(self.operation_counts),
        }


@dataclass(slots=True)
class MemoryMetrics:
    capture: CaptureMetrics = field(default_factory=CaptureMetrics)
    retrieval: RetrievalMetrics = field(default_factory=RetrievalMetrics)

    def record_run(self) -> None:
        self.capture.runs += 1

    def record_decision(self, action: str) -> None:
        self.capture.candidates += 1
        if action == "add":
            self.capture.added += 1
        elif action == "update":
            self.capture.updated += 1
        elif action == "deduplicate":
            self.capture.deduplicated += 1

    def record_failure(self) -> None:
        self.capture.failures += 1

    def record_retrieval(
        self,
        *,
        operation: str,
        match_count: int,
        latency_ms: float,
    ) -> None:
        self.retrieval.requests += 1
        self.retrieval.record_operation(operation)
        if match_count > 0:
            self.retrieval.hits += 1
        else:
            self.retrieval.misses += 1
        self.retrieval.total_latency_ms += max(latency_ms, 0.0)

    def as_dict(self) -> Dict[str, Dict[str, float | int | Dict[str, int]]]:
        return {
            "capture": self.capture.as_dict(),
            "retrieval": self.retrieval.as_dict(),
        }


__all__ = ["MemoryMetrics", "CaptureMetrics", "RetrievalMetrics"]
