"""In-process retrieval quality and latency metrics."""

import logging
import threading
from collections import Counter
from typing import Optional

from pydantic import BaseModel, Field

from .audit import hash_query
from .config import RetrievalSettings, settings
from .models import HybridRetrievalResult

logger = logging.getLogger(__name__)


class MetricsSummary(BaseModel):
    """Point-in-time view of recorded retrievals."""

    total_retrievals: int = 0
    total_results: int = 0
    hybrid_retrievals: int = Field(default=0, description="Queries answered by both legs")
    degraded_retrievals: int = Field(default=0, description="Queries answered by one leg")
    avg_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    min_latency_ms: float = 0.0
    avg_results_per_query: float = 0.0
    avg_top_similarity: float = 0.0
    slow_queries: int = 0
    low_similarity_queries: int = 0
    most_retrieved: list[tuple[str, int]] = Field(default_factory=list)


class RetrievalMetrics:
    """Thread-safe aggregator fed by the hybrid retriever after each query."""

    def __init__(self, retrieval: Optional[RetrievalSettings] = None) -> None:
        self.retrieval = retrieval or settings.retrieval
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._total = 0
            self._results = 0
            self._hybrid = 0
            self._degraded = 0
            self._latency_total = 0.0
            self._latency_max = 0.0
            self._latency_min: Optional[float] = None
            self._similarities: list[float] = []
            self._slow = 0
            self._low_similarity = 0
            self._chunk_counts: Counter[str] = Counter()

    def record(self, result: HybridRetrievalResult, query: str = "") -> None:
        latency = result.total_time_ms
        similarities = [
            c.vector_similarity for c in result.candidates if c.vector_similarity is not None
        ]
        top_similarity = max(similarities) if similarities else None
        slow = latency > self.retrieval.slow_query_ms
        weak = top_similarity is not None and top_similarity < self.retrieval.low_similarity_threshold

        with self._lock:
            self._total += 1
            self._results += len(result.candidates)
            if result.degraded_legs:
                self._degraded += 1
            else:
                self._hybrid += 1
            self._latency_total += latency
            self._latency_max = max(self._latency_max, latency)
            self._latency_min = latency if self._latency_min is None else min(self._latency_min, latency)
            if top_similarity is not None:
                self._similarities.append(top_similarity)
            self._slow += slow
            self._low_similarity += weak
            self._chunk_counts.update(c.chunk_id for c in result.candidates)

        if slow:
            logger.warning("Slow retrieval: %.0fms for query %s", latency, hash_query(query))
        if weak:
            logger.warning(
                "Low top similarity %.2f for query %s", top_similarity, hash_query(query)
            )

    def summary(self, top_n: int = 5) -> MetricsSummary:
        with self._lock:
            total = self._total
            return MetricsSummary(
                total_retrievals=total,
                total_results=self._results,
                hybrid_retrievals=self._hybrid,
                degraded_retrievals=self._degraded,
                avg_latency_ms=self._latency_total / total if total else 0.0,
                max_latency_ms=self._latency_max,
                min_latency_ms=self._latency_min or 0.0,
                avg_results_per_query=self._results / total if total else 0.0,
                avg_top_similarity=(
                    sum(self._similarities) / len(self._similarities) if self._similarities else 0.0
                ),
                slow_queries=self._slow,
                low_similarity_queries=self._low_similarity,
                most_retrieved=self._chunk_counts.most_common(top_n),
            )
