"""Hybrid retrieval: concurrent dense and sparse legs, RRF fusion, weighted rerank."""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional

from .audit import (
    AuditEventType,
    AuditLogger,
    AuditSeverity,
    RetrievalEvent,
    generate_request_id,
    get_audit_logger,
    hash_query,
)
from .bm25 import BM25Index
from .config import RetrievalSettings, settings
from .errors import RetrievalLegError, RetrievalTimeoutError
from .fusion import reciprocal_rank_fusion
from .metrics import RetrievalMetrics
from .models import BM25Hit, HybridRetrievalResult, RetrievalCandidate
from .rerank import WeightedReranker
from .vector_store import VectorStore

logger = logging.getLogger(__name__)

DENSE = "dense"
SPARSE = "sparse"
RERANK = "rerank"


class _Stage:
    """One pooled call that records when a worker actually picked it up."""

    def __init__(self, fn: Callable, *args) -> None:
        self.fn = fn
        self.args = args
        self.started = threading.Event()
        self.started_at = 0.0

    def __call__(self) -> tuple[Any, float]:
        self.started_at = time.monotonic()
        self.started.set()
        start = time.perf_counter()
        value = self.fn(*self.args)
        return value, (time.perf_counter() - start) * 1000


class HybridRetriever:
    """Answer a query from the vector store and the BM25 index together.

    Both legs fetch ``top_k * candidate_multiplier`` candidates concurrently,
    are fused with reciprocal rank fusion, and the fused set is reranked down
    to ``top_k``. A failing leg either fails the query (``abort``) or is
    skipped (``degrade``), per ``RetrievalSettings.leg_failure_policy``.

    The retriever owns a thread pool of ``RetrievalSettings.worker_threads``
    shared by concurrent queries; call ``close()`` or use it as a context
    manager. A stage's deadline runs from the moment a worker starts it, so
    time spent queued behind other queries does not count against it.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        bm25_index: BM25Index,
        reranker: Optional[WeightedReranker] = None,
        retrieval: Optional[RetrievalSettings] = None,
        metrics: Optional[RetrievalMetrics] = None,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self.vector_store = vector_store
        self.bm25_index = bm25_index
        self.reranker = reranker or WeightedReranker()
        self.retrieval = retrieval or settings.retrieval
        self.metrics = metrics
        self.audit_logger = audit_logger or get_audit_logger()
        self._executor = ThreadPoolExecutor(
            max_workers=self.retrieval.worker_threads, thread_name_prefix="hybrid-retrieval"
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "HybridRetriever":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _submit(self, fn: Callable, *args) -> tuple[_Stage, Future]:
        call = _Stage(fn, *args)
        return call, self._executor.submit(call)

    @staticmethod
    def _await(stage: str, call: _Stage, future: Future, timeout: float) -> tuple[Any, float]:
        """Wait for a stage, translating failures into typed retrieval errors.

        The timeout is measured from when a worker picked the stage up.
        """
        while not call.started.wait(0.05):
            if future.done():
                break
        remaining = call.started_at + timeout - time.monotonic() if call.started.is_set() else 0.0
        try:
            return future.result(timeout=max(0.0, remaining))
        except FutureTimeoutError as exc:
            if future.done():
                # The stage itself raised TimeoutError; that is a failure, not a missed deadline.
                raise RetrievalLegError(stage, exc) from exc
            future.cancel()
            raise RetrievalTimeoutError(stage, timeout) from None
        except Exception as exc:
            raise RetrievalLegError(stage, exc) from exc

    def _resolve(
        self,
        fused: list[tuple[str, float]],
        dense: list[RetrievalCandidate],
        sparse: list[BM25Hit],
    ) -> tuple[list[RetrievalCandidate], list[str]]:
        """Attach payloads to fused ids; sparse-only ids are fetched by id."""
        by_id = {c.chunk_id: c for c in dense}
        bm25_scores = {h.chunk_id: h.score for h in sparse}

        missing = [doc_id for doc_id, _ in fused if doc_id not in by_id]
        if missing:
            for candidate in self.vector_store.get_by_ids(missing):
                by_id[candidate.chunk_id] = candidate
            for doc_id in missing:
                if doc_id in by_id:
                    continue
                entry = self.bm25_index.get(doc_id)
                if entry is not None:
                    by_id[doc_id] = RetrievalCandidate(
                        chunk_id=entry.chunk_id, text=entry.text, metadata=dict(entry.metadata)
                    )

        candidates: list[RetrievalCandidate] = []
        dropped: list[str] = []
        for doc_id, rrf_score in fused:
            candidate = by_id.get(doc_id)
            if candidate is None:
                dropped.append(doc_id)
                continue
            candidates.append(
                candidate.model_copy(
                    update={"rrf_score": rrf_score, "bm25_score": bm25_scores.get(doc_id)}
                )
            )
        if dropped:
            logger.warning("Dropped %d fused ids with no resolvable payload: %s", len(dropped), dropped)
        return candidates, dropped

    def _gather_legs(
        self, query: str, fetch_k: int, threshold: float
    ) -> tuple[list[RetrievalCandidate], list[BM25Hit], dict[str, float], list[str]]:
        stages = {
            DENSE: self._submit(self.vector_store.similarity_search, query, fetch_k, threshold),
            SPARSE: self._submit(self.bm25_index.search, query, fetch_k),
        }
        timeout = self.retrieval.leg_timeout_seconds

        results: dict[str, list] = {DENSE: [], SPARSE: []}
        timings: dict[str, float] = {}
        failures: dict[str, RetrievalLegError] = {}
        for leg, (call, future) in stages.items():
            try:
                results[leg], timings[leg] = self._await(leg, call, future, timeout)
            except RetrievalLegError as exc:
                failures[leg] = exc

        if failures:
            if self.retrieval.leg_failure_policy == "abort" or len(failures) == len(stages):
                for _, future in stages.values():
                    future.cancel()
                raise next(iter(failures.values()))
            for leg, exc in failures.items():
                logger.warning("Continuing without the %s leg: %s", leg, exc)

        return results[DENSE], results[SPARSE], timings, list(failures)

    def retrieve(
        self,
        query: str,
        top_k: Optional[int] = None,
        similarity_threshold: Optional[float] = None,
    ) -> HybridRetrievalResult:
        """
        Produce the final top-K ranked candidates for a query.

        Args:
            query: Query text.
            top_k: Number of results. Defaults to ``retrieval.default_top_k``.
            similarity_threshold: Dense-leg cosine cutoff. Defaults to
                ``retrieval.similarity_threshold``.

        Returns:
            HybridRetrievalResult with reranked candidates and stage timings.

        Raises:
            RetrievalLegError: A leg failed under the abort policy, or both legs failed.
            RetrievalTimeoutError: A stage missed its deadline and could not be skipped.
        """
        top_k = top_k if top_k is not None else self.retrieval.default_top_k
        if top_k < 1:
            raise ValueError("top_k must be at least 1")
        threshold = (
            similarity_threshold
            if similarity_threshold is not None
            else self.retrieval.similarity_threshold
        )
        fetch_k = top_k * self.retrieval.candidate_multiplier
        request_id = generate_request_id()
        start_time = time.perf_counter()

        try:
            dense, sparse, timings, degraded = self._gather_legs(query, fetch_k, threshold)

            fusion_start = time.perf_counter()
            fused = reciprocal_rank_fusion(
                [[c.chunk_id for c in dense], [h.chunk_id for h in sparse]],
                k=self.retrieval.rrf_k,
                limit=fetch_k,
            )
            candidates, dropped = self._resolve(fused, dense, sparse)
            timings["fusion"] = (time.perf_counter() - fusion_start) * 1000

            rerank_call, rerank_future = self._submit(self.reranker.rerank, query, candidates, top_k)
            ranked, timings[RERANK] = self._await(
                RERANK, rerank_call, rerank_future, self.retrieval.rerank_timeout_seconds
            )
        except RetrievalLegError as exc:
            latency_ms = (time.perf_counter() - start_time) * 1000
            logger.error("Hybrid retrieval failed after %.0fms: %s", latency_ms, exc)
            self.audit_logger.log(
                RetrievalEvent(
                    request_id=request_id,
                    event_type=AuditEventType.RETRIEVAL_FAILED,
                    severity=AuditSeverity.ERROR,
                    query_hash=hash_query(query),
                    k_requested=top_k,
                    leg_failure_policy=self.retrieval.leg_failure_policy,
                    latency_ms=latency_ms,
                    details={"failed_stage": exc.leg, "error": type(exc.cause).__name__},
                )
            )
            raise

        result = HybridRetrievalResult(
            candidates=ranked,
            dense_count=len(dense),
            sparse_count=len(sparse),
            fused_count=len(candidates),
            dropped_ids=dropped,
            degraded_legs=degraded,
            stage_timings_ms=timings,
            total_time_ms=(time.perf_counter() - start_time) * 1000,
        )

        logger.info(
            "Hybrid retrieval: dense=%d sparse=%d fused=%d returned=%d | "
            "dense=%.1fms sparse=%.1fms fusion=%.1fms rerank=%.1fms total=%.1fms",
            result.dense_count,
            result.sparse_count,
            result.fused_count,
            len(ranked),
            timings.get(DENSE, 0.0),
            timings.get(SPARSE, 0.0),
            timings["fusion"],
            timings[RERANK],
            result.total_time_ms,
        )
        if self.metrics is not None:
            self.metrics.record(result, query)
        self.audit_logger.log(
            RetrievalEvent(
                request_id=request_id,
                severity=AuditSeverity.WARN if degraded else AuditSeverity.INFO,
                query_hash=hash_query(query),
                k_requested=top_k,
                dense_count=result.dense_count,
                sparse_count=result.sparse_count,
                fused_count=result.fused_count,
                results_returned=len(ranked),
                dropped_count=len(dropped),
                leg_failure_policy=self.retrieval.leg_failure_policy,
                degraded_legs=degraded,
                stage_timings_ms=timings,
                resource_ids=[c.chunk_id for c in ranked],
                latency_ms=result.total_time_ms,
            )
        )
        return result
