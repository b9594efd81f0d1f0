"""Batch embedding ingestion: batch, embed in parallel with retry, then index sparsely."""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed, wait
from typing import Callable, Optional, Sequence

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .bm25 import BM25Index
from .chunker import estimate_tokens
from .config import EmbeddingSettings, settings
from .errors import is_transient
from .models import BatchResult, Chunk, IngestionReport
from .rate_limiter import RateLimiter
from .vector_store import VectorStore

logger = logging.getLogger(__name__)


def create_fixed_batches(chunks: Sequence[Chunk], batch_size: int) -> list[list[Chunk]]:
    """Split chunks into consecutive batches of at most ``batch_size``."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [list(chunks[i : i + batch_size]) for i in range(0, len(chunks), batch_size)]


def create_token_aware_batches(
    chunks: Sequence[Chunk], max_tokens: int, chars_per_token: int = 4
) -> list[list[Chunk]]:
    """
    Group chunks so each batch stays within a token budget.

    A batch is flushed when adding the next chunk would exceed ``max_tokens``.
    A single chunk larger than the budget travels alone.
    """
    batches: list[list[Chunk]] = []
    current: list[Chunk] = []
    current_tokens = 0
    for chunk in chunks:
        tokens = estimate_tokens(chunk.text, chars_per_token)
        if current and current_tokens + tokens > max_tokens:
            batches.append(current)
            current, current_tokens = [], 0
        current.append(chunk)
        current_tokens += tokens
    if current:
        batches.append(current)
    return batches


class EmbeddingWorkerPool:
    """Bounded thread pool owned by one ingestion call.

    Started on enter; on exit it drains submitted work for up to
    ``shutdown_timeout`` seconds, then cancels whatever has not started.
    """

    def __init__(self, max_workers: int, shutdown_timeout: float = 60.0) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self.shutdown_timeout = shutdown_timeout
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: list[Future] = []

    def start(self) -> "EmbeddingWorkerPool":
        if self._executor is not None:
            raise RuntimeError("Worker pool already started")
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="embed-worker"
        )
        return self

    def submit(self, fn: Callable, *args) -> Future:
        if self._executor is None:
            raise RuntimeError("Worker pool is not running")
        future = self._executor.submit(fn, *args)
        self._futures.append(future)
        return future

    def shutdown(self) -> bool:
        """Drain, then force-cancel. Returns True if everything finished in time."""
        if self._executor is None:
            return True
        executor, self._executor = self._executor, None
        _, pending = wait(self._futures, timeout=self.shutdown_timeout)
        if pending:
            logger.warning(
                "Worker pool did not drain within %.0fs, cancelling %d pending batches",
                self.shutdown_timeout,
                len(pending),
            )
            executor.shutdown(wait=False, cancel_futures=True)
        else:
            executor.shutdown(wait=True)
        self._futures = []
        return not pending

    def __enter__(self) -> "EmbeddingWorkerPool":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()


class BatchEmbeddingIngestor:
    """Embed chunks into the vector store in parallel batches, then index them in BM25.

    Each batch is retried with exponential backoff on transient provider
    errors. A batch that still fails is recorded in the report and never
    stops the other batches. The BM25 write is best-effort: its failure is
    logged and reported, never raised.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        bm25_index: Optional[BM25Index] = None,
        rate_limiter: Optional[RateLimiter] = None,
        embedding: Optional[EmbeddingSettings] = None,
        chars_per_token: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.vector_store = vector_store
        self.bm25_index = bm25_index
        self.embedding = embedding or settings.embedding
        self.rate_limiter = rate_limiter or RateLimiter(
            max_requests=self.embedding.rate_limit_per_minute,
            window_seconds=self.embedding.rate_limit_window_seconds,
        )
        self.chars_per_token = chars_per_token or settings.chunking.chars_per_token
        self._sleep = sleep

    def create_batches(self, chunks: Sequence[Chunk]) -> list[list[Chunk]]:
        if self.embedding.batching == "fixed":
            return create_fixed_batches(chunks, self.embedding.batch_size)
        return create_token_aware_batches(
            chunks, self.embedding.max_tokens_per_batch, self.chars_per_token
        )

    def _retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception(is_transient),
            stop=stop_after_attempt(self.embedding.retry_max_attempts),
            wait=wait_exponential(
                multiplier=self.embedding.retry_initial_delay,
                exp_base=self.embedding.retry_multiplier,
                max=self.embedding.retry_max_delay,
            ),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    def _embed_batch(self, batch_number: int, batch: list[Chunk]) -> BatchResult:
        tokens = sum(estimate_tokens(c.text, self.chars_per_token) for c in batch)
        result = BatchResult(batch_number=batch_number, size=len(batch), estimated_tokens=tokens)
        attempts = 0
        try:
            for attempt in self._retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    self.rate_limiter.acquire(self._sleep)
                    self.vector_store.add(batch)
        except Exception as exc:
            # Recorded in the report; one failed batch never aborts the run.
            logger.error(
                "Batch %d (%d chunks) failed after %d attempts: %s",
                batch_number,
                len(batch),
                attempts,
                exc,
            )
            return result.model_copy(update={"attempts": attempts, "error": repr(exc)})

        logger.debug("Batch %d committed (%d chunks, ~%d tokens)", batch_number, len(batch), tokens)
        return result.model_copy(update={"attempts": attempts, "succeeded": True})

    def ingest(self, chunks: Sequence[Chunk]) -> IngestionReport:
        """
        Embed and index ``chunks``; blocks until every batch succeeded or gave up.

        Args:
            chunks: Chunks to ingest.

        Returns:
            IngestionReport with per-batch outcomes and totals.
        """
        start_time = time.perf_counter()
        chunks = list(chunks)
        batches = self.create_batches(chunks)
        if not batches:
            return IngestionReport()

        delay = self.embedding.delay_between_batches_ms / 1000
        workers = min(self.embedding.parallelism, len(batches))
        logger.info(
            "Embedding %d chunks in %d batches (%s, %d workers)",
            len(chunks),
            len(batches),
            self.embedding.batching,
            workers,
        )

        results: list[BatchResult] = []
        with EmbeddingWorkerPool(workers, self.embedding.shutdown_timeout_seconds) as pool:
            futures = []
            for number, batch in enumerate(batches, start=1):
                if number > 1 and delay > 0:
                    self._sleep(delay)
                futures.append(pool.submit(self._embed_batch, number, batch))
            for future in as_completed(futures):
                results.append(future.result())
        results.sort(key=lambda r: r.batch_number)

        sparse_indexed = False
        if self.bm25_index is not None:
            # The sparse write never fails an ingestion run.
            try:
                self.bm25_index.index_documents(chunks)
                sparse_indexed = True
            except Exception:
                logger.exception("Sparse indexing failed, dense ingestion unaffected")

        succeeded = [r for r in results if r.succeeded]
        failed = [r for r in results if not r.succeeded]
        report = IngestionReport(
            batches_total=len(results),
            batches_succeeded=len(succeeded),
            batches_failed=len(failed),
            chunks_embedded=sum(r.size for r in succeeded),
            chunks_failed=sum(r.size for r in failed),
            sparse_indexed=sparse_indexed,
            elapsed_ms=(time.perf_counter() - start_time) * 1000,
            batches=results,
        )
        logger.info(
            "Ingestion finished: %d/%d batches succeeded, %d chunks embedded in %.0fms",
            report.batches_succeeded,
            report.batches_total,
            report.chunks_embedded,
            report.elapsed_ms,
        )
        return report


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    wait_seconds = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        "Embedding attempt %d failed (%s), retrying in %.1fs",
        retry_state.attempt_number,
        exc,
        wait_seconds,
    )
