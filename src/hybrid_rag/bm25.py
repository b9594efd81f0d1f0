"""BM25 sparse index with single-writer, snapshot-reader semantics."""

import logging
import math
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import numpy as np
from rank_bm25 import BM25

from .config import BM25Settings, settings
from .errors import IndexWriteError, QueryParseError
from .models import BM25Hit, Chunk

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"[a-z0-9]+")


def tokenize(text: str) -> list[str]:
    """Lowercase alphanumeric tokens."""
    return _TOKEN.findall(text.lower())


def parse_query(query: Any) -> list[str]:
    """
    Analyze a raw query into search terms.

    Raises:
        QueryParseError: If the query is not text or has no searchable terms.
    """
    if not isinstance(query, str):
        raise QueryParseError(f"Query must be a string, got {type(query).__name__}")
    terms = tokenize(query)
    if not terms:
        raise QueryParseError(f"No searchable terms in query {query!r}")
    return terms


class LuceneBM25(BM25):
    """BM25 with Lucene's non-negative IDF.

    ``rank_bm25.BM25Okapi`` gives terms present in at least half of the
    documents a zero or negative IDF, which on small corpora hides real
    matches. Lucene uses ``log(1 + (N - n + 0.5) / (n + 0.5))`` instead.
    """

    def __init__(self, corpus: list[list[str]], k1: float = 1.2, b: float = 0.75):
        self.k1 = k1
        self.b = b
        super().__init__(corpus)

    def _calc_idf(self, nd: dict[str, int]) -> None:
        for word, freq in nd.items():
            self.idf[word] = math.log(1 + (self.corpus_size - freq + 0.5) / (freq + 0.5))

    def _term_scores(self, term: str, doc_freqs: list[dict], doc_len: np.ndarray) -> np.ndarray:
        idf = self.idf.get(term)
        if not idf:
            return np.zeros(len(doc_freqs))
        q_freq = np.array([doc.get(term, 0) for doc in doc_freqs], dtype=float)
        avgdl = self.avgdl or 1.0
        norm = self.k1 * (1 - self.b + self.b * doc_len / avgdl)
        return idf * (q_freq * (self.k1 + 1) / (q_freq + norm))

    def get_scores(self, query: list[str]) -> np.ndarray:
        doc_len = np.array(self.doc_len, dtype=float)
        score = np.zeros(self.corpus_size)
        for term in query:
            score += self._term_scores(term, self.doc_freqs, doc_len)
        return score

    def get_batch_scores(self, query: list[str], doc_ids: list[int]) -> list[float]:
        doc_freqs = [self.doc_freqs[i] for i in doc_ids]
        doc_len = np.array([self.doc_len[i] for i in doc_ids], dtype=float)
        score = np.zeros(len(doc_ids))
        for term in query:
            score += self._term_scores(term, doc_freqs, doc_len)
        return score.tolist()


@dataclass(frozen=True)
class BM25Entry:
    """Stored copy of an indexed chunk."""

    chunk_id: str
    text: str
    tokens: tuple[str, ...]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _Snapshot:
    """Immutable reader view of one committed index state."""

    ids: tuple[str, ...]
    entries: dict[str, BM25Entry]
    scorer: Optional[LuceneBM25]


_EMPTY = _Snapshot(ids=(), entries={}, scorer=None)


class BM25Index:
    """Keyword index over chunk text.

    Writers are serialized by a lock and build a complete new snapshot per
    commit; readers only dereference the current snapshot, so a search never
    waits for a write and always sees the last committed state.
    """

    def __init__(self, bm25: Optional[BM25Settings] = None) -> None:
        params = bm25 or settings.bm25
        self.k1 = params.k1
        self.b = params.b
        self._write_lock = threading.Lock()
        self._snapshot: _Snapshot = _EMPTY

    def _build_snapshot(self, entries: dict[str, BM25Entry]) -> _Snapshot:
        if not entries:
            return _EMPTY
        ids = tuple(entries)
        scorer = LuceneBM25([list(entries[i].tokens) for i in ids], k1=self.k1, b=self.b)
        return _Snapshot(ids=ids, entries=entries, scorer=scorer)

    def index_documents(self, chunks: Sequence[Chunk]) -> int:
        """
        Add chunks whose ids are not indexed yet, commit, and refresh readers.

        Returns:
            Number of newly indexed chunks.

        Raises:
            IndexWriteError: If the commit fails. The previous snapshot stays live.
        """
        with self._write_lock:
            current = self._snapshot
            staged = dict(current.entries)
            added = 0
            for chunk in chunks:
                if chunk.chunk_id in staged:
                    continue
                staged[chunk.chunk_id] = BM25Entry(
                    chunk_id=chunk.chunk_id,
                    text=chunk.text,
                    tokens=tuple(tokenize(chunk.text)),
                    metadata=dict(chunk.metadata),
                )
                added += 1
            if not added:
                return 0
            try:
                snapshot = self._build_snapshot(staged)
            except Exception as exc:
                raise IndexWriteError(f"BM25 commit of {added} documents failed: {exc}") from exc
            self._snapshot = snapshot

        logger.debug("Indexed %d new documents (total %d)", added, len(snapshot.ids))
        return added

    def search(self, query: str, top_k: int) -> list[BM25Hit]:
        """Ranked matches with a positive score; empty on unparseable queries."""
        try:
            terms = parse_query(query)
        except QueryParseError as exc:
            logger.debug("Sparse query yields no results: %s", exc)
            return []

        snapshot = self._snapshot
        if snapshot.scorer is None or top_k <= 0:
            return []

        scores = snapshot.scorer.get_scores(terms)
        order = np.argsort(-scores, kind="stable")[:top_k]
        return [
            BM25Hit(chunk_id=snapshot.ids[i], score=float(scores[i]))
            for i in order
            if scores[i] > 0
        ]

    def get(self, chunk_id: str) -> Optional[BM25Entry]:
        return self._snapshot.entries.get(chunk_id)

    def clear_index(self) -> None:
        """Drop every entry and forget all indexed ids."""
        with self._write_lock:
            self._snapshot = _EMPTY
        logger.info("BM25 index cleared")

    def stats(self) -> dict[str, Any]:
        snapshot = self._snapshot
        return {
            "total_documents": len(snapshot.ids),
            "vocabulary_size": len(snapshot.scorer.idf) if snapshot.scorer else 0,
            "similarity": f"BM25(k1={self.k1}, b={self.b})",
        }
