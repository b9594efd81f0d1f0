"""Weighted reranking of fused candidates."""

import logging
import re
import time
from typing import Any, Optional, Sequence

from .config import RerankWeights, settings
from .models import RetrievalCandidate

logger = logging.getLogger(__name__)

STOPWORDS = frozenset({"the", "a", "an", "and", "or", "in", "on", "what", "was", "for"})

# Used when a candidate carries no vector similarity (sparse-only hits)
DEFAULT_SIMILARITY = 0.5

PHRASE_BOOST = 0.25

_NON_WORD = re.compile(r"[^a-z0-9\s]")
_SPACES = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lowercase, replace punctuation with spaces, collapse whitespace."""
    return _SPACES.sub(" ", _NON_WORD.sub(" ", text.lower())).strip()


def extract_terms(text: str) -> set[str]:
    """Distinct normalized terms longer than one character, minus stopwords."""
    return {
        token
        for token in normalize(text).split()
        if len(token) > 1 and token not in STOPWORDS
    }


def query_phrases(query: str) -> list[str]:
    """Distinct 2- and 3-word phrases of the query that contain a real term."""
    words = normalize(query).split()
    phrases: list[str] = []
    for n in (2, 3):
        for i in range(len(words) - n + 1):
            phrase = " ".join(words[i : i + n])
            if phrase not in phrases and extract_terms(phrase):
                phrases.append(phrase)
    return phrases


def _has_date_field(metadata: dict[str, Any]) -> bool:
    for key, value in metadata.items():
        if value in (None, ""):
            continue
        key = key.lower()
        if key in ("date", "timestamp") or key.endswith(("_date", "_timestamp")):
            return True
    return False


class WeightedReranker:
    """Blend vector similarity, keyword/phrase overlap and metadata richness.

    final = w_vector * similarity + w_keyword * keyword + w_metadata * metadata
    """

    strategy = "weighted"

    def __init__(self, weights: Optional[RerankWeights] = None) -> None:
        self.weights = weights or settings.rerank_weights

    def keyword_score(self, text: str, query: str) -> float:
        """
        Term overlap blended with exact phrase matches, in [0, 1].

        keyword = min(1, 0.4 * overlap_ratio + 0.6 * phrase_boost), where
        phrase_boost adds 0.25 per distinct query 2/3-gram contained in the
        normalized text, capped at 1.0.
        """
        query_terms = extract_terms(query)
        if not query_terms:
            return 0.0

        content = normalize(text)
        content_terms = set(content.split())
        overlap = len(query_terms & content_terms) / len(query_terms)

        matches = sum(1 for phrase in query_phrases(query) if phrase in content)
        phrase_boost = min(1.0, PHRASE_BOOST * matches)

        return min(1.0, overlap * 0.4 + phrase_boost * 0.6)

    def metadata_score(self, metadata: dict[str, Any]) -> float:
        score = 0.5
        if metadata.get("source"):
            score += 0.1
        if _has_date_field(metadata):
            score += 0.2
        return min(1.0, score)

    @staticmethod
    def vector_score(candidate: RetrievalCandidate) -> float:
        if candidate.vector_similarity is not None:
            return candidate.vector_similarity
        similarity = candidate.metadata.get("similarity")
        if isinstance(similarity, (int, float)) and not isinstance(similarity, bool):
            return float(similarity)
        return DEFAULT_SIMILARITY

    def score(self, candidate: RetrievalCandidate, query: str) -> RetrievalCandidate:
        """Return a copy of ``candidate`` annotated with its component scores."""
        vector = self.vector_score(candidate)
        keyword = self.keyword_score(candidate.text, query)
        meta = self.metadata_score(candidate.metadata)
        final = (
            vector * self.weights.vector
            + keyword * self.weights.keyword
            + meta * self.weights.metadata
        )
        metadata = dict(candidate.metadata)
        metadata.update(
            rerank_score=final,
            original_similarity=vector,
            keyword_boost=keyword,
        )
        return candidate.model_copy(
            update={
                "metadata": metadata,
                "rerank_score": final,
                "keyword_score": keyword,
                "metadata_score": meta,
            }
        )

    def rerank(
        self, query: str, candidates: Sequence[RetrievalCandidate], top_k: int
    ) -> list[RetrievalCandidate]:
        """Score every candidate, sort descending (ties keep input order), keep ``top_k``."""
        if not candidates or top_k <= 0:
            return []
        start = time.perf_counter()
        scored = [self.score(candidate, query) for candidate in candidates]
        scored.sort(key=lambda c: c.rerank_score, reverse=True)
        logger.debug(
            "Reranked %d candidates to top %d in %.1fms",
            len(candidates),
            top_k,
            (time.perf_counter() - start) * 1000,
        )
        return scored[:top_k]
