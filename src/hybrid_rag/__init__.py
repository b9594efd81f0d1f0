"""Hybrid dense + sparse retrieval and ingestion engine."""

from .bm25 import BM25Index
from .chunker import DocumentChunker
from .config import settings
from .fusion import reciprocal_rank_fusion
from .ingest import BatchEmbeddingIngestor
from .metrics import RetrievalMetrics
from .models import Chunk, Document, HybridRetrievalResult, RetrievalCandidate
from .rate_limiter import RateLimiter
from .rerank import WeightedReranker
from .retrieve import HybridRetriever
from .service import IngestionService
from .temporal import TemporalQueryService
from .vector_store import FaissVectorStore

__all__ = [
    "settings",
    "BM25Index",
    "BatchEmbeddingIngestor",
    "Chunk",
    "Document",
    "DocumentChunker",
    "FaissVectorStore",
    "HybridRetrievalResult",
    "HybridRetriever",
    "IngestionService",
    "RateLimiter",
    "RetrievalCandidate",
    "RetrievalMetrics",
    "TemporalQueryService",
    "WeightedReranker",
    "reciprocal_rank_fusion",
]
