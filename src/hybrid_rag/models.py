"""Pydantic models for the hybrid retrieval engine."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Document(BaseModel):
    """A full source document before chunking."""

    content: str = Field(..., description="Raw document text")
    file_name: str = Field(..., description="Source file name, the idempotency key")
    category: str = Field(default="general", description="Category tag")
    source: Optional[str] = Field(default=None, description="Origin path or URI")


class DocumentMetadata(BaseModel):
    """Provenance metadata attached to every chunk of a document."""

    category: str = Field(..., description="Category tag")
    file_name: str = Field(..., description="Source file name")
    source: Optional[str] = Field(default=None, description="Origin path or URI")
    start_date: Optional[str] = Field(default=None, description="ISO date, earliest in document")
    end_date: Optional[str] = Field(default=None, description="ISO date, latest in document")

    def to_metadata(self) -> dict[str, Any]:
        """Flatten to a metadata map, omitting absent fields."""
        return self.model_dump(exclude_none=True)


class Chunk(BaseModel):
    """A bounded slice of a document, the atomic retrieval unit."""

    model_config = ConfigDict(frozen=True)

    chunk_id: str = Field(..., description="Stable unique chunk identifier")
    text: str = Field(..., description="Chunk text content")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Inherited document metadata")

    @property
    def file_name(self) -> Optional[str]:
        return self.metadata.get("file_name")


class RetrievalCandidate(BaseModel):
    """A chunk under consideration for one query, with the scores gathered so far."""

    chunk_id: str = Field(..., description="Chunk identifier")
    text: str = Field(..., description="Chunk text content")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Chunk metadata")
    vector_similarity: Optional[float] = Field(default=None, description="Cosine similarity (dense leg)")
    bm25_score: Optional[float] = Field(default=None, description="BM25 score (sparse leg)")
    rrf_score: Optional[float] = Field(default=None, description="Reciprocal rank fusion score")
    rerank_score: Optional[float] = Field(default=None, description="Final blended score")
    keyword_score: Optional[float] = Field(default=None, description="Keyword/phrase component")
    metadata_score: Optional[float] = Field(default=None, description="Metadata richness component")


class BM25Hit(BaseModel):
    """A ranked sparse-index match."""

    chunk_id: str = Field(..., description="Chunk identifier")
    score: float = Field(..., description="BM25 score")


class BatchResult(BaseModel):
    """Outcome of embedding one ingestion batch."""

    batch_number: int = Field(..., description="1-indexed submission order")
    size: int = Field(..., description="Chunks in the batch")
    estimated_tokens: int = Field(default=0, description="Estimated tokens in the batch")
    attempts: int = Field(default=0, description="Embedding attempts made")
    succeeded: bool = Field(default=False, description="Whether the batch was committed")
    error: Optional[str] = Field(default=None, description="Last error if the batch failed")


class IngestionReport(BaseModel):
    """Outcome of one batch ingestion call."""

    batches_total: int = Field(default=0)
    batches_succeeded: int = Field(default=0)
    batches_failed: int = Field(default=0)
    chunks_embedded: int = Field(default=0)
    chunks_failed: int = Field(default=0)
    sparse_indexed: bool = Field(default=False, description="Whether the BM25 write succeeded")
    elapsed_ms: float = Field(default=0.0)
    batches: list[BatchResult] = Field(default_factory=list)


class DocumentStatus(str, Enum):
    """Per-document ingestion outcome."""

    INGESTED = "ingested"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    SKIPPED_EMPTY = "skipped_empty"
    FAILED = "failed"


class DocumentIngestionResult(BaseModel):
    """Outcome of ingesting one document."""

    file_name: str
    status: DocumentStatus
    chunks_created: int = 0
    report: Optional[IngestionReport] = None
    error: Optional[str] = None


class CorpusIngestionResult(BaseModel):
    """Outcome of ingesting a set of documents."""

    documents: list[DocumentIngestionResult] = Field(default_factory=list)

    def count(self, status: DocumentStatus) -> int:
        return sum(1 for d in self.documents if d.status == status)

    @property
    def chunks_created(self) -> int:
        return sum(d.chunks_created for d in self.documents)


class HybridRetrievalResult(BaseModel):
    """Final ranked candidates for a query plus stage observability."""

    candidates: list[RetrievalCandidate] = Field(default_factory=list)
    dense_count: int = Field(default=0, description="Candidates returned by the dense leg")
    sparse_count: int = Field(default=0, description="Candidates returned by the sparse leg")
    fused_count: int = Field(default=0, description="Candidates surviving fusion")
    dropped_ids: list[str] = Field(default_factory=list, description="Fused ids with no resolvable payload")
    degraded_legs: list[str] = Field(default_factory=list, description="Legs skipped under the degrade policy")
    stage_timings_ms: dict[str, float] = Field(default_factory=dict)
    total_time_ms: float = Field(default=0.0)
