"""Configuration settings for the hybrid retrieval engine."""

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent.parent


def _default_parallelism() -> int:
    return max(4, os.cpu_count() or 1)


class ChunkingSettings(BaseModel):
    """Chunk sizing, expressed in estimated tokens (ceil(chars / 4))."""

    chunk_size: int = Field(
        default=512,
        description="Target chunk size in tokens",
    )
    chunk_overlap: int = Field(
        default=128,
        description="Overlap between adjacent chunks in tokens (25%)",
    )
    min_chunk_tokens: int = Field(
        default=100,
        description="Chunks below this size are merged into their predecessor",
    )
    max_chunk_tokens: int = Field(
        default=800,
        description="Hard upper bound for any chunk",
    )
    chars_per_token: int = Field(
        default=4,
        description="Characters per token used for token estimation",
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> "ChunkingSettings":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        if self.chunk_size > self.max_chunk_tokens:
            raise ValueError("chunk_size must not exceed max_chunk_tokens")
        if self.min_chunk_tokens < 1:
            raise ValueError("min_chunk_tokens must be positive")
        if self.min_chunk_tokens > self.chunk_size:
            raise ValueError("min_chunk_tokens must not exceed chunk_size")
        return self


class EmbeddingSettings(BaseModel):
    """Embedding model, batching, throttling and retry configuration."""

    model: str = Field(
        default="sentence-transformers/all-MiniLM-L6-v2",
        description="Embedding model name",
    )
    dimension: int = Field(
        default=384,
        description="Embedding vector dimension (384 for MiniLM)",
    )

    # Batching
    batching: Literal["fixed", "token_aware"] = Field(
        default="token_aware",
        description="Batch by fixed chunk count or by cumulative token budget",
    )
    batch_size: int = Field(
        default=100,
        description="Chunks per batch for fixed-size batching",
    )
    max_tokens_per_batch: int = Field(
        default=8000,
        description="Token budget per batch for token-aware batching",
    )

    # Concurrency and throttling
    parallelism: int = Field(
        default_factory=_default_parallelism,
        description="Embedding worker pool size (default max(4, CPU count))",
    )
    delay_between_batches_ms: int = Field(
        default=100,
        description="Stagger delay between batch submissions",
    )
    rate_limit_per_minute: int = Field(
        default=50,
        description="Maximum embedding calls per rate limit window",
    )
    rate_limit_window_seconds: float = Field(
        default=60.0,
        description="Length of the rolling rate limit window",
    )

    # Retry (exponential backoff per batch)
    retry_max_attempts: int = Field(
        default=5,
        description="Maximum attempts per batch, including the first",
    )
    retry_initial_delay: float = Field(
        default=1.0,
        description="First backoff delay in seconds",
    )
    retry_multiplier: float = Field(
        default=2.0,
        description="Backoff multiplier between attempts",
    )
    retry_max_delay: float = Field(
        default=30.0,
        description="Backoff delay cap in seconds",
    )

    shutdown_timeout_seconds: float = Field(
        default=60.0,
        description="How long the worker pool drains before cancelling pending work",
    )


class BM25Settings(BaseModel):
    """Sparse index ranking parameters."""

    k1: float = Field(default=1.2, description="Term frequency saturation")
    b: float = Field(default=0.75, description="Document length normalization")


class RerankWeights(BaseModel):
    """Blend weights for the weighted reranker."""

    vector: float = Field(default=0.5, description="Weight of vector similarity")
    keyword: float = Field(default=0.4, description="Weight of keyword/phrase score")
    metadata: float = Field(default=0.1, description="Weight of metadata richness")


class RetrievalSettings(BaseModel):
    """Hybrid retrieval configuration."""

    rrf_k: int = Field(
        default=60,
        description="Reciprocal rank fusion constant",
    )
    default_top_k: int = Field(
        default=5,
        description="Default number of results to return",
    )
    candidate_multiplier: int = Field(
        default=2,
        description="Each leg fetches top_k * multiplier candidates",
    )
    similarity_threshold: float = Field(
        default=0.3,
        description="Minimum cosine similarity for the dense leg",
    )
    leg_failure_policy: Literal["abort", "degrade"] = Field(
        default="abort",
        description="abort: a failing leg fails the query; degrade: continue with the other leg",
    )
    leg_timeout_seconds: float = Field(
        default=10.0,
        description="Deadline for the dense and sparse legs",
    )
    rerank_timeout_seconds: float = Field(
        default=5.0,
        description="Deadline for the rerank stage",
    )
    worker_threads: int = Field(
        default=8,
        ge=1,
        description="Threads shared by concurrent queries; each query runs two legs then a rerank",
    )

    # Metrics thresholds
    slow_query_ms: float = Field(
        default=500.0,
        description="Queries slower than this are logged as slow",
    )
    low_similarity_threshold: float = Field(
        default=0.5,
        description="Top similarity below this is logged as a weak match",
    )


class AuditSettings(BaseModel):
    """Audit logging configuration."""

    enabled: bool = Field(
        default=True,
        description="Enable/disable audit logging",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_dir: Path = Field(
        default=PROJECT_ROOT / "logs",
        description="Directory for log files",
    )
    log_file: str = Field(
        default="audit.log",
        description="Audit log filename",
    )
    max_file_size: int = Field(
        default=10 * 1024 * 1024,
        description="Max log file size before rotation (10MB default)",
    )
    backup_count: int = Field(
        default=5,
        description="Number of backup files to keep",
    )
    console_output: bool = Field(
        default=False,
        description="Also output to console",
    )
    mask_sensitive_data: bool = Field(
        default=True,
        description="Mask free-text detail fields in logs",
    )
    handler_type: Literal["rotating_file", "stdout_json", "memory"] = Field(
        default="rotating_file",
        description="Handler type: rotating_file, stdout_json, or memory (tests)",
    )

    @property
    def log_path(self) -> Path:
        """Full path to audit log file."""
        return self.log_dir / self.log_file


class Settings(BaseSettings):
    """Hybrid retrieval engine configuration."""

    chunking: ChunkingSettings = Field(
        default_factory=ChunkingSettings,
        description="Chunk sizing",
    )
    embedding: EmbeddingSettings = Field(
        default_factory=EmbeddingSettings,
        description="Embedding and batch ingestion",
    )
    bm25: BM25Settings = Field(
        default_factory=BM25Settings,
        description="Sparse index parameters",
    )
    rerank_weights: RerankWeights = Field(
        default_factory=RerankWeights,
        description="Weighted reranker blend",
    )
    retrieval: RetrievalSettings = Field(
        default_factory=RetrievalSettings,
        description="Hybrid retrieval",
    )
    audit: AuditSettings = Field(
        default_factory=AuditSettings,
        description="Audit logging configuration",
    )

    # Paths
    docs_dir: Path = Field(
        default=PROJECT_ROOT / "data" / "docs",
        description="Directory containing source documents",
    )
    index_dir: Path = Field(
        default=PROJECT_ROOT / "indexes",
        description="Directory for FAISS index storage",
    )

    # Index file names
    faiss_index_file: str = Field(
        default="faiss.index",
        description="FAISS index file name",
    )
    docstore_file: str = Field(
        default="docstore.json",
        description="Document store JSON file name",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",  # Allows EMBEDDING__BATCH_SIZE=50
        case_sensitive=False,
    )

    @property
    def faiss_index_path(self) -> Path:
        """Full path to FAISS index file."""
        return self.index_dir / self.faiss_index_file

    @property
    def docstore_path(self) -> Path:
        """Full path to docstore JSON file."""
        return self.index_dir / self.docstore_file


# Global settings instance
settings = Settings()
