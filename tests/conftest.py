"""Pytest fixtures for hybrid retrieval tests."""

import hashlib
import re
import shutil
import tempfile
import threading
from pathlib import Path

import numpy as np
import pytest

from hybrid_rag.audit import AuditLogger
from hybrid_rag.bm25 import BM25Index
from hybrid_rag.config import AuditSettings, EmbeddingSettings
from hybrid_rag.ingest import BatchEmbeddingIngestor
from hybrid_rag.models import Chunk
from hybrid_rag.rate_limiter import RateLimiter
from hybrid_rag.vector_store import FaissVectorStore


class HashingEmbedder:
    """Deterministic bag-of-words embedder: each token bumps one hashed dimension."""

    def __init__(self, dimension: int = 4096):
        self.dimension = dimension
        self.calls = 0

    def encode(self, texts):
        self.calls += 1
        vectors = np.zeros((len(texts), self.dimension), dtype=np.float32)
        for row, text in enumerate(texts):
            for token in re.findall(r"[a-z0-9]+", text.lower()):
                bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dimension
                vectors[row, bucket] += 1.0
        return vectors


class FakeClock:
    """Manually advanced monotonic clock; ``sleep`` advances it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


@pytest.fixture(autouse=True)
def memory_audit_logger():
    """Route audit events to memory for every test."""
    AuditLogger.reset_instance()
    audit_logger = AuditLogger.get_instance(AuditSettings(handler_type="memory"))
    yield audit_logger
    AuditLogger.reset_instance()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def vector_store(embedder):
    return FaissVectorStore(embedder=embedder)


@pytest.fixture
def bm25_index():
    return BM25Index()


@pytest.fixture
def fast_embedding_settings():
    """Embedding settings with no stagger and small fixed batches."""
    return EmbeddingSettings(
        batching="fixed",
        batch_size=2,
        parallelism=4,
        delay_between_batches_ms=0,
        rate_limit_per_minute=1000,
        retry_max_attempts=5,
        retry_initial_delay=1.0,
        retry_multiplier=2.0,
        retry_max_delay=30.0,
    )


@pytest.fixture
def recorded_sleeps():
    return []


@pytest.fixture
def ingestor(vector_store, bm25_index, fast_embedding_settings, recorded_sleeps):
    return BatchEmbeddingIngestor(
        vector_store=vector_store,
        bm25_index=bm25_index,
        rate_limiter=RateLimiter(max_requests=1000, window_seconds=60.0),
        embedding=fast_embedding_settings,
        sleep=recorded_sleeps.append,
    )


@pytest.fixture
def sample_chunks():
    """Six small chunks across two files."""
    texts = [
        "ACME Corp revenue grew 20% in Q3",
        "ACME Corp hired a new chief financial officer",
        "Quarterly revenue guidance was raised for next year",
        "Monsoon patterns across South Asia",
        "Rainfall in Kerala peaked during early June",
        "Drought conditions eased across the Deccan plateau",
    ]
    chunks = []
    for i, text in enumerate(texts):
        file_name = "finance.txt" if i < 3 else "weather.txt"
        category = "finance" if i < 3 else "general"
        chunks.append(
            Chunk(
                chunk_id=f"{file_name}-chunk-{i:03d}",
                text=text,
                metadata={"category": category, "file_name": file_name, "source": file_name},
            )
        )
    return chunks


@pytest.fixture
def long_document_text():
    """Roughly 3,500 estimated tokens of unique seven-character words."""
    return " ".join(f"w{i:05d}" for i in range(2000))


@pytest.fixture
def sample_docs_dir(temp_dir):
    """Create sample documents in category directories."""
    docs_dir = temp_dir / "docs"
    (docs_dir / "finance").mkdir(parents=True)
    (docs_dir / "general").mkdir(parents=True)

    (docs_dir / "finance" / "acme.txt").write_text("ACME Corp revenue grew 20% in Q3")
    (docs_dir / "general" / "monsoon.md").write_text("Monsoon patterns across South Asia")
    (docs_dir / "general" / "diagram.png").write_bytes(b"\x89PNG\r\n")
    (docs_dir / "notes.txt").write_text("Loose notes kept at the top level")
    yield docs_dir
