"""Dense vector store: FAISS inner-product index over normalized embeddings."""

import json
import logging
import threading
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Sequence

import faiss
import numpy as np
from sentence_transformers import SentenceTransformer

from .config import settings
from .models import Chunk, RetrievalCandidate

logger = logging.getLogger(__name__)

MetadataFilter = Callable[[dict[str, Any]], bool]


class Embedder(Protocol):
    """Turns texts into a (len(texts), dim) float array."""

    def encode(self, texts: list[str]) -> np.ndarray: ...


class VectorStore(Protocol):
    """Narrow contract the ingestor and the hybrid retriever depend on."""

    def add(self, chunks: Sequence[Chunk]) -> None: ...

    def similarity_search(
        self,
        query: str,
        top_k: int,
        threshold: float = 0.0,
        where: Optional[MetadataFilter] = None,
    ) -> list[RetrievalCandidate]: ...

    def get_by_ids(self, chunk_ids: Sequence[str]) -> list[RetrievalCandidate]: ...

    def contains_file(self, file_name: str) -> bool: ...


class SentenceTransformerEmbedder:
    """Lazily loaded sentence-transformers model."""

    def __init__(self, model_name: Optional[str] = None) -> None:
        self.model_name = model_name or settings.embedding.model
        self._model: Optional[SentenceTransformer] = None
        self._lock = threading.Lock()

    @property
    def model(self) -> SentenceTransformer:
        with self._lock:
            if self._model is None:
                logger.info("Loading embedding model: %s", self.model_name)
                self._model = SentenceTransformer(self.model_name)
            return self._model

    def encode(self, texts: list[str]) -> np.ndarray:
        return self.model.encode(texts, show_progress_bar=False, convert_to_numpy=True)


def _normalized(embeddings: np.ndarray) -> np.ndarray:
    vectors = np.ascontiguousarray(embeddings, dtype=np.float32)
    if vectors.ndim == 1:
        vectors = vectors.reshape(1, -1)
    faiss.normalize_L2(vectors)
    return vectors


class FaissVectorStore:
    """In-process vector store backed by ``faiss.IndexFlatIP``.

    Embeddings are L2-normalized so inner product equals cosine similarity.
    Row ``i`` of the FAISS index corresponds to ``self._chunks[i]``. Adding a
    chunk id that is already stored is a no-op, which keeps retried batches
    from duplicating vectors.
    """

    def __init__(self, embedder: Optional[Embedder] = None) -> None:
        self.embedder = embedder or SentenceTransformerEmbedder()
        self._index: Optional[faiss.Index] = None
        self._chunks: list[Chunk] = []
        self._positions: dict[str, int] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return self.count

    @property
    def count(self) -> int:
        return len(self._chunks)

    def add(self, chunks: Sequence[Chunk]) -> None:
        """Embed and store chunks. Embedding happens outside the write lock."""
        new_chunks = [c for c in chunks if c.chunk_id not in self._positions]
        if not new_chunks:
            return

        vectors = _normalized(self.embedder.encode([c.text for c in new_chunks]))
        if vectors.shape[0] != len(new_chunks):
            raise ValueError(
                f"Embedder returned {vectors.shape[0]} vectors for {len(new_chunks)} texts"
            )

        with self._lock:
            if self._index is None:
                self._index = faiss.IndexFlatIP(vectors.shape[1])
            # Another writer may have stored some of these while we were embedding.
            keep = [
                i for i, c in enumerate(new_chunks) if c.chunk_id not in self._positions
            ]
            if not keep:
                return
            self._index.add(vectors[keep])
            for i in keep:
                self._positions[new_chunks[i].chunk_id] = len(self._chunks)
                self._chunks.append(new_chunks[i])

    def _candidate(self, chunk: Chunk, similarity: Optional[float] = None) -> RetrievalCandidate:
        metadata = dict(chunk.metadata)
        if similarity is not None:
            metadata["similarity"] = similarity
        return RetrievalCandidate(
            chunk_id=chunk.chunk_id,
            text=chunk.text,
            metadata=metadata,
            vector_similarity=similarity,
        )

    def similarity_search(
        self,
        query: str,
        top_k: int,
        threshold: float = 0.0,
        where: Optional[MetadataFilter] = None,
    ) -> list[RetrievalCandidate]:
        """
        Return up to ``top_k`` chunks with cosine similarity >= ``threshold``.

        Args:
            query: Query text.
            top_k: Maximum number of results.
            threshold: Minimum cosine similarity.
            where: Optional predicate over chunk metadata.

        Returns:
            Candidates sorted by descending similarity.
        """
        if top_k <= 0 or len(self) == 0:
            return []

        query_vector = _normalized(self.embedder.encode([query]))
        # The index is never read while ``add`` is growing it.
        with self._lock:
            if self._index is None or not self._chunks:
                return []
            chunks = list(self._chunks)
            # Filtering happens after the search, so scan everything when filtering.
            k = len(chunks) if where is not None else min(top_k, len(chunks))
            scores, indices = self._index.search(query_vector, k)

        results = []
        for score, idx in zip(scores[0], indices[0]):
            if idx < 0 or idx >= len(chunks):
                continue
            if score < threshold:
                continue
            chunk = chunks[idx]
            if where is not None and not where(chunk.metadata):
                continue
            results.append(self._candidate(chunk, float(score)))
            if len(results) >= top_k:
                break
        return results

    def get_by_ids(self, chunk_ids: Sequence[str]) -> list[RetrievalCandidate]:
        """Fetch stored chunks by id, skipping unknown ids."""
        with self._lock:
            found = [self._chunks[self._positions[i]] for i in chunk_ids if i in self._positions]
        return [self._candidate(chunk) for chunk in found]

    def contains_file(self, file_name: str) -> bool:
        with self._lock:
            return any(c.metadata.get("file_name") == file_name for c in self._chunks)

    def list_file_names(self) -> list[str]:
        """Distinct ingested file names, sorted."""
        with self._lock:
            names = {c.metadata.get("file_name") for c in self._chunks}
        return sorted(n for n in names if n)

    def category_counts(self) -> dict[str, int]:
        """Number of distinct files per category."""
        with self._lock:
            pairs = {
                (c.metadata.get("category", "general"), c.metadata.get("file_name"))
                for c in self._chunks
            }
        return dict(Counter(category for category, _ in pairs))

    def save(self, index_dir: Optional[Path] = None) -> None:
        """Write the FAISS index and the chunk docstore to ``index_dir``."""
        index_dir = index_dir or settings.index_dir
        index_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if self._index is None:
                raise ValueError("Nothing to save: the store is empty")
            faiss.write_index(self._index, str(index_dir / settings.faiss_index_file))
            docstore = {
                "version": "1.0",
                "chunks": [chunk.model_dump() for chunk in self._chunks],
                "metadata": {
                    "total_chunks": len(self._chunks),
                    "embedding_dimension": self._index.d,
                },
            }
        with open(index_dir / settings.docstore_file, "w", encoding="utf-8") as f:
            json.dump(docstore, f, indent=2, ensure_ascii=False)
        logger.info("Saved %d chunks to %s", docstore["metadata"]["total_chunks"], index_dir)

    @classmethod
    def load(
        cls, index_dir: Optional[Path] = None, embedder: Optional[Embedder] = None
    ) -> "FaissVectorStore":
        """
        Load a store previously written by ``save``.

        Raises:
            FileNotFoundError: If index files don't exist.
        """
        index_dir = index_dir or settings.index_dir
        index_path = index_dir / settings.faiss_index_file
        docstore_path = index_dir / settings.docstore_file
        if not index_path.exists():
            raise FileNotFoundError(f"FAISS index not found at {index_path}. Run ingestion first.")
        if not docstore_path.exists():
            raise FileNotFoundError(f"Docstore not found at {docstore_path}. Run ingestion first.")

        store = cls(embedder=embedder)
        store._index = faiss.read_index(str(index_path))
        with open(docstore_path, encoding="utf-8") as f:
            docstore = json.load(f)
        store._chunks = [Chunk(**c) for c in docstore["chunks"]]
        store._positions = {c.chunk_id: i for i, c in enumerate(store._chunks)}
        if store._index.ntotal != len(store._chunks):
            raise ValueError(
                f"Index has {store._index.ntotal} vectors but docstore has {len(store._chunks)} chunks"
            )
        logger.info("Loaded FAISS index with %d vectors", store._index.ntotal)
        return store
