"""Document-level ingestion: load, dedup, chunk, embed, and report."""

import logging
import threading
import time
from pathlib import Path
from typing import Iterable, Optional

from .audit import AuditLogger, IngestionEvent, generate_request_id, get_audit_logger
from .chunker import DocumentChunker
from .config import settings
from .errors import PermanentIngestionError
from .ingest import BatchEmbeddingIngestor
from .models import (
    Chunk,
    CorpusIngestionResult,
    Document,
    DocumentIngestionResult,
    DocumentStatus,
)
from .vector_store import FaissVectorStore

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".txt", ".md")
DEFAULT_CATEGORY = "general"


def load_document(path: Path, category: str = DEFAULT_CATEGORY) -> Optional[Document]:
    """
    Read one file into a Document.

    Returns:
        The Document, or None if no reader handles this file type.
    """
    if path.suffix.lower() not in SUPPORTED_SUFFIXES:
        logger.warning("No reader for %s, skipping", path)
        return None
    return Document(
        content=path.read_text(encoding="utf-8", errors="replace"),
        file_name=path.name,
        category=category,
        source=str(path),
    )


def load_documents(docs_dir: Optional[Path] = None) -> list[Document]:
    """
    Load every supported file under ``docs_dir``.

    A file's category is the name of the directory that contains it; files
    directly under ``docs_dir`` are "general".

    Args:
        docs_dir: Directory containing documents. Defaults to settings.docs_dir.
    """
    docs_dir = docs_dir or settings.docs_dir
    documents = []
    for path in sorted(p for p in docs_dir.rglob("*") if p.is_file()):
        category = DEFAULT_CATEGORY if path.parent == docs_dir else path.parent.name
        document = load_document(path, category)
        if document is not None:
            documents.append(document)
    logger.info("Loaded %d documents from %s", len(documents), docs_dir)
    return documents


class IngestionService:
    """Idempotent per-file ingestion on top of the chunker and batch ingestor."""

    def __init__(
        self,
        vector_store: FaissVectorStore,
        ingestor: BatchEmbeddingIngestor,
        chunker: Optional[DocumentChunker] = None,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self.vector_store = vector_store
        self.ingestor = ingestor
        self.chunker = chunker or DocumentChunker(registry=vector_store)
        self.audit_logger = audit_logger or get_audit_logger()
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()

    def _claim(self, file_name: str) -> bool:
        with self._lock:
            if file_name in self._in_flight or self.vector_store.contains_file(file_name):
                return False
            self._in_flight.add(file_name)
            return True

    def _release(self, file_name: str) -> None:
        with self._lock:
            self._in_flight.discard(file_name)

    def _chunk(self, document: Document) -> list[Chunk]:
        chunks = self.chunker.chunk_document(document)
        if not chunks:
            raise PermanentIngestionError(
                f"No extractable text in {document.file_name}", file_name=document.file_name
            )
        return chunks

    def ingest_document(self, document: Document) -> DocumentIngestionResult:
        """Ingest one document unless its file name was already ingested."""
        if not self._claim(document.file_name):
            logger.info("Skipping %s: already ingested", document.file_name)
            return DocumentIngestionResult(
                file_name=document.file_name, status=DocumentStatus.SKIPPED_DUPLICATE
            )

        try:
            chunks = self._chunk(document)
            report = self.ingestor.ingest(chunks)
        except PermanentIngestionError as exc:
            logger.warning("Skipping %s: %s", document.file_name, exc)
            return DocumentIngestionResult(
                file_name=document.file_name, status=DocumentStatus.SKIPPED_EMPTY, error=str(exc)
            )
        finally:
            self._release(document.file_name)

        status = DocumentStatus.INGESTED if report.batches_succeeded else DocumentStatus.FAILED
        return DocumentIngestionResult(
            file_name=document.file_name,
            status=status,
            chunks_created=report.chunks_embedded,
            report=report,
            error=None if status == DocumentStatus.INGESTED else "all batches failed",
        )

    def ingest_documents(
        self, documents: Iterable[Document], source_path: str = "<memory>"
    ) -> CorpusIngestionResult:
        """Ingest a corpus; one bad document never fails the rest."""
        start_time = time.perf_counter()
        request_id = generate_request_id()
        result = CorpusIngestionResult()
        failure_count = 0

        try:
            for document in documents:
                try:
                    outcome = self.ingest_document(document)
                except Exception as exc:
                    # Reported per document so the remaining corpus still ingests.
                    logger.exception("Ingestion of %s failed", document.file_name)
                    outcome = DocumentIngestionResult(
                        file_name=document.file_name, status=DocumentStatus.FAILED, error=repr(exc)
                    )
                result.documents.append(outcome)
            failure_count = result.count(DocumentStatus.FAILED)
        finally:
            latency_ms = (time.perf_counter() - start_time) * 1000
            reports = [d.report for d in result.documents if d.report is not None]
            self.audit_logger.log(
                IngestionEvent(
                    request_id=request_id,
                    source_type="memory" if source_path == "<memory>" else "filesystem",
                    source_path=source_path,
                    documents_processed=len(result.documents),
                    documents_skipped=(
                        result.count(DocumentStatus.SKIPPED_DUPLICATE)
                        + result.count(DocumentStatus.SKIPPED_EMPTY)
                    ),
                    chunks_created=result.chunks_created,
                    failure_count=failure_count,
                    batches_total=sum(r.batches_total for r in reports),
                    batches_failed=sum(r.batches_failed for r in reports),
                    file_names_sample=[d.file_name for d in result.documents[:5]],
                    resource_ids=[d.file_name for d in result.documents],
                    latency_ms=latency_ms,
                )
            )

        logger.info(
            "Ingested %d documents (%d chunks) in %.0fms",
            result.count(DocumentStatus.INGESTED),
            result.chunks_created,
            latency_ms,
        )
        return result

    def ingest_directory(self, docs_dir: Optional[Path] = None) -> CorpusIngestionResult:
        docs_dir = docs_dir or settings.docs_dir
        return self.ingest_documents(load_documents(docs_dir), source_path=str(docs_dir))

    def list_documents(self) -> list[str]:
        return self.vector_store.list_file_names()

    def category_counts(self) -> dict[str, int]:
        return self.vector_store.category_counts()
