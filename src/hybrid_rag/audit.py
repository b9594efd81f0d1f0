"""Structured audit logging for ingestion runs and hybrid queries.

This module provides:
- Pydantic event models serialized as one JSON line per event
- Configurable handlers (rotating file, stdout, memory)
- Query hashing and masking of free-text details
"""

import hashlib
import logging
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .config import AuditSettings


AUDIT_LOGGER_NAME = "hybrid_rag.audit"

# =============================================================================
# Enums
# =============================================================================


class AuditEventType(str, Enum):
    """Types of audit events."""

    RETRIEVAL_COMPLETE = "retrieval_complete"
    RETRIEVAL_FAILED = "retrieval_failed"
    INGESTION_COMPLETE = "ingestion_complete"


class AuditSeverity(str, Enum):
    """Audit event severity levels."""

    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class AuditComponent(str, Enum):
    """System components for audit logging."""

    RETRIEVE = "retrieve"
    INGEST = "ingest"


_LEVELS = {
    AuditSeverity.INFO: logging.INFO,
    AuditSeverity.WARN: logging.WARNING,
    AuditSeverity.ERROR: logging.ERROR,
}


# =============================================================================
# Models
# =============================================================================


class AuditEvent(BaseModel):
    """Base audit event with correlation and timing fields."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    request_id: str = Field(..., description="Correlation ID for request tracing")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    event_type: AuditEventType
    severity: AuditSeverity = AuditSeverity.INFO
    component: AuditComponent

    resource_ids: list[str] = Field(default_factory=list)
    latency_ms: Optional[float] = None
    schema_version: str = "1.0"
    details: dict[str, Any] = Field(default_factory=dict)


class RetrievalEvent(AuditEvent):
    """Hybrid query event with leg sizes and stage timings."""

    event_type: AuditEventType = AuditEventType.RETRIEVAL_COMPLETE
    component: AuditComponent = AuditComponent.RETRIEVE

    query_hash: str  # SHA256[:16] of query
    k_requested: int
    dense_count: int = 0
    sparse_count: int = 0
    fused_count: int = 0
    results_returned: int = 0
    dropped_count: int = 0
    leg_failure_policy: str = "abort"
    degraded_legs: list[str] = Field(default_factory=list)
    stage_timings_ms: dict[str, float] = Field(default_factory=dict)


class IngestionEvent(AuditEvent):
    """Ingestion run event."""

    event_type: AuditEventType = AuditEventType.INGESTION_COMPLETE
    component: AuditComponent = AuditComponent.INGEST

    source_type: str  # "filesystem", "memory"
    source_path: str
    documents_processed: int
    documents_skipped: int = 0
    chunks_created: int
    failure_count: int = 0
    batches_total: int = 0
    batches_failed: int = 0
    file_names_sample: list[str] = Field(default_factory=list)  # First few file names


# =============================================================================
# Formatter and Handlers
# =============================================================================


class AuditJsonFormatter(logging.Formatter):
    """JSON formatter that outputs pre-formatted JSON strings."""

    def format(self, record: logging.LogRecord) -> str:
        return record.getMessage()


class MemoryHandler(logging.Handler):
    """In-memory handler for testing audit logs."""

    def __init__(self) -> None:
        super().__init__()
        self.records: list[str] = []
        self._lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        with self._lock:
            self.records.append(self.format(record))

    def clear(self) -> None:
        with self._lock:
            self.records.clear()

    def get_records(self) -> list[str]:
        """Get a copy of all stored records."""
        with self._lock:
            return list(self.records)


# =============================================================================
# Audit Logger
# =============================================================================


class AuditLogger:
    """Thread-safe audit logger with configurable handlers.

    One process-wide instance is available through ``get_instance``; services
    also accept an explicit instance so tests can inject their own.
    """

    _instance: Optional["AuditLogger"] = None
    _lock: threading.Lock = threading.Lock()

    def __init__(self, settings: "AuditSettings") -> None:
        self.settings = settings
        self._memory_handler: Optional[MemoryHandler] = None
        self._logger = self._setup_logger()

    @classmethod
    def get_instance(cls, settings: Optional["AuditSettings"] = None) -> "AuditLogger":
        """Get or create the singleton instance (thread-safe)."""
        with cls._lock:
            if cls._instance is None:
                if settings is None:
                    from .config import settings as app_settings

                    settings = app_settings.audit
                cls._instance = cls(settings)
            return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        for handler in self._logger.handlers[:]:
            handler.close()
            self._logger.removeHandler(handler)

    def _setup_logger(self) -> logging.Logger:
        """Configure the logger with appropriate handlers."""
        logger = logging.getLogger(AUDIT_LOGGER_NAME)
        logger.setLevel(getattr(logging, self.settings.log_level.upper(), logging.INFO))
        logger.propagate = False  # Don't propagate to root logger

        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

        formatter = AuditJsonFormatter()

        if self.settings.handler_type == "memory":
            self._memory_handler = MemoryHandler()
            self._memory_handler.setFormatter(formatter)
            logger.addHandler(self._memory_handler)

        elif self.settings.handler_type == "stdout_json":
            handler = logging.StreamHandler()
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        else:  # rotating_file (default)
            log_path = self.settings.log_path
            log_path.parent.mkdir(parents=True, exist_ok=True)

            handler = RotatingFileHandler(
                filename=str(log_path),
                maxBytes=self.settings.max_file_size,
                backupCount=self.settings.backup_count,
                encoding="utf-8",
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        if self.settings.console_output and self.settings.handler_type != "stdout_json":
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)

        return logger

    def _mask_sensitive(self, event: AuditEvent) -> AuditEvent:
        """Mask free-text detail fields on a copy of the event."""
        sensitive_keys = ("query", "content", "text", "api_key", "token", "password")
        details = {
            key: "<MASKED>" if key in sensitive_keys else value
            for key, value in event.details.items()
        }
        return event.model_copy(update={"details": details})

    def log(self, event: AuditEvent) -> None:
        if not self.settings.enabled:
            return
        if self.settings.mask_sensitive_data:
            event = self._mask_sensitive(event)
        self._logger.log(_LEVELS[event.severity], event.model_dump_json())

    def get_memory_records(self) -> list[str]:
        """Get records from memory handler (for testing)."""
        if self._memory_handler is not None:
            return self._memory_handler.get_records()
        return []

    def clear_memory_records(self) -> None:
        if self._memory_handler is not None:
            self._memory_handler.clear()


# =============================================================================
# Helper Functions
# =============================================================================


def get_audit_logger() -> AuditLogger:
    """Get the singleton audit logger instance."""
    return AuditLogger.get_instance()


def generate_request_id() -> str:
    """Generate a new request ID for correlation."""
    return f"req-{uuid.uuid4().hex[:12]}"


def hash_query(query: str) -> str:
    """Hash a query string for privacy-preserving logging."""
    return hashlib.sha256(query.encode()).hexdigest()[:16]
