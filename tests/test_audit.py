"""Tests for audit logging module."""

import json
import threading

import pytest

from hybrid_rag.audit import (
    AuditComponent,
    AuditEvent,
    AuditEventType,
    AuditLogger,
    AuditSeverity,
    IngestionEvent,
    RetrievalEvent,
    generate_request_id,
    hash_query,
)
from hybrid_rag.config import AuditSettings


class TestAuditEnums:
    """Test audit enum types."""

    def test_event_types(self):
        """Test AuditEventType enum values."""
        assert AuditEventType.RETRIEVAL_COMPLETE.value == "retrieval_complete"
        assert AuditEventType.RETRIEVAL_FAILED.value == "retrieval_failed"
        assert AuditEventType.INGESTION_COMPLETE.value == "ingestion_complete"

    def test_components(self):
        """Test AuditComponent enum values."""
        assert AuditComponent.RETRIEVE.value == "retrieve"
        assert AuditComponent.INGEST.value == "ingest"


class TestSpecializedEvents:
    """Test event models."""

    def test_retrieval_event(self):
        """Test RetrievalEvent defaults and serialization."""
        event = RetrievalEvent(
            request_id="req-1",
            query_hash=hash_query("ACME revenue"),
            k_requested=5,
            dense_count=10,
            sparse_count=7,
            fused_count=10,
            results_returned=5,
            stage_timings_ms={"dense": 12.5, "sparse": 3.1},
        )
        parsed = json.loads(event.model_dump_json())

        assert parsed["event_type"] == "retrieval_complete"
        assert parsed["component"] == "retrieve"
        assert parsed["severity"] == "INFO"
        assert parsed["leg_failure_policy"] == "abort"
        assert parsed["stage_timings_ms"]["dense"] == 12.5
        assert parsed["event_id"]

    def test_ingestion_event(self):
        """Test IngestionEvent defaults."""
        event = IngestionEvent(
            request_id="req-2",
            source_type="filesystem",
            source_path="/data/docs",
            documents_processed=3,
            chunks_created=12,
        )
        assert event.event_type == AuditEventType.INGESTION_COMPLETE
        assert event.component == AuditComponent.INGEST
        assert event.failure_count == 0


class TestAuditLogger:
    """Test AuditLogger class."""

    @pytest.fixture
    def memory_settings(self):
        """Create settings for memory handler (testing)."""
        return AuditSettings(enabled=True, handler_type="memory", mask_sensitive_data=False)

    @pytest.fixture
    def file_settings(self, tmp_path):
        """Create settings for file handler."""
        return AuditSettings(
            enabled=True,
            handler_type="rotating_file",
            log_dir=tmp_path / "logs",
            log_file="test_audit.log",
        )

    def make_event(self, request_id: str = "req-123", **kwargs) -> AuditEvent:
        return AuditEvent(
            request_id=request_id,
            event_type=AuditEventType.RETRIEVAL_COMPLETE,
            component=AuditComponent.RETRIEVE,
            **kwargs,
        )

    def test_singleton_pattern(self, memory_settings):
        """Test AuditLogger singleton pattern."""
        AuditLogger.reset_instance()

        logger1 = AuditLogger.get_instance(memory_settings)
        logger2 = AuditLogger.get_instance()

        assert logger1 is logger2

    def test_memory_handler_logging(self, memory_settings):
        """Test logging with memory handler."""
        AuditLogger.reset_instance()
        logger = AuditLogger.get_instance(memory_settings)

        logger.log(self.make_event())
        records = logger.get_memory_records()

        assert len(records) == 1
        assert json.loads(records[0])["request_id"] == "req-123"

        logger.clear_memory_records()
        assert logger.get_memory_records() == []

    def test_file_handler_logging(self, file_settings):
        """Test logging with file handler."""
        AuditLogger.reset_instance()
        logger = AuditLogger.get_instance(file_settings)

        logger.log(
            IngestionEvent(
                request_id="req-456",
                source_type="memory",
                source_path="<memory>",
                documents_processed=1,
                chunks_created=1,
            )
        )
        AuditLogger.reset_instance()

        lines = file_settings.log_path.read_text().splitlines()
        assert len(lines) == 1
        parsed = json.loads(lines[0])
        assert parsed["request_id"] == "req-456"
        assert parsed["event_type"] == "ingestion_complete"

    def test_disabled_logging(self):
        """Test that disabled logger doesn't write."""
        AuditLogger.reset_instance()
        logger = AuditLogger.get_instance(AuditSettings(enabled=False, handler_type="memory"))

        logger.log(self.make_event())

        assert logger.get_memory_records() == []

    def test_log_level_filters_by_severity(self):
        """Test that severities map onto logging levels."""
        AuditLogger.reset_instance()
        logger = AuditLogger.get_instance(AuditSettings(handler_type="memory", log_level="WARNING"))

        logger.log(self.make_event("info", severity=AuditSeverity.INFO))
        logger.log(self.make_event("warn", severity=AuditSeverity.WARN))
        logger.log(self.make_event("error", severity=AuditSeverity.ERROR))

        request_ids = [json.loads(r)["request_id"] for r in logger.get_memory_records()]
        assert request_ids == ["warn", "error"]

    def test_sensitive_data_masking(self):
        """Test that sensitive data is masked when enabled."""
        AuditLogger.reset_instance()
        logger = AuditLogger.get_instance(AuditSettings(handler_type="memory", mask_sensitive_data=True))

        event = self.make_event(
            details={"query": "sensitive query text", "api_key": "sk-secret", "failed_stage": "dense"}
        )
        logger.log(event)

        parsed = json.loads(logger.get_memory_records()[0])
        assert parsed["details"]["query"] == "<MASKED>"
        assert parsed["details"]["api_key"] == "<MASKED>"
        assert parsed["details"]["failed_stage"] == "dense"
        assert event.details["query"] == "sensitive query text"


class TestHelperFunctions:
    """Test helper functions."""

    def test_generate_request_id(self):
        """Test request ID generation."""
        req_id = generate_request_id()
        assert req_id.startswith("req-")
        assert len(req_id) == 16  # "req-" + 12 hex chars

    def test_hash_query(self):
        """Test query hashing."""
        query = "What was ACME revenue in Q3?"
        hashed = hash_query(query)

        assert len(hashed) == 16
        assert hash_query(query) == hashed
        assert hash_query("Different query") != hashed


class TestThreadSafety:
    """Test thread safety of audit logging."""

    def test_concurrent_logging(self):
        """Test that concurrent logging doesn't corrupt data."""
        AuditLogger.reset_instance()
        logger = AuditLogger.get_instance(AuditSettings(handler_type="memory"))

        num_threads = 10
        events_per_thread = 20

        def log_events(thread_id: int):
            for i in range(events_per_thread):
                logger.log(
                    RetrievalEvent(
                        request_id=f"req-t{thread_id}-{i}", query_hash="0" * 16, k_requested=5
                    )
                )

        threads = [threading.Thread(target=log_events, args=(t_id,)) for t_id in range(num_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        records = logger.get_memory_records()
        assert len(records) == num_threads * events_per_thread
        assert all("request_id" in json.loads(record) for record in records)
