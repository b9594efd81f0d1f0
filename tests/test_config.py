"""Tests for configuration settings."""

import pytest
from pydantic import ValidationError

from hybrid_rag.config import RetrievalSettings, Settings


class TestSettings:
    """Test Settings defaults and environment overrides."""

    def test_defaults(self):
        """Test documented default values."""
        settings = Settings()

        assert settings.chunking.chunk_size == 512
        assert settings.chunking.chunk_overlap == 128
        assert settings.embedding.rate_limit_per_minute == 50
        assert settings.embedding.retry_max_attempts == 5
        assert settings.embedding.parallelism >= 4
        assert settings.bm25.k1 == 1.2
        assert settings.bm25.b == 0.75
        assert settings.retrieval.rrf_k == 60
        assert settings.retrieval.leg_failure_policy == "abort"
        assert settings.rerank_weights.vector + settings.rerank_weights.keyword + settings.rerank_weights.metadata == pytest.approx(1.0)

    def test_nested_env_override(self, monkeypatch):
        """Test that nested fields are overridable with a double underscore."""
        monkeypatch.setenv("EMBEDDING__BATCH_SIZE", "50")
        monkeypatch.setenv("RETRIEVAL__LEG_FAILURE_POLICY", "degrade")

        settings = Settings()

        assert settings.embedding.batch_size == 50
        assert settings.retrieval.leg_failure_policy == "degrade"

    def test_index_paths(self, tmp_path):
        """Test derived index file paths."""
        settings = Settings(index_dir=tmp_path)
        assert settings.faiss_index_path == tmp_path / "faiss.index"
        assert settings.docstore_path == tmp_path / "docstore.json"

    def test_unknown_policy_rejected(self):
        """Test that the leg failure policy is validated."""
        with pytest.raises(ValidationError):
            RetrievalSettings(leg_failure_policy="ignore")
