"""
Tests for configuration factories, the error taxonomy and audit logging.
"""

import logging
from unittest.mock import patch

import pytest

from layered_memory.core import config
from layered_memory.core.analyzer import HeuristicInsightAnalyzer, OllamaInsightAnalyzer
from layered_memory.core.errors import InvalidArgument, LayeredMemoryError, StoreUnavailable
from layered_memory.vector import (
    DeterministicHashEmbedding,
    FaissVectorStore,
    SentenceTransformerEmbedding,
    SimpleInMemoryVectorStore,
)
from util.logging import audit_event, sanitize_payload


class TestFactories:

    def test_default_vector_store(self, monkeypatch):
        monkeypatch.delenv("VECTOR_PROVIDER", raising=False)
        store = config.get_vector_store(16)
        assert isinstance(store, SimpleInMemoryVectorStore)
        assert store.dimension == 16

    def test_faiss_vector_store(self, monkeypatch):
        monkeypatch.setenv("VECTOR_PROVIDER", "faiss")
        assert isinstance(config.get_vector_store(16), FaissVectorStore)

    def test_embedding_providers(self, monkeypatch):
        monkeypatch.setenv("EMBED_PROVIDER", "hash")
        assert isinstance(config.get_embedding_provider(), DeterministicHashEmbedding)

        monkeypatch.setenv("EMBED_PROVIDER", "sentence")
        provider = config.get_embedding_provider()
        assert isinstance(provider, SentenceTransformerEmbedding)
        assert provider.model_name == config.EMBED_MODEL_NAME

    def test_insight_analyzers(self, monkeypatch):
        monkeypatch.setenv("ANALYZER_PROVIDER", "heuristic")
        assert isinstance(config.get_insight_analyzer(), HeuristicInsightAnalyzer)

        monkeypatch.setenv("ANALYZER_PROVIDER", "ollama")
        with patch("ollama.Client") as mock_client:
            analyzer = config.get_insight_analyzer()
        assert isinstance(analyzer, OllamaInsightAnalyzer)
        assert analyzer.model_name == config.OLLAMA_MODEL
        mock_client.assert_called_once_with(host=config.OLLAMA_HOST, timeout=config.ANALYZER_TIMEOUT_SEC)

    def test_debug_flag(self, monkeypatch):
        monkeypatch.setenv("DEBUG", "true")
        assert config.debug_enabled() is True
        monkeypatch.setenv("DEBUG", "no")
        assert config.debug_enabled() is False


class TestValidateMemoryConfig:

    def test_defaults_are_valid(self):
        assert config.validate_memory_config() == []

    def test_reports_bad_values(self, monkeypatch):
        monkeypatch.setattr(config, "VECTOR_PROVIDER", "pinecone")
        monkeypatch.setattr(config, "EMBED_DIM", 0)
        monkeypatch.setattr(config, "PATTERN_CACHE_TTL_SEC", 0)

        issues = config.validate_memory_config()

        assert "Invalid VECTOR_PROVIDER: pinecone" in issues
        assert "EMBED_DIM must be >= 1" in issues
        assert "PATTERN_CACHE_TTL_SEC must be >= 1" in issues


def test_ensure_db_directory(tmp_path):
    db_path = tmp_path / "nested" / "dir" / "memory.db"
    config.ensure_db_directory(str(db_path))
    assert db_path.parent.is_dir()


class TestErrors:

    def test_str_includes_context(self):
        error = StoreUnavailable("Failed to store", {"table": "user_memories"})
        assert str(error) == "[StoreUnavailable] Failed to store (context: {'table': 'user_memories'})"

    def test_str_without_context(self):
        assert str(LayeredMemoryError("boom")) == "[LayeredMemoryError] boom"

    def test_invalid_argument_is_a_value_error(self):
        with pytest.raises(ValueError):
            raise InvalidArgument("limit out of range")


class TestAuditLogging:

    def test_sanitize_payload_redacts_and_truncates(self):
        payload = {"content": "secret text", "note": "x" * 150, "nested": {"userEmail": "a@b.co", "n": 1},
                   "items": ["short"]}

        sanitized = sanitize_payload(payload)

        assert sanitized["content"] == "[REDACTED]"
        assert sanitized["note"] == "x" * 100 + "..."
        assert sanitized["nested"] == {"userEmail": "[REDACTED]", "n": 1}
        assert sanitized["items"] == ["short"]

    def test_sanitize_payload_can_reveal(self):
        assert sanitize_payload({"content": "visible"}, reveal_sensitive=True) == {"content": "visible"}

    def test_audit_event_never_logs_content(self, caplog):
        with caplog.at_level(logging.INFO, logger="layered_memory"):
            audit_event("global.promotion", {"memory_id": "g1"}, {"content": "Dr. Who liked it", "masked": True})

        assert "global_promotion" in caplog.text
        assert "g1" in caplog.text
        assert "Dr. Who" not in caplog.text
