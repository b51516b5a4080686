"""
Tests for embedding providers.
"""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from layered_memory.vector.embeddings import DeterministicHashEmbedding, SentenceTransformerEmbedding


def cosine(a, b):
    a, b = np.asarray(a), np.asarray(b)
    return float(a @ b / (np.linalg.norm(a) * np.linalg.norm(b)))


def test_hash_embedding_dimension_and_determinism():
    provider = DeterministicHashEmbedding(dimension=128)

    first = provider.embed_text("Loves dark minimal layouts")
    second = provider.embed_text("Loves dark minimal layouts")

    assert provider.get_dimension() == 128
    assert len(first) == 128
    assert first == second


def test_hash_embedding_is_unit_length():
    vector = DeterministicHashEmbedding(dimension=64).embed_text("The homepage converted 40% better")
    assert np.linalg.norm(vector) == pytest.approx(1.0, abs=1e-5)


def test_hash_embedding_similarity_follows_shared_words():
    provider = DeterministicHashEmbedding(dimension=384)
    base = provider.embed_text("dark minimal layouts with generous whitespace")
    related = provider.embed_text("minimal dark layouts")
    unrelated = provider.embed_text("quarterly revenue spreadsheet export")

    assert cosine(base, base) == pytest.approx(1.0, abs=1e-5)
    assert cosine(base, related) > cosine(base, unrelated)
    assert cosine(base, unrelated) < 0.5


def test_hash_embedding_is_case_insensitive():
    provider = DeterministicHashEmbedding(dimension=64)
    assert provider.embed_text("Dark Mode") == provider.embed_text("dark mode")


def test_hash_embedding_of_empty_text_is_zero():
    vector = DeterministicHashEmbedding(dimension=16).embed_text("   ")
    assert not np.any(vector)


def test_sentence_transformer_model_is_lazy():
    with patch("sentence_transformers.SentenceTransformer") as mock_cls:
        model = MagicMock()
        model.encode.return_value = np.array([0.6, 0.8], dtype=np.float32)
        model.get_sentence_embedding_dimension.return_value = 2
        mock_cls.return_value = model

        provider = SentenceTransformerEmbedding("tiny-model")
        mock_cls.assert_not_called()

        assert provider.embed_text("hello") == pytest.approx([0.6, 0.8], abs=1e-5)
        assert provider.get_dimension() == 2
        mock_cls.assert_called_once_with("tiny-model")
        model.encode.assert_called_once_with("hello", convert_to_tensor=False, normalize_embeddings=True)
