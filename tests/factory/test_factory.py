"""
Tests for provider factories.

Tests cover:
1. Provider selection from configuration
2. Unsupported providers
3. Fingerprints with and without a configured dimension
"""

import pytest

from story_recall.config import EmbedderConfig, RerankerConfig, StoreConfig
from story_recall.core.embeddings import OllamaEmbedder, OpenAIEmbedder, SiliconFlowEmbedder
from story_recall.core.factory import EmbedderFactory, RerankerFactory, StoreFactory
from story_recall.core.memory_store.in_memory import InMemoryStore
from story_recall.core.memory_store.sqlite_store import SQLiteMemoryStore
from story_recall.core.rerank import DisabledReranker, SiliconFlowReranker
from story_recall.utils.exceptions import ConfigurationError


class TestEmbedderFactory:
    """Tests for EmbedderFactory."""

    def test_siliconflow(self):
        embedder = EmbedderFactory.create(EmbedderConfig(api_key="sk-test"))
        assert isinstance(embedder, SiliconFlowEmbedder)
        assert embedder.fingerprint == "siliconflow:bge-m3:1024"

    def test_ollama(self):
        embedder = EmbedderFactory.create(
            EmbedderConfig(provider="ollama", model="bge-m3", base_url="http://localhost:11434")
        )
        assert isinstance(embedder, OllamaEmbedder)

    def test_unknown_dimension_in_fingerprint(self):
        embedder = EmbedderFactory.create(
            EmbedderConfig(provider="ollama", model="nomic-embed-text", base_url="http://localhost:11434", dimension=None)
        )
        assert embedder.fingerprint == "ollama:nomic-embed-text:auto"

    def test_openai(self):
        embedder = EmbedderFactory.create(
            EmbedderConfig(
                provider="openai",
                model="text-embedding-3-small",
                base_url="https://api.openai.com/v1",
                api_key="sk-test",
                dimension=1536,
            )
        )
        assert isinstance(embedder, OpenAIEmbedder)
        assert embedder.fingerprint == "openai:text-embedding-3-small:1536"

    def test_openai_requires_key(self):
        with pytest.raises(ConfigurationError):
            EmbedderFactory.create(EmbedderConfig(provider="openai"))

    def test_unsupported(self):
        with pytest.raises(ConfigurationError, match="Unsupported embedder provider"):
            EmbedderFactory.create(EmbedderConfig(provider="unknown"))


class TestRerankerFactory:
    """Tests for RerankerFactory."""

    def test_siliconflow(self):
        reranker = RerankerFactory.create(RerankerConfig(api_key="sk-test", max_documents=50))
        assert isinstance(reranker, SiliconFlowReranker)
        assert reranker.max_documents == 50

    def test_none(self):
        assert isinstance(RerankerFactory.create(RerankerConfig(provider="none")), DisabledReranker)

    def test_unsupported(self):
        with pytest.raises(ConfigurationError):
            RerankerFactory.create(RerankerConfig(provider="cohere"))


class TestStoreFactory:
    """Tests for StoreFactory."""

    def test_memory(self):
        assert isinstance(StoreFactory.create(StoreConfig()), InMemoryStore)

    def test_sqlite(self, tmp_path):
        store = StoreFactory.create(
            StoreConfig(backend="sqlite", sqlite_path=str(tmp_path / "db" / "recall.db"))
        )
        assert isinstance(store, SQLiteMemoryStore)
        assert (tmp_path / "db").is_dir()

    def test_unsupported(self):
        with pytest.raises(ConfigurationError):
            StoreFactory.create(StoreConfig(backend="qdrant"))
