"""
Tests for configuration management.

Tests config loading from:
1. Defaults
2. Environment variables
3. YAML files
4. Combined (env overrides YAML)
"""

import pytest
import yaml
from pydantic import ValidationError

from story_recall.config import (
    Config,
    DiffusionConfig,
    EmbedderConfig,
    RerankerConfig,
    RetrievalConfig,
)


@pytest.mark.unit
class TestConfigDefaults:
    """Test default configuration values."""

    def test_default_config_creation(self):
        """Test creating config with defaults."""
        config = Config()

        assert config.embedder.provider == "siliconflow"
        assert config.embedder.model == "BAAI/bge-m3"
        assert config.embedder.timeout == 10.0
        assert config.embedder.retry_timeout == 15.0

        assert config.reranker.provider == "siliconflow"
        assert config.reranker.batch_size == 20
        assert config.reranker.max_concurrency == 5

        assert config.store.backend == "memory"
        assert config.tokenizer.use_jieba is True

    def test_retrieval_defaults(self):
        """Test recall constants."""
        retrieval = RetrievalConfig()

        assert retrieval.last_messages_k == 3
        assert retrieval.last_messages_k_with_pending == 2
        assert retrieval.focus_base_weight == 0.55
        assert retrieval.context_base_weights == (0.15, 0.30)
        assert retrieval.anchor_min_similarity == 0.58
        assert retrieval.event_min_similarity == 0.60
        assert retrieval.rrf_k == 60
        assert retrieval.must_keep_min_idf == 2.2
        assert retrieval.causal_chain_max_depth == 10

    def test_diffusion_defaults(self):
        """Test PPR constants."""
        diffusion = DiffusionConfig()

        assert diffusion.alpha == 0.15
        assert diffusion.max_iter == 50
        gammas = (
            diffusion.gamma_what
            + diffusion.gamma_r_sem
            + diffusion.gamma_who
            + diffusion.gamma_where
            + diffusion.gamma_time
        )
        assert gammas == pytest.approx(1.0)

    def test_retrieval_config_is_frozen(self):
        """Test recall constants cannot be mutated at runtime."""
        retrieval = RetrievalConfig()
        with pytest.raises(ValidationError):
            retrieval.rrf_k = 10

    def test_reranker_batch_size_must_be_positive(self):
        """Test reranker validation."""
        with pytest.raises(ValidationError):
            RerankerConfig(batch_size=0)

    def test_default_filter_rules(self):
        """Test think blocks and code fences are filtered by default."""
        config = Config()
        starts = [rule.start for rule in config.text_filter.rules]
        assert "<think>" in starts
        assert "```" in starts


@pytest.mark.unit
class TestConfigFromEnv:
    """Test loading configuration from environment variables."""

    def test_from_env_overrides(self, monkeypatch):
        """Test environment variables override defaults."""
        monkeypatch.setenv("RECALL_EMBEDDER_PROVIDER", "ollama")
        monkeypatch.setenv("RECALL_EMBEDDER_MODEL", "bge-m3")
        monkeypatch.setenv("RECALL_EMBEDDER_TIMEOUT", "3.5")
        monkeypatch.setenv("RECALL_STORE_BACKEND", "sqlite")
        monkeypatch.setenv("RECALL_TOKENIZER_USE_JIEBA", "false")

        config = Config.from_env()

        assert config.embedder.provider == "ollama"
        assert config.embedder.model == "bge-m3"
        assert config.embedder.timeout == 3.5
        assert config.store.backend == "sqlite"
        assert config.tokenizer.use_jieba is False

    def test_reranker_key_falls_back_to_embedder_key(self, monkeypatch):
        """Test reranker reuses the embedder key when it has none."""
        monkeypatch.setenv("RECALL_EMBEDDER_API_KEY", "sk-one,sk-two")
        monkeypatch.delenv("RECALL_RERANKER_API_KEY", raising=False)

        config = Config.from_env()

        assert config.reranker.api_key == "sk-one,sk-two"

    def test_empty_env_value_uses_default(self, monkeypatch):
        """Test empty strings are treated as unset."""
        monkeypatch.setenv("RECALL_EMBEDDER_MODEL", "")

        config = Config.from_env()

        assert config.embedder.model == "BAAI/bge-m3"

    def test_from_env_file(self, tmp_path, monkeypatch):
        """Test loading a .env file."""
        monkeypatch.delenv("RECALL_RERANKER_PROVIDER", raising=False)
        env_file = tmp_path / ".env.test"
        env_file.write_text("RECALL_RERANKER_PROVIDER=none\n")

        config = Config.from_env(env_file=env_file)

        assert config.reranker.provider == "none"
        monkeypatch.delenv("RECALL_RERANKER_PROVIDER", raising=False)


@pytest.mark.unit
class TestConfigFromYaml:
    """Test loading configuration from YAML."""

    def test_from_yaml(self, tmp_path):
        """Test YAML sections map onto config sections."""
        path = tmp_path / "config.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "embedder": {"provider": "openai", "model": "text-embedding-3-small"},
                    "retrieval": {"rrf_k": 30, "fusion_cap": 40},
                    "diffusion": {"alpha": 0.2},
                }
            )
        )

        config = Config.from_yaml(path)

        assert config.embedder.provider == "openai"
        assert config.retrieval.rrf_k == 30
        assert config.retrieval.fusion_cap == 40
        assert config.diffusion.alpha == 0.2

    def test_from_yaml_missing_file(self, tmp_path):
        """Test missing YAML file raises."""
        with pytest.raises(FileNotFoundError):
            Config.from_yaml(tmp_path / "missing.yaml")

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        """Test env sections win over YAML sections."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"store": {"backend": "memory"}, "retrieval": {"rrf_k": 20}}))
        monkeypatch.setenv("RECALL_STORE_BACKEND", "sqlite")

        config = Config.from_env_or_yaml(yaml_path=path)

        assert config.store.backend == "sqlite"
        assert config.retrieval.rrf_k == 20

    def test_embedder_config_copy(self):
        """Test section configs copy independently."""
        base = EmbedderConfig()
        changed = base.model_copy(update={"timeout": 1.0})
        assert base.timeout == 10.0
        assert changed.timeout == 1.0
