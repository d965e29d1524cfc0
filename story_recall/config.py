"""
Configuration for story-recall.

Supports loading from:
1. Environment variables (highest priority)
2. YAML config file
3. Default values (fallback)

Every retrieval threshold, weight and cap lives here as a typed default so the
pipeline reads one validated table instead of scattered literals.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class EmbedderConfig(BaseModel):
    """Embedder configuration."""

    provider: str = "siliconflow"  # siliconflow, openai, ollama
    model: str = "BAAI/bge-m3"
    base_url: str = "https://api.siliconflow.cn"
    # Several keys may be given separated by , ; | or newlines (round-robin)
    api_key: str | None = None
    timeout: float = 10.0
    retry_timeout: float = 15.0
    retry_delay: float = 0.5
    # Optional: embedding dimension (fallback to auto-detect)
    dimension: int | None = 1024


class RerankerConfig(BaseModel):
    """Cross-encoder rerank service configuration."""

    provider: str = "siliconflow"  # siliconflow, none
    url: str = "https://api.siliconflow.cn/v1/rerank"
    model: str = "BAAI/bge-reranker-v2-m3"
    api_key: str | None = None
    timeout: float = 15.0
    max_documents: int = Field(default=100, gt=0)
    batch_size: int = Field(default=20, gt=0)
    max_concurrency: int = Field(default=5, gt=0)


class TokenizerConfig(BaseModel):
    """Tokenizer configuration (segmentation + token counting)."""

    # Token counting
    provider: str = "tiktoken"  # tiktoken, approximate
    model: str = "cl100k_base"
    chars_per_token: float = Field(default=4.0, gt=0)

    # Segmentation
    use_jieba: bool = True
    keep_words: list[str] = Field(default_factory=list)
    extra_stop_words: list[str] = Field(default_factory=list)


class TextFilterRule(BaseModel):
    """Span removal rule applied to message text before querying."""

    start: str = ""
    end: str = ""


def _default_filter_rules() -> list[TextFilterRule]:
    return [
        TextFilterRule(start="<think>", end="</think>"),
        TextFilterRule(start="<thinking>", end="</thinking>"),
        TextFilterRule(start="```", end="```"),
    ]


class TextFilterConfig(BaseModel):
    """Text filter configuration."""

    rules: list[TextFilterRule] = Field(default_factory=_default_filter_rules)


class LexicalConfig(BaseModel):
    """Lexical index configuration."""

    idf_min: float = 1.0
    idf_max: float = 4.0
    build_batch_size: int = Field(default=500, gt=0)
    fuzzy: float = Field(default=0.2, ge=0.0, le=1.0)
    prefix: bool = True
    fuzzy_weight: float = 0.45
    prefix_weight: float = 0.375
    bm25_k1: float = 1.2
    bm25_b: float = 0.7
    top_idf_terms: int = 5


class RetrievalConfig(BaseModel):
    """Recall pipeline thresholds, weights and caps."""

    model_config = {"frozen": True}

    # Message window
    last_messages_k: int = 3
    last_messages_k_with_pending: int = 2

    # Query construction
    focus_base_weight: float = 0.55
    context_base_weights: tuple[float, ...] = (0.15, 0.30)
    focus_base_weight_r2: float = 0.45
    context_base_weights_r2: tuple[float, ...] = (0.10, 0.20)
    hints_base_weight: float = 0.25
    length_full_threshold: int = 50
    length_min_factor: float = 0.35
    focus_min_normalized_weight: float = 0.35
    memory_hint_atoms_max: int = 5
    memory_hint_events_max: int = 3
    lexical_terms_max: int = 10
    hint_terms_max: int = 5

    # Anchors (L0)
    anchor_min_similarity: float = 0.58

    # Events (L2)
    event_candidate_max: int = 100
    event_select_max: int = 50
    event_min_similarity: float = 0.60
    event_mmr_lambda: float = 0.72
    event_entity_bypass_sim: float = 0.70

    # Dense gates for lexical hits
    lexical_event_dense_min: float = 0.60
    lexical_floor_dense_min: float = 0.50

    # Floor fusion (W-RRF)
    rrf_k: int = 60
    rrf_w_dense: float = 1.0
    rrf_w_lex: float = 0.9
    fusion_cap: int = 60
    lex_density_bonus: float = 0.3

    # Floor rerank
    rerank_top_n: int = 20
    rerank_min_score: float = 0.10

    # Fusion guard
    must_keep_max_floors: int = 3
    must_keep_min_idf: float = 2.2
    must_keep_cluster_window: int = 2
    must_keep_base_score: float = 0.12
    must_keep_coverage_bonus: float = 0.01
    must_keep_coverage_bonus_max: float = 0.05

    # Causal chain
    causal_chain_max_depth: int = 10
    causal_inject_max: int = 30


class DiffusionConfig(BaseModel):
    """Personalized PageRank diffusion configuration."""

    model_config = {"frozen": True}

    alpha: float = 0.15
    epsilon: float = 1e-5
    max_iter: int = 50

    # Edge channel weights
    gamma_what: float = 0.40
    gamma_r_sem: float = 0.40
    gamma_who: float = 0.10
    gamma_where: float = 0.05
    gamma_time: float = 0.05

    r_sem_min_sim: float = 0.62
    r_sem_top_k: int = 8
    time_window_max: int = 80
    time_decay_divisor: float = 12.0
    where_freq_damp_pivot: int = 6
    where_freq_damp_min: float = 0.20

    # Post-verification
    cosine_gate: float = 0.46
    score_floor: float = 0.10
    diffusion_cap: int = 100


class StoreConfig(BaseModel):
    """Atom/chunk/event store configuration."""

    backend: str = "memory"  # memory, sqlite
    sqlite_path: str = "data/story_recall.db"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    log_to_file: bool = True
    log_dir: str = "logs"
    file_rotation: str = "10 MB"
    file_retention: str = "7 days"
    compression: str = "zip"
    serialize: bool = True


class Config(BaseModel):
    """Main configuration."""

    embedder: EmbedderConfig = Field(default_factory=EmbedderConfig)
    reranker: RerankerConfig = Field(default_factory=RerankerConfig)
    tokenizer: TokenizerConfig = Field(default_factory=TokenizerConfig)
    text_filter: TextFilterConfig = Field(default_factory=TextFilterConfig)
    lexical: LexicalConfig = Field(default_factory=LexicalConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    diffusion: DiffusionConfig = Field(default_factory=DiffusionConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "Config":
        """
        Load configuration from environment variables.

        Priority: .env file -> system environment variables -> defaults

        Args:
            env_file: Optional path to .env file (default: .env in project root)

        Returns:
            Config instance

        Environment variables:
            RECALL_EMBEDDER_PROVIDER: Embedder provider (siliconflow, openai, ollama)
            RECALL_EMBEDDER_MODEL: Embedding model name
            RECALL_EMBEDDER_BASE_URL: Embedding service base URL
            RECALL_EMBEDDER_API_KEY: API key(s), comma separated for round-robin
            RECALL_EMBEDDER_TIMEOUT: First attempt timeout in seconds
            RECALL_EMBEDDER_RETRY_TIMEOUT: Retry timeout in seconds
            RECALL_EMBEDDER_DIMENSION: Embedding dimension
            RECALL_RERANKER_PROVIDER: Rerank provider (siliconflow, none)
            RECALL_RERANKER_URL: Rerank endpoint
            RECALL_RERANKER_MODEL: Rerank model name
            RECALL_RERANKER_API_KEY: Rerank API key(s)
            RECALL_TOKENIZER_PROVIDER: Token counter (tiktoken, approximate)
            RECALL_TOKENIZER_USE_JIEBA: Enable jieba CJK segmentation
            RECALL_STORE_BACKEND: Store backend (memory, sqlite)
            RECALL_STORE_SQLITE_PATH: SQLite database path
        """
        # Load .env file if provided or exists
        if env_file:
            load_dotenv(env_file)
        elif Path(".env").exists():
            load_dotenv()

        def get_env(key: str, default: Any = None) -> Any:
            """Get environment variable with type conversion."""
            value = os.getenv(key)
            if value is None:
                return default
            # If value is empty string, return default
            if value == "":
                return default
            # Convert boolean strings
            if isinstance(default, bool):
                return str(value).lower() in ("true", "1", "yes")
            # Convert numeric strings
            if isinstance(default, int):
                return int(value)
            if isinstance(default, float):
                return float(value)
            return value

        # Reranker falls back to the embedder key (same provider account)
        embedder_key = get_env("RECALL_EMBEDDER_API_KEY")

        return cls(
            embedder=EmbedderConfig(
                provider=get_env("RECALL_EMBEDDER_PROVIDER", "siliconflow"),
                model=get_env("RECALL_EMBEDDER_MODEL", "BAAI/bge-m3"),
                base_url=get_env("RECALL_EMBEDDER_BASE_URL", "https://api.siliconflow.cn"),
                api_key=embedder_key,
                timeout=get_env("RECALL_EMBEDDER_TIMEOUT", 10.0),
                retry_timeout=get_env("RECALL_EMBEDDER_RETRY_TIMEOUT", 15.0),
                retry_delay=get_env("RECALL_EMBEDDER_RETRY_DELAY", 0.5),
                dimension=get_env("RECALL_EMBEDDER_DIMENSION", 1024),
            ),
            reranker=RerankerConfig(
                provider=get_env("RECALL_RERANKER_PROVIDER", "siliconflow"),
                url=get_env("RECALL_RERANKER_URL", "https://api.siliconflow.cn/v1/rerank"),
                model=get_env("RECALL_RERANKER_MODEL", "BAAI/bge-reranker-v2-m3"),
                api_key=get_env("RECALL_RERANKER_API_KEY", embedder_key),
                timeout=get_env("RECALL_RERANKER_TIMEOUT", 15.0),
                batch_size=get_env("RECALL_RERANKER_BATCH_SIZE", 20),
                max_concurrency=get_env("RECALL_RERANKER_MAX_CONCURRENCY", 5),
            ),
            tokenizer=TokenizerConfig(
                provider=get_env("RECALL_TOKENIZER_PROVIDER", "tiktoken"),
                model=get_env("RECALL_TOKENIZER_MODEL", "cl100k_base"),
                chars_per_token=get_env("RECALL_TOKENIZER_CHARS_PER_TOKEN", 4.0),
                use_jieba=get_env("RECALL_TOKENIZER_USE_JIEBA", True),
            ),
            store=StoreConfig(
                backend=get_env("RECALL_STORE_BACKEND", "memory"),
                sqlite_path=get_env("RECALL_STORE_SQLITE_PATH", "data/story_recall.db"),
            ),
            logging=LoggingConfig(
                level=get_env("RECALL_LOG_LEVEL", "INFO"),
                log_to_file=get_env("RECALL_LOG_TO_FILE", True),
                log_dir=get_env("RECALL_LOG_DIR", "logs"),
                file_rotation=get_env("RECALL_LOG_FILE_ROTATION", "10 MB"),
                file_retention=get_env("RECALL_LOG_FILE_RETENTION", "7 days"),
                compression=get_env("RECALL_LOG_COMPRESSION", "zip"),
                serialize=get_env("RECALL_LOG_SERIALIZE", True),
            ),
        )

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """
        Load configuration from YAML file.

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            Config instance

        Raises:
            FileNotFoundError: If YAML file doesn't exist
            yaml.YAMLError: If YAML is invalid
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Config file not found: {yaml_path}")

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def from_env_or_yaml(
        cls, yaml_path: str | Path | None = None, env_file: str | Path | None = None
    ) -> "Config":
        """
        Load configuration with priority: env vars > YAML > defaults.

        Args:
            yaml_path: Optional path to YAML config
            env_file: Optional path to .env file

        Returns:
            Config instance
        """
        # Start with YAML if provided
        if yaml_path and Path(yaml_path).exists():
            with open(yaml_path) as f:
                config_dict = yaml.safe_load(f) or {}
        else:
            config_dict = {}

        env_config = cls.from_env(env_file=env_file)

        # Merge: env vars override YAML (only sections that differ from defaults)
        final_dict = {**config_dict}
        default = cls()
        for section in ("embedder", "reranker", "tokenizer", "store", "logging"):
            env_section = getattr(env_config, section)
            if env_section != getattr(default, section):
                final_dict[section] = env_section.model_dump()

        return cls(**final_dict) if final_dict else env_config


# Default config instance
default_config = Config()
