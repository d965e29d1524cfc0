"""Utility modules for story-recall."""

from story_recall.utils.exceptions import (
    ConfigurationError,
    EmbeddingError,
    IndexBuildError,
    RecallError,
    RerankError,
    StoreError,
    ValidationError,
)
from story_recall.utils.id_generator import (
    anchor_item_id,
    diffused_item_id,
    is_event_id,
    make_chunk_id,
    parse_chunk_floor,
)
from story_recall.utils.logger import get_logger, setup_logging

__all__ = [
    # Logging
    "get_logger",
    "setup_logging",
    # ID helpers
    "make_chunk_id",
    "parse_chunk_floor",
    "is_event_id",
    "anchor_item_id",
    "diffused_item_id",
    # Exceptions
    "RecallError",
    "StoreError",
    "ValidationError",
    "ConfigurationError",
    "EmbeddingError",
    "RerankError",
    "IndexBuildError",
]
