"""
Factory modules for creating story-recall components.

Provides modular factories for Embedder, Reranker and Memory Store.
"""

from story_recall.core.factory.embedder_factory import EmbedderFactory
from story_recall.core.factory.reranker_factory import RerankerFactory
from story_recall.core.factory.store_factory import StoreFactory

__all__ = [
    "EmbedderFactory",
    "RerankerFactory",
    "StoreFactory",
]
