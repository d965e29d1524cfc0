"""
Factory for creating memory store backends.
"""

from story_recall.config import StoreConfig
from story_recall.core.memory_store.base import MemoryStore
from story_recall.core.memory_store.in_memory import InMemoryStore
from story_recall.core.memory_store.sqlite_store import SQLiteMemoryStore
from story_recall.utils.exceptions import ConfigurationError


class StoreFactory:
    """Factory for creating memory store backends from configuration."""

    @staticmethod
    def create(config: StoreConfig) -> MemoryStore:
        """
        Create memory store from configuration.

        Args:
            config: Store configuration

        Returns:
            Memory store instance (not yet initialized)

        Raises:
            ConfigurationError: If the backend is unknown
        """
        if config.backend == "memory":
            return InMemoryStore()
        elif config.backend == "sqlite":
            return SQLiteMemoryStore(db_path=config.sqlite_path)
        else:
            raise ConfigurationError(f"Unsupported store backend: {config.backend}")
