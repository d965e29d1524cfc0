"""Recall data stores."""

from story_recall.core.memory_store.base import MemoryStore
from story_recall.core.memory_store.in_memory import InMemoryStore
from story_recall.core.memory_store.sqlite_store import SQLiteMemoryStore

__all__ = ["MemoryStore", "InMemoryStore", "SQLiteMemoryStore"]
