"""
Base interface for the per-conversation atom/chunk/event store.

Ingestion (atom extraction, chunking, embedding) happens outside the recall
core; the recall pipeline only reads. Write methods exist so ingestion jobs
and tests can populate a store.
"""

from abc import ABC, abstractmethod

from story_recall.models.atom import StateAtom, StateVector
from story_recall.models.chunk import Chunk, ChunkVector
from story_recall.models.event import EventVector


class MemoryStore(ABC):
    """Abstract base class for recall storage implementations."""

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the store (create tables/schema)."""
        pass

    # ═══════════════════════════════════════════════════════════
    # READ OPERATIONS (used by the recall pipeline)
    # ═══════════════════════════════════════════════════════════

    @abstractmethod
    async def get_state_atoms(self, conversation_id: str) -> list[StateAtom]:
        """
        Get all L0 atoms of a conversation.

        Args:
            conversation_id: Conversation identifier

        Returns:
            Atoms in floor order
        """
        pass

    @abstractmethod
    async def get_all_state_vectors(self, conversation_id: str) -> list[StateVector]:
        """Get every atom vector of a conversation."""
        pass

    @abstractmethod
    async def get_chunks_by_floors(self, conversation_id: str, floors: list[int]) -> list[Chunk]:
        """
        Get L1 chunks for the given floors.

        Args:
            conversation_id: Conversation identifier
            floors: Floors to fetch

        Returns:
            Chunks ordered by floor then chunk index
        """
        pass

    @abstractmethod
    async def get_all_chunks(self, conversation_id: str) -> list[Chunk]:
        """Get every chunk of a conversation (lexical index build)."""
        pass

    @abstractmethod
    async def get_chunk_vectors_by_ids(
        self, conversation_id: str, chunk_ids: list[str]
    ) -> list[ChunkVector]:
        """Get chunk vectors by chunk ID. Missing IDs are skipped."""
        pass

    @abstractmethod
    async def get_all_event_vectors(self, conversation_id: str) -> list[EventVector]:
        """Get every event vector of a conversation."""
        pass

    @abstractmethod
    async def get_fingerprint(self, conversation_id: str) -> str | None:
        """
        Get the engine fingerprint the stored vectors were produced with.

        Returns:
            Fingerprint string, or None if never recorded
        """
        pass

    # ═══════════════════════════════════════════════════════════
    # WRITE OPERATIONS (ingestion side)
    # ═══════════════════════════════════════════════════════════

    @abstractmethod
    async def save_state_atoms(self, conversation_id: str, atoms: list[StateAtom]) -> None:
        """Insert or replace atoms by atom ID."""
        pass

    @abstractmethod
    async def save_state_vectors(self, conversation_id: str, vectors: list[StateVector]) -> None:
        """Insert or replace atom vectors by atom ID."""
        pass

    @abstractmethod
    async def save_chunks(
        self, conversation_id: str, chunks: list[Chunk], vectors: list[ChunkVector] | None = None
    ) -> None:
        """Insert or replace chunks (and optionally their vectors) by chunk ID."""
        pass

    @abstractmethod
    async def save_event_vectors(self, conversation_id: str, vectors: list[EventVector]) -> None:
        """Insert or replace event vectors by event ID."""
        pass

    @abstractmethod
    async def set_fingerprint(self, conversation_id: str, fingerprint: str) -> None:
        """Record the engine fingerprint of the stored vectors."""
        pass

    @abstractmethod
    async def delete_floor(self, conversation_id: str, floor: int) -> None:
        """Delete atoms, atom vectors, chunks and chunk vectors of one floor."""
        pass

    @abstractmethod
    async def clear_conversation(self, conversation_id: str) -> None:
        """Delete everything stored for a conversation."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close store connections."""
        pass
