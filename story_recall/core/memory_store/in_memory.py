"""
In-memory store implementation.

Keeps every conversation in dictionaries keyed by conversation ID. Used for
tests and for callers that hold their data in memory already.
"""

from collections import defaultdict
from dataclasses import dataclass, field

from story_recall.core.memory_store.base import MemoryStore
from story_recall.models.atom import StateAtom, StateVector
from story_recall.models.chunk import Chunk, ChunkVector
from story_recall.models.event import EventVector


@dataclass
class _ConversationData:
    atoms: dict[str, StateAtom] = field(default_factory=dict)
    state_vectors: dict[str, StateVector] = field(default_factory=dict)
    chunks: dict[str, Chunk] = field(default_factory=dict)
    chunk_vectors: dict[str, ChunkVector] = field(default_factory=dict)
    event_vectors: dict[str, EventVector] = field(default_factory=dict)
    fingerprint: str | None = None


class InMemoryStore(MemoryStore):
    """Dictionary-backed store scoped by conversation ID."""

    def __init__(self):
        self._data: defaultdict[str, _ConversationData] = defaultdict(_ConversationData)

    async def initialize(self) -> None:
        pass

    async def get_state_atoms(self, conversation_id: str) -> list[StateAtom]:
        atoms = self._data[conversation_id].atoms.values()
        return sorted(atoms, key=lambda a: (a.floor, a.atom_id))

    async def get_all_state_vectors(self, conversation_id: str) -> list[StateVector]:
        return list(self._data[conversation_id].state_vectors.values())

    async def get_chunks_by_floors(self, conversation_id: str, floors: list[int]) -> list[Chunk]:
        wanted = set(floors)
        chunks = [c for c in self._data[conversation_id].chunks.values() if c.floor in wanted]
        return sorted(chunks, key=lambda c: (c.floor, c.chunk_idx))

    async def get_all_chunks(self, conversation_id: str) -> list[Chunk]:
        chunks = self._data[conversation_id].chunks.values()
        return sorted(chunks, key=lambda c: (c.floor, c.chunk_idx))

    async def get_chunk_vectors_by_ids(
        self, conversation_id: str, chunk_ids: list[str]
    ) -> list[ChunkVector]:
        vectors = self._data[conversation_id].chunk_vectors
        return [vectors[cid] for cid in chunk_ids if cid in vectors]

    async def get_all_event_vectors(self, conversation_id: str) -> list[EventVector]:
        return list(self._data[conversation_id].event_vectors.values())

    async def get_fingerprint(self, conversation_id: str) -> str | None:
        return self._data[conversation_id].fingerprint

    async def save_state_atoms(self, conversation_id: str, atoms: list[StateAtom]) -> None:
        data = self._data[conversation_id]
        for atom in atoms:
            data.atoms[atom.atom_id] = atom

    async def save_state_vectors(self, conversation_id: str, vectors: list[StateVector]) -> None:
        data = self._data[conversation_id]
        for vector in vectors:
            data.state_vectors[vector.atom_id] = vector

    async def save_chunks(
        self, conversation_id: str, chunks: list[Chunk], vectors: list[ChunkVector] | None = None
    ) -> None:
        data = self._data[conversation_id]
        for chunk in chunks:
            data.chunks[chunk.chunk_id] = chunk
        for vector in vectors or []:
            data.chunk_vectors[vector.chunk_id] = vector

    async def save_event_vectors(self, conversation_id: str, vectors: list[EventVector]) -> None:
        data = self._data[conversation_id]
        for vector in vectors:
            data.event_vectors[vector.event_id] = vector

    async def set_fingerprint(self, conversation_id: str, fingerprint: str) -> None:
        self._data[conversation_id].fingerprint = fingerprint

    async def delete_floor(self, conversation_id: str, floor: int) -> None:
        data = self._data[conversation_id]
        data.atoms = {k: v for k, v in data.atoms.items() if v.floor != floor}
        data.state_vectors = {k: v for k, v in data.state_vectors.items() if v.floor != floor}
        data.chunks = {k: v for k, v in data.chunks.items() if v.floor != floor}
        data.chunk_vectors = {k: v for k, v in data.chunk_vectors.items() if v.floor != floor}

    async def clear_conversation(self, conversation_id: str) -> None:
        self._data.pop(conversation_id, None)

    async def close(self) -> None:
        pass
