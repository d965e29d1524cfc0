"""
Tests for memory store backends.

Every test runs against both the in-memory and the SQLite store.

Tests cover:
1. Atom and atom-vector round trips (including relation vectors)
2. Chunk reads by floor and by ID
3. Event vectors and engine fingerprint
4. Floor deletion and conversation isolation
"""

import pytest

from conftest import CONVERSATION_ID, make_atoms, seed_store
from story_recall.core.memory_store.in_memory import InMemoryStore
from story_recall.core.memory_store.sqlite_store import SQLiteMemoryStore
from story_recall.models import AtomEdge, StateAtom, StateVector


@pytest.fixture(params=["memory", pytest.param("sqlite", marks=pytest.mark.sqlite)])
async def store(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStore()
    else:
        backend = SQLiteMemoryStore(db_path=str(tmp_path / "recall.db"))
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
async def populated(store):
    await seed_store(store)
    return store


class TestAtoms:
    """Tests for L0 atoms and vectors."""

    @pytest.mark.asyncio
    async def test_atoms_round_trip(self, populated):
        atoms = await populated.get_state_atoms(CONVERSATION_ID)

        assert [a.atom_id for a in atoms] == ["a-1", "a-3"]
        assert atoms[0].edges == [AtomEdge(s="Bob", t="Tom", r="hid the sword from")]
        assert atoms[0].where == "oak tree"

    @pytest.mark.asyncio
    async def test_atoms_sorted_by_floor(self, store):
        await store.save_state_atoms(
            CONVERSATION_ID,
            [StateAtom(atom_id="late", floor=9), StateAtom(atom_id="early", floor=2)],
        )
        atoms = await store.get_state_atoms(CONVERSATION_ID)
        assert [a.atom_id for a in atoms] == ["early", "late"]

    @pytest.mark.asyncio
    async def test_save_replaces_by_id(self, populated):
        await populated.save_state_atoms(
            CONVERSATION_ID, [StateAtom(atom_id="a-1", floor=1, semantic="rewritten")]
        )
        atoms = {a.atom_id: a for a in await populated.get_state_atoms(CONVERSATION_ID)}
        assert len(atoms) == 2
        assert atoms["a-1"].semantic == "rewritten"

    @pytest.mark.asyncio
    async def test_state_vectors(self, store):
        await store.save_state_vectors(
            CONVERSATION_ID,
            [
                StateVector(atom_id="a-1", floor=1, vector=[0.5, 0.25], r_vector=[1.0, 0.0]),
                StateVector(atom_id="a-2", floor=2, vector=[0.125, 0.75]),
            ],
        )
        vectors = {v.atom_id: v for v in await store.get_all_state_vectors(CONVERSATION_ID)}

        assert vectors["a-1"].vector == pytest.approx([0.5, 0.25])
        assert vectors["a-1"].r_vector == pytest.approx([1.0, 0.0])
        assert vectors["a-2"].r_vector is None


class TestChunks:
    """Tests for L1 chunks."""

    @pytest.mark.asyncio
    async def test_chunks_by_floors(self, populated):
        chunks = await populated.get_chunks_by_floors(CONVERSATION_ID, [3, 1])
        assert [c.chunk_id for c in chunks] == ["c-1-0", "c-3-0"]
        assert chunks[0].speaker == "Bob"
        assert chunks[0].is_user is False

    @pytest.mark.asyncio
    async def test_chunks_by_no_floors(self, populated):
        assert await populated.get_chunks_by_floors(CONVERSATION_ID, []) == []

    @pytest.mark.asyncio
    async def test_all_chunks(self, populated):
        chunks = await populated.get_all_chunks(CONVERSATION_ID)
        assert [c.floor for c in chunks] == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_chunk_vectors_skip_missing(self, populated):
        vectors = await populated.get_chunk_vectors_by_ids(CONVERSATION_ID, ["c-1-0", "c-99-0"])
        assert [v.chunk_id for v in vectors] == ["c-1-0"]
        assert vectors[0].vector == pytest.approx([1.0, 0.0, 0.0, 0.1])


class TestEventsAndFingerprint:
    """Tests for event vectors and the engine fingerprint."""

    @pytest.mark.asyncio
    async def test_event_vectors(self, populated):
        vectors = {v.event_id: v for v in await populated.get_all_event_vectors(CONVERSATION_ID)}
        assert set(vectors) == {"evt-0", "evt-1", "evt-2"}
        assert vectors["evt-2"].vector == pytest.approx([0.0, 1.0, 0.0, 1.0])

    @pytest.mark.asyncio
    async def test_fingerprint(self, store):
        assert await store.get_fingerprint(CONVERSATION_ID) is None
        await store.set_fingerprint(CONVERSATION_ID, "siliconflow:bge-m3:1024")
        assert await store.get_fingerprint(CONVERSATION_ID) == "siliconflow:bge-m3:1024"


class TestDeletion:
    """Tests for floor deletion and isolation."""

    @pytest.mark.asyncio
    async def test_delete_floor(self, populated):
        await populated.delete_floor(CONVERSATION_ID, 1)

        atoms = await populated.get_state_atoms(CONVERSATION_ID)
        assert [a.atom_id for a in atoms] == ["a-3"]
        assert await populated.get_chunks_by_floors(CONVERSATION_ID, [1]) == []
        vectors = await populated.get_all_state_vectors(CONVERSATION_ID)
        assert [v.atom_id for v in vectors] == ["a-3"]
        # Events are not floor-scoped
        assert len(await populated.get_all_event_vectors(CONVERSATION_ID)) == 3

    @pytest.mark.asyncio
    async def test_conversations_isolated(self, populated):
        assert await populated.get_state_atoms("other-chat") == []
        await populated.save_state_atoms("other-chat", make_atoms()[:1])

        await populated.clear_conversation("other-chat")

        assert await populated.get_state_atoms("other-chat") == []
        assert len(await populated.get_state_atoms(CONVERSATION_ID)) == 2
