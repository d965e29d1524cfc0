"""
SQLite memory store implementation.

Persists atoms, chunks, event vectors and the engine fingerprint per
conversation using aiosqlite. Vectors are stored as float32 blobs.
"""

import json
from pathlib import Path

import aiosqlite
import numpy as np

from story_recall.core.memory_store.base import MemoryStore
from story_recall.models.atom import AtomEdge, StateAtom, StateVector
from story_recall.models.chunk import Chunk, ChunkVector
from story_recall.models.event import EventVector
from story_recall.utils.exceptions import StoreError
from story_recall.utils.logger import get_logger

logger = get_logger(__name__)


def _encode_vector(vector: list[float] | None) -> bytes | None:
    if vector is None:
        return None
    return np.asarray(vector, dtype=np.float32).tobytes()


def _decode_vector(blob: bytes | None) -> list[float] | None:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32).astype(np.float64).tolist()


class SQLiteMemoryStore(MemoryStore):
    """
    SQLite-based store for recall data.

    Features:
    - Fast local storage
    - Every table keyed by conversation ID
    - float32 vector blobs
    """

    def __init__(self, db_path: str = "data/story_recall.db"):
        """
        Initialize SQLite memory store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self.connection: aiosqlite.Connection | None = None

        # Ensure directory exists
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    async def connect(self) -> None:
        """Establish connection to SQLite."""
        if self.connection is None:
            try:
                self.connection = await aiosqlite.connect(self.db_path)
                await self.connection.execute("PRAGMA journal_mode = WAL")
                await self.connection.commit()
            except Exception as e:
                raise StoreError(
                    f"Failed to open SQLite store: {e}", {"db_path": self.db_path}
                ) from e

    async def initialize(self) -> None:
        """Initialize database schema."""
        await self.connect()

        await self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS state_atoms (
                conversation_id TEXT NOT NULL,
                atom_id TEXT NOT NULL,
                floor INTEGER NOT NULL,
                semantic TEXT NOT NULL DEFAULT '',
                edges TEXT NOT NULL DEFAULT '[]',
                location TEXT,
                PRIMARY KEY (conversation_id, atom_id)
            )
        """
        )
        await self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS state_vectors (
                conversation_id TEXT NOT NULL,
                atom_id TEXT NOT NULL,
                floor INTEGER NOT NULL,
                vector BLOB NOT NULL,
                r_vector BLOB,
                PRIMARY KEY (conversation_id, atom_id)
            )
        """
        )
        await self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS chunks (
                conversation_id TEXT NOT NULL,
                chunk_id TEXT NOT NULL,
                floor INTEGER NOT NULL,
                chunk_idx INTEGER NOT NULL,
                speaker TEXT NOT NULL DEFAULT '',
                is_user INTEGER NOT NULL DEFAULT 0,
                text TEXT NOT NULL DEFAULT '',
                PRIMARY KEY (conversation_id, chunk_id)
            )
        """
        )
        await self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS chunk_vectors (
                conversation_id TEXT NOT NULL,
                chunk_id TEXT NOT NULL,
                floor INTEGER NOT NULL,
                vector BLOB NOT NULL,
                PRIMARY KEY (conversation_id, chunk_id)
            )
        """
        )
        await self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS event_vectors (
                conversation_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                vector BLOB NOT NULL,
                PRIMARY KEY (conversation_id, event_id)
            )
        """
        )
        await self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
                conversation_id TEXT PRIMARY KEY,
                fingerprint TEXT
            )
        """
        )

        await self.connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_atoms_floor ON state_atoms(conversation_id, floor)"
        )
        await self.connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_chunks_floor ON chunks(conversation_id, floor)"
        )

        await self.connection.commit()
        logger.info("SQLite memory store initialized", extra={"db_path": self.db_path})

    # ═══════════════════════════════════════════════════════════
    # ATOM OPERATIONS
    # ═══════════════════════════════════════════════════════════

    async def get_state_atoms(self, conversation_id: str) -> list[StateAtom]:
        await self.connect()

        cursor = await self.connection.execute(
            """
            SELECT atom_id, floor, semantic, edges, location FROM state_atoms
            WHERE conversation_id = ? ORDER BY floor, atom_id
            """,
            (conversation_id,),
        )
        rows = await cursor.fetchall()

        return [self._row_to_atom(row) for row in rows]

    async def get_all_state_vectors(self, conversation_id: str) -> list[StateVector]:
        await self.connect()

        cursor = await self.connection.execute(
            "SELECT atom_id, floor, vector, r_vector FROM state_vectors WHERE conversation_id = ?",
            (conversation_id,),
        )
        rows = await cursor.fetchall()

        return [
            StateVector(
                atom_id=row[0],
                floor=row[1],
                vector=_decode_vector(row[2]) or [],
                r_vector=_decode_vector(row[3]),
            )
            for row in rows
        ]

    async def save_state_atoms(self, conversation_id: str, atoms: list[StateAtom]) -> None:
        await self.connect()

        await self.connection.executemany(
            """
            INSERT OR REPLACE INTO state_atoms (
                conversation_id, atom_id, floor, semantic, edges, location
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    conversation_id,
                    atom.atom_id,
                    atom.floor,
                    atom.semantic,
                    json.dumps([edge.model_dump() for edge in atom.edges], ensure_ascii=False),
                    atom.where,
                )
                for atom in atoms
            ],
        )
        await self.connection.commit()

    async def save_state_vectors(self, conversation_id: str, vectors: list[StateVector]) -> None:
        await self.connect()

        await self.connection.executemany(
            """
            INSERT OR REPLACE INTO state_vectors (
                conversation_id, atom_id, floor, vector, r_vector
            ) VALUES (?, ?, ?, ?, ?)
            """,
            [
                (
                    conversation_id,
                    v.atom_id,
                    v.floor,
                    _encode_vector(v.vector),
                    _encode_vector(v.r_vector),
                )
                for v in vectors
            ],
        )
        await self.connection.commit()

    # ═══════════════════════════════════════════════════════════
    # CHUNK OPERATIONS
    # ═══════════════════════════════════════════════════════════

    async def get_chunks_by_floors(self, conversation_id: str, floors: list[int]) -> list[Chunk]:
        await self.connect()

        unique = sorted(set(floors))
        if not unique:
            return []

        placeholders = ",".join("?" * len(unique))
        cursor = await self.connection.execute(
            f"""
            SELECT chunk_id, floor, chunk_idx, speaker, is_user, text FROM chunks
            WHERE conversation_id = ? AND floor IN ({placeholders})
            ORDER BY floor, chunk_idx
            """,
            (conversation_id, *unique),
        )
        rows = await cursor.fetchall()

        return [self._row_to_chunk(row) for row in rows]

    async def get_all_chunks(self, conversation_id: str) -> list[Chunk]:
        await self.connect()

        cursor = await self.connection.execute(
            """
            SELECT chunk_id, floor, chunk_idx, speaker, is_user, text FROM chunks
            WHERE conversation_id = ? ORDER BY floor, chunk_idx
            """,
            (conversation_id,),
        )
        rows = await cursor.fetchall()

        return [self._row_to_chunk(row) for row in rows]

    async def get_chunk_vectors_by_ids(
        self, conversation_id: str, chunk_ids: list[str]
    ) -> list[ChunkVector]:
        await self.connect()

        if not chunk_ids:
            return []

        placeholders = ",".join("?" * len(chunk_ids))
        cursor = await self.connection.execute(
            f"""
            SELECT chunk_id, floor, vector FROM chunk_vectors
            WHERE conversation_id = ? AND chunk_id IN ({placeholders})
            """,
            (conversation_id, *chunk_ids),
        )
        rows = await cursor.fetchall()

        return [
            ChunkVector(chunk_id=row[0], floor=row[1], vector=_decode_vector(row[2]) or [])
            for row in rows
        ]

    async def save_chunks(
        self, conversation_id: str, chunks: list[Chunk], vectors: list[ChunkVector] | None = None
    ) -> None:
        await self.connect()

        await self.connection.executemany(
            """
            INSERT OR REPLACE INTO chunks (
                conversation_id, chunk_id, floor, chunk_idx, speaker, is_user, text
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    conversation_id,
                    c.chunk_id,
                    c.floor,
                    c.chunk_idx,
                    c.speaker,
                    1 if c.is_user else 0,
                    c.text,
                )
                for c in chunks
            ],
        )
        if vectors:
            await self.connection.executemany(
                """
                INSERT OR REPLACE INTO chunk_vectors (conversation_id, chunk_id, floor, vector)
                VALUES (?, ?, ?, ?)
                """,
                [(conversation_id, v.chunk_id, v.floor, _encode_vector(v.vector)) for v in vectors],
            )
        await self.connection.commit()

    # ═══════════════════════════════════════════════════════════
    # EVENT & META OPERATIONS
    # ═══════════════════════════════════════════════════════════

    async def get_all_event_vectors(self, conversation_id: str) -> list[EventVector]:
        await self.connect()

        cursor = await self.connection.execute(
            "SELECT event_id, vector FROM event_vectors WHERE conversation_id = ?",
            (conversation_id,),
        )
        rows = await cursor.fetchall()

        return [EventVector(event_id=row[0], vector=_decode_vector(row[1]) or []) for row in rows]

    async def save_event_vectors(self, conversation_id: str, vectors: list[EventVector]) -> None:
        await self.connect()

        await self.connection.executemany(
            """
            INSERT OR REPLACE INTO event_vectors (conversation_id, event_id, vector)
            VALUES (?, ?, ?)
            """,
            [(conversation_id, v.event_id, _encode_vector(v.vector)) for v in vectors],
        )
        await self.connection.commit()

    async def get_fingerprint(self, conversation_id: str) -> str | None:
        await self.connect()

        cursor = await self.connection.execute(
            "SELECT fingerprint FROM meta WHERE conversation_id = ?", (conversation_id,)
        )
        row = await cursor.fetchone()

        return row[0] if row else None

    async def set_fingerprint(self, conversation_id: str, fingerprint: str) -> None:
        await self.connect()

        await self.connection.execute(
            "INSERT OR REPLACE INTO meta (conversation_id, fingerprint) VALUES (?, ?)",
            (conversation_id, fingerprint),
        )
        await self.connection.commit()

    async def delete_floor(self, conversation_id: str, floor: int) -> None:
        await self.connect()

        for table in ("state_atoms", "state_vectors", "chunks", "chunk_vectors"):
            await self.connection.execute(
                f"DELETE FROM {table} WHERE conversation_id = ? AND floor = ?",
                (conversation_id, floor),
            )
        await self.connection.commit()

    async def clear_conversation(self, conversation_id: str) -> None:
        await self.connect()

        for table in (
            "state_atoms",
            "state_vectors",
            "chunks",
            "chunk_vectors",
            "event_vectors",
            "meta",
        ):
            await self.connection.execute(
                f"DELETE FROM {table} WHERE conversation_id = ?", (conversation_id,)
            )
        await self.connection.commit()

    async def close(self) -> None:
        """Close SQLite connection."""
        if self.connection:
            await self.connection.close()
            self.connection = None

    # ═══════════════════════════════════════════════════════════
    # HELPER METHODS
    # ═══════════════════════════════════════════════════════════

    def _row_to_atom(self, row: tuple) -> StateAtom:
        """Convert database row to StateAtom."""
        edges = [AtomEdge(**edge) for edge in json.loads(row[3] or "[]")]
        return StateAtom(
            atom_id=row[0],
            floor=row[1],
            semantic=row[2],
            edges=edges,
            where=row[4],
        )

    def _row_to_chunk(self, row: tuple) -> Chunk:
        """Convert database row to Chunk."""
        return Chunk(
            chunk_id=row[0],
            floor=row[1],
            chunk_idx=row[2],
            speaker=row[3],
            is_user=bool(row[4]),
            text=row[5],
        )
