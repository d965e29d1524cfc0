"""L1 chunks: sentence/paragraph slices of a turn's raw text."""

from pydantic import BaseModel, Field


class Chunk(BaseModel):
    """
    Slice of one turn's raw text (L1).

    Multiple chunks may exist per floor; chunk IDs follow ``c-{floor}-{idx}``.
    """

    model_config = {"extra": "ignore"}

    chunk_id: str = Field(..., description="Chunk ID (c-{floor}-{idx})")
    floor: int = Field(..., ge=0, description="Turn index")
    chunk_idx: int = Field(default=0, ge=0, description="Position within the floor")
    speaker: str = Field(default="", description="Speaker display name")
    is_user: bool = Field(default=False, description="Whether the turn was written by the user")
    text: str = Field(default="", description="Chunk text")


class ChunkVector(BaseModel):
    """Embedding of a chunk."""

    chunk_id: str
    floor: int = Field(default=0, ge=0)
    vector: list[float] = Field(default_factory=list)


class ScoredChunk(Chunk):
    """Chunk scored by cosine similarity to the query vector."""

    cosine_score: float = Field(default=0.0, description="Cosine similarity to the query")
