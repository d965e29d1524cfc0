"""
L0 state atoms and their vectors.

Atoms are atomic facts extracted from a single conversational turn during
ingestion. They are read-only inside the recall pipeline.
"""

from pydantic import BaseModel, Field


class AtomEdge(BaseModel):
    """Subject/target/relation triple attached to an atom."""

    model_config = {"extra": "ignore"}

    s: str = Field(default="", description="Subject entity")
    t: str = Field(default="", description="Target entity")
    r: str = Field(default="", description="Relation text")


class StateAtom(BaseModel):
    """
    Atomic fact extracted from one turn (L0).

    The floor must reference a valid turn of the conversation transcript.
    """

    model_config = {"extra": "ignore", "frozen": True}

    atom_id: str = Field(..., description="Unique atom ID")
    floor: int = Field(..., ge=0, description="Turn index the atom was extracted from")
    semantic: str = Field(default="", description="Short natural-language description")
    edges: list[AtomEdge] = Field(default_factory=list, description="Subject/target/relation triples")
    where: str | None = Field(default=None, description="Optional location")


class StateVector(BaseModel):
    """Embedding of an atom's semantic text, plus an optional relation embedding."""

    model_config = {"extra": "ignore"}

    atom_id: str = Field(..., description="Atom this vector belongs to")
    floor: int = Field(..., ge=0, description="Atom floor (denormalized)")
    vector: list[float] = Field(default_factory=list, description="Semantic embedding")
    r_vector: list[float] | None = Field(default=None, description="Relation-text embedding")
