"""L2 events and recall hits over them."""

from enum import Enum

from pydantic import BaseModel, Field


class RecallType(str, Enum):
    """How an event entered the recall result."""

    DIRECT = "DIRECT"  # Participant matches a focus character
    RELATED = "RELATED"  # Semantically similar only
    CAUSAL = "CAUSAL"  # Ancestor via caused_by links


class Event(BaseModel):
    """
    Narrative unit spanning one or more floors (L2).

    The summary ends with a 1-based floor-range marker such as ``(#3-7)``.
    """

    model_config = {"extra": "ignore", "frozen": True}

    id: str = Field(..., description="Event ID (evt-N)")
    title: str = Field(default="", description="Short title")
    participants: list[str] = Field(default_factory=list, description="Participant names")
    summary: str = Field(default="", description="Summary with trailing (#a-b) marker")
    caused_by: list[str] = Field(default_factory=list, description="IDs of causing events")


class EventVector(BaseModel):
    """Embedding of an event."""

    event_id: str
    vector: list[float] = Field(default_factory=list)


class EventHit(BaseModel):
    """Event selected by dense, lexical or floor-linked recall."""

    event: Event
    similarity: float = 0.0
    recall_type: RecallType = RecallType.RELATED


class CausalHit(BaseModel):
    """Ancestor event reached by walking caused_by links."""

    event: Event
    depth: int = Field(..., ge=1, description="Minimum depth at which the event was reached")
    chain_from: list[str] = Field(
        default_factory=list, description="Recalled event IDs whose chains reach this event"
    )
    similarity: float = 0.0
    recall_type: RecallType = RecallType.CAUSAL
