"""Recall pipeline results and options."""

from pydantic import BaseModel, Field

from story_recall.models.atom import StateAtom
from story_recall.models.chunk import ScoredChunk
from story_recall.models.event import CausalHit, EventHit
from story_recall.models.metrics import RecallMetrics


class AnchorHit(BaseModel):
    """Atom scored against the query vector."""

    atom_id: str
    floor: int
    similarity: float
    atom: StateAtom


class EvidenceItem(BaseModel):
    """
    Atom selected as evidence.

    IDs are ``anchor-{atom_id}`` for fused/reranked floors and
    ``diffused-{atom_id}`` for atoms reached by graph diffusion.
    """

    id: str
    atom_id: str
    floor: int
    similarity: float = 0.0
    rerank_score: float = 0.0
    atom: StateAtom
    text: str = ""
    is_must_keep: bool = False


class L1Pair(BaseModel):
    """Top AI chunk and top preceding user chunk for one selected floor."""

    ai_top1: ScoredChunk | None = None
    user_top1: ScoredChunk | None = None


class RecallOptions(BaseModel):
    pending_user_message: str | None = Field(
        default=None, description="Unsent user message to use as the focus"
    )
    exclude_last_ai: bool = Field(
        default=False, description="Drop the last AI turn from the window (regeneration)"
    )


class RecallResult(BaseModel):
    """Evidence package returned by one recall call."""

    events: list[EventHit] = Field(default_factory=list)
    causal_chain: list[CausalHit] = Field(default_factory=list)
    l0_selected: list[EvidenceItem] = Field(default_factory=list)
    l1_by_floor: dict[int, L1Pair] = Field(default_factory=dict)
    focus_terms: list[str] = Field(default_factory=list)
    focus_characters: list[str] = Field(default_factory=list)
    must_keep_floors: list[int] = Field(default_factory=list)
    elapsed_ms: int = 0
    log_text: str = ""
    metrics: RecallMetrics = Field(default_factory=RecallMetrics)
