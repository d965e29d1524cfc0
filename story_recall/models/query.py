"""Per-call query bundle produced by the query builder."""

from pydantic import BaseModel, Field


class QuerySegment(BaseModel):
    """One weighted query text (a message or the hints block)."""

    text: str = Field(..., description="'speaker：content' or hints text")
    base_weight: float = Field(..., ge=0.0, description="Static weight before length scaling")
    char_count: int = Field(default=0, ge=0, description="Cleaned content length")


class QueryBundle(BaseModel):
    """
    Query built from the recent message window.

    Segments are ordered context (oldest first) then focus, so the focus
    segment is always the last one. Discarded after one recall call.
    """

    query_segments: list[QuerySegment] = Field(default_factory=list)
    hints_segment: QuerySegment | None = None
    rerank_query: str = ""
    lexical_terms: list[str] = Field(default_factory=list)
    focus_terms: list[str] = Field(default_factory=list)
    focus_characters: list[str] = Field(default_factory=list)
    lexicon: set[str] = Field(default_factory=set)
    display_map: dict[str, str] = Field(default_factory=dict)
