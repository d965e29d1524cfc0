"""
Data models for story-recall.

Storage layers:
1. L0 StateAtom / StateVector: atomic facts per turn
2. L1 Chunk / ChunkVector: raw text slices per turn
3. L2 Event / EventVector: multi-turn narrative units with causation links

Per-call models:
- QueryBundle, QuerySegment: weighted query built from recent messages
- AnchorHit, EventHit, CausalHit, EvidenceItem, L1Pair: recall hits
- RecallOptions, RecallResult: orchestrator input options and output
- RecallMetrics: diagnostic record
"""

from story_recall.models.atom import AtomEdge, StateAtom, StateVector
from story_recall.models.chunk import Chunk, ChunkVector, ScoredChunk
from story_recall.models.conversation import (
    ChatMessage,
    ParticipantContext,
    StoryArc,
    StoryMeta,
)
from story_recall.models.event import (
    CausalHit,
    Event,
    EventHit,
    EventVector,
    RecallType,
)
from story_recall.models.metrics import RecallMetrics, ScoreStats, SimilarityStats
from story_recall.models.query import QueryBundle, QuerySegment
from story_recall.models.recall import (
    AnchorHit,
    EvidenceItem,
    L1Pair,
    RecallOptions,
    RecallResult,
)

__all__ = [
    # Store models
    "AtomEdge",
    "StateAtom",
    "StateVector",
    "Chunk",
    "ChunkVector",
    "ScoredChunk",
    "Event",
    "EventVector",
    # Conversation inputs
    "ChatMessage",
    "ParticipantContext",
    "StoryArc",
    "StoryMeta",
    # Query
    "QueryBundle",
    "QuerySegment",
    # Recall hits and results
    "RecallType",
    "AnchorHit",
    "EventHit",
    "CausalHit",
    "EvidenceItem",
    "L1Pair",
    "RecallOptions",
    "RecallResult",
    # Metrics
    "RecallMetrics",
    "SimilarityStats",
    "ScoreStats",
]
