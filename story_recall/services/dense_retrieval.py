"""
Dense retrieval: query embedding and cosine recall over L0 atoms and L2 events.

Every stage checks the stored engine fingerprint first: vectors produced by
another embedding engine are never compared with the query vector.
"""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field

from story_recall.config import EmbedderConfig, RetrievalConfig
from story_recall.core.embeddings.base import Embedder
from story_recall.core.memory_store.base import MemoryStore
from story_recall.models.atom import StateVector
from story_recall.models.event import Event, EventHit, RecallType
from story_recall.models.metrics import EntityFilterMetrics, RecallMetrics, RecallTypeCounts
from story_recall.models.recall import AnchorHit
from story_recall.services.metrics import calc_similarity_stats
from story_recall.utils.exceptions import EmbeddingError
from story_recall.utils.logger import get_logger
from story_recall.utils.text import normalize
from story_recall.utils.vector_math import cosine_scores, mmr_select

logger = get_logger(__name__)


@dataclass
class AnchorRecall:
    """Anchor search output."""

    hits: list[AnchorHit] = field(default_factory=list)
    floors: set[int] = field(default_factory=set)
    state_vectors: list[StateVector] = field(default_factory=list)


@dataclass
class EventRecall:
    """Event search output plus the event vectors that were compared."""

    hits: list[EventHit] = field(default_factory=list)
    vector_map: dict[str, list[float]] = field(default_factory=dict)


async def embed_with_retry(
    embedder: Embedder,
    texts: list[str],
    config: EmbedderConfig | None = None,
) -> list[list[float]]:
    """
    Embed texts in one batch, retrying once.

    The first attempt uses config.timeout; after config.retry_delay the
    second uses config.retry_timeout.

    Args:
        embedder: Embedding provider
        texts: Texts to embed
        config: Timeouts and retry delay

    Returns:
        One vector per text

    Raises:
        EmbeddingError: If both attempts fail
    """
    config = config or EmbedderConfig()
    try:
        return await asyncio.wait_for(embedder.batch_embed(texts), timeout=config.timeout)
    except Exception as e:
        logger.warning(
            f"Embedding failed, retrying in {config.retry_delay}s: {e}",
            extra={"error_type": type(e).__name__, "texts": len(texts)},
        )

    await asyncio.sleep(config.retry_delay)
    try:
        return await asyncio.wait_for(embedder.batch_embed(texts), timeout=config.retry_timeout)
    except Exception as e:
        logger.error(
            f"Embedding failed after retry: {e}",
            extra={"error_type": type(e).__name__, "texts": len(texts)},
        )
        raise EmbeddingError(
            f"Embedding failed after retry: {e}", {"texts": len(texts)}
        ) from e


async def fingerprint_matches(store: MemoryStore, conversation_id: str, fingerprint: str) -> bool:
    """True unless the store recorded vectors from a different engine."""
    stored = await store.get_fingerprint(conversation_id)
    return not stored or stored == fingerprint


async def recall_anchors(
    query_vector: list[float],
    store: MemoryStore,
    conversation_id: str,
    fingerprint: str,
    config: RetrievalConfig | None = None,
    metrics: RecallMetrics | None = None,
) -> AnchorRecall:
    """
    Score every atom vector of the conversation against the query.

    Args:
        query_vector: Weighted query vector
        store: Memory store
        conversation_id: Conversation identifier
        fingerprint: Current embedding engine fingerprint
        config: Retrieval constants
        metrics: Optional metrics record to fill

    Returns:
        AnchorRecall with hits >= anchor_min_similarity sorted descending
    """
    config = config or RetrievalConfig()
    if not query_vector:
        return AnchorRecall()

    if not await fingerprint_matches(store, conversation_id, fingerprint):
        logger.warning("Anchor fingerprint mismatch, skipping anchor search")
        return AnchorRecall()

    state_vectors = await store.get_all_state_vectors(conversation_id)
    if not state_vectors:
        return AnchorRecall()

    atoms = {atom.atom_id: atom for atom in await store.get_state_atoms(conversation_id)}
    joined = [sv for sv in state_vectors if sv.atom_id in atoms]
    scores = cosine_scores(query_vector, [sv.vector for sv in joined])

    hits = [
        AnchorHit(atom_id=sv.atom_id, floor=sv.floor, similarity=sim, atom=atoms[sv.atom_id])
        for sv, sim in zip(joined, scores)
        if sim >= config.anchor_min_similarity
    ]
    hits.sort(key=lambda h: h.similarity, reverse=True)
    floors = {h.floor for h in hits}

    if metrics is not None:
        metrics.anchor.matched = len(hits)
        metrics.anchor.floors_hit = len(floors)
        metrics.anchor.top_hits = [
            {"floor": h.floor, "semantic": h.atom.semantic[:50], "similarity": round(h.similarity, 3)}
            for h in hits[:5]
        ]

    return AnchorRecall(hits=hits, floors=floors, state_vectors=state_vectors)


async def recall_events(
    query_vector: list[float],
    events: Sequence[Event],
    store: MemoryStore,
    conversation_id: str,
    fingerprint: str,
    focus_characters: Sequence[str] = (),
    config: RetrievalConfig | None = None,
    metrics: RecallMetrics | None = None,
) -> EventRecall:
    """
    Select events by similarity, entity filter and MMR.

    Candidates clear event_min_similarity and are capped at
    event_candidate_max. With focus characters, a candidate must either be
    very similar (event_entity_bypass_sim) or have a matching participant.

    Args:
        query_vector: Weighted query vector
        events: All events of the conversation
        store: Memory store
        conversation_id: Conversation identifier
        fingerprint: Current embedding engine fingerprint
        focus_characters: Focus characters of the query
        config: Retrieval constants
        metrics: Optional metrics record to fill

    Returns:
        EventRecall with DIRECT/RELATED hits and the event vector map
    """
    config = config or RetrievalConfig()
    if not query_vector or not events:
        return EventRecall()

    if not await fingerprint_matches(store, conversation_id, fingerprint):
        logger.warning("Event fingerprint mismatch, skipping event search")
        return EventRecall()

    vector_map = {v.event_id: v.vector for v in await store.get_all_event_vectors(conversation_id)}
    if not vector_map:
        return EventRecall(vector_map=vector_map)

    focus_set = {normalize(c) for c in focus_characters if normalize(c)}
    events = list(events)
    scores = cosine_scores(query_vector, [vector_map.get(e.id) or [] for e in events])

    scored = []
    for event, sim in zip(events, scores):
        has_match = any(normalize(p) in focus_set for p in event.participants)
        scored.append((event, sim, has_match))

    if metrics is not None:
        metrics.event.in_store = len(events)

    candidates = sorted(
        (c for c in scored if c[1] >= config.event_min_similarity),
        key=lambda c: c[1],
        reverse=True,
    )[: config.event_candidate_max]

    if metrics is not None:
        metrics.event.considered = len(candidates)

    if focus_set:
        before = len(candidates)
        candidates = [c for c in candidates if c[1] >= config.event_entity_bypass_sim or c[2]]
        if metrics is not None:
            metrics.event.entity_filter = EntityFilterMetrics(
                focus_characters=list(focus_characters),
                before=before,
                after=len(candidates),
                filtered=before - len(candidates),
            )

    selected = mmr_select(
        candidates,
        config.event_select_max,
        config.event_mmr_lambda,
        get_vector=lambda c: vector_map.get(c[0].id),
        get_score=lambda c: c[1],
    )

    hits = [
        EventHit(
            event=event,
            similarity=sim,
            recall_type=RecallType.DIRECT if has_match else RecallType.RELATED,
        )
        for event, sim, has_match in selected
    ]

    if metrics is not None:
        direct = sum(1 for h in hits if h.recall_type == RecallType.DIRECT)
        metrics.event.selected = len(hits)
        metrics.event.by_recall_type = RecallTypeCounts(direct=direct, related=len(hits) - direct)
        metrics.event.similarity_distribution = calc_similarity_stats([h.similarity for h in hits])

    return EventRecall(hits=hits, vector_map=vector_map)
