"""
Evidence assembly: floor fusion, rerank, L0 collection and L1 pairing.

Once a floor is selected by fusion/rerank, every atom on it becomes
evidence; anchor similarity only orders atoms within the floor.
"""

import time
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from story_recall.config import RerankerConfig, RetrievalConfig
from story_recall.core.memory_store.base import MemoryStore
from story_recall.core.rerank.base import Reranker
from story_recall.core.rerank.batching import RerankCandidate, rerank_candidates
from story_recall.core.tokenizer.text_tokenizer import TextTokenizer
from story_recall.models.atom import StateAtom
from story_recall.models.chunk import ScoredChunk
from story_recall.models.conversation import ChatMessage, ParticipantContext
from story_recall.models.metrics import RecallMetrics
from story_recall.models.recall import AnchorHit, EvidenceItem, L1Pair
from story_recall.services.fusion import (
    build_dense_floor_rank,
    build_lexical_floor_rank,
    build_must_keep_floors,
    dense_floor_max,
    fuse_by_floor,
    must_keep_fallback_score,
)
from story_recall.services.lexical_index import LexicalSearchResult
from story_recall.services.metrics import calc_score_stats
from story_recall.services.query_builder import DEFAULT_CHARACTER_NAME, DEFAULT_USER_NAME
from story_recall.utils.id_generator import anchor_item_id
from story_recall.utils.logger import get_logger
from story_recall.utils.vector_math import cosine_scores

logger = get_logger(__name__)


@dataclass
class L1Scores:
    """Scored chunks per floor, best first."""

    by_floor: dict[int, list[ScoredChunk]] = field(default_factory=dict)
    cosine_time: int = 0


@dataclass
class EvidenceOutcome:
    l0_selected: list[EvidenceItem] = field(default_factory=list)
    l1_scores: L1Scores = field(default_factory=L1Scores)
    must_keep_floors: list[int] = field(default_factory=list)


def _elapsed_ms(start: float) -> int:
    return round((time.perf_counter() - start) * 1000)


def _is_user_floor(chat: Sequence[ChatMessage], floor: int) -> bool:
    return 0 <= floor < len(chat) and chat[floor].is_user


# ═══════════════════════════════════════════════════════════
# L1 PULL
# ═══════════════════════════════════════════════════════════


async def pull_and_score_l1(
    store: MemoryStore,
    conversation_id: str,
    floors: Iterable[int],
    query_vector: list[float],
) -> L1Scores:
    """
    Load chunks of the given floors and score them against the query.

    Store failures are logged and yield an empty result.

    Args:
        store: Memory store
        conversation_id: Conversation identifier
        floors: Floors to load
        query_vector: Query vector

    Returns:
        L1Scores grouped per floor, sorted by cosine score descending
    """
    start = time.perf_counter()
    floors = list(floors)
    result = L1Scores()
    if not conversation_id or not floors or not query_vector:
        return result

    try:
        chunks = await store.get_chunks_by_floors(conversation_id, floors)
    except Exception as e:
        logger.warning(f"L1 chunk pull failed: {e}", extra={"floors": len(floors)})
        result.cosine_time = _elapsed_ms(start)
        return result

    if not chunks:
        result.cosine_time = _elapsed_ms(start)
        return result

    try:
        vectors = await store.get_chunk_vectors_by_ids(conversation_id, [c.chunk_id for c in chunks])
    except Exception as e:
        logger.warning(f"L1 vector pull failed: {e}", extra={"chunks": len(chunks)})
        result.cosine_time = _elapsed_ms(start)
        return result

    vector_map = {v.chunk_id: v.vector for v in vectors}
    scores = cosine_scores(query_vector, [vector_map.get(c.chunk_id) or [] for c in chunks])

    grouped: dict[int, list[ScoredChunk]] = defaultdict(list)
    for chunk, score in zip(chunks, scores):
        grouped[chunk.floor].append(ScoredChunk(**chunk.model_dump(), cosine_score=score))
    for items in grouped.values():
        items.sort(key=lambda c: c.cosine_score, reverse=True)

    result.by_floor = dict(grouped)
    result.cosine_time = _elapsed_ms(start)
    logger.info(
        f"L1 pull: {len(floors)} floors -> {len(chunks)} chunks -> scored ({result.cosine_time}ms)"
    )
    return result


# ═══════════════════════════════════════════════════════════
# FLOOR SELECTION
# ═══════════════════════════════════════════════════════════


def _rerank_document(
    floor: int,
    l1: L1Scores,
    chat: Sequence[ChatMessage],
    context: ParticipantContext,
) -> str:
    """'userName：user chunks\\naiName：ai chunks' for one AI floor."""
    user_floor = floor - 1
    ai_chunks = l1.by_floor.get(floor, [])
    user_chunks = l1.by_floor.get(user_floor, []) if _is_user_floor(chat, user_floor) else []

    user_name = (chat[user_floor].name if 0 <= user_floor < len(chat) else None) or context.name1 or DEFAULT_USER_NAME
    ai_name = (chat[floor].name if 0 <= floor < len(chat) else None) or context.name2 or DEFAULT_CHARACTER_NAME

    parts = []
    if user_chunks:
        parts.append(f"{user_name}：{' '.join(c.text for c in user_chunks)}")
    if ai_chunks:
        parts.append(f"{ai_name}：{' '.join(c.text for c in ai_chunks)}")
    return "\n".join(parts)


async def locate_and_pull_evidence(
    anchor_hits: Sequence[AnchorHit],
    atoms: Sequence[StateAtom],
    query_vector: list[float],
    rerank_query: str,
    lexical_result: LexicalSearchResult | None,
    lexical_terms: Sequence[str],
    *,
    store: MemoryStore,
    conversation_id: str,
    chat: Sequence[ChatMessage],
    context: ParticipantContext,
    reranker: Reranker,
    tokenizer: TextTokenizer,
    config: RetrievalConfig | None = None,
    reranker_config: RerankerConfig | None = None,
    metrics: RecallMetrics | None = None,
) -> EvidenceOutcome:
    """
    Select evidence floors and collect their atoms.

    Steps: dense/lexical floor ranks, must-keep floors, W-RRF fusion, L1
    pull, rerank of non-must-keep floors, must-keep re-entry, L0 collection.

    Args:
        anchor_hits: Final anchor hits
        atoms: All atoms of the conversation
        query_vector: Query vector used for L1 scoring
        rerank_query: Focus-first rerank query
        lexical_result: Lexical search output (None when unavailable)
        lexical_terms: Query lexical terms
        store: Memory store
        conversation_id: Conversation identifier
        chat: Chat transcript
        context: Participant names
        reranker: Rerank provider
        tokenizer: Tokenizer used for the must-keep stopword check
        config: Retrieval constants
        reranker_config: Batch size and concurrency for rerank requests
        metrics: Optional metrics record to fill

    Returns:
        EvidenceOutcome with selected atoms, prefetched L1 scores and must-keep floors
    """
    config = config or RetrievalConfig()
    reranker_config = reranker_config or RerankerConfig()
    if not conversation_id:
        return EvidenceOutcome()

    start = time.perf_counter()

    dense_max = dense_floor_max(anchor_hits)
    dense_rank = build_dense_floor_rank(anchor_hits)
    atom_floors = {a.floor for a in atoms}
    lex = build_lexical_floor_rank(lexical_result, dense_max, atom_floors, chat, config)

    if metrics is not None:
        metrics.lexical.floor_filtered_by_dense = lex.filtered_by_dense

    must_keep = build_must_keep_floors(
        lexical_result, lexical_terms, atom_floors, chat, tokenizer, config
    )

    fusion_start = time.perf_counter()
    fused = fuse_by_floor(dense_rank, lex.ranked, config.fusion_cap, config)
    fusion_time = _elapsed_ms(fusion_start)

    if metrics is not None:
        metrics.fusion.dense_floors = len(dense_rank)
        metrics.fusion.lex_floors = len(lex.ranked)
        metrics.fusion.total_unique = fused.total_unique
        metrics.fusion.after_cap = len(fused.top)
        metrics.fusion.time = fusion_time
        metrics.fusion.dense_agg_method = "maxSim"
        metrics.fusion.lex_density_bonus = config.lex_density_bonus
        metrics.evidence.floor_candidates = len(fused.top)
        metrics.evidence.must_keep_terms_count = len(must_keep.terms)
        metrics.evidence.must_keep_floors_count = len(must_keep.floors)
        metrics.evidence.must_keep_floors = [f.floor for f in must_keep.floors][:10]
        metrics.evidence.lex_hit_but_not_selected = max(
            0, must_keep.lex_hit_candidates - len(must_keep.floors)
        )

    if not fused.top:
        if metrics is not None:
            metrics.evidence.floors_selected = 0
            metrics.evidence.l0_collected = 0
            metrics.evidence.l1_pulled = 0
            metrics.evidence.l1_attached = 0
            metrics.evidence.l1_cosine_time = 0
            metrics.evidence.rerank_applied = False
        return EvidenceOutcome()

    floors_to_fetch: set[int] = set()
    for item in fused.top:
        floors_to_fetch.add(item.floor)
        if _is_user_floor(chat, item.floor - 1):
            floors_to_fetch.add(item.floor - 1)

    l1 = await pull_and_score_l1(store, conversation_id, sorted(floors_to_fetch), query_vector)

    must_keep_set = must_keep.floor_set
    candidates = []
    for item in fused.top:
        if item.floor in must_keep_set:
            continue
        text = _rerank_document(item.floor, l1, chat, context)
        if not text.strip():
            continue
        candidates.append(RerankCandidate(key=item.floor, text=text, fusion_score=item.fusion_score))

    rerank_start = time.perf_counter()
    reranked = await rerank_candidates(
        reranker,
        rerank_query,
        candidates,
        top_n=config.rerank_top_n,
        min_score=config.rerank_min_score,
        batch_size=reranker_config.batch_size,
        max_concurrency=reranker_config.max_concurrency,
    )
    rerank_time = _elapsed_ms(rerank_start)

    if metrics is not None:
        metrics.evidence.rerank_applied = True
        metrics.evidence.before_rerank = len(candidates)
        metrics.evidence.after_rerank = len(reranked)
        metrics.evidence.dropped_by_rerank_count = max(0, len(candidates) - len(reranked))
        metrics.evidence.rerank_failed = any(c.rerank_failed for c in reranked)
        metrics.evidence.rerank_time = rerank_time
        metrics.timing.evidence_rerank = rerank_time

        positive = [c.rerank_score for c in reranked if c.rerank_score > 0]
        if positive:
            metrics.evidence.rerank_scores = calc_score_stats(positive)
        if candidates:
            metrics.evidence.rerank_doc_avg_length = round(
                sum(len(c.text) for c in candidates) / len(candidates)
            )

    reranked_floors = {c.key for c in reranked}
    final_floors: list[tuple[int, float, bool]] = [(c.key, c.rerank_score, False) for c in reranked]
    must_keep_missing = [
        (mk.floor, must_keep_fallback_score(mk.term_coverage, config), True)
        for mk in must_keep.floors
        if mk.floor not in reranked_floors
    ]
    final_floors.extend(must_keep_missing)

    similarity_by_atom = {h.atom_id: h.similarity for h in anchor_hits}
    atoms_by_floor: dict[int, list[StateAtom]] = defaultdict(list)
    for atom in atoms:
        if atom.floor >= 0:
            atoms_by_floor[atom.floor].append(atom)

    l0_selected: list[EvidenceItem] = []
    for floor, rerank_score, is_must_keep in final_floors:
        floor_atoms = sorted(
            atoms_by_floor.get(floor, []),
            key=lambda a: similarity_by_atom.get(a.atom_id, 0.0),
            reverse=True,
        )
        for atom in floor_atoms:
            l0_selected.append(
                EvidenceItem(
                    id=anchor_item_id(atom.atom_id),
                    atom_id=atom.atom_id,
                    floor=atom.floor,
                    similarity=similarity_by_atom.get(atom.atom_id, 0.0),
                    rerank_score=rerank_score,
                    atom=atom,
                    text=atom.semantic or "",
                    is_must_keep=is_must_keep,
                )
            )

    total_time = _elapsed_ms(start)
    if metrics is not None:
        metrics.evidence.floors_selected = len(final_floors)
        metrics.evidence.l0_collected = len(l0_selected)
        metrics.evidence.l1_pulled = 0
        metrics.evidence.l1_attached = 0
        metrics.evidence.l1_cosine_time = 0
        metrics.evidence.context_pairs_added = 0
        metrics.timing.evidence_retrieval = max(0, total_time - fusion_time - rerank_time)

    logger.info(
        f"Evidence: {len(dense_rank)} dense floors + {len(lex.ranked)} lex floors "
        f"({lex.filtered_by_dense} lex filtered by dense) -> fusion={len(fused.top)} "
        f"-> rerank(normal)={len(reranked)} + mustKeep={len(must_keep_missing)} floors "
        f"-> L0={len(l0_selected)} ({total_time}ms)"
    )

    return EvidenceOutcome(
        l0_selected=l0_selected,
        l1_scores=l1,
        must_keep_floors=[f.floor for f in must_keep.floors],
    )


# ═══════════════════════════════════════════════════════════
# L1 PAIRS
# ═══════════════════════════════════════════════════════════


async def build_l1_pairs(
    l0_selected: Sequence[EvidenceItem],
    query_vector: list[float],
    prefetched: L1Scores | None,
    *,
    store: MemoryStore,
    conversation_id: str,
    chat: Sequence[ChatMessage],
    metrics: RecallMetrics | None = None,
) -> dict[int, L1Pair]:
    """
    Pair the best AI chunk and the best preceding user chunk per selected floor.

    Prefetched scores are reused; floors missing from them are pulled.

    Args:
        l0_selected: Selected evidence items
        query_vector: Query vector
        prefetched: L1 scores pulled during evidence selection
        store: Memory store
        conversation_id: Conversation identifier
        chat: Chat transcript
        metrics: Optional metrics record to fill

    Returns:
        floor -> L1Pair
    """
    start = time.perf_counter()
    pairs: dict[int, L1Pair] = {}

    if not conversation_id or not query_vector or not l0_selected:
        if metrics is not None:
            metrics.evidence.l1_pulled = 0
            metrics.evidence.l1_attached = 0
            metrics.evidence.l1_cosine_time = 0
            metrics.evidence.context_pairs_added = 0
        return pairs

    selected_floors: list[int] = []
    required: set[int] = set()
    for item in l0_selected:
        if item.floor < 0:
            continue
        if item.floor not in selected_floors:
            selected_floors.append(item.floor)
        required.add(item.floor)
        if _is_user_floor(chat, item.floor - 1):
            required.add(item.floor - 1)

    prefetched = prefetched or L1Scores()
    merged = {f: chunks for f, chunks in prefetched.by_floor.items() if f in required}
    cosine_time = prefetched.cosine_time

    missing = sorted(f for f in required if f not in merged)
    if missing:
        extra = await pull_and_score_l1(store, conversation_id, missing, query_vector)
        cosine_time += extra.cosine_time
        for floor, chunks in extra.by_floor.items():
            if floor in required:
                merged[floor] = chunks

    attached = 0
    context_pairs = 0
    for floor in selected_floors:
        ai_chunks = merged.get(floor, [])
        user_chunks = merged.get(floor - 1, []) if _is_user_floor(chat, floor - 1) else []

        ai_top1 = max(ai_chunks, key=lambda c: c.cosine_score) if ai_chunks else None
        user_top1 = max(user_chunks, key=lambda c: c.cosine_score) if user_chunks else None
        if ai_top1 is not None:
            attached += 1
        if user_top1 is not None:
            attached += 1
            context_pairs += 1
        pairs[floor] = L1Pair(ai_top1=ai_top1, user_top1=user_top1)

    if metrics is not None:
        metrics.evidence.l1_pulled = sum(len(chunks) for chunks in merged.values())
        metrics.evidence.l1_attached = attached
        metrics.evidence.l1_cosine_time = cosine_time
        metrics.evidence.context_pairs_added = context_pairs
        metrics.timing.evidence_retrieval += _elapsed_ms(start)
        floors_with_attachment = sum(
            1 for p in pairs.values() if p.ai_top1 is not None or p.user_top1 is not None
        )
        if selected_floors:
            metrics.quality.l1_attach_rate = round(floors_with_attachment / len(selected_floors) * 100)

    return pairs
