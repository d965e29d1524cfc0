"""
Floor-level fusion of dense and lexical rankings.

Dense floor rank: max anchor similarity per floor.
Lexical floor rank: max chunk score per AI floor with a log2 density bonus,
admitted only when the floor also clears the dense gate.
Fusion: weighted reciprocal-rank fusion (W-RRF) over 0-based ranks.

The fusion guard (must-keep floors) protects floors carrying rare query terms
from being dropped by the reranker.
"""

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from story_recall.config import RetrievalConfig
from story_recall.core.tokenizer.text_tokenizer import TextTokenizer
from story_recall.models.conversation import ChatMessage
from story_recall.models.recall import AnchorHit
from story_recall.services.lexical_index import LexicalSearchResult
from story_recall.utils.id_generator import parse_chunk_floor
from story_recall.utils.text import normalize


@dataclass
class RankedFloor:
    floor: int
    score: float


@dataclass
class FusedFloor:
    floor: int
    fusion_score: float


@dataclass
class FusionOutcome:
    top: list[FusedFloor]
    total_unique: int


@dataclass
class LexicalFloorRank:
    ranked: list[RankedFloor]
    filtered_by_dense: int = 0


@dataclass
class MustKeepFloor:
    floor: int
    score: float
    term_coverage: int
    terms: list[str]


@dataclass
class MustKeepSelection:
    """Must-keep terms and the floors selected for them."""

    terms: list[tuple[str, float]] = field(default_factory=list)
    floors: list[MustKeepFloor] = field(default_factory=list)
    lex_hit_candidates: int = 0

    @property
    def floor_set(self) -> set[int]:
        return {f.floor for f in self.floors}


# ═══════════════════════════════════════════════════════════
# FLOOR RANKS
# ═══════════════════════════════════════════════════════════


def dense_floor_max(anchor_hits: Iterable[AnchorHit]) -> dict[int, float]:
    """Max anchor similarity per floor."""
    best: dict[int, float] = {}
    for hit in anchor_hits:
        current = best.get(hit.floor)
        if current is None or hit.similarity > current:
            best[hit.floor] = hit.similarity
    return best


def build_dense_floor_rank(anchor_hits: Iterable[AnchorHit]) -> list[RankedFloor]:
    ranked = [RankedFloor(floor=f, score=s) for f, s in dense_floor_max(anchor_hits).items()]
    ranked.sort(key=lambda r: r.score, reverse=True)
    return ranked


def map_chunk_floor_to_ai_floor(floor: int | None, chat: Sequence[ChatMessage]) -> int | None:
    """
    Map a chunk floor to the AI floor it belongs to.

    User floors map to the following floor when that is an AI turn.

    Returns:
        AI floor, or None when the floor is invalid or the user turn has no reply
    """
    if floor is None or floor < 0:
        return None
    if floor < len(chat) and chat[floor].is_user:
        ai_floor = floor + 1
        if ai_floor < len(chat) and not chat[ai_floor].is_user:
            return ai_floor
        return None
    return floor


def build_lexical_floor_rank(
    lexical_result: LexicalSearchResult | None,
    dense_max: dict[int, float],
    atom_floors: set[int],
    chat: Sequence[ChatMessage],
    config: RetrievalConfig | None = None,
) -> LexicalFloorRank:
    """
    Aggregate lexical chunk scores per AI floor.

    A floor must carry atoms and have a dense max similarity of at least
    lexical_floor_dense_min; floors failing the gate are counted, not ranked.

    Args:
        lexical_result: Lexical search output
        dense_max: Max anchor similarity per floor
        atom_floors: Floors that have at least one atom
        chat: Chat transcript
        config: Retrieval constants

    Returns:
        LexicalFloorRank sorted by score descending
    """
    config = config or RetrievalConfig()
    if lexical_result is None:
        return LexicalFloorRank(ranked=[])

    agg: dict[int, tuple[float, int]] = {}
    filtered = 0
    for item in lexical_result.chunk_scores:
        floor = map_chunk_floor_to_ai_floor(parse_chunk_floor(item.chunk_id), chat)
        if floor is None or floor not in atom_floors:
            continue

        dense = dense_max.get(floor)
        if not dense or dense < config.lexical_floor_dense_min:
            filtered += 1
            continue

        max_score, hits = agg.get(floor, (item.score, 0))
        agg[floor] = (max(max_score, item.score), hits + 1)

    ranked = [
        RankedFloor(
            floor=floor,
            score=max_score * (1 + config.lex_density_bonus * math.log2(max(1, hits))),
        )
        for floor, (max_score, hits) in agg.items()
    ]
    ranked.sort(key=lambda r: r.score, reverse=True)
    return LexicalFloorRank(ranked=ranked, filtered_by_dense=filtered)


# ═══════════════════════════════════════════════════════════
# W-RRF
# ═══════════════════════════════════════════════════════════


def fuse_by_floor(
    dense_rank: Sequence[RankedFloor] | None,
    lex_rank: Sequence[RankedFloor] | None,
    cap: int | None = None,
    config: RetrievalConfig | None = None,
) -> FusionOutcome:
    """
    Weighted reciprocal-rank fusion.

    ``score = w_dense / (k + rank_dense) + w_lex / (k + rank_lex)`` with
    0-based ranks; a floor listed twice keeps its first rank.

    Args:
        dense_rank: Dense floor ranking
        lex_rank: Lexical floor ranking
        cap: Maximum number of fused floors (default: fusion_cap)
        config: Retrieval constants

    Returns:
        FusionOutcome with the top floors and the number of unique floors
    """
    config = config or RetrievalConfig()
    cap = config.fusion_cap if cap is None else cap

    def rank_map(ranked: Sequence[RankedFloor] | None) -> dict[int, int]:
        out: dict[int, int] = {}
        for i, item in enumerate(ranked or []):
            out.setdefault(item.floor, i)
        return out

    dense_map = rank_map(dense_rank)
    lex_map = rank_map(lex_rank)

    # dict keeps first-seen order so equal scores stay stable
    all_floors = list(dict.fromkeys([*dense_map, *lex_map]))
    scored = []
    for floor in all_floors:
        score = 0.0
        if floor in dense_map:
            score += config.rrf_w_dense / (config.rrf_k + dense_map[floor])
        if floor in lex_map:
            score += config.rrf_w_lex / (config.rrf_k + lex_map[floor])
        scored.append(FusedFloor(floor=floor, fusion_score=score))

    scored.sort(key=lambda f: f.fusion_score, reverse=True)
    return FusionOutcome(top=scored[:cap], total_unique=len(all_floors))


# ═══════════════════════════════════════════════════════════
# FUSION GUARD
# ═══════════════════════════════════════════════════════════


def is_non_stopword_term(term: str, tokenizer: TextTokenizer) -> bool:
    """True when the term survives index tokenization as itself."""
    norm = normalize(term)
    if not norm:
        return False
    return norm in (normalize(t) for t in tokenizer.tokenize_for_index(norm))


def build_must_keep_floors(
    lexical_result: LexicalSearchResult | None,
    lexical_terms: Sequence[str],
    atom_floors: set[int],
    chat: Sequence[ChatMessage],
    tokenizer: TextTokenizer,
    config: RetrievalConfig | None = None,
) -> MustKeepSelection:
    """
    Select floors that must survive reranking.

    Terms qualify when they are query terms from the top-IDF list, at least
    two characters, not stopwords, with idf >= must_keep_min_idf and at
    least one floor hit. Per AI floor the weighted hit scores are summed and
    boosted by 20% per extra covered term. Floors within
    must_keep_cluster_window of an already selected floor are skipped.

    Args:
        lexical_result: Lexical search output
        lexical_terms: Query lexical terms
        atom_floors: Floors that have at least one atom
        chat: Chat transcript
        tokenizer: Tokenizer used for the stopword check
        config: Retrieval constants

    Returns:
        MustKeepSelection (empty when nothing qualifies)
    """
    config = config or RetrievalConfig()
    out = MustKeepSelection()
    if lexical_result is None or not lexical_terms or not atom_floors:
        return out

    query_terms = {normalize(t) for t in lexical_terms if normalize(t)}
    qualified = []
    for item in lexical_result.top_idf_terms:
        term = normalize(item.term)
        if not term or term not in query_terms or len(term) < 2:
            continue
        if not is_non_stopword_term(term, tokenizer):
            continue
        if item.idf < config.must_keep_min_idf:
            continue
        if not lexical_result.term_floor_hits.get(term):
            continue
        qualified.append((term, item.idf))

    qualified.sort(key=lambda x: x[1], reverse=True)
    if not qualified:
        return out
    out.terms = qualified

    floor_agg: dict[int, tuple[float, set[str]]] = {}
    for term, _ in qualified:
        for hit in lexical_result.term_floor_hits.get(term, []):
            ai_floor = map_chunk_floor_to_ai_floor(hit.floor, chat)
            if ai_floor is None or ai_floor not in atom_floors:
                continue
            total, terms = floor_agg.get(ai_floor, (0.0, set()))
            terms.add(term)
            floor_agg[ai_floor] = (total + hit.weighted_score, terms)

    candidates = [
        MustKeepFloor(
            floor=floor,
            score=total * (1 + 0.2 * max(0, len(terms) - 1)),
            term_coverage=len(terms),
            terms=sorted(terms),
        )
        for floor, (total, terms) in floor_agg.items()
    ]
    candidates.sort(key=lambda c: c.score, reverse=True)
    out.lex_hit_candidates = len(candidates)

    for candidate in candidates:
        if any(abs(s.floor - candidate.floor) <= config.must_keep_cluster_window for s in out.floors):
            continue
        out.floors.append(candidate)
        if len(out.floors) >= config.must_keep_max_floors:
            break

    return out


def must_keep_fallback_score(term_coverage: int, config: RetrievalConfig | None = None) -> float:
    """Score for a must-keep floor the reranker did not return."""
    config = config or RetrievalConfig()
    bonus = min(config.must_keep_coverage_bonus_max, config.must_keep_coverage_bonus * (term_coverage or 1))
    return config.must_keep_base_score + bonus
