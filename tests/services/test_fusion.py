"""
Tests for floor fusion.

Tests cover:
1. Dense and lexical floor ranks (AI-floor mapping, dense gate, density bonus)
2. W-RRF scores, ordering and cap
3. Must-keep floor selection
"""

import math

import pytest

from story_recall.config import RetrievalConfig
from story_recall.models import AnchorHit, StateAtom
from story_recall.services.fusion import (
    RankedFloor,
    build_dense_floor_rank,
    build_lexical_floor_rank,
    build_must_keep_floors,
    dense_floor_max,
    fuse_by_floor,
    map_chunk_floor_to_ai_floor,
    must_keep_fallback_score,
)
from story_recall.services.lexical_index import (
    ChunkLexScore,
    LexicalSearchResult,
    TermFloorHit,
    TermIdf,
)


def anchor(floor: int, sim: float, atom_id: str | None = None) -> AnchorHit:
    atom_id = atom_id or f"a-{floor}-{sim}"
    return AnchorHit(atom_id=atom_id, floor=floor, similarity=sim, atom=StateAtom(atom_id=atom_id, floor=floor))


@pytest.mark.unit
class TestFloorRanks:
    """Tests for dense and lexical floor ranks."""

    def test_dense_max(self):
        hits = [anchor(1, 0.7), anchor(1, 0.9), anchor(3, 0.8)]
        assert dense_floor_max(hits) == {1: 0.9, 3: 0.8}
        assert [r.floor for r in build_dense_floor_rank(hits)] == [1, 3]

    def test_user_floor_maps_to_reply(self, chat):
        assert map_chunk_floor_to_ai_floor(0, chat) == 1
        assert map_chunk_floor_to_ai_floor(1, chat) == 1

    def test_user_floor_without_reply(self, chat):
        """Test the last user turn has no AI floor."""
        assert map_chunk_floor_to_ai_floor(4, chat) is None
        assert map_chunk_floor_to_ai_floor(None, chat) is None
        assert map_chunk_floor_to_ai_floor(-1, chat) is None

    def test_lexical_rank_density_bonus(self, chat):
        result = LexicalSearchResult(
            chunk_scores=[
                ChunkLexScore(chunk_id="c-0-0", score=2.0),
                ChunkLexScore(chunk_id="c-1-0", score=3.0),
                ChunkLexScore(chunk_id="c-3-0", score=4.0),
            ]
        )
        rank = build_lexical_floor_rank(result, {1: 0.8, 3: 0.9}, {1, 3}, chat)

        scores = {r.floor: r.score for r in rank.ranked}
        # Floor 1: max 3.0 over 2 hits (user floor 0 maps to 1)
        assert scores[1] == pytest.approx(3.0 * (1 + 0.3 * math.log2(2)))
        assert scores[3] == pytest.approx(4.0)
        assert [r.floor for r in rank.ranked] == [3, 1]

    def test_lexical_rank_dense_gate(self, chat):
        result = LexicalSearchResult(chunk_scores=[ChunkLexScore(chunk_id="c-3-0", score=4.0)])
        rank = build_lexical_floor_rank(result, {3: 0.3}, {3}, chat)
        assert rank.ranked == []
        assert rank.filtered_by_dense == 1

    def test_lexical_rank_needs_atoms(self, chat):
        result = LexicalSearchResult(chunk_scores=[ChunkLexScore(chunk_id="c-3-0", score=4.0)])
        rank = build_lexical_floor_rank(result, {3: 0.9}, set(), chat)
        assert rank.ranked == []
        assert rank.filtered_by_dense == 0

    def test_lexical_rank_none(self, chat):
        assert build_lexical_floor_rank(None, {}, set(), chat).ranked == []


@pytest.mark.unit
class TestFuseByFloor:
    """Tests for W-RRF."""

    def test_scores(self):
        dense = [RankedFloor(5, 0.9), RankedFloor(7, 0.8)]
        lex = [RankedFloor(7, 10.0), RankedFloor(9, 5.0)]

        outcome = fuse_by_floor(dense, lex)
        scores = {f.floor: f.fusion_score for f in outcome.top}

        assert scores[7] == pytest.approx(1.0 / 61 + 0.9 / 60)
        assert scores[5] == pytest.approx(1.0 / 60)
        assert scores[9] == pytest.approx(0.9 / 61)
        assert [f.floor for f in outcome.top] == [7, 5, 9]
        assert outcome.total_unique == 3

    def test_duplicate_keeps_first_rank(self):
        dense = [RankedFloor(5, 0.9), RankedFloor(5, 0.1)]
        outcome = fuse_by_floor(dense, [])
        assert outcome.top[0].fusion_score == pytest.approx(1.0 / 60)

    def test_cap(self):
        dense = [RankedFloor(i, 1.0 - i / 100) for i in range(10)]
        outcome = fuse_by_floor(dense, None, cap=3)
        assert [f.floor for f in outcome.top] == [0, 1, 2]
        assert outcome.total_unique == 10

    def test_deterministic(self):
        dense = [RankedFloor(2, 0.9), RankedFloor(4, 0.8)]
        lex = [RankedFloor(4, 1.0), RankedFloor(2, 0.5)]
        first = fuse_by_floor(dense, lex)
        second = fuse_by_floor(dense, lex)
        assert first == second

    def test_empty(self):
        outcome = fuse_by_floor(None, None)
        assert outcome.top == []
        assert outcome.total_unique == 0


@pytest.mark.unit
class TestMustKeep:
    """Tests for the fusion guard."""

    def lexical_result(self) -> LexicalSearchResult:
        return LexicalSearchResult(
            top_idf_terms=[
                TermIdf(term="excalibur", idf=3.5),
                TermIdf(term="moonstone", idf=3.0),
                TermIdf(term="sword", idf=1.5),
                TermIdf(term="the", idf=3.9),
            ],
            term_floor_hits={
                "excalibur": [
                    TermFloorHit(floor=1, weighted_score=2.0, chunk_id="c-1-0"),
                    TermFloorHit(floor=3, weighted_score=5.0, chunk_id="c-3-0"),
                ],
                "moonstone": [TermFloorHit(floor=1, weighted_score=2.0, chunk_id="c-1-0")],
                "sword": [TermFloorHit(floor=1, weighted_score=9.0, chunk_id="c-1-0")],
                "the": [TermFloorHit(floor=1, weighted_score=9.0, chunk_id="c-1-0")],
            },
        )

    def test_term_qualification(self, chat, tokenizer):
        selection = build_must_keep_floors(
            self.lexical_result(),
            ["excalibur", "moonstone", "sword", "the"],
            {1, 3},
            chat,
            tokenizer,
            RetrievalConfig(must_keep_cluster_window=0),
        )
        # "sword" is below the IDF floor, "the" is a stopword
        assert [t for t, _ in selection.terms] == ["excalibur", "moonstone"]

    def test_coverage_boost(self, chat, tokenizer):
        selection = build_must_keep_floors(
            self.lexical_result(),
            ["excalibur", "moonstone"],
            {1, 3},
            chat,
            tokenizer,
            RetrievalConfig(must_keep_cluster_window=0),
        )
        floors = {f.floor: f for f in selection.floors}

        assert floors[1].score == pytest.approx(4.0 * 1.2)
        assert floors[1].term_coverage == 2
        assert floors[1].terms == ["excalibur", "moonstone"]
        assert floors[3].score == pytest.approx(5.0)
        assert selection.lex_hit_candidates == 2

    def test_cluster_window(self, chat, tokenizer):
        """Test floors near an already selected floor are skipped."""
        selection = build_must_keep_floors(
            self.lexical_result(), ["excalibur", "moonstone"], {1, 3}, chat, tokenizer
        )
        assert [f.floor for f in selection.floors] == [3]

    def test_max_floors(self, chat, tokenizer):
        selection = build_must_keep_floors(
            self.lexical_result(),
            ["excalibur", "moonstone"],
            {1, 3},
            chat,
            tokenizer,
            RetrievalConfig(must_keep_cluster_window=0, must_keep_max_floors=1),
        )
        assert len(selection.floors) == 1

    def test_terms_must_be_query_terms(self, chat, tokenizer):
        selection = build_must_keep_floors(self.lexical_result(), ["dragon"], {1, 3}, chat, tokenizer)
        assert selection.floors == []
        assert selection.terms == []

    def test_no_atom_floors(self, chat, tokenizer):
        selection = build_must_keep_floors(self.lexical_result(), ["excalibur"], set(), chat, tokenizer)
        assert selection.floors == []

    def test_fallback_score(self):
        assert must_keep_fallback_score(1) == pytest.approx(0.13)
        assert must_keep_fallback_score(3) == pytest.approx(0.15)
        assert must_keep_fallback_score(10) == pytest.approx(0.17)
        assert must_keep_fallback_score(0) == pytest.approx(0.13)


@pytest.mark.unit
class TestFusionProperties:
    """Order properties of W-RRF."""

    def test_self_fusion_keeps_order(self):
        """Test fusing a ranking with itself does not invert any ranks."""
        ranking = [RankedFloor(floor, 1.0 - i / 10) for i, floor in enumerate([8, 3, 5, 1, 9])]
        outcome = fuse_by_floor(ranking, ranking)
        assert [f.floor for f in outcome.top] == [8, 3, 5, 1, 9]
