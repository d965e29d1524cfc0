"""
Tests for dense retrieval.

Tests cover:
1. Embedding retry
2. Anchor recall threshold and ordering
3. Event recall: similarity floor, entity filter, recall types
4. Engine fingerprint checks
"""

import asyncio

import pytest

from conftest import CONVERSATION_ID, KeywordEmbedder
from story_recall.config import EmbedderConfig, RetrievalConfig
from story_recall.models import RecallMetrics, RecallType
from story_recall.services.dense_retrieval import (
    embed_with_retry,
    fingerprint_matches,
    recall_anchors,
    recall_events,
)
from story_recall.utils.exceptions import EmbeddingError

FINGERPRINT = "fake:keyword-embed:4"
SWORD_QUERY = [1.0, 0.0, 0.0, 0.1]
# Between event_min_similarity (0.60) and the entity bypass (0.70) for evt-2
TEA_QUERY = [0.3, 1.0, 0.0, 0.0]

NO_DELAY = EmbedderConfig(timeout=1.0, retry_timeout=1.0, retry_delay=0.0)


class SlowEmbedder(KeywordEmbedder):
    async def batch_embed(self, texts, batch_size=32, **kwargs):
        self.calls.append(list(texts))
        await asyncio.sleep(5)
        return []


class TestEmbedWithRetry:
    """Tests for embed_with_retry."""

    @pytest.mark.asyncio
    async def test_success(self):
        embedder = KeywordEmbedder()
        vectors = await embed_with_retry(embedder, ["sword"], NO_DELAY)
        assert vectors == [[1.0, 0.0, 0.0, 0.1]]
        assert len(embedder.calls) == 1

    @pytest.mark.asyncio
    async def test_retry_recovers(self):
        embedder = KeywordEmbedder(fail_times=1)
        vectors = await embed_with_retry(embedder, ["tea"], NO_DELAY)
        assert vectors == [[0.0, 1.0, 0.0, 0.1]]
        assert len(embedder.calls) == 2

    @pytest.mark.asyncio
    async def test_both_attempts_fail(self):
        embedder = KeywordEmbedder(fail_times=2)
        with pytest.raises(EmbeddingError):
            await embed_with_retry(embedder, ["tea"], NO_DELAY)
        assert len(embedder.calls) == 2

    @pytest.mark.asyncio
    async def test_timeout(self):
        embedder = SlowEmbedder()
        config = EmbedderConfig(timeout=0.05, retry_timeout=0.05, retry_delay=0.0)
        with pytest.raises(EmbeddingError):
            await embed_with_retry(embedder, ["tea"], config)
        assert len(embedder.calls) == 2


class TestFingerprint:
    """Tests for fingerprint checks."""

    @pytest.mark.asyncio
    async def test_unrecorded_matches(self, seeded_store):
        assert await fingerprint_matches(seeded_store, CONVERSATION_ID, FINGERPRINT)

    @pytest.mark.asyncio
    async def test_mismatch(self, seeded_store):
        await seeded_store.set_fingerprint(CONVERSATION_ID, "siliconflow:bge-m3:1024")
        assert not await fingerprint_matches(seeded_store, CONVERSATION_ID, FINGERPRINT)

    @pytest.mark.asyncio
    async def test_mismatch_skips_search(self, seeded_store, events):
        await seeded_store.set_fingerprint(CONVERSATION_ID, "siliconflow:bge-m3:1024")

        anchors = await recall_anchors(SWORD_QUERY, seeded_store, CONVERSATION_ID, FINGERPRINT)
        event_recall = await recall_events(
            SWORD_QUERY, events, seeded_store, CONVERSATION_ID, FINGERPRINT
        )

        assert anchors.hits == []
        assert event_recall.hits == []


class TestRecallAnchors:
    """Tests for anchor recall."""

    @pytest.mark.asyncio
    async def test_threshold(self, seeded_store):
        metrics = RecallMetrics()
        result = await recall_anchors(
            SWORD_QUERY, seeded_store, CONVERSATION_ID, FINGERPRINT, metrics=metrics
        )

        assert [h.atom_id for h in result.hits] == ["a-1"]
        assert result.hits[0].similarity == pytest.approx(1.0)
        assert result.floors == {1}
        assert len(result.state_vectors) == 2
        assert metrics.anchor.matched == 1
        assert metrics.anchor.top_hits[0]["floor"] == 1

    @pytest.mark.asyncio
    async def test_sorted_descending(self, seeded_store):
        config = RetrievalConfig(anchor_min_similarity=0.0)
        result = await recall_anchors(
            [1.0, 0.5, 0.0, 0.1], seeded_store, CONVERSATION_ID, FINGERPRINT, config
        )
        sims = [h.similarity for h in result.hits]
        assert sims == sorted(sims, reverse=True)
        assert len(sims) == 2

    @pytest.mark.asyncio
    async def test_empty_query(self, seeded_store):
        result = await recall_anchors([], seeded_store, CONVERSATION_ID, FINGERPRINT)
        assert result.hits == []


class TestRecallEvents:
    """Tests for event recall."""

    @pytest.mark.asyncio
    async def test_direct_hit(self, seeded_store, events):
        metrics = RecallMetrics()
        result = await recall_events(
            SWORD_QUERY,
            events,
            seeded_store,
            CONVERSATION_ID,
            FINGERPRINT,
            focus_characters=["Bob"],
            metrics=metrics,
        )

        assert [h.event.id for h in result.hits] == ["evt-1"]
        assert result.hits[0].recall_type == RecallType.DIRECT
        assert set(result.vector_map) == {"evt-0", "evt-1", "evt-2"}
        assert metrics.event.in_store == 3
        assert metrics.event.selected == 1
        assert metrics.event.by_recall_type.direct == 1

    @pytest.mark.asyncio
    async def test_entity_filter_drops_unrelated(self, seeded_store, events):
        """Test a moderately similar event without focus participants is filtered."""
        metrics = RecallMetrics()
        result = await recall_events(
            TEA_QUERY,
            events,
            seeded_store,
            CONVERSATION_ID,
            FINGERPRINT,
            focus_characters=["Bob"],
            metrics=metrics,
        )

        assert result.hits == []
        assert metrics.event.entity_filter.before == 1
        assert metrics.event.entity_filter.filtered == 1

    @pytest.mark.asyncio
    async def test_no_focus_keeps_related(self, seeded_store, events):
        result = await recall_events(
            TEA_QUERY, events, seeded_store, CONVERSATION_ID, FINGERPRINT
        )
        assert [h.event.id for h in result.hits] == ["evt-2"]
        assert result.hits[0].recall_type == RecallType.RELATED

    @pytest.mark.asyncio
    async def test_high_similarity_bypasses_filter(self, seeded_store, events):
        result = await recall_events(
            [0.0, 1.0, 0.0, 1.0],
            events,
            seeded_store,
            CONVERSATION_ID,
            FINGERPRINT,
            focus_characters=["Bob"],
        )
        assert [h.event.id for h in result.hits] == ["evt-2"]
        assert result.hits[0].recall_type == RecallType.RELATED

    @pytest.mark.asyncio
    async def test_no_events(self, seeded_store):
        result = await recall_events(SWORD_QUERY, [], seeded_store, CONVERSATION_ID, FINGERPRINT)
        assert result.hits == []
