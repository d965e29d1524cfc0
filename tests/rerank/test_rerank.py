"""
Tests for the rerank layer.

Tests cover:
1. SiliconFlowReranker request handling (mock transport)
2. Degradation on timeouts, HTTP errors and missing keys
3. rerank_candidates batching, thresholds and failure fallback
"""

import json

import httpx
import pytest

from conftest import ScriptedReranker
from story_recall.core.rerank import (
    DisabledReranker,
    RerankCandidate,
    Reranker,
    RerankOutcome,
    RerankResult,
    SiliconFlowReranker,
    rerank_candidates,
)


def make_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def scoring_handler(seen: list[dict]):
    """Score each document by its length, best first."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append(body)
        results = [
            {"index": i, "relevance_score": len(doc) / 100}
            for i, doc in enumerate(body["documents"])
        ]
        results.sort(key=lambda r: r["relevance_score"], reverse=True)
        return httpx.Response(200, json={"results": results[: body["top_n"]]})

    return handler


class TestSiliconFlowReranker:
    """Tests for the rerank HTTP client."""

    @pytest.mark.asyncio
    async def test_scores_and_maps_indices(self):
        """Test blank documents are skipped and indices map back."""
        seen: list[dict] = []
        reranker = SiliconFlowReranker("sk-test", client=make_client(scoring_handler(seen)))

        outcome = await reranker.rerank("query", ["short", "   ", "a much longer text"], top_n=3)

        assert outcome.failed is False
        assert seen[0]["documents"] == ["short", "a much longer text"]
        assert seen[0]["return_documents"] is False
        assert [r.index for r in outcome.results] == [2, 0]

    @pytest.mark.asyncio
    async def test_truncates_documents(self):
        seen: list[dict] = []
        reranker = SiliconFlowReranker(
            "sk-test", max_documents=2, client=make_client(scoring_handler(seen))
        )
        await reranker.rerank("query", ["one", "two", "three"], top_n=3)
        assert len(seen[0]["documents"]) == 2

    @pytest.mark.asyncio
    async def test_empty_query_fails(self):
        reranker = SiliconFlowReranker("sk-test", client=make_client(scoring_handler([])))
        outcome = await reranker.rerank("  ", ["doc"], top_n=1)
        assert outcome.failed is True

    @pytest.mark.asyncio
    async def test_no_documents(self):
        reranker = SiliconFlowReranker("sk-test", client=make_client(scoring_handler([])))
        outcome = await reranker.rerank("query", [], top_n=5)
        assert outcome.failed is False
        assert outcome.results == []

    @pytest.mark.asyncio
    async def test_missing_key_degrades(self):
        reranker = SiliconFlowReranker(None, client=make_client(scoring_handler([])))
        outcome = await reranker.rerank("query", ["a", "b"], top_n=2)
        assert outcome.failed is True
        assert [r.relevance_score for r in outcome.results] == [0.0, 0.0]

    @pytest.mark.asyncio
    async def test_http_error_degrades(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="busy")

        reranker = SiliconFlowReranker("sk-test", client=make_client(handler))
        outcome = await reranker.rerank("query", ["a", "b", "c"], top_n=2)
        assert outcome.failed is True
        assert [r.index for r in outcome.results] == [0, 1]

    @pytest.mark.asyncio
    async def test_timeout_degrades(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out")

        reranker = SiliconFlowReranker("sk-test", client=make_client(handler))
        outcome = await reranker.rerank("query", ["a"], top_n=1)
        assert outcome.failed is True

    @pytest.mark.asyncio
    async def test_disabled_reranker(self):
        outcome = await DisabledReranker().rerank("query", ["a", "b", "c"], top_n=2)
        assert outcome.failed is True
        assert len(outcome.results) == 2


class FlakyReranker(Reranker):
    """Fails every batch whose first document starts with a marker."""

    def __init__(self, marker: str = "bad"):
        self.marker = marker
        self.batches: list[list[str]] = []

    async def rerank(self, query: str, documents: list[str], top_n: int) -> RerankOutcome:
        self.batches.append(list(documents))
        if documents and documents[0].startswith(self.marker):
            return RerankOutcome.failure(len(documents))
        return RerankOutcome(
            results=[RerankResult(index=i, relevance_score=0.5 + i / 100) for i in range(len(documents))]
        )

    async def close(self):
        pass


def candidates(texts: list[str]) -> list[RerankCandidate]:
    return [RerankCandidate(key=i, text=t, fusion_score=1.0 / (i + 1)) for i, t in enumerate(texts)]


class TestRerankCandidates:
    """Tests for batched candidate reranking."""

    @pytest.mark.asyncio
    async def test_single_batch_sorted_and_thresholded(self):
        reranker = ScriptedReranker(keyword="sword", hit=0.9, miss=0.05)
        result = await rerank_candidates(
            reranker, "q", candidates(["tea", "sword", "rain"]), top_n=5, min_score=0.1
        )
        assert [c.key for c in result] == [1]
        assert result[0].rerank_score == 0.9
        assert result[0].rerank_failed is False

    @pytest.mark.asyncio
    async def test_top_n(self):
        reranker = ScriptedReranker(keyword="sword")
        result = await rerank_candidates(
            reranker, "q", candidates(["sword a", "sword b", "sword c"]), top_n=2, min_score=0.1
        )
        assert len(result) == 2

    @pytest.mark.asyncio
    async def test_total_failure_keeps_fusion_order(self):
        reranker = ScriptedReranker(fail=True)
        result = await rerank_candidates(reranker, "q", candidates(["a", "b", "c"]), top_n=2)
        assert [c.key for c in result] == [0, 1]
        assert all(c.rerank_failed and c.rerank_score == 0.0 for c in result)

    @pytest.mark.asyncio
    async def test_batches_split(self):
        reranker = FlakyReranker()
        texts = [f"doc {i}" for i in range(5)]
        result = await rerank_candidates(reranker, "q", candidates(texts), top_n=10, batch_size=2)
        assert [len(b) for b in reranker.batches] == [2, 2, 1]
        assert len(result) == 5

    @pytest.mark.asyncio
    async def test_failed_batch_items_kept(self):
        """Test a failed batch keeps its items with score 0."""
        reranker = FlakyReranker()
        texts = ["good 0", "good 1", "bad 2", "bad 3"]
        result = await rerank_candidates(
            reranker, "q", candidates(texts), top_n=10, min_score=0.1, batch_size=2
        )
        by_key = {c.key: c for c in result}
        assert set(by_key) == {0, 1, 2, 3}
        assert by_key[2].rerank_failed is True
        assert by_key[2].rerank_score == 0.0
        assert by_key[0].rerank_failed is False
        # Scored items rank ahead of degraded ones
        assert [c.key for c in result][:2] == [1, 0]

    @pytest.mark.asyncio
    async def test_all_batches_failed(self):
        reranker = FlakyReranker(marker="")
        result = await rerank_candidates(
            reranker, "q", candidates(["a", "b", "c"]), top_n=2, batch_size=1
        )
        assert [c.key for c in result] == [0, 1]
        assert all(c.rerank_failed for c in result)

    @pytest.mark.asyncio
    async def test_empty(self):
        assert await rerank_candidates(ScriptedReranker(), "q", []) == []
