"""
Batched rerank over scored candidates.

Large candidate sets are split into batches that run concurrently under a
semaphore; a failed batch keeps its items (score 0) instead of losing them.
"""

import asyncio

from pydantic import BaseModel

from story_recall.core.rerank.base import Reranker, RerankResult
from story_recall.utils.logger import get_logger

logger = get_logger(__name__)


class RerankCandidate(BaseModel):
    """One document to rerank, keyed by the caller (a floor for evidence)."""

    key: int
    text: str
    fusion_score: float = 0.0


class RerankedCandidate(RerankCandidate):
    rerank_score: float = 0.0
    rerank_failed: bool = False


async def rerank_candidates(
    reranker: Reranker,
    query: str,
    candidates: list[RerankCandidate],
    top_n: int = 20,
    min_score: float = 0.10,
    batch_size: int = 20,
    max_concurrency: int = 5,
) -> list[RerankedCandidate]:
    """
    Rerank candidates and keep the best ones.

    Args:
        reranker: Rerank provider
        query: Rerank query (focus first)
        candidates: Candidates in fusion order
        top_n: Maximum number of candidates to keep
        min_score: Minimum relevance score for a scored candidate
        batch_size: Documents per rerank request
        max_concurrency: Maximum concurrent requests

    Returns:
        Candidates sorted by rerank score. On total failure, the first
        ``top_n`` candidates in fusion order with score 0 and rerank_failed.
    """
    if not candidates:
        return []

    texts = [c.text for c in candidates]

    if len(texts) <= batch_size:
        outcome = await reranker.rerank(query, texts, min(top_n, len(texts)))
        if outcome.failed:
            return _degraded(candidates[:top_n])

        kept = sorted(
            (r for r in outcome.results if r.relevance_score >= min_score),
            key=lambda r: r.relevance_score,
            reverse=True,
        )[:top_n]
        return [_scored(candidates[r.index], r.relevance_score) for r in kept]

    batches = [(offset, texts[offset : offset + batch_size]) for offset in range(0, len(texts), batch_size)]
    concurrency = min(len(batches), max_concurrency)
    semaphore = asyncio.Semaphore(concurrency)
    logger.info(
        f"Concurrent rerank: {len(batches)} batches x <={batch_size} docs, concurrency={concurrency}"
    )

    async def run_batch(offset: int, batch: list[str]) -> tuple[list[RerankResult], bool]:
        async with semaphore:
            outcome = await reranker.rerank(query, batch, len(batch))
        if outcome.failed:
            # Keep original order with score 0
            return [RerankResult(index=offset + i, relevance_score=0.0) for i in range(len(batch))], True
        return [
            RerankResult(index=offset + r.index, relevance_score=r.relevance_score)
            for r in outcome.results
        ], False

    batch_results = await asyncio.gather(*(run_batch(offset, batch) for offset, batch in batches))
    failed_batches = sum(1 for _, failed in batch_results if failed)

    if failed_batches == len(batches):
        logger.warning(f"All {len(batches)} rerank batches failed, using fusion order")
        return _degraded(candidates[:top_n])

    merged: list[tuple[RerankResult, bool]] = [
        (result, failed) for results, failed in batch_results for result in results
    ]
    # Failed-batch items bypass min_score so they are not silently dropped
    selected = sorted(
        (item for item in merged if item[1] or item[0].relevance_score >= min_score),
        key=lambda item: item[0].relevance_score,
        reverse=True,
    )[:top_n]

    logger.info(
        f"Rerank merged: {len(merged)} candidates, {failed_batches}/{len(batches)} batches failed, "
        f"selected {len(selected)}"
    )
    return [
        _scored(candidates[result.index], result.relevance_score, failed=failed)
        for result, failed in selected
    ]


def _scored(candidate: RerankCandidate, score: float, failed: bool = False) -> RerankedCandidate:
    return RerankedCandidate(**candidate.model_dump(), rerank_score=score, rerank_failed=failed)


def _degraded(candidates: list[RerankCandidate]) -> list[RerankedCandidate]:
    return [_scored(c, 0.0, failed=True) for c in candidates]
