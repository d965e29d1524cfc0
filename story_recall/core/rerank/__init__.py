"""
Cross-encoder rerank layer.

- Reranker: provider interface returning RerankOutcome(results, failed)
- SiliconFlowReranker: httpx client for the SiliconFlow rerank API
- rerank_candidates: batched, concurrency-capped rerank with degradation
"""

from story_recall.core.rerank.base import (
    DisabledReranker,
    Reranker,
    RerankOutcome,
    RerankResult,
)
from story_recall.core.rerank.batching import (
    RerankCandidate,
    RerankedCandidate,
    rerank_candidates,
)
from story_recall.core.rerank.siliconflow import SiliconFlowReranker

__all__ = [
    "Reranker",
    "DisabledReranker",
    "RerankOutcome",
    "RerankResult",
    "RerankCandidate",
    "RerankedCandidate",
    "rerank_candidates",
    "SiliconFlowReranker",
]
