"""
Abstract base class for cross-encoder rerank providers.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel, Field


class RerankResult(BaseModel):
    """Relevance score for one input document (index into the input list)."""

    index: int = Field(..., ge=0)
    relevance_score: float = 0.0


class RerankOutcome(BaseModel):
    """
    Result of one rerank call.

    When ``failed`` is set the results carry score 0 in input order and the
    caller should fall back to its own ordering.
    """

    results: list[RerankResult] = Field(default_factory=list)
    failed: bool = False

    @classmethod
    def failure(cls, count: int) -> "RerankOutcome":
        return cls(
            results=[RerankResult(index=i, relevance_score=0.0) for i in range(count)],
            failed=True,
        )


class Reranker(ABC):
    """
    Abstract base for rerank providers.

    Implementations never raise for service failures: they log and return a
    failed outcome so the pipeline can degrade to fusion order.
    """

    @abstractmethod
    async def rerank(self, query: str, documents: list[str], top_n: int) -> RerankOutcome:
        """
        Score documents against a query.

        Args:
            query: Query text
            documents: Candidate documents
            top_n: Maximum number of results to return

        Returns:
            RerankOutcome with results ranked by relevance, indices into documents
        """
        pass

    @abstractmethod
    async def close(self):
        """Close any open connections."""
        pass


class DisabledReranker(Reranker):
    """Reranker used when no rerank service is configured; always degrades."""

    async def rerank(self, query: str, documents: list[str], top_n: int) -> RerankOutcome:
        return RerankOutcome.failure(min(top_n, len(documents)))

    async def close(self):
        pass
