"""
SiliconFlow cross-encoder reranker (BAAI/bge-reranker-v2-m3 by default).
"""

import time

import httpx

from story_recall.core.embeddings.siliconflow import KeyRotator, parse_api_keys
from story_recall.core.rerank.base import Reranker, RerankOutcome, RerankResult
from story_recall.utils.exceptions import RerankError
from story_recall.utils.logger import get_logger

logger = get_logger(__name__)


class SiliconFlowReranker(Reranker):
    """
    HTTP client for the /v1/rerank endpoint.

    Documents beyond ``max_documents`` are dropped; blank documents are not
    sent and result indices are mapped back to the caller's list.
    """

    def __init__(
        self,
        api_key: str | None,
        url: str = "https://api.siliconflow.cn/v1/rerank",
        model: str = "BAAI/bge-reranker-v2-m3",
        timeout: float = 15.0,
        max_documents: int = 100,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize reranker.

        Args:
            api_key: One or more API keys separated by , ; | or newlines
            url: Rerank endpoint
            model: Rerank model name
            timeout: Request timeout in seconds
            max_documents: Service limit on documents per request
            client: Optional pre-built httpx client
        """
        self.url = url
        self.model = model
        self.timeout = timeout
        self.max_documents = max_documents
        self.keys = KeyRotator(parse_api_keys(api_key))
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def rerank(self, query: str, documents: list[str], top_n: int) -> RerankOutcome:
        if not query or not query.strip():
            logger.warning("Rerank skipped: empty query")
            return RerankOutcome.failure(len(documents))

        if not documents:
            return RerankOutcome()

        key = self.keys.next_key()
        if not key:
            logger.warning("Rerank skipped: API key is not configured")
            return RerankOutcome.failure(len(documents))

        truncated = documents[: self.max_documents]
        if len(documents) > self.max_documents:
            logger.warning(
                f"Rerank documents truncated: {len(documents)} > {self.max_documents}",
                extra={"num_documents": len(documents)},
            )

        valid_docs: list[str] = []
        index_map: list[int] = []
        for i, doc in enumerate(truncated):
            text = (doc or "").strip()
            if text:
                valid_docs.append(text)
                index_map.append(i)

        if not valid_docs:
            logger.warning("Rerank skipped: no non-empty documents")
            return RerankOutcome()

        start = time.perf_counter()
        try:
            raw_results = await self._post(key, query, valid_docs, min(top_n, len(valid_docs)))
        except RerankError as e:
            logger.warning(
                f"Rerank failed, falling back to input order: {e.message}",
                extra={"model": self.model, **e.context},
            )
            return RerankOutcome.failure(min(top_n, len(documents)))

        results = [
            RerankResult(
                index=index_map[item["index"]],
                relevance_score=float(item.get("relevance_score") or 0.0),
            )
            for item in raw_results
            if 0 <= item.get("index", -1) < len(index_map)
        ]
        elapsed = round((time.perf_counter() - start) * 1000)
        logger.info(
            f"Rerank done: {len(valid_docs)} docs -> {len(results)} selected ({elapsed}ms)"
        )
        return RerankOutcome(results=results, failed=False)

    async def _post(self, key: str, query: str, documents: list[str], top_n: int) -> list[dict]:
        try:
            response = await self.client.post(
                self.url,
                headers={"Authorization": f"Bearer {key}"},
                json={
                    "model": self.model,
                    "query": query,
                    "documents": documents,
                    "top_n": top_n,
                    "return_documents": False,
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json().get("results") or []
        except httpx.TimeoutException as e:
            raise RerankError("Rerank timed out", {"timeout": self.timeout}) from e
        except httpx.HTTPStatusError as e:
            raise RerankError(
                f"Rerank API {e.response.status_code}: {e.response.text[:200]}",
                {"status": e.response.status_code},
            ) from e
        except Exception as e:
            raise RerankError(f"Rerank error: {e}", {"error_type": type(e).__name__}) from e

    async def close(self):
        await self.client.aclose()
