"""
SiliconFlow embedder over the OpenAI-compatible /v1/embeddings endpoint.

Several API keys may be configured; each request uses the next key in turn so
concurrent calls spread evenly across keys.
"""

import itertools
import re

import httpx

from story_recall.core.embeddings.base import Embedder
from story_recall.utils.exceptions import ConfigurationError, EmbeddingError
from story_recall.utils.logger import get_logger

logger = get_logger(__name__)

_KEY_SPLIT_RE = re.compile(r"[,;|\n]+")


def parse_api_keys(raw: str | None) -> list[str]:
    """
    Split a key string on commas, semicolons, pipes or newlines.

    Args:
        raw: Raw key setting, e.g. "sk-aaa,sk-bbb"

    Returns:
        Non-empty, stripped keys in configured order
    """
    if not raw:
        return []
    return [key.strip() for key in _KEY_SPLIT_RE.split(raw) if key.strip()]


def mask_key(key: str) -> str:
    return f"{key[:6]}***{key[-4:]}" if len(key) > 10 else "***"


class KeyRotator:
    """Round-robin over a fixed list of API keys."""

    def __init__(self, keys: list[str]):
        self.keys = list(keys)
        self._cycle = itertools.cycle(range(len(self.keys))) if self.keys else None

    def __len__(self) -> int:
        return len(self.keys)

    def next_key(self) -> str | None:
        if self._cycle is None:
            return None
        idx = next(self._cycle)
        if len(self.keys) > 1:
            logger.debug(f"Using key {idx + 1}/{len(self.keys)}: {mask_key(self.keys[idx])}")
        return self.keys[idx]


class SiliconFlowEmbedder(Embedder):
    """
    SiliconFlow embedder (BAAI/bge-m3 by default, 1024 dimensions).

    All texts of one call are sent in a single request; results are reordered
    by the index field returned by the service.
    """

    provider = "siliconflow"

    def __init__(
        self,
        api_key: str | None,
        model: str = "BAAI/bge-m3",
        base_url: str = "https://api.siliconflow.cn",
        timeout: float = 10.0,
        dimension: int | None = 1024,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize SiliconFlow embedder.

        Args:
            api_key: One or more API keys separated by , ; | or newlines
            model: Embedding model name
            base_url: Service base URL
            timeout: Default request timeout in seconds
            dimension: Embedding dimension if known
            client: Optional pre-built httpx client (tests inject a mock transport)
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.dimension = dimension
        self.keys = KeyRotator(parse_api_keys(api_key))
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def batch_embed(
        self, texts: list[str], batch_size: int = 64, timeout: float | None = None, **kwargs
    ) -> list[list[float]]:
        """
        Embed texts with one request per batch.

        Args:
            texts: Texts to embed
            batch_size: Texts per request
            timeout: Per-request timeout override in seconds

        Returns:
            Embedding vectors in input order

        Raises:
            ConfigurationError: If no API key is configured
            EmbeddingError: If a request fails or returns malformed data
        """
        if not texts:
            return []

        embeddings: list[list[float]] = []
        for i in range(0, len(texts), batch_size):
            batch = texts[i : i + batch_size]
            embeddings.extend(await self._request(batch, timeout or self.timeout))
        return embeddings

    async def _request(self, texts: list[str], timeout: float) -> list[list[float]]:
        key = self.keys.next_key()
        if not key:
            raise ConfigurationError("SiliconFlow API key is not configured")

        try:
            response = await self.client.post(
                f"{self.base_url}/v1/embeddings",
                headers={"Authorization": f"Bearer {key}"},
                json={"model": self.model, "input": texts},
                timeout=timeout,
            )
            response.raise_for_status()
            data = response.json().get("data") or []
        except httpx.HTTPStatusError as e:
            body = e.response.text[:200]
            logger.error(
                f"SiliconFlow embedding HTTP {e.response.status_code}: {body}",
                extra={"model": self.model, "status": e.response.status_code},
            )
            raise EmbeddingError(
                f"Embedding {e.response.status_code}: {body}",
                {"status": e.response.status_code},
            ) from e
        except Exception as e:
            logger.error(
                f"SiliconFlow embedding error: {e}",
                extra={"model": self.model, "num_texts": len(texts), "error_type": type(e).__name__},
            )
            raise EmbeddingError(f"SiliconFlow embedding error: {e}") from e

        if len(data) != len(texts):
            raise EmbeddingError(
                f"SiliconFlow returned {len(data)} embeddings for {len(texts)} texts"
            )

        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [list(item.get("embedding") or []) for item in ordered]

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
