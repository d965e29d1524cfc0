"""
Embeddings through the OpenAI SDK, or any service speaking its protocol.
"""

from openai import AsyncOpenAI

from story_recall.core.embeddings.base import Embedder
from story_recall.utils.exceptions import EmbeddingError, ValidationError
from story_recall.utils.logger import get_logger

logger = get_logger(__name__)

KNOWN_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class OpenAIEmbedder(Embedder):
    """
    OpenAI embedding models (text-embedding-3-*).

    ``base_url`` points the SDK at OpenAI-compatible gateways; the dimension
    falls back to the published size of the official models.
    """

    provider = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str | None = None,
        timeout: float = 10.0,
        dimension: int | None = None,
    ):
        self.model = model
        self.dimension = dimension or KNOWN_DIMENSIONS.get(model)
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    async def batch_embed(self, texts: list[str], batch_size: int = 2048, **kwargs) -> list[list[float]]:
        """
        Embed texts, at most ``batch_size`` (API limit 2048) per request.

        Raises:
            ValidationError: If ``texts`` is empty
            EmbeddingError: If a request fails or comes back empty
        """
        if not texts:
            raise ValidationError("No texts to embed", {"provider": self.provider})

        vectors: list[list[float]] = []
        for start in range(0, len(texts), batch_size):
            chunk = texts[start : start + batch_size]
            try:
                response = await self.client.embeddings.create(model=self.model, input=chunk, **kwargs)
            except Exception as e:
                logger.error(
                    f"OpenAI embeddings request failed: {e}",
                    extra={"model": self.model, "offset": start, "num_texts": len(chunk)},
                )
                raise EmbeddingError(f"OpenAI embeddings request failed: {e}", {"model": self.model}) from e

            if not response.data:
                raise EmbeddingError("OpenAI returned no embeddings", {"model": self.model, "offset": start})

            # The API may answer out of order; index ties each vector to its input
            vectors.extend(item.embedding for item in sorted(response.data, key=lambda item: item.index))
        return vectors

    async def close(self):
        await self.client.close()
