"""
Embeddings from a local Ollama server (bge-m3, nomic-embed-text, ...).
"""

import asyncio

import ollama

from story_recall.core.embeddings.base import Embedder
from story_recall.utils.exceptions import EmbeddingError
from story_recall.utils.logger import get_logger

logger = get_logger(__name__)


class OllamaEmbedder(Embedder):
    """
    Ollama embedder.

    The embeddings endpoint takes one prompt per call, so a batch becomes
    ``batch_size`` concurrent requests at a time.
    """

    provider = "ollama"

    def __init__(self, host: str = "http://localhost:11434", model: str = "bge-m3", dimension: int | None = None):
        self.host = host
        self.model = model
        self.dimension = dimension
        self.client = ollama.AsyncClient(host=host)

    async def _embed_prompt(self, text: str, **kwargs) -> list[float]:
        try:
            response = await self.client.embeddings(model=self.model, prompt=text, **kwargs)
        except Exception as e:
            logger.error(
                f"Ollama embeddings request failed: {e}",
                extra={"model": self.model, "host": self.host, "error_type": type(e).__name__},
            )
            raise EmbeddingError(f"Ollama embeddings request failed: {e}", {"host": self.host}) from e

        if not response or "embedding" not in response:
            raise EmbeddingError("Ollama response has no embedding", {"model": self.model})
        return list(response["embedding"])

    async def batch_embed(self, texts: list[str], batch_size: int = 32, **kwargs) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(texts), batch_size):
            window = texts[start : start + batch_size]
            vectors.extend(await asyncio.gather(*(self._embed_prompt(t, **kwargs) for t in window)))
        return vectors
