"""
Embedder interface for the dense recall stages.

A recall round embeds all of its query segments in one ``batch_embed`` call,
so providers implement the batch path and get ``embed`` for free. Stored
vectors are only compared against query vectors whose ``fingerprint`` matches
the one recorded when the vectors were written.
"""

from abc import ABC, abstractmethod

from story_recall.utils.exceptions import ValidationError


class Embedder(ABC):
    """Turns query and memory text into dense vectors."""

    provider: str = "base"
    model: str = ""
    dimension: int | None = None

    async def embed(self, text: str, **kwargs) -> list[float]:
        """
        Embed a single text through ``batch_embed``.

        Raises:
            ValidationError: If the text is blank
            EmbeddingError: If the provider call fails
        """
        if not text or not text.strip():
            raise ValidationError("Cannot embed blank text", {"provider": self.provider})
        vectors = await self.batch_embed([text], **kwargs)
        return vectors[0]

    @abstractmethod
    async def batch_embed(self, texts: list[str], batch_size: int = 32, **kwargs) -> list[list[float]]:
        """
        Embed several texts.

        Args:
            texts: Segment texts, in the order their weights were computed
            batch_size: Upper bound on texts per provider request
            **kwargs: Provider request options

        Returns:
            One vector per input text, in input order

        Raises:
            EmbeddingError: If any request fails or returns malformed data
        """

    @property
    def fingerprint(self) -> str:
        """
        Engine identity stored next to the vectors it produced.

        Returns:
            "provider:model:dimension" with the model's org prefix dropped,
            e.g. "siliconflow:bge-m3:1024"
        """
        short_model = self.model.rsplit("/", 1)[-1].lower()
        return f"{self.provider}:{short_model}:{self.dimension or 'auto'}"

    async def close(self):
        """Release HTTP clients; no-op for providers without one."""
