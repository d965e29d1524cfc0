"""
Factory for creating rerank providers.
"""

from story_recall.config import RerankerConfig
from story_recall.core.rerank.base import DisabledReranker, Reranker
from story_recall.core.rerank.siliconflow import SiliconFlowReranker
from story_recall.utils.exceptions import ConfigurationError


class RerankerFactory:
    """Factory for creating rerank providers from configuration."""

    @staticmethod
    def create(config: RerankerConfig) -> Reranker:
        """
        Create reranker from configuration.

        Args:
            config: Reranker configuration

        Returns:
            Reranker instance ("none" gives a reranker that always reports failure,
            so evidence keeps fusion order)

        Raises:
            ConfigurationError: If the provider is unknown
        """
        if config.provider == "siliconflow":
            return SiliconFlowReranker(
                api_key=config.api_key,
                url=config.url,
                model=config.model,
                timeout=config.timeout,
                max_documents=config.max_documents,
            )
        elif config.provider == "none":
            return DisabledReranker()
        else:
            raise ConfigurationError(f"Unsupported reranker provider: {config.provider}")
