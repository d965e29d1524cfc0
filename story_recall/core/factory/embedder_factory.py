"""
Builds the query embedder named by ``EmbedderConfig.provider``.
"""

from collections.abc import Callable

from story_recall.config import EmbedderConfig
from story_recall.core.embeddings.base import Embedder
from story_recall.core.embeddings.ollama import OllamaEmbedder
from story_recall.core.embeddings.openai import OpenAIEmbedder
from story_recall.core.embeddings.siliconflow import SiliconFlowEmbedder
from story_recall.utils.exceptions import ConfigurationError


def _siliconflow(config: EmbedderConfig) -> Embedder:
    # Missing keys are reported per request so a keyless context can still be built
    return SiliconFlowEmbedder(
        api_key=config.api_key,
        model=config.model,
        base_url=config.base_url,
        timeout=config.timeout,
        dimension=config.dimension,
    )


def _ollama(config: EmbedderConfig) -> Embedder:
    return OllamaEmbedder(host=config.base_url, model=config.model, dimension=config.dimension)


def _openai(config: EmbedderConfig) -> Embedder:
    if not config.api_key:
        raise ConfigurationError("OpenAI embedder needs an API key", {"model": config.model})
    return OpenAIEmbedder(
        api_key=config.api_key,
        model=config.model,
        base_url=config.base_url,
        timeout=config.timeout,
        dimension=config.dimension,
    )


class EmbedderFactory:
    """Creates embedders from configuration."""

    BUILDERS: dict[str, Callable[[EmbedderConfig], Embedder]] = {
        "siliconflow": _siliconflow,
        "ollama": _ollama,
        "openai": _openai,
    }

    @staticmethod
    def create(config: EmbedderConfig) -> Embedder:
        """
        Args:
            config: Embedder section of the recall config

        Returns:
            An embedder whose fingerprint reflects the configured model and dimension

        Raises:
            ConfigurationError: If the provider is unknown or lacks a required key
        """
        builder = EmbedderFactory.BUILDERS.get(config.provider)
        if builder is None:
            raise ConfigurationError(
                f"Unsupported embedder provider: {config.provider}",
                {"known": sorted(EmbedderFactory.BUILDERS)},
            )
        return builder(config)
