"""
Embedder abstraction layer for text embeddings.

Supported providers:
- SiliconFlow (httpx, multi-key round-robin)
- Ollama (native SDK)
- OpenAI (official SDK)
"""

from story_recall.core.embeddings.base import Embedder
from story_recall.core.embeddings.ollama import OllamaEmbedder
from story_recall.core.embeddings.openai import OpenAIEmbedder
from story_recall.core.embeddings.siliconflow import SiliconFlowEmbedder, parse_api_keys

__all__ = [
    "Embedder",
    "OllamaEmbedder",
    "OpenAIEmbedder",
    "SiliconFlowEmbedder",
    "parse_api_keys",
]
