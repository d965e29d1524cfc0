"""
Tests for embedding providers.

Uses httpx.MockTransport so no network access is needed.

Tests cover:
1. API key parsing and round-robin rotation
2. Request shape and response ordering
3. Error handling
4. Engine fingerprint
"""

import json

import httpx
import pytest

from story_recall.core.embeddings import SiliconFlowEmbedder, parse_api_keys
from story_recall.core.embeddings.siliconflow import KeyRotator, mask_key
from story_recall.utils.exceptions import ConfigurationError, EmbeddingError, ValidationError


def make_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def embedding_handler(seen: list[httpx.Request]):
    """Echo one 2-d vector per input, returned in reverse index order."""

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = json.loads(request.content)
        data = [
            {"index": i, "embedding": [float(i), float(len(text))]}
            for i, text in enumerate(body["input"])
        ]
        return httpx.Response(200, json={"data": list(reversed(data))})

    return handler


class TestApiKeys:
    """Tests for key parsing and rotation."""

    def test_parse_separators(self):
        assert parse_api_keys("sk-a, sk-b;sk-c|sk-d\nsk-e") == ["sk-a", "sk-b", "sk-c", "sk-d", "sk-e"]

    def test_parse_empty(self):
        assert parse_api_keys(None) == []
        assert parse_api_keys(" , ;") == []

    def test_round_robin(self):
        rotator = KeyRotator(["k1", "k2", "k3"])
        assert [rotator.next_key() for _ in range(4)] == ["k1", "k2", "k3", "k1"]

    def test_no_keys(self):
        assert KeyRotator([]).next_key() is None

    def test_mask(self):
        assert mask_key("sk-1234567890abcd") == "sk-123***abcd"
        assert mask_key("short") == "***"


class TestSiliconFlowEmbedder:
    """Tests for the SiliconFlow client."""

    @pytest.mark.asyncio
    async def test_batch_embed_orders_by_index(self):
        seen: list[httpx.Request] = []
        embedder = SiliconFlowEmbedder("sk-test", client=make_client(embedding_handler(seen)))

        vectors = await embedder.batch_embed(["a", "bbb"])

        assert vectors == [[0.0, 1.0], [1.0, 3.0]]
        assert len(seen) == 1
        assert seen[0].url.path == "/v1/embeddings"
        assert seen[0].headers["Authorization"] == "Bearer sk-test"
        assert json.loads(seen[0].content)["model"] == "BAAI/bge-m3"

    @pytest.mark.asyncio
    async def test_keys_rotate_per_request(self):
        seen: list[httpx.Request] = []
        embedder = SiliconFlowEmbedder("k1,k2", client=make_client(embedding_handler(seen)))

        await embedder.embed("first")
        await embedder.embed("second")
        await embedder.embed("third")

        assert [r.headers["Authorization"] for r in seen] == ["Bearer k1", "Bearer k2", "Bearer k1"]

    @pytest.mark.asyncio
    async def test_batches_split(self):
        seen: list[httpx.Request] = []
        embedder = SiliconFlowEmbedder("sk-test", client=make_client(embedding_handler(seen)))

        vectors = await embedder.batch_embed(["a", "b", "c"], batch_size=2)

        assert len(vectors) == 3
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_empty_input(self):
        embedder = SiliconFlowEmbedder("sk-test", client=make_client(embedding_handler([])))
        assert await embedder.batch_embed([]) == []

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self):
        embedder = SiliconFlowEmbedder("sk-test", client=make_client(embedding_handler([])))
        with pytest.raises(ValidationError):
            await embedder.embed("   ")

    @pytest.mark.asyncio
    async def test_missing_key(self):
        embedder = SiliconFlowEmbedder(None, client=make_client(embedding_handler([])))
        with pytest.raises(ConfigurationError):
            await embedder.batch_embed(["text"])

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, text="rate limited")

        embedder = SiliconFlowEmbedder("sk-test", client=make_client(handler))
        with pytest.raises(EmbeddingError) as exc_info:
            await embedder.batch_embed(["text"])
        assert exc_info.value.context["status"] == 429

    @pytest.mark.asyncio
    async def test_count_mismatch(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": []})

        embedder = SiliconFlowEmbedder("sk-test", client=make_client(handler))
        with pytest.raises(EmbeddingError):
            await embedder.batch_embed(["text"])

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        embedder = SiliconFlowEmbedder("sk-test", client=make_client(handler))
        with pytest.raises(EmbeddingError):
            await embedder.batch_embed(["text"])

    def test_fingerprint(self):
        embedder = SiliconFlowEmbedder("sk-test", client=make_client(embedding_handler([])))
        assert embedder.fingerprint == "siliconflow:bge-m3:1024"

    def test_fingerprint_auto_dimension(self):
        embedder = SiliconFlowEmbedder(
            "sk-test", model="Org/Other-Model", dimension=None, client=make_client(embedding_handler([]))
        )
        assert embedder.fingerprint == "siliconflow:other-model:auto"

    @pytest.mark.asyncio
    async def test_close(self):
        client = make_client(embedding_handler([]))
        embedder = SiliconFlowEmbedder("sk-test", client=client)
        await embedder.close()
        assert client.is_closed
