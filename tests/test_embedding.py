"""Tests for embedding providers and vector helpers."""

import json
from unittest.mock import MagicMock

import httpx
import numpy as np
import pytest

from scoped_memory.config import EmbeddingConfig, MemoryConfig
from scoped_memory.embedding import (
    ApiEmbeddingService,
    EmbeddingService,
    create_embedding_provider,
)
from scoped_memory.exceptions import EmbeddingFailure
from scoped_memory.memory_service import MemoryService


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_serialize_round_trip():
    blob = EmbeddingService.serialize_embedding([0.5, -1.25, 3.0])
    assert len(blob) == 12
    assert EmbeddingService.deserialize_embedding(blob) == [0.5, -1.25, 3.0]


@pytest.mark.parametrize(
    "a, b, expected",
    [
        ([1.0, 0.0], [1.0, 0.0], 1.0),
        ([1.0, 0.0], [0.0, 2.0], 0.0),
        ([1.0, 1.0], [-1.0, -1.0], -1.0),
        ([1.0, 0.0], [1.0, 0.0, 0.0], 0.0),
        ([0.0, 0.0], [1.0, 0.0], 0.0),
        ([], [], 0.0),
    ],
)
def test_cosine_similarity(a, b, expected):
    assert EmbeddingService.cosine_similarity(a, b) == pytest.approx(expected)


# ---------------------------------------------------------------------------
# Local model
# ---------------------------------------------------------------------------


class TestEmbeddingService:
    def make_service(self, vectors):
        service = EmbeddingService(EmbeddingConfig(dimension=3))
        model = MagicMock()
        model.encode.return_value = np.asarray(vectors, dtype=np.float32)
        service._model = model
        return service, model

    async def test_embed_uses_model(self):
        service, model = self.make_service([[0.0, 0.6, 0.8]])

        vector = await service.embed("hello")

        assert vector == pytest.approx([0.0, 0.6, 0.8])
        model.encode.assert_called_once()
        assert model.encode.call_args.kwargs["normalize_embeddings"] is True

    def test_encode_empty_input_skips_model(self):
        service, model = self.make_service([])
        assert service.encode([]) == []
        model.encode.assert_not_called()

    async def test_model_errors_become_embedding_failure(self):
        service, model = self.make_service([[1.0, 0.0, 0.0]])
        model.encode.side_effect = RuntimeError("CUDA out of memory")

        with pytest.raises(EmbeddingFailure):
            await service.embed("hello")

    def test_dimension_from_config_before_load(self):
        assert EmbeddingService(EmbeddingConfig(dimension=768)).dimension == 768


# ---------------------------------------------------------------------------
# HTTP provider
# ---------------------------------------------------------------------------


def api_config(**kwargs):
    base = dict(
        provider="api", api_url="https://embed.example/v1/embeddings",
        api_key="secret", model="text-embedding-3-small", dimension=3,
    )
    base.update(kwargs)
    return EmbeddingConfig(**base)


class TestApiEmbeddingService:
    async def test_posts_openai_style_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3, 0.4]}]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            service = ApiEmbeddingService(api_config(), client=client)
            vector = await service.embed("hello")

        assert vector == [0.1, 0.2, 0.3]
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {
            "input": "hello", "model": "text-embedding-3-small", "dimensions": 3,
        }

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, json={"error": "boom"}),
            httpx.Response(200, json={"data": []}),
            httpx.Response(200, json={"data": [{"embedding": []}]}),
        ],
    )
    async def test_bad_responses_raise_embedding_failure(self, response):
        transport = httpx.MockTransport(lambda request: response)
        async with httpx.AsyncClient(transport=transport) as client:
            service = ApiEmbeddingService(api_config(), client=client)
            with pytest.raises(EmbeddingFailure):
                await service.embed("hello")

    def test_requires_url_and_key(self):
        with pytest.raises(ValueError):
            ApiEmbeddingService(api_config(api_key=""))

    async def test_owned_client_is_reused_and_closed(self):
        service = ApiEmbeddingService(api_config())
        client = service._get_client()

        assert service._get_client() is client
        await service.close()
        assert client.is_closed

    async def test_injected_client_is_left_open(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200))
        async with httpx.AsyncClient(transport=transport) as client:
            service = ApiEmbeddingService(api_config(), client=client)
            await service.close()
            assert not client.is_closed


def test_create_embedding_provider():
    assert isinstance(create_embedding_provider(api_config()), ApiEmbeddingService)
    assert isinstance(create_embedding_provider(EmbeddingConfig()), EmbeddingService)


async def test_service_closes_the_embedder_it_built():
    config = MemoryConfig(
        storage={"backend": "memory"},
        embedding=api_config().model_dump(),
    )
    service = MemoryService(config)
    client = service._embedder._get_client()

    await service.close()

    assert client.is_closed
