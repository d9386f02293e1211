"""Tests for the platform client and capability clients over mocked HTTP."""

import json

import httpx
import numpy as np
import pytest

from storerag.common.errors import EmbeddingFailure, GenerationFailure, NeedsReconnection, PlatformError, RateLimited
from storerag.common.retry import RetryConfig
from storerag.integrations.capabilities import HttpEmbeddingClient, HttpGenerationClient
from storerag.integrations.platform import Credentials, TiendaNubeClient, TransientPlatformError

FAST_RETRY = RetryConfig(max_attempts=3, base_delay=0, jitter=False, retryable_exceptions=(RateLimited, TransientPlatformError))


def platform_client(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TiendaNubeClient(base_url="https://api.test/v1", retry_config=FAST_RETRY, client=client, **kwargs)


@pytest.fixture
def creds():
    return Credentials(platform_store_id="77", access_token="old", refresh_token="refresh-1")


class TestPlatformClient:
    @pytest.mark.asyncio
    async def test_fetch_sends_auth_header_and_pagination(self, creds):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[{"id": 1}, {"id": 2}, "garbage"])

        client = platform_client(handler)
        items = await client.fetch_entities(creds, "products", page=2, per_page=10)

        assert items == [{"id": 1}, {"id": 2}]
        request = seen[0]
        assert request.url.path == "/v1/77/products"
        assert request.url.params["page"] == "2"
        assert request.headers["Authentication"] == "bearer old"

    @pytest.mark.asyncio
    async def test_store_endpoint_returns_single_object(self, creds):
        client = platform_client(lambda request: httpx.Response(200, json={"id": 77, "name": {"es": "Demo"}}))
        assert await client.fetch_all(creds, "store") == [{"id": 77, "name": {"es": "Demo"}}]

    @pytest.mark.asyncio
    async def test_pagination_stops_on_short_page_or_404(self, creds):
        def handler(request):
            page = int(request.url.params["page"])
            if page == 1:
                return httpx.Response(200, json=[{"id": i} for i in range(2)])
            return httpx.Response(404)

        client = platform_client(handler)
        assert len(await client.fetch_all(creds, "orders", per_page=2)) == 2

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, creds):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                return httpx.Response(429, headers={"Retry-After": "0"})
            return httpx.Response(200, json=[])

        client = platform_client(handler)
        assert await client.fetch_entities(creds, "customers") == []
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_persistent_rate_limit_surfaces(self, creds):
        client = platform_client(lambda request: httpx.Response(429, headers={"Retry-After": "0"}))
        with pytest.raises(RateLimited):
            await client.fetch_entities(creds, "products")

    @pytest.mark.asyncio
    async def test_unauthorized_refreshes_once(self, creds):
        def handler(request):
            if request.headers["Authentication"] == "bearer old":
                return httpx.Response(401)
            return httpx.Response(200, json=[{"id": 5}])

        async def refresher(credentials):
            return Credentials(credentials.platform_store_id, "new", "refresh-2")

        client = platform_client(handler, token_refresher=refresher)
        assert await client.fetch_entities(creds, "products") == [{"id": 5}]
        assert creds.access_token == "new"
        assert creds.refresh_token == "refresh-2"

    @pytest.mark.asyncio
    async def test_unauthorized_without_refresher_needs_reconnection(self, creds):
        client = platform_client(lambda request: httpx.Response(401))
        with pytest.raises(NeedsReconnection):
            await client.fetch_entities(creds, "products")

    @pytest.mark.asyncio
    async def test_rejected_after_refresh_needs_reconnection(self, creds):
        async def refresher(credentials):
            return Credentials(credentials.platform_store_id, "still-bad")

        client = platform_client(lambda request: httpx.Response(403), token_refresher=refresher)
        with pytest.raises(NeedsReconnection):
            await client.fetch_entities(creds, "products")

    @pytest.mark.asyncio
    async def test_unexpected_payload(self, creds):
        client = platform_client(lambda request: httpx.Response(200, json="nope"))
        with pytest.raises(PlatformError):
            await client.fetch_entities(creds, "products")

    @pytest.mark.asyncio
    async def test_unknown_entity_type(self, creds):
        client = platform_client(lambda request: httpx.Response(200, json=[]))
        with pytest.raises(PlatformError):
            await client.fetch_entities(creds, "coupons")

    def test_credentials_repr_hides_token(self, creds):
        assert "old" not in repr(creds)
        assert Credentials.from_dict(creds.to_dict()).access_token == "old"


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestCapabilities:
    @pytest.mark.asyncio
    async def test_embed_batch(self):
        def handler(request):
            body = json.loads(request.content)
            assert body == {"texts": ["a", "b"], "model": "m1"}
            return httpx.Response(200, json={"vectors": [[1, 0], [0, 1]]})

        embedder = HttpEmbeddingClient("http://embed.test", model="m1", client=mock_client(handler), base_delay=0)
        await embedder._http.circuit_breaker.force_close()
        vectors = await embedder.embed_batch(["a", "b"])
        assert [v.tolist() for v in vectors] == [[1.0, 0.0], [0.0, 1.0]]
        assert vectors[0].dtype == np.float32

    @pytest.mark.asyncio
    async def test_embedding_retries_server_errors(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, json={"vectors": [[0.5, 0.5]]})

        embedder = HttpEmbeddingClient("http://embed.test", client=mock_client(handler), base_delay=0)
        await embedder._http.circuit_breaker.force_close()
        assert (await embedder.embed("hola")).tolist() == [0.5, 0.5]
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_malformed_embedding_response(self):
        embedder = HttpEmbeddingClient(
            "http://embed.test", client=mock_client(lambda request: httpx.Response(200, json={"vectors": []})), base_delay=0
        )
        await embedder._http.circuit_breaker.force_close()
        with pytest.raises(EmbeddingFailure):
            await embedder.embed("hola")

    @pytest.mark.asyncio
    async def test_generation(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["context"] == ["doc"]
            assert body["system"] == "sistema"
            return httpx.Response(200, json={"text": "Tenés 3 productos"})

        generator = HttpGenerationClient("http://gen.test", client=mock_client(handler), base_delay=0)
        await generator._http.circuit_breaker.force_close()
        assert await generator.generate("que productos tengo", ["doc"], system="sistema") == "Tenés 3 productos"

    @pytest.mark.asyncio
    async def test_generation_failure_carries_fallback(self):
        generator = HttpGenerationClient(
            "http://gen.test",
            fallback_text="Probá más tarde",
            client=mock_client(lambda request: httpx.Response(500)),
            max_attempts=2,
            base_delay=0,
        )
        await generator._http.circuit_breaker.force_close()
        with pytest.raises(GenerationFailure) as exc_info:
            await generator.generate("hola", [])
        assert exc_info.value.fallback_text == "Probá más tarde"
        await generator._http.circuit_breaker.force_close()

    @pytest.mark.asyncio
    async def test_empty_generation_is_a_failure(self):
        generator = HttpGenerationClient(
            "http://gen.test", client=mock_client(lambda request: httpx.Response(200, json={"text": "  "})), base_delay=0
        )
        await generator._http.circuit_breaker.force_close()
        with pytest.raises(GenerationFailure):
            await generator.generate("hola", [])
