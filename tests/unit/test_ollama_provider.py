"""
Unit tests for the HTTP embedding providers.

Uses httpx.MockTransport in place of a running Ollama / OpenAI server.
"""

import json

import httpx
import pytest

from memory_graph.config import EmbeddingSettings
from memory_graph.embeddings.factory import create_embedding_provider
from memory_graph.embeddings.ollama import OllamaEmbeddingProvider, status_is_retryable
from memory_graph.embeddings.openai import OpenAIEmbeddingProvider
from memory_graph.exceptions import EmbeddingProviderError


def make_ollama(handler, **kwargs) -> OllamaEmbeddingProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("backoff_multiplier", 0.0)
    return OllamaEmbeddingProvider(base_url="http://ollama.test", model="nomic-embed-text:latest", client=client, **kwargs)


class TestOllamaEmbeddings:
    @pytest.mark.asyncio
    async def test_posts_model_and_prompt(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"embedding": [0.1, 0.2, 0.3]})

        provider = make_ollama(handler)
        assert await provider.generate_embedding("hello") == [0.1, 0.2, 0.3]
        assert seen == [("POST", "/api/embeddings", {"model": "nomic-embed-text:latest", "prompt": "hello"})]
        assert provider.dimension == 3

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        responses = [httpx.Response(500, text="boom"), httpx.Response(200, json={"embedding": [1.0, 0.0]})]

        def handler(request):
            return responses.pop(0)

        provider = make_ollama(handler, max_retries=3)
        assert await provider.generate_embedding("hello") == [1.0, 0.0]
        assert responses == []

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404, text="model not found")

        provider = make_ollama(handler, max_retries=3)
        with pytest.raises(EmbeddingProviderError) as exc_info:
            await provider.generate_embedding("hello")
        assert exc_info.value.status_code == 404
        assert exc_info.value.retryable is False
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider = make_ollama(handler, max_retries=2)
        with pytest.raises(EmbeddingProviderError) as exc_info:
            await provider.generate_embedding("hello")
        assert exc_info.value.code == "CONNECTION_ERROR"

    @pytest.mark.asyncio
    async def test_missing_embedding_field(self):
        provider = make_ollama(lambda request: httpx.Response(200, json={"error": "nope"}), max_retries=1)
        with pytest.raises(EmbeddingProviderError) as exc_info:
            await provider.generate_embedding("hello")
        assert exc_info.value.code == "INVALID_RESPONSE"

    def test_retryable_statuses(self):
        assert status_is_retryable(503)
        assert status_is_retryable(429)
        assert status_is_retryable(408)
        assert not status_is_retryable(400)
        assert not status_is_retryable(404)


class TestOllamaLifecycle:
    @pytest.mark.asyncio
    async def test_health_check_matches_model(self):
        def handler(request):
            assert request.url.path == "/api/tags"
            return httpx.Response(200, json={"models": [{"name": "nomic-embed-text:latest"}]})

        assert await make_ollama(handler).health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_matches_model_prefix(self):
        handler = lambda request: httpx.Response(200, json={"models": [{"name": "nomic-embed-text:v1.5"}]})  # noqa: E731
        assert await make_ollama(handler).health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_model_missing(self):
        handler = lambda request: httpx.Response(200, json={"models": [{"name": "llama3:8b"}]})  # noqa: E731
        assert await make_ollama(handler).health_check() is False

    @pytest.mark.asyncio
    async def test_health_check_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert await make_ollama(handler).health_check() is False

    @pytest.mark.asyncio
    async def test_pull_model_streams_status(self):
        body = b'{"status": "pulling manifest"}\n{"status": "success"}\n'
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, content=body)

        await make_ollama(handler).pull_model()
        assert seen == [("/api/pull", {"name": "nomic-embed-text:latest"})]

    @pytest.mark.asyncio
    async def test_pull_model_error_line(self):
        handler = lambda request: httpx.Response(200, content=b'{"error": "pull model manifest: not found"}\n')  # noqa: E731
        with pytest.raises(EmbeddingProviderError, match="not found"):
            await make_ollama(handler).pull_model()


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_embeddings_request(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, request.headers["Authorization"], json.loads(request.content)))
            return httpx.Response(200, json={"data": [{"embedding": [0.0, 1.0]}]})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = OpenAIEmbeddingProvider(api_key="sk-test", client=client)

        assert await provider.generate_embedding("hello") == [0.0, 1.0]
        assert seen == [("/v1/embeddings", "Bearer sk-test", {"model": "text-embedding-3-small", "input": "hello"})]

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            OpenAIEmbeddingProvider(api_key="")


class TestFactory:
    def test_defaults_to_ollama(self):
        provider = create_embedding_provider(EmbeddingSettings(batch_size=8, max_concurrency=4))
        assert isinstance(provider, OllamaEmbeddingProvider)
        assert provider.batch_size == 8
        assert provider.gate.limit == 4

    def test_openai(self):
        provider = create_embedding_provider(EmbeddingSettings(provider="openai", api_key="sk-test"))
        assert isinstance(provider, OpenAIEmbeddingProvider)
        assert provider.model == "text-embedding-3-small"
