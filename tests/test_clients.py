"""Tests for the embedding and chat model clients."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import numpy as np
import pytest

from heartbridge.core.errors import EmbeddingUnavailable, GenerationFailed
from heartbridge.knowledge.embeddings import EmbeddingClient, truncate_text
from heartbridge.observability import MetricsCollector
from heartbridge.services.llm_client import ChatModelClient


def embedding_response(*vectors):
    return SimpleNamespace(data=[SimpleNamespace(embedding=v) for v in vectors])


def chat_response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


@pytest.fixture
def openai_client() -> MagicMock:
    client = MagicMock()
    client.embeddings.create = AsyncMock(return_value=embedding_response([0.1, 0.2, 0.3]))
    client.chat.completions.create = AsyncMock(return_value=chat_response("Hello"))
    return client


class TestEmbeddingClient:
    """Tests for EmbeddingClient."""

    async def test_embed_returns_vector(self, openai_client):
        embedder = EmbeddingClient(client=openai_client, model="m")

        vector = await embedder.embed("question")

        assert vector.dtype == np.float32
        assert vector.tolist() == pytest.approx([0.1, 0.2, 0.3])
        openai_client.embeddings.create.assert_awaited_once_with(model="m", input=["question"])

    async def test_input_truncated(self, openai_client):
        embedder = EmbeddingClient(client=openai_client, max_chars=10)

        await embedder.embed("x" * 50)

        assert openai_client.embeddings.create.await_args.kwargs["input"] == ["x" * 10]

    def test_truncate_text(self):
        assert truncate_text("abcdef", 3) == "abc"
        assert truncate_text("abc", 0) == "abc"

    async def test_missing_vector_is_unavailable(self, openai_client):
        openai_client.embeddings.create = AsyncMock(return_value=embedding_response(None))

        with pytest.raises(EmbeddingUnavailable):
            await EmbeddingClient(client=openai_client).embed("q")

    async def test_empty_data_is_unavailable(self, openai_client):
        openai_client.embeddings.create = AsyncMock(return_value=SimpleNamespace(data=[]))

        with pytest.raises(EmbeddingUnavailable):
            await EmbeddingClient(client=openai_client).embed("q")

    async def test_api_error_is_unavailable(self, openai_client):
        openai_client.embeddings.create = AsyncMock(side_effect=RuntimeError("502"))
        metrics = MetricsCollector()

        with pytest.raises(EmbeddingUnavailable):
            await EmbeddingClient(client=openai_client, metrics=metrics).embed("q")

        assert 'operation="embed_query",status="500"' in metrics.render_prometheus()

    async def test_timeout_is_unavailable(self, openai_client):
        async def hang(**kwargs):
            await asyncio.sleep(5)

        openai_client.embeddings.create = hang

        with pytest.raises(EmbeddingUnavailable):
            await EmbeddingClient(client=openai_client, timeout_seconds=0.05).embed("q")

    async def test_embed_many_batches(self, openai_client):
        openai_client.embeddings.create = AsyncMock(
            side_effect=lambda model, input: embedding_response(*([[1.0, 0.0]] * len(input)))
        )
        embedder = EmbeddingClient(client=openai_client)

        matrix = await embedder.embed_many([f"t{i}" for i in range(150)])

        assert matrix.shape == (150, 2)
        assert openai_client.embeddings.create.await_count == 2

    async def test_embed_many_empty(self, openai_client):
        matrix = await EmbeddingClient(client=openai_client).embed_many([])

        assert matrix.size == 0
        openai_client.embeddings.create.assert_not_awaited()

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            EmbeddingClient(provider="cohere")

    async def test_google_provider(self):
        with patch("google.generativeai.embed_content", return_value={"embedding": [[0.5, 0.5]]}):
            embedder = EmbeddingClient(provider="google", model="text-embedding-004")
            vector = await embedder.embed("q")

        assert vector.tolist() == pytest.approx([0.5, 0.5])

    def test_from_settings(self, settings):
        embedder = EmbeddingClient.from_settings(settings)

        assert embedder.provider == "openai"
        assert embedder.model == settings.openai_embedding_model
        assert embedder.max_chars == 2000


class TestChatModelClient:
    """Tests for ChatModelClient."""

    async def test_complete(self, openai_client):
        llm = ChatModelClient(client=openai_client, model="gen-model", max_tokens=100)

        reply = await llm.complete("system", "user", temperature=0.9)

        assert reply == "Hello"
        kwargs = openai_client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gen-model"
        assert kwargs["temperature"] == 0.9
        assert kwargs["max_tokens"] == 100
        assert kwargs["messages"] == [
            {"role": "system", "content": "system"},
            {"role": "user", "content": "user"},
        ]

    async def test_model_override(self, openai_client):
        llm = ChatModelClient(client=openai_client, model="gen-model")

        await llm.complete("s", "u", model="aux-model")

        assert openai_client.chat.completions.create.await_args.kwargs["model"] == "aux-model"

    @pytest.mark.parametrize("content", [None, "", "   "])
    async def test_empty_reply_fails(self, openai_client, content):
        openai_client.chat.completions.create = AsyncMock(return_value=chat_response(content))

        with pytest.raises(GenerationFailed):
            await ChatModelClient(client=openai_client).complete("s", "u")

    async def test_malformed_reply_fails(self, openai_client):
        openai_client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(choices=[]))

        with pytest.raises(GenerationFailed, match="malformed"):
            await ChatModelClient(client=openai_client).complete("s", "u")

    async def test_api_error_fails(self, openai_client):
        openai_client.chat.completions.create = AsyncMock(side_effect=RuntimeError("down"))

        with pytest.raises(GenerationFailed):
            await ChatModelClient(client=openai_client).complete("s", "u")

    async def test_timeout_fails(self, openai_client):
        async def hang(**kwargs):
            await asyncio.sleep(5)

        openai_client.chat.completions.create = hang

        with pytest.raises(GenerationFailed, match="timed out"):
            await ChatModelClient(client=openai_client, timeout_seconds=0.05).complete("s", "u")
