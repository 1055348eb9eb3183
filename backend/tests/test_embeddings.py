"""Tests for embedding providers and the retry policy."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from coach_rag.core.config import Settings
from coach_rag.core.exceptions import EmbeddingUnavailable
from coach_rag.knowledge.embeddings import (
    GoogleEmbeddingProvider,
    OpenAIEmbeddingProvider,
    RetryPolicy,
    build_embedding_provider,
    embed_with_policy,
)


def _openai_client(embedding=None, error=None):
    client = MagicMock()
    if error is not None:
        client.embeddings.create = AsyncMock(side_effect=error)
    else:
        data = [SimpleNamespace(embedding=embedding)] if embedding is not None else []
        client.embeddings.create = AsyncMock(return_value=SimpleNamespace(data=data))
    return client


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    async def test_retries_until_success(self):
        policy = RetryPolicy(max_attempts=3, base_delay_seconds=0.0)
        operation = AsyncMock(side_effect=[EmbeddingUnavailable("a"), EmbeddingUnavailable("b"), [1.0]])

        assert await policy.run(operation) == [1.0]
        assert operation.await_count == 3

    async def test_reraises_last_error(self):
        policy = RetryPolicy(max_attempts=2, base_delay_seconds=0.0)
        operation = AsyncMock(side_effect=[EmbeddingUnavailable("first"), EmbeddingUnavailable("second")])

        with pytest.raises(EmbeddingUnavailable, match="second"):
            await policy.run(operation)

    async def test_no_retry_calls_once(self):
        operation = AsyncMock(side_effect=EmbeddingUnavailable("down"))

        with pytest.raises(EmbeddingUnavailable):
            await RetryPolicy.no_retry().run(operation)

        assert operation.await_count == 1

    async def test_other_errors_not_retried(self):
        policy = RetryPolicy(max_attempts=3, base_delay_seconds=0.0)
        operation = AsyncMock(side_effect=KeyError("bug"))

        with pytest.raises(KeyError):
            await policy.run(operation)

        assert operation.await_count == 1

    def test_backoff_delays(self):
        policy = RetryPolicy(max_attempts=4, base_delay_seconds=1.0, backoff_factor=2.0)

        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_from_settings(self):
        settings = Settings(embedding_max_attempts=3, embedding_retry_base_delay_seconds=0.5)

        policy = RetryPolicy.from_settings(settings)

        assert policy.max_attempts == 3
        assert policy.base_delay_seconds == 0.5


class TestOpenAIEmbeddingProvider:
    """Tests for OpenAIEmbeddingProvider with a mocked client."""

    async def test_returns_vector_and_records_metrics(self, metrics):
        client = _openai_client(embedding=[0.1, 0.2, 0.3])
        provider = OpenAIEmbeddingProvider(model="test-model", metrics=metrics, client=client)

        vector = await provider.embed("chest day")

        assert vector == [0.1, 0.2, 0.3]
        client.embeddings.create.assert_awaited_once_with(model="test-model", input="chest day")
        assert metrics.snapshot()["embeddings"] == {("openai", "success"): 1}

    async def test_client_error_becomes_unavailable(self, metrics):
        from openai import OpenAIError

        provider = OpenAIEmbeddingProvider(
            metrics=metrics, client=_openai_client(error=OpenAIError("rate limited"))
        )

        with pytest.raises(EmbeddingUnavailable, match="rate limited"):
            await provider.embed("chest day")

        assert metrics.snapshot()["embeddings"] == {("openai", "error"): 1}

    async def test_empty_response(self, metrics):
        provider = OpenAIEmbeddingProvider(metrics=metrics, client=_openai_client(embedding=None))

        with pytest.raises(EmbeddingUnavailable):
            await provider.embed("chest day")

    async def test_dimension_mismatch(self, metrics):
        provider = OpenAIEmbeddingProvider(
            expected_dimension=4,
            metrics=metrics,
            client=_openai_client(embedding=[0.1, 0.2]),
        )

        with pytest.raises(EmbeddingUnavailable, match="expected 4"):
            await provider.embed("chest day")

    async def test_unusable_vector(self, metrics):
        provider = OpenAIEmbeddingProvider(
            metrics=metrics, client=_openai_client(embedding=[0.1, float("nan")])
        )

        with pytest.raises(EmbeddingUnavailable, match="unusable"):
            await provider.embed("chest day")

    async def test_retry_through_policy(self, metrics):
        from openai import OpenAIError

        client = MagicMock()
        client.embeddings.create = AsyncMock(
            side_effect=[
                OpenAIError("blip"),
                SimpleNamespace(data=[SimpleNamespace(embedding=[1.0, 0.0])]),
            ]
        )
        provider = OpenAIEmbeddingProvider(metrics=metrics, client=client)

        vector = await embed_with_policy(
            provider, "chest day", RetryPolicy(max_attempts=2, base_delay_seconds=0.0)
        )

        assert vector == [1.0, 0.0]
        assert client.embeddings.create.await_count == 2


class TestGoogleEmbeddingProvider:
    async def test_uses_retrieval_query_task(self, metrics):
        provider = GoogleEmbeddingProvider(model="text-embedding-004", metrics=metrics)

        with patch("google.generativeai.embed_content", return_value={"embedding": [0.5, 0.5]}) as embed:
            vector = await provider.embed("leg day")

        assert vector == [0.5, 0.5]
        embed.assert_called_once_with(
            model="models/text-embedding-004",
            content="leg day",
            task_type="retrieval_query",
        )

    async def test_failure_becomes_unavailable(self, metrics):
        provider = GoogleEmbeddingProvider(metrics=metrics)

        with patch("google.generativeai.embed_content", side_effect=RuntimeError("quota")):
            with pytest.raises(EmbeddingUnavailable, match="quota"):
                await provider.embed("leg day")


class TestBuildEmbeddingProvider:
    def test_unsupported_provider(self):
        with pytest.raises(ValueError, match="Unsupported embedding provider"):
            build_embedding_provider(Settings(embedding_provider="cohere"))

    def test_google_provider(self):
        provider = build_embedding_provider(Settings(embedding_provider="google"))

        assert isinstance(provider, GoogleEmbeddingProvider)
        assert provider.expected_dimension == 768
