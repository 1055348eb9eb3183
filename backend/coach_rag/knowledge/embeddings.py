"""Query embedding providers and the retry policy applied at their boundary.

Supports Google (text-embedding-004) and OpenAI (text-embedding-3-small) models.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol, TypeVar

from coach_rag.core.config import Settings
from coach_rag.core.exceptions import EmbeddingUnavailable, MalformedEmbedding
from coach_rag.knowledge.similarity import parse_embedding
from coach_rag.observability import MetricsBackend, get_metrics_backend

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EmbeddingProvider(Protocol):
    """Converts text to a fixed-length vector."""

    name: str

    async def embed(self, text: str) -> list[float]:
        """Embed a single query text.

        Raises:
            EmbeddingUnavailable: On provider or network error.
        """
        ...


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff.

    ``max_attempts`` counts the first call, so ``max_attempts=2`` means at
    most one retry.
    """

    max_attempts: int = 2
    base_delay_seconds: float = 1.0
    backoff_factor: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must not be negative")

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1, base_delay_seconds=0.0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.embedding_max_attempts,
            base_delay_seconds=settings.embedding_retry_base_delay_seconds,
            backoff_factor=settings.embedding_retry_backoff_factor,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return self.base_delay_seconds * (self.backoff_factor ** (attempt - 1))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        retry_on: tuple[type[BaseException], ...] = (EmbeddingUnavailable,),
    ) -> T:
        """Run ``operation``, retrying on the given exception types.

        The last exception is re-raised once attempts are exhausted.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except retry_on as e:
                if attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} failed: {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                attempt += 1


class _BaseEmbeddingProvider:
    """Shared timing, metrics and response validation."""

    name = "base"

    def __init__(
        self,
        model: str,
        expected_dimension: int | None = None,
        metrics: MetricsBackend | None = None,
    ) -> None:
        self.model = model
        self.expected_dimension = expected_dimension
        self.metrics = metrics or get_metrics_backend()

    async def embed(self, text: str) -> list[float]:
        start = time.perf_counter()
        success = False
        try:
            raw = await self._embed(text)
            try:
                vector = parse_embedding(raw)
            except MalformedEmbedding as e:
                raise EmbeddingUnavailable(f"{self.name} returned an unusable vector: {e}") from e
            if self.expected_dimension and len(vector) != self.expected_dimension:
                raise EmbeddingUnavailable(
                    f"{self.name} returned {len(vector)}-dim vector, "
                    f"expected {self.expected_dimension}"
                )
            success = True
            return vector
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.metrics.observe_embedding(self.name, success, duration_ms)

    async def _embed(self, text: str) -> list[float]:
        raise NotImplementedError


class GoogleEmbeddingProvider(_BaseEmbeddingProvider):
    """Google Generative AI embeddings using the retrieval_query task type."""

    name = "google"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        expected_dimension: int | None = None,
        metrics: MetricsBackend | None = None,
    ) -> None:
        super().__init__(model or "text-embedding-004", expected_dimension, metrics)
        self._api_key = api_key

    async def _embed(self, text: str) -> list[float]:
        import google.generativeai as genai

        if self._api_key:
            genai.configure(api_key=self._api_key)

        try:
            # embed_content is blocking; keep the event loop free for sibling sub-queries
            result = await asyncio.to_thread(
                genai.embed_content,
                model=f"models/{self.model}",
                content=text,
                task_type="retrieval_query",
            )
        except Exception as e:
            raise EmbeddingUnavailable(f"Google embedding failed: {e}") from e
        return result["embedding"]


class OpenAIEmbeddingProvider(_BaseEmbeddingProvider):
    """OpenAI embeddings through the async client."""

    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        expected_dimension: int | None = None,
        metrics: MetricsBackend | None = None,
        client=None,
    ) -> None:
        super().__init__(model or "text-embedding-3-small", expected_dimension, metrics)
        if client is None:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(api_key=api_key) if api_key else AsyncOpenAI()
        self._client = client

    async def _embed(self, text: str) -> list[float]:
        from openai import OpenAIError

        try:
            response = await self._client.embeddings.create(
                model=self.model,
                input=text,
            )
        except OpenAIError as e:
            raise EmbeddingUnavailable(f"OpenAI embedding failed: {e}") from e
        if not response.data:
            raise EmbeddingUnavailable("OpenAI returned no embedding data")
        return response.data[0].embedding


def build_embedding_provider(settings: Settings) -> EmbeddingProvider:
    """Create the provider named in settings.

    Raises:
        ValueError: If the provider is not supported.
    """
    provider = settings.embedding_provider
    if provider == "google":
        return GoogleEmbeddingProvider(
            api_key=settings.google_ai_api_key,
            model=settings.google_embedding_model,
            expected_dimension=settings.embedding_dimension,
        )
    elif provider == "openai":
        return OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            model=settings.openai_embedding_model,
        )
    else:
        raise ValueError(f"Unsupported embedding provider: {provider}")


async def embed_with_policy(
    provider: EmbeddingProvider,
    text: str,
    policy: RetryPolicy,
) -> list[float]:
    """Embed ``text`` under ``policy``."""
    return await policy.run(lambda: provider.embed(text))
