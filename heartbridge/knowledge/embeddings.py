"""Embedding generation for queries and knowledge units.

Supports OpenAI (text-embedding-3-small) and Google (text-embedding-004) models.
Vectors stored in the knowledge base and query vectors must come from the same
model; rows with a different dimensionality are skipped by vector search.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import numpy as np

from heartbridge.core.config import Settings, get_settings
from heartbridge.core.errors import EmbeddingUnavailable
from heartbridge.observability import MetricsBackend, track_external_call

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

EMBEDDING_BATCH_SIZE = 100


def truncate_text(text: str, max_chars: int) -> str:
    """Cap input length before it is sent to the embedding model."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars]


def _as_vector(raw: Any) -> "NDArray[np.float32]":
    """Validate a single embedding payload."""
    if raw is None:
        raise EmbeddingUnavailable("Embedding response did not contain a vector")
    vector = np.asarray(raw, dtype=np.float32)
    if vector.ndim != 1 or vector.size == 0 or not np.all(np.isfinite(vector)):
        raise EmbeddingUnavailable("Embedding response contained a malformed vector")
    return vector


class EmbeddingClient:
    """Turns text into fixed-length vectors via an external embedding API.

    No retries are attempted here; callers decide on retry policy.
    """

    def __init__(
        self,
        provider: str = "openai",
        api_key: str | None = None,
        model: str | None = None,
        max_chars: int = 2000,
        timeout_seconds: float = 20.0,
        base_url: str | None = None,
        metrics: MetricsBackend | None = None,
        client: Any = None,
    ) -> None:
        if provider not in ("openai", "google"):
            raise ValueError(f"Unsupported embedding provider: {provider}")
        self.provider = provider
        self.api_key = api_key
        self.model = model or (
            "text-embedding-3-small" if provider == "openai" else "text-embedding-004"
        )
        self.max_chars = max_chars
        self.timeout_seconds = timeout_seconds
        self.base_url = base_url
        self.metrics = metrics
        self._client = client

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        metrics: MetricsBackend | None = None,
    ) -> "EmbeddingClient":
        settings = settings or get_settings()
        if settings.embedding_provider == "google":
            api_key = settings.google_ai_api_key
            model = settings.google_embedding_model
        else:
            api_key = settings.openai_api_key
            model = settings.openai_embedding_model
        return cls(
            provider=settings.embedding_provider,
            api_key=api_key,
            model=model,
            max_chars=settings.embedding_max_chars,
            timeout_seconds=settings.external_call_timeout_seconds,
            base_url=settings.openai_base_url,
            metrics=metrics,
        )

    def _openai(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    async def embed(self, text: str) -> "NDArray[np.float32]":
        """Embed a single query text.

        Raises:
            EmbeddingUnavailable: If the call errors, times out or returns
                a malformed payload.
        """
        text = truncate_text(text, self.max_chars)
        vectors = await self._embed(
            [text],
            task_type="retrieval_query",
            operation="embed_query",
        )
        return vectors[0]

    async def embed_many(self, texts: list[str]) -> "NDArray[np.float32]":
        """Embed documents in batches.

        Returns:
            NumPy array of shape (len(texts), embedding_dim).
        """
        if not texts:
            return np.array([], dtype=np.float32)

        texts = [truncate_text(t, self.max_chars) for t in texts]
        batches: list["NDArray[np.float32]"] = []
        for i in range(0, len(texts), EMBEDDING_BATCH_SIZE):
            batch = texts[i : i + EMBEDDING_BATCH_SIZE]
            batches.append(
                await self._embed(
                    batch,
                    task_type="retrieval_document",
                    operation="embed_documents",
                )
            )
        return np.vstack(batches)

    async def _embed(
        self,
        texts: list[str],
        task_type: str,
        operation: str,
    ) -> "NDArray[np.float32]":
        try:
            with track_external_call(self.metrics, self.provider, operation):
                if self.provider == "google":
                    raw = await asyncio.wait_for(
                        asyncio.to_thread(self._google_embed, texts, task_type),
                        timeout=self.timeout_seconds,
                    )
                else:
                    raw = await asyncio.wait_for(
                        self._openai_embed(texts),
                        timeout=self.timeout_seconds,
                    )
        except EmbeddingUnavailable:
            raise
        except asyncio.TimeoutError as e:
            logger.error(f"Embedding call timed out after {self.timeout_seconds}s")
            raise EmbeddingUnavailable("Embedding service timed out") from e
        except Exception as e:
            logger.error(f"Embedding call failed: {e}")
            raise EmbeddingUnavailable() from e

        if not isinstance(raw, list) or len(raw) != len(texts):
            raise EmbeddingUnavailable("Embedding response did not match the request")

        vectors = [_as_vector(item) for item in raw]
        if len({v.shape[0] for v in vectors}) > 1:
            raise EmbeddingUnavailable("Embedding response mixed vector sizes")
        return np.vstack(vectors)

    async def _openai_embed(self, texts: list[str]) -> list[Any]:
        response = await self._openai().embeddings.create(
            model=self.model,
            input=texts,
        )
        data = getattr(response, "data", None)
        if not data:
            raise EmbeddingUnavailable("Embedding response did not contain data")
        return [getattr(item, "embedding", None) for item in data]

    def _google_embed(self, texts: list[str], task_type: str) -> list[Any]:
        import google.generativeai as genai

        if self.api_key:
            genai.configure(api_key=self.api_key)

        result = genai.embed_content(
            model=f"models/{self.model}",
            content=texts,
            task_type=task_type,
        )
        embedding = result.get("embedding") if isinstance(result, dict) else None
        if embedding is None:
            raise EmbeddingUnavailable("Embedding response did not contain a vector")
        return list(embedding)
