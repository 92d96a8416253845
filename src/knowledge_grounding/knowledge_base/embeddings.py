"""
Embedding generation for the knowledge base.

`OpenAIEmbeddingProvider` talks to an OpenAI-compatible `/embeddings` endpoint.
`EmbeddingService` wraps a provider with input truncation, retries with
exponential backoff, and a deterministic fallback vector for when the provider
stays unavailable.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from typing import ClassVar, Union

import httpx
import numpy as np
from loguru import logger

from ..config_manager.providers import EmbeddingConfig
from .errors import DimensionMismatch, ProviderUnavailable
from .models import EmbeddingSource
from .text_utils import normalize_text, truncate_text


@dataclass(frozen=True)
class RealEmbedding:
    """A vector produced by the embedding provider."""

    vector: list[float]
    is_fallback: ClassVar[bool] = False
    source: ClassVar[str] = EmbeddingSource.REAL.value


@dataclass(frozen=True)
class FallbackEmbedding:
    """The fixed placeholder vector used when the provider is unavailable."""

    vector: list[float]
    reason: str
    is_fallback: ClassVar[bool] = True
    source: ClassVar[str] = EmbeddingSource.FALLBACK.value


Embedding = Union[RealEmbedding, FallbackEmbedding]


@lru_cache(maxsize=8)
def _fallback_vector(dimension: int, seed: int) -> tuple[float, ...]:
    rng = np.random.default_rng(seed)
    vector = rng.uniform(-1.0, 1.0, dimension)
    vector /= np.linalg.norm(vector)
    return tuple(float(x) for x in vector)


def fallback_embedding_vector(dimension: int, seed: int = 42) -> list[float]:
    """Return the deterministic unit vector used as an embedding fallback.

    The same (dimension, seed) always yields the same vector, so cosine
    similarity against it stays well defined.
    """
    return list(_fallback_vector(dimension, seed))


class EmbeddingProvider(ABC):
    """Turns text into fixed-dimension vectors.

    Implementations raise `ProviderUnavailable` when the backend cannot serve
    the request. They do not chunk input; callers truncate first.
    """

    def __init__(self, dimension: int):
        self.dimension = dimension

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts in one call, preserving order."""

    async def aclose(self) -> None:
        """Release any network resources held by the provider."""


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embedding provider for OpenAI-compatible HTTP APIs."""

    def __init__(
        self, config: EmbeddingConfig, client: httpx.AsyncClient | None = None
    ):
        """
        Initialize the provider.

        Args:
            config: Embedding settings (endpoint, model, dimension, timeout)
            client: Optional shared httpx client; one is created if omitted
        """
        super().__init__(config.dimension)
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)

    @property
    def endpoint(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/embeddings"

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        headers = {}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        try:
            response = await self._client.post(
                self.endpoint,
                json={"model": self.config.model, "input": texts},
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Embedding request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderUnavailable(
                f"Embedding provider returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()["data"]
            if data and all("index" in entry for entry in data):
                data = sorted(data, key=lambda entry: entry["index"])
            vectors = [[float(x) for x in entry["embedding"]] for entry in data]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderUnavailable(f"Malformed embedding response: {e}") from e

        if len(vectors) != len(texts):
            raise ProviderUnavailable(
                f"Embedding provider returned {len(vectors)} vectors for {len(texts)} inputs"
            )

        for vector in vectors:
            if len(vector) != self.dimension:
                raise DimensionMismatch(self.dimension, len(vector))

        return vectors

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class EmbeddingService:
    """
    Embedding front-end used by the rest of the knowledge base.

    Retries provider failures with exponential backoff. When retries run out it
    either raises (`allow_fallback=False`) or returns a `FallbackEmbedding`
    carrying the deterministic placeholder vector.
    """

    def __init__(self, provider: EmbeddingProvider, config: EmbeddingConfig):
        if provider.dimension != config.dimension:
            raise ValueError(
                f"Provider dimension {provider.dimension} does not match configured "
                f"dimension {config.dimension}"
            )
        self.provider = provider
        self.config = config
        self._stats = {"real": 0, "fallback": 0, "failures": 0}

    @property
    def dimension(self) -> int:
        return self.config.dimension

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    def prepare_text(self, text: str) -> str:
        """Normalize and truncate text to the provider's input limit."""
        return truncate_text(normalize_text(text), self.config.max_input_chars, suffix="")

    async def _call_with_retry(self, texts: list[str]) -> list[list[float]]:
        attempts = self.config.max_attempts
        last_error: ProviderUnavailable | None = None

        for attempt in range(attempts):
            try:
                return await self.provider.embed_batch(texts)
            except ProviderUnavailable as e:
                last_error = e
                self._stats["failures"] += 1
                if attempt < attempts - 1:
                    delay = self.config.backoff_base_seconds * (2**attempt)
                    logger.warning(
                        f"⚠️ Embedding attempt {attempt + 1}/{attempts} failed: {e}. "
                        f"Retrying in {delay:.2f}s"
                    )
                    await asyncio.sleep(delay)

        assert last_error is not None
        raise last_error

    async def embed(self, text: str, *, allow_fallback: bool = True) -> Embedding:
        """Embed a single text. See `embed_batch`."""
        embeddings = await self.embed_batch([text], allow_fallback=allow_fallback)
        return embeddings[0]

    async def embed_batch(
        self, texts: list[str], *, allow_fallback: bool = True
    ) -> list[Embedding]:
        """
        Embed texts, retrying transient provider failures.

        Args:
            texts: Texts to embed
            allow_fallback: Return the placeholder vector instead of raising
                once retries are exhausted

        Returns:
            One tagged embedding per input text

        Raises:
            ProviderUnavailable: If retries are exhausted and fallback is disabled
            DimensionMismatch: If the provider returns vectors of the wrong length
            ValueError: If a text is empty after normalization
        """
        if not texts:
            return []

        prepared = [self.prepare_text(text) for text in texts]
        if any(not text for text in prepared):
            raise ValueError("Cannot embed empty text")

        try:
            vectors = await self._call_with_retry(prepared)
        except ProviderUnavailable as e:
            if not allow_fallback:
                logger.error(
                    f"❌ Embedding provider unavailable after {self.config.max_attempts} attempts: {e}"
                )
                raise

            self._stats["fallback"] += len(texts)
            logger.warning(
                f"⚠️ Using fallback embedding for {len(texts)} text(s) "
                f"after {self.config.max_attempts} attempts: {e}"
            )
            vector = fallback_embedding_vector(self.dimension, self.config.fallback_seed)
            return [FallbackEmbedding(vector=list(vector), reason=str(e)) for _ in texts]

        self._stats["real"] += len(vectors)
        return [RealEmbedding(vector=vector) for vector in vectors]

    async def aclose(self) -> None:
        await self.provider.aclose()
