"""Embedding providers and the caching, batching embedder for NoteRAG."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import re
from dataclasses import dataclass, replace
from typing import Any, List, Protocol, Sequence, Tuple, Union

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings as LangChainEmbeddings

from noterag.errors import ProviderAuthenticationError
from noterag.metrics.observability import PipelineMetrics
from noterag.models import Chunk
from noterag.persistence.store import KeyValueStore
from noterag.similarity import zero_vector

LOGGER = logging.getLogger(__name__)

_TOKEN = re.compile(r"\w+")


@dataclass(frozen=True)
class EmbeddingConfig:
    """Configuration for embedding providers and the caching embedder."""

    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dim: int = 384
    use_model: bool = False
    device: str | None = None
    normalize: bool = True
    input_limit: int = 512
    cache_ttl_seconds: int = 86400
    batch_size: int = 10
    batch_delay_seconds: float = 0.1

    def __post_init__(self) -> None:
        if self.dim < 1:
            raise ValueError("dim must be at least 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.input_limit < 1:
            raise ValueError("input_limit must be at least 1")


@dataclass(frozen=True)
class EmbeddingVector:
    """Successful provider response."""

    values: Tuple[float, ...]

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class EmbeddingFailure:
    """Provider could not embed the input."""

    reason: str
    authentication: bool = False

    @property
    def ok(self) -> bool:
        return False


EmbeddingResult = Union[EmbeddingVector, EmbeddingFailure]


def parse_embedding_response(raw: Any, dimension: int | None = None) -> EmbeddingResult:
    """Validate a raw provider payload (flat vector or ``[[...]]``) into a tagged result."""

    if isinstance(raw, (list, tuple)) and raw and isinstance(raw[0], (list, tuple)):
        raw = raw[0]
    if not isinstance(raw, (list, tuple)) or not raw:
        return EmbeddingFailure("Unexpected embedding response format")
    try:
        values = tuple(float(value) for value in raw)
    except (TypeError, ValueError):
        return EmbeddingFailure("Embedding response contains non-numeric values")
    if any(math.isnan(value) or math.isinf(value) for value in values):
        return EmbeddingFailure("Embedding response contains non-finite values")
    if dimension is not None and len(values) != dimension:
        return EmbeddingFailure(f"Embedding dimension {len(values)} != expected {dimension}")
    return EmbeddingVector(values)


class EmbeddingProvider(Protocol):
    """Protocol describing an external embedding call."""

    dimension: int

    async def embed(self, text: str) -> EmbeddingResult:
        """Return the embedding for ``text`` or a failure."""


class HashEmbeddingProvider:
    """Deterministic feature-hashing embeddings used for testing and offline runs.

    Each lowercase word is hashed into one of ``dim`` buckets, so texts sharing
    vocabulary score a higher cosine similarity.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()
        self.dimension = self._config.dim

    def _hash_to_vector(self, text: str) -> Tuple[float, ...]:
        vector = [0.0] * self._config.dim
        for token in _TOKEN.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:8], "big") % self._config.dim
            vector[bucket] += 1.0
        if self._config.normalize:
            norm = math.sqrt(sum(value * value for value in vector)) or 1.0
            vector = [value / norm for value in vector]
        return tuple(vector)

    async def embed(self, text: str) -> EmbeddingResult:
        return EmbeddingVector(self._hash_to_vector(text))


class HuggingFaceEmbeddingProvider:
    """Embedding provider backed by sentence-transformers models via LangChain."""

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self._config = config or EmbeddingConfig()
        self.dimension = self._config.dim
        self._client: LangChainEmbeddings | None = None
        try:
            model_kwargs = {"device": self._config.device} if self._config.device else {}
            self._client = HuggingFaceEmbeddings(
                model_name=self._config.model,
                model_kwargs=model_kwargs,
                encode_kwargs={"normalize_embeddings": self._config.normalize},
            )
            LOGGER.info("Loaded embedding model %s", self._config.model)
        except Exception as exc:  # pragma: no cover - defensive import/runtime guard
            LOGGER.warning("Embedding model unavailable, every request will fail: %s", exc)
            self._client = None

    async def embed(self, text: str) -> EmbeddingResult:
        if self._client is None:
            return EmbeddingFailure(f"Embedding model {self._config.model} is not loaded")
        try:
            raw = await asyncio.to_thread(self._client.embed_query, text)
        except PermissionError as exc:
            return EmbeddingFailure(str(exc), authentication=True)
        except Exception as exc:
            return EmbeddingFailure(str(exc))
        return parse_embedding_response(raw, self._config.dim)


def build_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    if config.use_model:
        return HuggingFaceEmbeddingProvider(config)
    LOGGER.info("Using hash embeddings (model embeddings disabled).")
    return HashEmbeddingProvider(config)


class CachedEmbedder:
    """Wraps a provider with SHA-256 keyed caching and rate-limited batching.

    Failures never abort a batch: the affected item receives a zero vector of
    the configured dimension. Zero vectors score 0 against everything under
    cosine similarity, so such chunks are effectively unretrievable.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        config: EmbeddingConfig | None = None,
        cache: KeyValueStore | None = None,
    ) -> None:
        self._provider = provider
        self._config = config or EmbeddingConfig(dim=provider.dimension)
        self._cache = cache

    @property
    def dimension(self) -> int:
        return self._config.dim

    @staticmethod
    def cache_key(text: str) -> str:
        return f"embedding:{hashlib.sha256(text.encode('utf-8')).hexdigest()}"

    async def embed(self, text: str, *, ttl_seconds: int | None = None) -> Tuple[float, ...]:
        truncated = text[: self._config.input_limit]
        key = self.cache_key(truncated)
        cached = await self._cache_get(key)
        if cached is not None:
            PipelineMetrics.observe_embedding("cache_hit")
            return cached

        try:
            result = await self._provider.embed(truncated)
        except ProviderAuthenticationError as exc:
            result = EmbeddingFailure(str(exc), authentication=True)
        except Exception as exc:
            result = EmbeddingFailure(str(exc))
        if isinstance(result, EmbeddingVector) and len(result.values) != self._config.dim:
            result = EmbeddingFailure(f"Embedding dimension {len(result.values)} != expected {self._config.dim}")

        if isinstance(result, EmbeddingFailure):
            if result.authentication:
                LOGGER.error("Embedding provider rejected credentials: %s", result.reason)
                PipelineMetrics.observe_embedding("auth_failure")
            else:
                LOGGER.warning("Embedding generation failed, using zero vector: %s", result.reason)
                PipelineMetrics.observe_embedding("failure")
            return zero_vector(self._config.dim)

        PipelineMetrics.observe_embedding("computed")
        await self._cache_set(key, result.values, ttl_seconds or self._config.cache_ttl_seconds)
        return result.values

    async def embed_many(self, texts: Sequence[str]) -> List[Tuple[float, ...]]:
        """Embed texts in sequential batches of bounded concurrency, preserving order."""
        vectors: List[Tuple[float, ...]] = []
        size = self._config.batch_size
        for offset in range(0, len(texts), size):
            batch = texts[offset : offset + size]
            vectors.extend(await asyncio.gather(*(self.embed(text) for text in batch)))
            if offset + size < len(texts) and self._config.batch_delay_seconds > 0:
                await asyncio.sleep(self._config.batch_delay_seconds)
        return vectors

    async def embed_chunks(self, chunks: Sequence[Chunk]) -> List[Chunk]:
        if not chunks:
            return []
        vectors = await self.embed_many([chunk.content for chunk in chunks])
        LOGGER.info("Embedded %d chunks", len(chunks))
        return [replace(chunk, embedding=vector) for chunk, vector in zip(chunks, vectors)]

    async def _cache_get(self, key: str) -> Tuple[float, ...] | None:
        if self._cache is None:
            return None
        try:
            cached = await self._cache.get(key)
        except Exception as exc:
            LOGGER.warning("Embedding cache lookup failed: %s", exc)
            return None
        if cached is None:
            return None
        parsed = parse_embedding_response(cached, self._config.dim)
        return parsed.values if isinstance(parsed, EmbeddingVector) else None

    async def _cache_set(self, key: str, vector: Tuple[float, ...], ttl_seconds: int) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.set(key, list(vector), ttl_seconds)
        except Exception as exc:
            LOGGER.warning("Embedding cache storage failed: %s", exc)
