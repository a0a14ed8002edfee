from __future__ import annotations

import asyncio
import math

import pytest

from noterag.embeddings.service import (
    CachedEmbedder,
    EmbeddingConfig,
    EmbeddingFailure,
    EmbeddingVector,
    HashEmbeddingProvider,
    parse_embedding_response,
)
from noterag.errors import ProviderAuthenticationError
from noterag.models import Chunk
from noterag.persistence import InMemoryKeyValueStore
from noterag.similarity import cosine_similarity

_yield = asyncio.sleep


class CountingProvider:
    def __init__(self, dimension: int = 8) -> None:
        self.dimension = dimension
        self.calls: list[str] = []

    async def embed(self, text: str):
        self.calls.append(text)
        return EmbeddingVector(tuple(float(len(text) + index) for index in range(self.dimension)))


class ConcurrencyProvider:
    """Records how many embed calls are in flight at once."""

    dimension = 8

    def __init__(self) -> None:
        self.in_flight = 0
        self.peak = 0

    async def embed(self, text: str):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await _yield(0)
        await _yield(0)
        self.in_flight -= 1
        return EmbeddingVector((1.0,) * self.dimension)


class FailingProvider:
    dimension = 8

    def __init__(self, error: Exception | None = None) -> None:
        self._error = error

    async def embed(self, text: str):
        if self._error is not None:
            raise self._error
        return EmbeddingFailure("service unavailable")


class BrokenCache:
    async def get(self, key):
        raise ConnectionError("down")

    async def set(self, key, value, ttl_seconds=None):
        raise ConnectionError("down")

    async def delete(self, key):
        raise ConnectionError("down")


def _config(**overrides) -> EmbeddingConfig:
    values = {"dim": 8, "batch_delay_seconds": 0.0}
    values.update(overrides)
    return EmbeddingConfig(**values)


def test_hash_embedding_dim_matches_config():
    provider = HashEmbeddingProvider(EmbeddingConfig(dim=64))
    result = asyncio.run(provider.embed("hello world"))
    assert isinstance(result, EmbeddingVector)
    assert len(result.values) == 64
    assert math.isclose(math.sqrt(sum(value * value for value in result.values)), 1.0)


def test_parse_embedding_response_variants():
    assert parse_embedding_response([[0.1, 0.2]], 2) == EmbeddingVector((0.1, 0.2))
    assert parse_embedding_response([1, 2, 3]).values == (1.0, 2.0, 3.0)
    assert not parse_embedding_response({"vector": [1]}).ok
    assert not parse_embedding_response([]).ok
    assert not parse_embedding_response(["a", "b"]).ok
    assert not parse_embedding_response([float("nan"), 1.0]).ok
    assert not parse_embedding_response([1.0, 2.0], 3).ok


def test_cached_embedder_reuses_cached_vectors():
    provider = CountingProvider()
    store = InMemoryKeyValueStore()
    embedder = CachedEmbedder(provider, _config(), cache=store)

    async def scenario():
        return await embedder.embed("alpha"), await embedder.embed("alpha")

    first, second = asyncio.run(scenario())
    assert first == second
    assert provider.calls == ["alpha"]
    assert CachedEmbedder.cache_key("alpha") in store


def test_input_is_truncated_before_caching():
    provider = CountingProvider()
    embedder = CachedEmbedder(provider, _config(input_limit=10), cache=InMemoryKeyValueStore())

    async def scenario():
        await embedder.embed("0123456789-first")
        await embedder.embed("0123456789-second")

    asyncio.run(scenario())
    assert provider.calls == ["0123456789"]


@pytest.mark.parametrize(
    "provider",
    [
        FailingProvider(),
        FailingProvider(RuntimeError("timeout")),
        FailingProvider(ProviderAuthenticationError("bad token")),
        CountingProvider(dimension=4),
    ],
)
def test_failures_degrade_to_uncached_zero_vector(provider):
    store = InMemoryKeyValueStore()
    embedder = CachedEmbedder(provider, _config(), cache=store)
    vector = asyncio.run(embedder.embed("anything"))
    assert vector == (0.0,) * 8
    assert len(store) == 0


def test_cache_errors_are_ignored():
    embedder = CachedEmbedder(CountingProvider(), _config(), cache=BrokenCache())
    vector = asyncio.run(embedder.embed("beta"))
    assert len(vector) == 8
    assert any(vector)


def test_embed_many_preserves_order_across_batches():
    provider = CountingProvider()
    embedder = CachedEmbedder(provider, _config(batch_size=2))
    texts = ["a", "bb", "ccc", "dddd", "eeeee"]
    vectors = asyncio.run(embedder.embed_many(texts))
    assert [vector[0] for vector in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]
    assert sorted(provider.calls) == sorted(texts)


def test_embed_chunks_attaches_embeddings():
    config = EmbeddingConfig(dim=32, batch_delay_seconds=0.0)
    embedder = CachedEmbedder(HashEmbeddingProvider(config), config)
    chunks = [Chunk(id="c1", content="alpha beta", start=0, end=10), Chunk(id="c2", content="gamma", start=11, end=16)]
    embedded = asyncio.run(embedder.embed_chunks(chunks))
    assert [chunk.id for chunk in embedded] == ["c1", "c2"]
    assert all(chunk.has_embedding for chunk in embedded)
    assert not chunks[0].has_embedding
    for chunk in embedded:
        assert cosine_similarity(chunk.embedding, chunk.embedding) == pytest.approx(1.0)


def test_invalid_config_rejected():
    with pytest.raises(ValueError):
        EmbeddingConfig(batch_size=0)


def test_embed_many_bounds_concurrency_and_pauses_between_batches(monkeypatch):
    pauses: list[float] = []

    async def fake_sleep(delay, *args, **kwargs):
        if delay:
            pauses.append(delay)
        await _yield(0)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    provider = ConcurrencyProvider()
    embedder = CachedEmbedder(provider, _config(batch_size=2, batch_delay_seconds=0.25))
    vectors = asyncio.run(embedder.embed_many([f"text {index}" for index in range(5)]))
    assert len(vectors) == 5
    assert provider.peak == 2
    assert pauses == [0.25, 0.25]
