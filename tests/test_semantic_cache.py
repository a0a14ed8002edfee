from __future__ import annotations

import asyncio

import pytest

from noterag.cache import CacheSearchOptions, InvalidationCriteria, SemanticCache, SemanticCacheConfig
from noterag.persistence import InMemoryKeyValueStore

EXACT = CacheSearchOptions(similarity_threshold=0.99)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class OneHotEmbedder:
    """Gives every distinct text its own axis so unrelated queries never match."""

    def __init__(self, dimension: int = 64) -> None:
        self.dimension = dimension
        self._axes: dict[str, int] = {}

    async def embed(self, text: str, *, ttl_seconds: int | None = None):
        axis = self._axes.setdefault(text, len(self._axes))
        return tuple(1.0 if index == axis else 0.0 for index in range(self.dimension))


class ExplodingEmbedder:
    async def embed(self, text: str, *, ttl_seconds: int | None = None):
        raise RuntimeError("provider offline")


def _cache(**overrides):
    clock = overrides.pop("clock", FakeClock())
    store = overrides.pop("store", None)
    config = SemanticCacheConfig(**overrides)
    return SemanticCache(OneHotEmbedder(), config, store=store, clock=clock), clock


def test_set_then_get_returns_entry_and_counts_hit():
    cache, _ = _cache()

    async def scenario():
        entry_id = await cache.set("what is osmosis", {"answer": "diffusion of water"}, model="template", tags=["doc:1"])
        return entry_id, await cache.get("what is osmosis", EXACT)

    entry_id, entry = asyncio.run(scenario())
    assert entry is not None
    assert entry.id == entry_id
    assert entry.response == {"answer": "diffusion of water"}
    assert entry.metadata.hit_count == 1


def test_unrelated_query_misses():
    cache, _ = _cache()

    async def scenario():
        await cache.set("what is osmosis", "answer", model="template")
        return await cache.get("who wrote hamlet")

    assert asyncio.run(scenario()) is None


def test_expired_entry_is_skipped_until_cleanup():
    cache, clock = _cache()

    async def scenario():
        await cache.set("question", "answer", model="template", ttl_seconds=10)
        clock.now += 11
        missed = await cache.get("question", EXACT)
        resident = len(cache)
        expired = await cache.get("question", CacheSearchOptions(similarity_threshold=0.99, include_expired=True))
        report = await cache.cleanup()
        return missed, resident, expired, report

    missed, resident, expired, report = asyncio.run(scenario())
    assert missed is None
    assert resident == 1
    assert expired is not None
    assert report.expired == 1
    assert len(cache) == 0


def test_invalidate_older_than_removes_old_entry():
    cache, clock = _cache()

    async def scenario():
        await cache.set("question", "answer", model="template")
        clock.now += 3600
        return await cache.invalidate(InvalidationCriteria(older_than=clock()))

    assert asyncio.run(scenario()) == 1
    assert len(cache) == 0


def test_invalidate_matches_any_criterion():
    cache, _ = _cache()

    async def scenario():
        await cache.set("q1", "a1", model="qwen", tags=["doc:1"])
        await cache.set("q2", "a2", model="template", tags=["doc:2"])
        await cache.set("q3", "a3", model="template", tags=["doc:3"])
        await cache.set("q4", "a4", model="template", tags=["doc:4"])
        by_tag_or_model = await cache.invalidate(InvalidationCriteria(tags=["doc:2"], model="qwen"))
        by_similarity = await cache.invalidate(InvalidationCriteria(similar_query="q3"))
        return by_tag_or_model, by_similarity

    by_tag_or_model, by_similarity = asyncio.run(scenario())
    assert by_tag_or_model == 2
    assert by_similarity == 1
    assert len(cache) == 1


def test_tag_filter_limits_matches():
    cache, _ = _cache()

    async def scenario():
        await cache.set("shared question", "for doc 1", model="template", tags=["doc:1"])
        hit = await cache.get("shared question", CacheSearchOptions(similarity_threshold=0.99, tag_filter=["doc:1"]))
        miss = await cache.get("shared question", CacheSearchOptions(similarity_threshold=0.99, tag_filter=["doc:2"]))
        return hit, miss

    hit, miss = asyncio.run(scenario())
    assert hit is not None
    assert miss is None


def test_cleanup_evicts_least_hit_entries_to_low_watermark():
    cache, _ = _cache(max_entries=10)

    async def scenario():
        for index in range(9):
            await cache.set(f"query {index}", index, model="template")
        for index in range(2, 9):
            await cache.get(f"query {index}", EXACT)
        return await cache.cleanup()

    report = asyncio.run(scenario())
    assert report.evicted == 2
    assert len(cache) == 7
    remaining = {match.entry.response for match in asyncio.run(cache.lookup("query 5", EXACT))}
    assert remaining == {5}


def test_set_at_capacity_triggers_cleanup():
    cache, _ = _cache(max_entries=2)

    async def scenario():
        for index in range(3):
            await cache.set(f"query {index}", index, model="template")

    asyncio.run(scenario())
    assert len(cache) == 2


def test_entries_are_persisted_and_forgotten():
    store = InMemoryKeyValueStore()
    cache, _ = _cache(store=store)

    async def scenario():
        entry_id = await cache.set("question", "answer", model="template", ttl_seconds=60, tags=["doc:9"])
        persisted = await store.get(SemanticCache.storage_key(entry_id))
        await cache.invalidate(InvalidationCriteria(tags=["doc:9"]))
        return entry_id, persisted

    entry_id, persisted = asyncio.run(scenario())
    assert persisted["query"] == "question"
    assert persisted["ttl"] == 60
    assert SemanticCache.storage_key(entry_id) not in store


def test_stats_track_hits_and_tags():
    cache, _ = _cache()

    async def scenario():
        await cache.set("q1", {"answer": "x"}, model="template", tags=["doc:1", "study"])
        await cache.set("q2", {"answer": "y"}, model="template", tags=["doc:1"])
        await cache.get("q1", EXACT)
        await cache.get("unknown", EXACT)

    asyncio.run(scenario())
    stats = cache.stats()
    assert stats.total_entries == 2
    assert stats.hit_rate == pytest.approx(0.5)
    assert stats.average_similarity == pytest.approx(1.0)
    assert stats.top_tags[0] == ("doc:1", 2)
    assert stats.memory_usage > 0


def test_lookup_errors_count_as_miss():
    cache = SemanticCache(ExplodingEmbedder())
    assert asyncio.run(cache.get("anything")) is None
    assert cache.stats().hit_rate == 0.0


def test_non_positive_ttl_rejected():
    cache, _ = _cache()
    with pytest.raises(ValueError):
        asyncio.run(cache.set("q", "a", model="template", ttl_seconds=0))


def test_background_cleanup_runs_while_started():
    cache, clock = _cache(cleanup_interval_seconds=0.01)

    async def scenario():
        await cache.set("question", "answer", model="template", ttl_seconds=5)
        clock.now += 10
        async with cache:
            await asyncio.sleep(0.05)
        return len(cache)

    assert asyncio.run(scenario()) == 0


class SignedEmbedder:
    async def embed(self, text: str, *, ttl_seconds: int | None = None):
        return (-1.0, 0.0) if text.startswith("not ") else (1.0, 0.0)


def test_opposite_queries_score_zero_not_negative():
    cache = SemanticCache(SignedEmbedder(), clock=FakeClock())

    async def scenario():
        await cache.set("cells divide", "answer", model="template")
        return await cache.lookup("not cells divide", CacheSearchOptions(similarity_threshold=0.0))

    matches = asyncio.run(scenario())
    assert len(matches) == 1
    assert matches[0].similarity == 0.0


def test_similarity_thresholds_validated():
    with pytest.raises(ValueError):
        CacheSearchOptions(similarity_threshold=1.2)
    with pytest.raises(ValueError):
        CacheSearchOptions(similarity_threshold=-0.1)
    with pytest.raises(ValueError):
        SemanticCacheConfig(similarity_threshold=2.0)
