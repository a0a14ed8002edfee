from __future__ import annotations

import asyncio

from noterag.persistence import InMemoryKeyValueStore, RedisKeyValueStore


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        if ex is not None:
            self.expiry[key] = ex

    async def delete(self, key):
        self.data.pop(key, None)

    async def aclose(self):
        self.closed = True


def test_in_memory_store_expires_entries():
    clock = FakeClock()
    store = InMemoryKeyValueStore(clock=clock)

    async def scenario():
        await store.set("a", {"value": 1}, ttl_seconds=10)
        await store.set("b", [1, 2], ttl_seconds=None)
        first = await store.get("a")
        clock.now += 11
        return first, await store.get("a"), await store.get("b")

    first, expired, durable = asyncio.run(scenario())
    assert first == {"value": 1}
    assert expired is None
    assert durable == [1, 2]
    assert "a" not in store


def test_in_memory_store_round_trips_through_json():
    store = InMemoryKeyValueStore()

    async def scenario():
        await store.set("vec", (0.5, 0.25))
        value = await store.get("vec")
        await store.delete("vec")
        return value, await store.get("vec")

    value, deleted = asyncio.run(scenario())
    assert value == [0.5, 0.25]
    assert deleted is None


def test_redis_store_prefixes_keys_and_sets_ttl():
    client = FakeRedis()
    store = RedisKeyValueStore(client, prefix="test:")

    async def scenario():
        await store.set("semantic-cache:1", {"answer": "yes"}, ttl_seconds=60)
        value = await store.get("semantic-cache:1")
        await store.delete("semantic-cache:1")
        missing = await store.get("semantic-cache:1")
        await store.close()
        return value, missing

    value, missing = asyncio.run(scenario())
    assert value == {"answer": "yes"}
    assert missing is None
    assert client.expiry == {"test:semantic-cache:1": 60}
    assert client.closed


def test_in_memory_store_sweeps_expired_keys_on_write():
    clock = FakeClock()
    store = InMemoryKeyValueStore(clock=clock, sweep_interval_seconds=30)

    async def scenario():
        await store.set("short", "x", ttl_seconds=10)
        await store.set("durable", "y")
        clock.now += 31
        await store.set("fresh", "z", ttl_seconds=10)

    asyncio.run(scenario())
    assert "short" not in store
    assert len(store) == 2
    assert store.purge_expired() == 0
