"""Key/value persistence collaborators used for snapshots and caches."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Protocol, Tuple

LOGGER = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Protocol for best-effort key/value persistence with per-key TTL."""

    async def get(self, key: str) -> Any | None:
        """Return the decoded value for ``key`` or ``None`` when missing/expired."""

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store a JSON-serializable value, expiring after ``ttl_seconds``."""

    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""


class InMemoryKeyValueStore:
    """Process-local store with TTL; values round-trip through JSON like Redis.

    Expired keys are dropped when read and by a sweep that runs from ``set`` at
    most once per ``sweep_interval_seconds``.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time, sweep_interval_seconds: float = 60.0) -> None:
        self._clock = clock
        self._items: Dict[str, Tuple[str, float | None]] = {}
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = clock() + sweep_interval_seconds

    async def get(self, key: str) -> Any | None:
        item = self._items.get(key)
        if item is None:
            return None
        payload, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            self._items.pop(key, None)
            return None
        return json.loads(payload)

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            self.purge_expired()
        expires_at = now + ttl_seconds if ttl_seconds else None
        self._items[key] = (json.dumps(value, default=str), expires_at)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._items.items() if expires_at is not None and now >= expires_at]
        for key in expired:
            del self._items[key]
        self._next_sweep = now + self._sweep_interval
        if expired:
            LOGGER.debug("Purged %d expired keys", len(expired))
        return len(expired)

    async def delete(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items


class RedisKeyValueStore:
    """Redis-backed store using ``redis.asyncio``; values are stored as JSON strings."""

    def __init__(self, client: Any, *, prefix: str = "noterag:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, *, prefix: str = "noterag:") -> "RedisKeyValueStore":
        import redis.asyncio as redis

        client = redis.from_url(url, decode_responses=True)
        LOGGER.info("Configured Redis key/value store at %s", url)
        return cls(client, prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        payload = json.dumps(value, default=str)
        if ttl_seconds:
            await self._client.set(self._key(key), payload, ex=int(ttl_seconds))
        else:
            await self._client.set(self._key(key), payload)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def close(self) -> None:
        await self._client.aclose()
