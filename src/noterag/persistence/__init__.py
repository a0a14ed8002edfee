"""Key/value persistence collaborators."""

from .store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore

__all__ = ["InMemoryKeyValueStore", "KeyValueStore", "RedisKeyValueStore"]
