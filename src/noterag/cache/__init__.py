"""Semantic result caching."""

from .semantic import (
    CacheSearchOptions,
    CleanupReport,
    InvalidationCriteria,
    SemanticCache,
    SemanticCacheConfig,
)

__all__ = [
    "CacheSearchOptions",
    "CleanupReport",
    "InvalidationCriteria",
    "SemanticCache",
    "SemanticCacheConfig",
]
