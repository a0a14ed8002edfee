"""Semantic result cache keyed by query meaning rather than exact text."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import heapq
import itertools
import json
import math
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Protocol, Sequence, Tuple

from noterag.metrics.observability import PipelineMetrics, get_logger
from noterag.models import CacheEntryMetadata, CacheMatch, CacheStats, SemanticCacheEntry
from noterag.persistence.store import KeyValueStore
from noterag.similarity import clamp_score, cosine_similarity


class QueryEmbedder(Protocol):
    async def embed(self, text: str, *, ttl_seconds: int | None = None) -> Tuple[float, ...]:
        """Return an embedding for ``text``."""


@dataclass(frozen=True)
class SemanticCacheConfig:
    max_entries: int = 10000
    default_ttl_seconds: int = 7200
    cleanup_interval_seconds: float = 3600.0
    similarity_threshold: float = 0.85
    high_watermark: float = 0.8
    low_watermark: float = 0.7
    invalidation_similarity: float = 0.9
    query_embedding_ttl_seconds: int = 1800

    def __post_init__(self) -> None:
        if self.max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if self.default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        if not 0.0 < self.low_watermark <= self.high_watermark <= 1.0:
            raise ValueError("watermarks must satisfy 0 < low <= high <= 1")
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be within [0, 1]")


@dataclass(frozen=True)
class CacheSearchOptions:
    similarity_threshold: float = 0.85
    max_results: int = 1
    include_expired: bool = False
    tag_filter: Sequence[str] | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be within [0, 1]")
        if self.max_results < 1:
            raise ValueError("max_results must be at least 1")


@dataclass(frozen=True)
class InvalidationCriteria:
    """Entries matching ANY populated criterion are removed."""

    tags: Sequence[str] | None = None
    model: str | None = None
    older_than: float | None = None
    similar_query: str | None = None


@dataclass(frozen=True)
class CleanupReport:
    expired: int
    evicted: int


class SemanticCache:
    """Caches generation outputs and serves them for semantically equivalent queries."""

    _logger = get_logger("semantic_cache")

    def __init__(
        self,
        embedder: QueryEmbedder,
        config: SemanticCacheConfig | None = None,
        *,
        store: KeyValueStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._embedder = embedder
        self._config = config or SemanticCacheConfig()
        self._store = store
        self._clock = clock
        self._entries: Dict[str, SemanticCacheEntry] = {}
        self._sequence = itertools.count()
        self._cleanup_task: asyncio.Task[None] | None = None
        self._total_queries = 0
        self._cache_hits = 0
        self._avg_similarity = 0.0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    @property
    def config(self) -> SemanticCacheConfig:
        return self._config

    @staticmethod
    def storage_key(entry_id: str) -> str:
        return f"semantic-cache:{entry_id}"

    # -- lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def shutdown(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def __aenter__(self) -> "SemanticCache":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.cleanup_interval_seconds)
            try:
                await self.cleanup()
            except Exception as exc:
                self._logger.error("cache.cleanup_failed", error=str(exc))

    # -- lookups ---------------------------------------------------------------

    async def lookup(self, query: str, options: CacheSearchOptions | None = None) -> List[CacheMatch]:
        """Return up to ``max_results`` matches, best first; the winner's hit count is bumped."""
        opts = options or CacheSearchOptions(similarity_threshold=self._config.similarity_threshold)
        self._total_queries += 1
        try:
            embedding = await self._embed(query)
        except Exception as exc:
            self._logger.error("cache.lookup_failed", error=str(exc))
            PipelineMetrics.observe_cache_lookup(False)
            return []
        matches = self._find_similar(embedding, opts)
        if not matches:
            PipelineMetrics.observe_cache_lookup(False)
            self._logger.debug("cache.miss")
            return []
        best = matches[0]
        best.entry.metadata.hit_count += 1
        self._cache_hits += 1
        self._avg_similarity += (best.similarity - self._avg_similarity) / self._cache_hits
        PipelineMetrics.observe_cache_lookup(True)
        self._logger.info("cache.hit", entry_id=best.entry.id, similarity=round(best.similarity, 3))
        return matches

    async def get(self, query: str, options: CacheSearchOptions | None = None) -> SemanticCacheEntry | None:
        matches = await self.lookup(query, options)
        return matches[0].entry if matches else None

    def _find_similar(self, embedding: Sequence[float], options: CacheSearchOptions) -> List[CacheMatch]:
        now = self._clock()
        tag_filter = set(options.tag_filter or ())
        candidates: List[CacheMatch] = []
        for entry in self._entries.values():
            if not options.include_expired and entry.is_expired(now):
                continue
            if tag_filter and not tag_filter.intersection(entry.metadata.tags):
                continue
            similarity = clamp_score(cosine_similarity(embedding, entry.query_embedding))
            if similarity >= options.similarity_threshold:
                candidates.append(CacheMatch(entry=entry, similarity=similarity))
        candidates.sort(key=lambda match: match.similarity, reverse=True)
        return candidates[: options.max_results]

    # -- writes ----------------------------------------------------------------

    async def set(
        self,
        query: str,
        response: Any,
        *,
        model: str,
        confidence: float = 0.0,
        tags: Sequence[str] | None = None,
        ttl_seconds: int | None = None,
    ) -> str:
        ttl = self._config.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        embedding = await self._embed(query)
        now = self._clock()
        entry_id = hashlib.sha256(f"{query}{now}{next(self._sequence)}".encode("utf-8")).hexdigest()[:16]
        entry = SemanticCacheEntry(
            id=entry_id,
            query=query,
            query_embedding=tuple(embedding),
            response=response,
            metadata=CacheEntryMetadata(
                model=model,
                timestamp=now,
                confidence=confidence,
                tags=list(tags or ()),
            ),
            ttl=ttl,
        )
        if len(self._entries) >= self._config.max_entries:
            await self.cleanup()
        self._entries[entry_id] = entry
        PipelineMetrics.cache_entries.set(len(self._entries))
        await self._persist(entry)
        self._logger.info("cache.stored", entry_id=entry_id, model=model, ttl=ttl)
        return entry_id

    async def invalidate(self, criteria: InvalidationCriteria) -> int:
        reference: Tuple[float, ...] | None = None
        if criteria.similar_query:
            reference = await self._embed(criteria.similar_query)
        tags = set(criteria.tags or ())
        doomed: List[str] = []
        for entry_id, entry in self._entries.items():
            if tags and tags.intersection(entry.metadata.tags):
                doomed.append(entry_id)
            elif criteria.model is not None and entry.metadata.model == criteria.model:
                doomed.append(entry_id)
            elif criteria.older_than is not None and entry.metadata.timestamp < criteria.older_than:
                doomed.append(entry_id)
            elif (
                reference is not None
                and clamp_score(cosine_similarity(reference, entry.query_embedding)) > self._config.invalidation_similarity
            ):
                doomed.append(entry_id)
        await self._remove(doomed)
        self._logger.info("cache.invalidated", count=len(doomed))
        return len(doomed)

    async def cleanup(self) -> CleanupReport:
        """Drop expired entries, then least-hit entries while above the high watermark."""
        now = self._clock()
        expired = [entry_id for entry_id, entry in self._entries.items() if entry.is_expired(now)]
        for entry_id in expired:
            self._entries.pop(entry_id, None)

        evicted: List[str] = []
        if len(self._entries) > self._config.max_entries * self._config.high_watermark:
            target = math.floor(self._config.max_entries * self._config.low_watermark)
            excess = len(self._entries) - target
            victims = heapq.nsmallest(excess, self._entries.values(), key=lambda entry: entry.metadata.hit_count)
            evicted = [victim.id for victim in victims]
            for entry_id in evicted:
                self._entries.pop(entry_id, None)
            PipelineMetrics.observe_eviction("semantic_cache", len(evicted))

        PipelineMetrics.cache_entries.set(len(self._entries))
        await self._forget(expired + evicted)
        self._logger.info("cache.cleanup", expired=len(expired), evicted=len(evicted), remaining=len(self._entries))
        return CleanupReport(expired=len(expired), evicted=len(evicted))

    def clear(self) -> None:
        self._entries.clear()
        PipelineMetrics.cache_entries.set(0)

    # -- stats -----------------------------------------------------------------

    def stats(self) -> CacheStats:
        entries = list(self._entries.values())
        tag_counts = Counter(tag for entry in entries for tag in entry.metadata.tags)
        top_tags = sorted(tag_counts.items(), key=lambda item: (-item[1], item[0]))[:10]
        memory = sum(
            len(entry.query) * 2
            + len(entry.query_embedding) * 8
            + len(json.dumps(entry.response, default=str)) * 2
            + 100
            for entry in entries
        )
        return CacheStats(
            total_entries=len(entries),
            hit_rate=self._cache_hits / self._total_queries if self._total_queries else 0.0,
            average_similarity=self._avg_similarity,
            top_tags=top_tags,
            memory_usage=memory,
        )

    # -- helpers ---------------------------------------------------------------

    async def _embed(self, text: str) -> Tuple[float, ...]:
        return await self._embedder.embed(text, ttl_seconds=self._config.query_embedding_ttl_seconds)

    async def _remove(self, entry_ids: Sequence[str]) -> None:
        for entry_id in entry_ids:
            self._entries.pop(entry_id, None)
        PipelineMetrics.cache_entries.set(len(self._entries))
        await self._forget(entry_ids)

    async def _forget(self, entry_ids: Sequence[str]) -> None:
        if self._store is None:
            return
        for entry_id in entry_ids:
            try:
                await self._store.delete(self.storage_key(entry_id))
            except Exception as exc:
                self._logger.warning("cache.remove_failed", entry_id=entry_id, error=str(exc))

    async def _persist(self, entry: SemanticCacheEntry) -> None:
        if self._store is None:
            return
        payload = {
            "id": entry.id,
            "query": entry.query,
            "query_embedding": list(entry.query_embedding),
            "response": entry.response,
            "metadata": {
                "model": entry.metadata.model,
                "timestamp": entry.metadata.timestamp,
                "hit_count": entry.metadata.hit_count,
                "confidence": entry.metadata.confidence,
                "tags": list(entry.metadata.tags),
            },
            "ttl": entry.ttl,
        }
        try:
            await self._store.set(self.storage_key(entry.id), payload, entry.ttl)
        except Exception as exc:
            self._logger.warning("cache.persist_failed", entry_id=entry.id, error=str(exc))
