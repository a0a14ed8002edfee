"""In-process vector collection store with snapshot persistence."""

from __future__ import annotations

import hashlib
import heapq
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, MutableMapping, Sequence

import numpy as np

from noterag.errors import CollectionNotFoundError, EmbeddingDimensionError
from noterag.metrics.observability import PipelineMetrics, get_logger
from noterag.models import Chunk, Collection, CollectionStats, SearchResult
from noterag.persistence.store import KeyValueStore
from noterag.similarity import clamp_score, cosine_similarities

SIMILARITY_WEIGHT = 0.7
SIGNIFICANCE_WEIGHT = 0.3


@dataclass(frozen=True)
class VectorStoreConfig:
    """Capacity and persistence settings for the collection store."""

    max_collections: int = 100
    eviction_fraction: float = 0.2
    snapshot_ttl_seconds: int = 86400 * 7

    def __post_init__(self) -> None:
        if self.max_collections < 1:
            raise ValueError("max_collections must be at least 1")
        if not 0.0 < self.eviction_fraction <= 1.0:
            raise ValueError("eviction_fraction must be in (0, 1]")


@dataclass(frozen=True)
class SearchOptions:
    top_k: int = 5
    min_similarity: float = 0.3
    rerank: bool = True

    def __post_init__(self) -> None:
        if self.top_k < 1:
            raise ValueError("top_k must be at least 1")
        if not 0.0 <= self.min_similarity <= 1.0:
            raise ValueError("min_similarity must be within [0, 1]")


def relevance_score(chunk: Chunk, similarity: float) -> float:
    return similarity * SIMILARITY_WEIGHT + chunk.metadata.significance * SIGNIFICANCE_WEIGHT


def collection_id_for(name: str) -> str:
    return hashlib.sha256(name.encode("utf-8")).hexdigest()[:16]


class VectorCollectionStore:
    """Per-document in-memory vector index.

    All map mutations happen between awaits; snapshot persistence is awaited
    only after the in-memory state has been updated. Eviction destroys a
    collection together with its snapshot. Snapshots of resident collections
    survive ``clear()`` and can be restored by a fresh store.
    """

    _logger = get_logger("vector_store")

    def __init__(
        self,
        config: VectorStoreConfig | None = None,
        *,
        snapshot_store: KeyValueStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or VectorStoreConfig()
        self._snapshots = snapshot_store
        self._clock = clock
        self._collections: Dict[str, Collection] = {}

    def __contains__(self, collection_id: object) -> bool:
        return collection_id in self._collections

    def __len__(self) -> int:
        return len(self._collections)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    @staticmethod
    def snapshot_key(collection_id: str) -> str:
        return f"vector-collection:{collection_id}"

    async def create_collection(self, name: str) -> str:
        collection_id = collection_id_for(name)
        if collection_id in self._collections:
            return collection_id
        evicted = self._evict_oldest() if len(self._collections) >= self._config.max_collections else []
        now = self._now()
        self._collections[collection_id] = Collection(id=collection_id, name=name, created_at=now, last_updated=now)
        PipelineMetrics.resident_collections.set(len(self._collections))
        self._logger.info("collection.created", collection=name, collection_id=collection_id)
        await self._drop_snapshots(evicted)
        return collection_id

    def _evict_oldest(self) -> List[str]:
        """Remove the least recently updated collections and return their ids."""
        count = max(1, math.floor(len(self._collections) * self._config.eviction_fraction))
        victims = heapq.nsmallest(count, self._collections.values(), key=lambda item: item.last_updated)
        for victim in victims:
            self._collections.pop(victim.id, None)
        PipelineMetrics.observe_eviction("collection", len(victims))
        self._logger.info("collection.evicted", count=len(victims), remaining=len(self._collections))
        return [victim.id for victim in victims]

    async def _drop_snapshots(self, collection_ids: Sequence[str]) -> None:
        if self._snapshots is None:
            return
        for collection_id in collection_ids:
            try:
                await self._snapshots.delete(self.snapshot_key(collection_id))
            except Exception as exc:
                self._logger.warning("collection.snapshot_delete_failed", collection_id=collection_id, error=str(exc))

    def _require(self, collection_id: str) -> Collection:
        collection = self._collections.get(collection_id)
        if collection is None:
            raise CollectionNotFoundError(f"Collection {collection_id} not found")
        return collection

    async def add_chunks(self, collection_id: str, chunks: Sequence[Chunk]) -> None:
        collection = self._require(collection_id)
        dimension = collection.dimension
        for chunk in chunks:
            if not chunk.has_embedding:
                continue
            if dimension is None:
                dimension = len(chunk.embedding)
            elif len(chunk.embedding) != dimension:
                raise EmbeddingDimensionError(
                    f"Chunk {chunk.id} has dimension {len(chunk.embedding)}, collection uses {dimension}",
                )
        for chunk in chunks:
            collection.chunks[chunk.id] = chunk
        collection.dimension = dimension
        collection.last_updated = self._now()
        self._logger.info(
            "collection.chunks_added",
            collection_id=collection_id,
            added=len(chunks),
            total_chunks=collection.total_chunks,
        )
        await self._persist(collection)

    def semantic_search(
        self,
        collection_id: str,
        query_embedding: Sequence[float],
        options: SearchOptions | None = None,
    ) -> List[SearchResult]:
        opts = options or SearchOptions()
        collection = self._require(collection_id)
        embedded = [chunk for chunk in collection.chunks.values() if chunk.has_embedding]
        if not embedded:
            return []
        matrix = np.asarray([chunk.embedding for chunk in embedded], dtype="float64")
        scores = cosine_similarities(matrix, query_embedding)
        results: List[SearchResult] = []
        for chunk, raw in zip(embedded, scores):
            similarity = clamp_score(float(raw))
            if similarity >= opts.min_similarity:
                results.append(SearchResult(chunk=chunk, similarity=similarity, relevance_score=relevance_score(chunk, similarity)))
        results.sort(key=lambda result: result.similarity, reverse=True)
        if opts.rerank:
            results.sort(key=lambda result: result.relevance_score, reverse=True)
        return results[: opts.top_k]

    def find_similar_chunks(
        self,
        collection_id: str,
        reference: Chunk,
        top_k: int = 3,
        *,
        min_similarity: float = 0.4,
    ) -> List[SearchResult]:
        if not reference.has_embedding:
            return []
        results = self.semantic_search(
            collection_id,
            reference.embedding,
            SearchOptions(top_k=top_k + 1, min_similarity=min_similarity, rerank=False),
        )
        return [result for result in results if result.chunk.id != reference.id][:top_k]

    def get_chunks(self, collection_id: str) -> List[Chunk]:
        return list(self._require(collection_id).chunks.values())

    def get_collection_stats(self, collection_id: str) -> CollectionStats | None:
        collection = self._collections.get(collection_id)
        if collection is None:
            return None
        chunks = list(collection.chunks.values())
        avg = sum(chunk.metadata.char_count for chunk in chunks) / len(chunks) if chunks else 0.0
        return CollectionStats(
            total_chunks=collection.total_chunks,
            avg_chunk_size=round(avg),
            embedding_dimension=collection.dimension or 0,
            last_updated=collection.last_updated,
        )

    def list_collections(self) -> List[Mapping[str, object]]:
        return [
            {
                "id": collection.id,
                "name": collection.name,
                "total_chunks": collection.total_chunks,
                "last_updated": collection.last_updated,
            }
            for collection in self._collections.values()
        ]

    async def restore_collection(self, collection_id: str) -> bool:
        """Rehydrate a collection from its snapshot. Never raises."""
        if collection_id in self._collections:
            return True
        if self._snapshots is None:
            return False
        try:
            payload = await self._snapshots.get(self.snapshot_key(collection_id))
            if not payload:
                return False
            collection = self._deserialize_collection(payload)
        except Exception as exc:
            self._logger.warning("collection.restore_failed", collection_id=collection_id, error=str(exc))
            return False
        evicted: List[str] = []
        if collection_id not in self._collections:
            if len(self._collections) >= self._config.max_collections:
                evicted = self._evict_oldest()
            self._collections[collection_id] = collection
            PipelineMetrics.resident_collections.set(len(self._collections))
        self._logger.info("collection.restored", collection_id=collection_id, total_chunks=collection.total_chunks)
        await self._drop_snapshots(evicted)
        return True

    async def delete_collection(self, collection_id: str) -> bool:
        deleted = self._collections.pop(collection_id, None) is not None
        PipelineMetrics.resident_collections.set(len(self._collections))
        await self._drop_snapshots([collection_id])
        if deleted:
            self._logger.info("collection.deleted", collection_id=collection_id)
        return deleted

    def clear(self) -> None:
        self._collections.clear()
        PipelineMetrics.resident_collections.set(0)

    async def _persist(self, collection: Collection) -> None:
        if self._snapshots is None:
            return
        payload = self._serialize_collection(collection)
        try:
            await self._snapshots.set(self.snapshot_key(collection.id), payload, self._config.snapshot_ttl_seconds)
        except Exception as exc:
            self._logger.warning("collection.snapshot_failed", collection_id=collection.id, error=str(exc))

    @staticmethod
    def _serialize_collection(collection: Collection) -> MutableMapping[str, object]:
        return {
            "id": collection.id,
            "name": collection.name,
            "chunks": [chunk.to_dict() for chunk in collection.chunks.values()],
            "created_at": collection.created_at.isoformat(),
            "last_updated": collection.last_updated.isoformat(),
            "dimension": collection.dimension,
        }

    @staticmethod
    def _deserialize_collection(payload: Mapping[str, Any]) -> Collection:
        chunks = [Chunk.from_dict(item) for item in payload.get("chunks") or []]
        dimension = payload.get("dimension")
        return Collection(
            id=str(payload["id"]),
            name=str(payload.get("name", "")),
            chunks={chunk.id: chunk for chunk in chunks},
            created_at=datetime.fromisoformat(str(payload["created_at"])),
            last_updated=datetime.fromisoformat(str(payload["last_updated"])),
            dimension=int(dimension) if dimension is not None else None,
        )
