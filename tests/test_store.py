from __future__ import annotations

import asyncio

import pytest

from noterag.embeddings.store import SearchOptions, VectorCollectionStore, VectorStoreConfig, collection_id_for
from noterag.errors import CollectionNotFoundError, EmbeddingDimensionError
from noterag.models import Chunk, ChunkMetadata
from noterag.persistence import InMemoryKeyValueStore


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


def _chunk(chunk_id: str, embedding, *, significance: float = 0.5, content: str | None = None) -> Chunk:
    text = content or f"content of {chunk_id}"
    return Chunk(
        id=chunk_id,
        content=text,
        start=0,
        end=len(text),
        metadata=ChunkMetadata(word_count=len(text.split()), char_count=len(text), significance=significance),
        embedding=tuple(embedding),
    )


def test_collection_ids_are_stable_and_idempotent():
    store = VectorCollectionStore()
    first = asyncio.run(store.create_collection("note_1"))
    assert first == collection_id_for("note_1")
    assert asyncio.run(store.create_collection("note_1")) == first
    assert len(store) == 1


def test_search_returns_all_chunks_sorted_by_similarity():
    store = VectorCollectionStore()
    collection_id = asyncio.run(store.create_collection("docs"))
    chunks = [
        _chunk("a", (0.0, 1.0)),
        _chunk("b", (1.0, 0.0)),
        _chunk("c", (0.6, 0.8)),
        _chunk("d", (0.8, 0.6)),
    ]
    asyncio.run(store.add_chunks(collection_id, chunks))
    results = store.semantic_search(collection_id, (1.0, 0.0), SearchOptions(top_k=4, min_similarity=0.0, rerank=False))
    assert [result.chunk.id for result in results] == ["b", "d", "c", "a"]
    similarities = [result.similarity for result in results]
    assert similarities == sorted(similarities, reverse=True)


def test_min_similarity_and_top_k_filter_results():
    store = VectorCollectionStore()
    collection_id = asyncio.run(store.create_collection("docs"))
    asyncio.run(store.add_chunks(collection_id, [_chunk("a", (0.0, 1.0)), _chunk("b", (1.0, 0.0)), _chunk("c", (0.6, 0.8))]))
    results = store.semantic_search(collection_id, (1.0, 0.0), SearchOptions(top_k=5, min_similarity=0.5, rerank=False))
    assert [result.chunk.id for result in results] == ["b", "c"]
    top = store.semantic_search(collection_id, (1.0, 0.0), SearchOptions(top_k=1, min_similarity=0.0))
    assert len(top) == 1


def test_rerank_blends_similarity_with_significance():
    store = VectorCollectionStore()
    collection_id = asyncio.run(store.create_collection("docs"))
    asyncio.run(
        store.add_chunks(
            collection_id,
            [_chunk("exact", (1.0, 0.0), significance=0.0), _chunk("important", (0.8, 0.6), significance=1.0)],
        ),
    )
    plain = store.semantic_search(collection_id, (1.0, 0.0), SearchOptions(min_similarity=0.0, rerank=False))
    reranked = store.semantic_search(collection_id, (1.0, 0.0), SearchOptions(min_similarity=0.0, rerank=True))
    assert [result.chunk.id for result in plain] == ["exact", "important"]
    assert [result.chunk.id for result in reranked] == ["important", "exact"]
    assert reranked[0].relevance_score == pytest.approx(0.8 * 0.7 + 0.3)


def test_chunks_without_embeddings_are_skipped():
    store = VectorCollectionStore()
    collection_id = asyncio.run(store.create_collection("docs"))
    asyncio.run(store.add_chunks(collection_id, [_chunk("empty", ()), _chunk("full", (1.0, 0.0))]))
    results = store.semantic_search(collection_id, (1.0, 0.0), SearchOptions(min_similarity=0.0))
    assert [result.chunk.id for result in results] == ["full"]


def test_readding_chunks_upserts_by_id():
    store = VectorCollectionStore()
    collection_id = asyncio.run(store.create_collection("docs"))
    asyncio.run(store.add_chunks(collection_id, [_chunk("a", (1.0, 0.0)), _chunk("b", (0.0, 1.0))]))
    asyncio.run(store.add_chunks(collection_id, [_chunk("a", (0.5, 0.5)), _chunk("b", (0.0, 1.0))]))
    stats = store.get_collection_stats(collection_id)
    assert stats is not None
    assert stats.total_chunks == 2
    assert stats.embedding_dimension == 2


def test_dimension_mismatch_is_rejected():
    store = VectorCollectionStore()
    collection_id = asyncio.run(store.create_collection("docs"))
    asyncio.run(store.add_chunks(collection_id, [_chunk("a", (1.0, 0.0))]))
    with pytest.raises(EmbeddingDimensionError):
        asyncio.run(store.add_chunks(collection_id, [_chunk("b", (1.0, 0.0, 0.0))]))


def test_unknown_collection_raises():
    store = VectorCollectionStore()
    with pytest.raises(CollectionNotFoundError):
        store.semantic_search("missing", (1.0,))
    with pytest.raises(CollectionNotFoundError):
        asyncio.run(store.add_chunks("missing", []))
    assert store.get_collection_stats("missing") is None


def test_find_similar_chunks_excludes_reference():
    store = VectorCollectionStore()
    collection_id = asyncio.run(store.create_collection("docs"))
    chunks = [_chunk("ref", (1.0, 0.0)), _chunk("twin", (1.0, 0.0)), _chunk("near", (0.9, 0.1))]
    asyncio.run(store.add_chunks(collection_id, chunks))
    results = store.find_similar_chunks(collection_id, chunks[0], top_k=3)
    ids = [result.chunk.id for result in results]
    assert "ref" not in ids
    assert set(ids) == {"twin", "near"}


def test_capacity_evicts_least_recently_updated():
    store = VectorCollectionStore(VectorStoreConfig(max_collections=5), clock=FakeClock())
    ids = [asyncio.run(store.create_collection(f"note_{index}")) for index in range(5)]
    asyncio.run(store.add_chunks(ids[0], [_chunk("fresh", (1.0, 0.0))]))
    newest = asyncio.run(store.create_collection("note_5"))
    assert len(store) == 5
    assert ids[1] not in store
    assert ids[0] in store
    assert newest in store


def test_eviction_destroys_snapshots():
    snapshots = InMemoryKeyValueStore()
    store = VectorCollectionStore(VectorStoreConfig(max_collections=2), snapshot_store=snapshots, clock=FakeClock())

    async def scenario():
        for index in range(50):
            collection_id = await store.create_collection(f"note_{index}")
            await store.add_chunks(collection_id, [_chunk(f"{index}-0", (1.0, 0.0))])

    asyncio.run(scenario())
    assert len(store) == 2
    assert len(snapshots) == 2
    evicted = collection_id_for("note_0")
    assert asyncio.run(store.restore_collection(evicted)) is False


def test_snapshot_restores_collection_in_fresh_store():
    snapshots = InMemoryKeyValueStore()
    store = VectorCollectionStore(snapshot_store=snapshots, clock=FakeClock())
    first = asyncio.run(store.create_collection("note_a"))
    asyncio.run(store.add_chunks(first, [_chunk("a-0", (1.0, 0.0), content="alpha")]))
    store.clear()

    fresh = VectorCollectionStore(snapshot_store=snapshots)
    assert asyncio.run(fresh.restore_collection(first))
    assert [chunk.content for chunk in fresh.get_chunks(first)] == ["alpha"]
    assert fresh.get_chunks(first)[0].embedding == (1.0, 0.0)


def test_restore_without_snapshot_or_with_garbage_fails_quietly():
    snapshots = InMemoryKeyValueStore()
    store = VectorCollectionStore(snapshot_store=snapshots)
    assert asyncio.run(store.restore_collection("nothing")) is False
    asyncio.run(snapshots.set(VectorCollectionStore.snapshot_key("bad"), {"id": "bad"}))
    assert asyncio.run(store.restore_collection("bad")) is False
    assert asyncio.run(VectorCollectionStore().restore_collection("any")) is False


def test_delete_removes_snapshot():
    snapshots = InMemoryKeyValueStore()
    store = VectorCollectionStore(snapshot_store=snapshots)
    collection_id = asyncio.run(store.create_collection("docs"))
    asyncio.run(store.add_chunks(collection_id, [_chunk("a", (1.0, 0.0))]))
    assert VectorCollectionStore.snapshot_key(collection_id) in snapshots
    assert asyncio.run(store.delete_collection(collection_id))
    assert collection_id not in store
    assert VectorCollectionStore.snapshot_key(collection_id) not in snapshots
    assert asyncio.run(store.restore_collection(collection_id)) is False


def test_list_and_clear():
    store = VectorCollectionStore()
    asyncio.run(store.create_collection("one"))
    asyncio.run(store.create_collection("two"))
    assert {item["name"] for item in store.list_collections()} == {"one", "two"}
    store.clear()
    assert len(store) == 0


def test_search_options_validation():
    with pytest.raises(ValueError):
        SearchOptions(top_k=0)
    with pytest.raises(ValueError):
        SearchOptions(min_similarity=1.5)
