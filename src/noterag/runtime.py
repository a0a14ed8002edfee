"""Wiring of the retrieval core from settings."""

from __future__ import annotations

from dataclasses import dataclass

from noterag.cache.semantic import SemanticCache, SemanticCacheConfig
from noterag.chunking.service import ChunkingOptions, DocumentChunker
from noterag.chunking.tokens import CharRatioTokenEstimator, HuggingFaceTokenEstimator, TokenEstimator
from noterag.config import Settings, get_settings
from noterag.embeddings.service import CachedEmbedder, EmbeddingConfig, build_embedding_provider
from noterag.embeddings.store import VectorCollectionStore, VectorStoreConfig
from noterag.metrics.observability import configure_logging, get_logger
from noterag.persistence.store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from noterag.services.generation import GenerationConfig, build_generator
from noterag.services.rag import RAGConfig, RAGService


@dataclass
class RAGRuntime:
    settings: Settings
    store: KeyValueStore
    embedder: CachedEmbedder
    vector_store: VectorCollectionStore
    semantic_cache: SemanticCache
    rag: RAGService

    async def start(self) -> None:
        await self.semantic_cache.start()
        get_logger("runtime").info("runtime.started", persistence=type(self.store).__name__)

    async def shutdown(self) -> None:
        await self.semantic_cache.shutdown()
        self.semantic_cache.clear()
        self.vector_store.clear()
        if isinstance(self.store, RedisKeyValueStore):
            await self.store.close()
        get_logger("runtime").info("runtime.stopped")

    async def __aenter__(self) -> "RAGRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()


def _token_estimator(settings: Settings) -> TokenEstimator:
    if settings.tokenizer_model:
        return HuggingFaceTokenEstimator(settings.tokenizer_model)
    return CharRatioTokenEstimator()


def build_dependencies(settings: Settings | None = None, *, store: KeyValueStore | None = None) -> RAGRuntime:
    settings = settings or get_settings()
    configure_logging()
    if store is None:
        store = RedisKeyValueStore.from_url(settings.redis_url) if settings.redis_url else InMemoryKeyValueStore()

    chunker = DocumentChunker(
        ChunkingOptions(
            max_chunk_size=settings.chunk_max_tokens,
            overlap_size=settings.chunk_overlap_tokens,
            preserve_semantic_boundaries=settings.preserve_semantic_boundaries,
            analysis_level=settings.analysis_level,
        ),
        token_estimator=_token_estimator(settings),
    )
    embedding_config = EmbeddingConfig(
        model=settings.embedding_model,
        dim=settings.embedding_dim,
        use_model=settings.use_model_embeddings,
        device=settings.embedding_device,
        input_limit=settings.embedding_input_limit,
        cache_ttl_seconds=settings.embedding_cache_ttl_seconds,
        batch_size=settings.embedding_batch_size,
        batch_delay_seconds=settings.embedding_batch_delay_seconds,
    )
    embedder = CachedEmbedder(build_embedding_provider(embedding_config), embedding_config, cache=store)
    vector_store = VectorCollectionStore(
        VectorStoreConfig(
            max_collections=settings.max_collections,
            eviction_fraction=settings.collection_eviction_fraction,
            snapshot_ttl_seconds=settings.collection_snapshot_ttl_seconds,
        ),
        snapshot_store=store,
    )
    semantic_cache = SemanticCache(
        embedder,
        SemanticCacheConfig(
            max_entries=settings.cache_max_entries,
            default_ttl_seconds=settings.cache_default_ttl_seconds,
            cleanup_interval_seconds=settings.cache_cleanup_interval_seconds,
            similarity_threshold=settings.cache_similarity_threshold,
            query_embedding_ttl_seconds=settings.cache_query_embedding_ttl_seconds,
        ),
        store=store,
    )
    generator = build_generator(
        GenerationConfig(
            model=settings.generator_model,
            max_new_tokens=settings.generator_max_new_tokens,
            temperature=settings.generator_temperature,
            use_model=settings.use_model_generator,
        ),
    )
    rag = RAGService(
        chunker,
        embedder,
        vector_store,
        generator,
        RAGConfig(
            max_context_tokens=settings.rag_max_context_tokens,
            retrieval_top_k=settings.rag_retrieval_top_k,
            min_similarity=settings.rag_min_similarity,
            fallback_confidence=settings.rag_fallback_confidence,
            context_ttl_seconds=settings.rag_context_ttl_seconds,
            answer_cache_ttl_seconds=settings.rag_answer_cache_ttl_seconds,
            answer_cache_similarity=settings.cache_similarity_threshold,
        ),
        semantic_cache=semantic_cache,
        context_store=store,
    )
    return RAGRuntime(
        settings=settings,
        store=store,
        embedder=embedder,
        vector_store=vector_store,
        semantic_cache=semantic_cache,
        rag=rag,
    )
