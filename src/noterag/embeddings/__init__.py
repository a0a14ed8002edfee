"""Embedding services and the vector collection store."""

from .service import (
    CachedEmbedder,
    EmbeddingConfig,
    EmbeddingFailure,
    EmbeddingProvider,
    EmbeddingResult,
    EmbeddingVector,
    HashEmbeddingProvider,
    HuggingFaceEmbeddingProvider,
    build_embedding_provider,
    parse_embedding_response,
)
from .store import SearchOptions, VectorCollectionStore, VectorStoreConfig

__all__ = [
    "CachedEmbedder",
    "EmbeddingConfig",
    "EmbeddingFailure",
    "EmbeddingProvider",
    "EmbeddingResult",
    "EmbeddingVector",
    "HashEmbeddingProvider",
    "HuggingFaceEmbeddingProvider",
    "SearchOptions",
    "VectorCollectionStore",
    "VectorStoreConfig",
    "build_embedding_provider",
    "parse_embedding_response",
]
