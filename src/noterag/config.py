"""Runtime configuration for the NoteRAG retrieval core."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="noterag_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"

    # Key/value persistence; unset means pure in-memory operation
    redis_url: str | None = None

    # Chunking
    chunk_max_tokens: int = 800
    chunk_overlap_tokens: int = 100
    preserve_semantic_boundaries: bool = True
    analysis_level: Literal["basic", "advanced"] = "advanced"
    tokenizer_model: str | None = None  # use a real tokenizer instead of chars/4

    # Embeddings
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embedding_dim: int = 384
    embedding_input_limit: int = 512
    embedding_cache_ttl_seconds: int = 86400
    embedding_batch_size: int = 10
    embedding_batch_delay_seconds: float = 0.1
    use_model_embeddings: bool = False
    embedding_device: str | None = None

    # Vector collections
    max_collections: int = 100
    collection_eviction_fraction: float = 0.2
    collection_snapshot_ttl_seconds: int = 86400 * 7

    # Semantic cache
    cache_max_entries: int = 10000
    cache_default_ttl_seconds: int = 7200
    cache_cleanup_interval_seconds: float = 3600.0
    cache_similarity_threshold: float = 0.85
    cache_query_embedding_ttl_seconds: int = 1800

    # RAG
    rag_max_context_tokens: int = 1500
    rag_retrieval_top_k: int = 10
    rag_min_similarity: float = 0.2
    rag_fallback_confidence: float = 0.1
    rag_context_ttl_seconds: int = 86400 * 7
    rag_answer_cache_ttl_seconds: int = 7200

    # Generation
    generator_model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    generator_max_new_tokens: int = 512
    generator_temperature: float = 0.3
    use_model_generator: bool = False

    evaluation_min_recall: float = 0.5
    evaluation_min_mrr: float = 0.5

    @property
    def is_test(self) -> bool:
        return self.environment == "test"


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
