"""Shared domain models used across the NoteRAG pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Sequence, Tuple

ChunkType = Literal["paragraph", "heading", "table", "code", "quote"]
CHUNK_TYPES: Tuple[str, ...] = ("paragraph", "heading", "table", "code", "quote")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChunkMetadata:
    """Size and importance information captured for a chunk."""

    word_count: int
    char_count: int
    significance: float = 0.5
    overlap_chars: int = 0
    section_title: str | None = None


@dataclass(frozen=True)
class Chunk:
    """Bounded slice of a document; ``content == source[start:end]``."""

    id: str
    content: str
    start: int
    end: int
    type: ChunkType = "paragraph"
    metadata: ChunkMetadata = field(default_factory=lambda: ChunkMetadata(word_count=0, char_count=0))
    embedding: Tuple[float, ...] = ()

    @property
    def has_embedding(self) -> bool:
        return len(self.embedding) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "start": self.start,
            "end": self.end,
            "type": self.type,
            "embedding": list(self.embedding),
            "metadata": {
                "word_count": self.metadata.word_count,
                "char_count": self.metadata.char_count,
                "significance": self.metadata.significance,
                "overlap_chars": self.metadata.overlap_chars,
                "section_title": self.metadata.section_title,
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Chunk":
        meta = data.get("metadata") or {}
        chunk_type = str(data.get("type", "paragraph"))
        return cls(
            id=str(data["id"]),
            content=str(data.get("content", "")),
            start=int(data.get("start", 0)),
            end=int(data.get("end", 0)),
            type=chunk_type if chunk_type in CHUNK_TYPES else "paragraph",  # type: ignore[arg-type]
            metadata=ChunkMetadata(
                word_count=int(meta.get("word_count", 0)),
                char_count=int(meta.get("char_count", 0)),
                significance=float(meta.get("significance", 0.5)),
                overlap_chars=int(meta.get("overlap_chars", 0)),
                section_title=meta.get("section_title"),
            ),
            embedding=tuple(float(value) for value in data.get("embedding") or ()),
        )


@dataclass(frozen=True)
class OutlineEntry:
    level: int
    title: str
    start_chunk: int = 0
    end_chunk: int = 0


@dataclass(frozen=True)
class DocumentStructure:
    """Result of chunking a document."""

    title: str
    chunks: Sequence[Chunk]
    outline: Sequence[OutlineEntry] = ()
    total_tokens: int = 0
    processing_time_ms: float = 0.0
    degraded: bool = False


@dataclass
class Collection:
    """Named, addressable set of chunks supporting similarity search."""

    id: str
    name: str
    chunks: Dict[str, Chunk] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)
    dimension: int | None = None

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)


@dataclass(frozen=True)
class SearchResult:
    """Chunk returned from a collection search."""

    chunk: Chunk
    similarity: float
    relevance_score: float


@dataclass(frozen=True)
class CollectionStats:
    total_chunks: int
    avg_chunk_size: int
    embedding_dimension: int
    last_updated: datetime


@dataclass
class CacheEntryMetadata:
    model: str
    timestamp: float
    hit_count: int = 0
    confidence: float = 0.0
    tags: List[str] = field(default_factory=list)


@dataclass
class SemanticCacheEntry:
    """Generation output keyed by the meaning of the query that produced it."""

    id: str
    query: str
    query_embedding: Tuple[float, ...]
    response: Any
    metadata: CacheEntryMetadata
    ttl: int

    def age(self, now: float) -> float:
        return now - self.metadata.timestamp

    def is_expired(self, now: float) -> bool:
        return self.age(now) > self.ttl


@dataclass(frozen=True)
class CacheMatch:
    entry: SemanticCacheEntry
    similarity: float


@dataclass(frozen=True)
class CacheStats:
    total_entries: int
    hit_rate: float
    average_similarity: float
    top_tags: Sequence[Tuple[str, int]]
    memory_usage: int


class ContextState(str, Enum):
    UNINDEXED = "unindexed"
    INDEXING = "indexing"
    READY = "ready"
    INVALIDATED = "invalidated"
    DELETED = "deleted"


@dataclass
class RAGContext:
    """Per-document handle tying source content to its vector collection."""

    document_id: str
    collection_id: str
    original_content: str = ""
    structure: DocumentStructure | None = None
    last_updated: datetime = field(default_factory=utcnow)
    state: ContextState = ContextState.UNINDEXED
    degraded: bool = False

    @property
    def total_chunks(self) -> int:
        return len(self.structure.chunks) if self.structure else 0


@dataclass(frozen=True)
class QueryMetadata:
    total_chunks: int
    relevant_chunks: int
    average_similarity: float
    model_used: str
    cached: bool = False


@dataclass(frozen=True)
class RAGQueryResult:
    """Structured answer produced by the RAG pipeline with its sources."""

    answer: str
    sources: Sequence[SearchResult]
    confidence: float
    processing_time_ms: float
    used_context: str
    metadata: QueryMetadata


@dataclass(frozen=True)
class StudyQuestion:
    question: str
    answer: str
    difficulty: str
    topic: str
    sources: Sequence[SearchResult] = ()
