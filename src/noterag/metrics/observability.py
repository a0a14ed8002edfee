"""Observability helpers for NoteRAG."""

from __future__ import annotations

import logging
import time
from typing import Iterable

import structlog
from prometheus_client import Counter, Gauge, Histogram

from noterag.similarity import clamp_score

_logger_configured = False


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def get_logger(name: str = "noterag") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    chunking_latency = Histogram(
        "noterag_chunking_duration_seconds",
        "Time spent chunking documents.",
        buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0),
    )
    chunk_count = Histogram(
        "noterag_chunk_count",
        "Chunks produced per document.",
        buckets=(0, 1, 5, 10, 20, 40, 80, 160),
    )
    chunking_fallbacks = Counter(
        "noterag_chunking_fallback_total",
        "Documents chunked with fixed word windows after an error.",
    )
    embedding_requests = Counter(
        "noterag_embedding_requests_total",
        "Embedding lookups by outcome.",
        ["outcome"],
    )
    retrieval_latency = Histogram(
        "noterag_retrieval_duration_seconds",
        "Time spent retrieving context chunks.",
        buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 2.0),
    )
    retrieved_chunk_count = Histogram(
        "noterag_retrieved_chunk_count",
        "Number of chunks returned by retrieval.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    grounding_score = Histogram(
        "noterag_grounding_score",
        "Similarity of retrieved chunks used as context.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    generation_latency = Histogram(
        "noterag_generation_duration_seconds",
        "Time spent in the generation collaborator.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 15.0),
    )
    cache_lookups = Counter(
        "noterag_semantic_cache_lookups_total",
        "Semantic cache lookups by result.",
        ["result"],
    )
    cache_entries = Gauge(
        "noterag_semantic_cache_entries",
        "Resident semantic cache entries.",
    )
    resident_collections = Gauge(
        "noterag_resident_collections",
        "Vector collections held in memory.",
    )
    evictions = Counter(
        "noterag_evictions_total",
        "Items removed to stay under capacity.",
        ["kind"],
    )

    @classmethod
    def observe_chunking(cls, duration_seconds: float, chunk_count: int) -> None:
        cls.chunking_latency.observe(duration_seconds)
        cls.chunk_count.observe(chunk_count)

    @classmethod
    def observe_embedding(cls, outcome: str) -> None:
        cls.embedding_requests.labels(outcome=outcome).inc()

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        chunk_count: int,
        scores: Iterable[float],
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_chunk_count.observe(chunk_count)
        for score in scores:
            cls.grounding_score.observe(clamp_score(score))

    @classmethod
    def observe_generation(cls, duration_seconds: float) -> None:
        cls.generation_latency.observe(duration_seconds)

    @classmethod
    def observe_cache_lookup(cls, hit: bool) -> None:
        cls.cache_lookups.labels(result="hit" if hit else "miss").inc()

    @classmethod
    def observe_eviction(cls, kind: str, count: int) -> None:
        if count > 0:
            cls.evictions.labels(kind=kind).inc(count)


class TimedSection:
    """Context manager capturing elapsed time for metrics."""

    def __init__(self, callback) -> None:
        self._callback = callback
        self._start = 0.0
        self.elapsed = 0.0

    def __enter__(self) -> "TimedSection":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        self.elapsed = time.perf_counter() - self._start
        self._callback(self.elapsed)


__all__ = [
    "PipelineMetrics",
    "TimedSection",
    "configure_logging",
    "get_logger",
]
