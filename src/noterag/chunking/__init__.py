"""Document chunking pipeline."""

from .service import ChunkingOptions, DocumentChunker, chunk_text
from .tokens import CharRatioTokenEstimator, HuggingFaceTokenEstimator, TokenEstimator

__all__ = [
    "CharRatioTokenEstimator",
    "ChunkingOptions",
    "DocumentChunker",
    "HuggingFaceTokenEstimator",
    "TokenEstimator",
    "chunk_text",
]
