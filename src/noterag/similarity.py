"""Vector similarity helpers."""

from __future__ import annotations

from typing import Sequence

import numpy as np


def clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


def zero_vector(dimension: int) -> tuple[float, ...]:
    return (0.0,) * dimension


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Return the cosine similarity of two vectors in [-1, 1].

    Vectors of different length, or with a zero norm, score 0.
    """
    if len(a) != len(b) or not a:
        return 0.0
    left = np.asarray(a, dtype="float64")
    right = np.asarray(b, dtype="float64")
    norm = float(np.linalg.norm(left) * np.linalg.norm(right))
    if norm == 0.0:
        return 0.0
    return float(np.dot(left, right) / norm)


def cosine_similarities(matrix: np.ndarray, query: Sequence[float]) -> np.ndarray:
    """Score every row of ``matrix`` against ``query``; zero-norm rows score 0."""
    vector = np.asarray(query, dtype="float64")
    if matrix.size == 0 or matrix.shape[1] != vector.shape[0]:
        return np.zeros(matrix.shape[0], dtype="float64")
    query_norm = np.linalg.norm(vector)
    if query_norm == 0.0:
        return np.zeros(matrix.shape[0], dtype="float64")
    row_norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ vector
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(row_norms > 0.0, dots / (row_norms * query_norm), 0.0)
    return scores


__all__ = ["clamp_score", "cosine_similarities", "cosine_similarity", "zero_vector"]
