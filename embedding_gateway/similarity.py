"""Cosine similarity, threshold ranking and greedy clustering over embedding vectors."""

from __future__ import annotations

import math
from typing import Callable, Sequence, TypeVar

from .errors import DegenerateVectorError, DimensionMismatchError, InvalidInputError

T = TypeVar("T")


def magnitude(vector: Sequence[float]) -> float:
    return math.sqrt(math.fsum(x * x for x in vector))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Compute dot(a, b) / (|a| * |b|).

    Raises DimensionMismatchError for unequal lengths and DegenerateVectorError
    if either vector has zero magnitude. The result is clamped to [-1, 1] to
    absorb floating-point drift.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))
    norm_a = magnitude(a)
    if norm_a == 0:
        raise DegenerateVectorError("First vector has zero magnitude")
    norm_b = magnitude(b)
    if norm_b == 0:
        raise DegenerateVectorError("Second vector has zero magnitude")
    dot = math.fsum(x * y for x, y in zip(a, b))
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def validate_threshold(threshold: float) -> float:
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
        raise InvalidInputError("threshold must be a number")
    if math.isnan(threshold) or not -1.0 <= threshold <= 1.0:
        raise InvalidInputError("threshold must be between -1 and 1")
    return float(threshold)


def rank_by_similarity(
    query: Sequence[float],
    items: Sequence[T],
    vectors: Sequence[Sequence[float]],
    threshold: float,
) -> list[tuple[int, T, float]]:
    """Score items against query, keep score >= threshold, sort descending.

    Returns (original index, item, score). sorted() is stable, so equal scores
    keep input order.
    """
    scored = [
        (i, item, cosine_similarity(query, vector))
        for i, (item, vector) in enumerate(zip(items, vectors))
    ]
    kept = [entry for entry in scored if entry[2] >= threshold]
    return sorted(kept, key=lambda entry: entry[2], reverse=True)


def greedy_clusters(
    vectors: Sequence[Sequence[float]],
    threshold: float,
    score: Callable[[Sequence[float], Sequence[float]], float] = cosine_similarity,
) -> list[list[int]]:
    """Single-pass clustering: each unassigned vector seeds a cluster and absorbs
    every later unassigned vector whose similarity to the seed is >= threshold."""
    assigned: set[int] = set()
    clusters: list[list[int]] = []
    for i, seed in enumerate(vectors):
        if i in assigned:
            continue
        cluster = [i]
        assigned.add(i)
        for j in range(i + 1, len(vectors)):
            if j in assigned:
                continue
            if score(seed, vectors[j]) >= threshold:
                cluster.append(j)
                assigned.add(j)
        clusters.append(cluster)
    return clusters
