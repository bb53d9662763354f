"""
Vector similarity helpers.

Every caller treats a ``DimensionMismatchError`` as "not similar" so memories
embedded under different models can coexist in one store.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, Optional, Sequence, TypeVar

import numpy as np

from agentmem.errors import DimensionMismatchError

T = TypeVar("T")


@dataclass
class SimilarityMatch(Generic[T]):
    item: T
    similarity: float


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Dot product over norms. Raises on length mismatch; zero vectors score 0."""
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))
    left = np.asarray(a, dtype=float)
    right = np.asarray(b, dtype=float)
    norm = float(np.linalg.norm(left) * np.linalg.norm(right))
    if norm == 0.0:
        return 0.0
    return float(np.dot(left, right) / norm)


def safe_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> Optional[float]:
    """Similarity, or None when either vector is missing or dimensions differ."""
    if not a or not b:
        return None
    try:
        return cosine_similarity(a, b)
    except DimensionMismatchError:
        return None


def find_top_k_similar(
    query: Sequence[float],
    candidates: Sequence[tuple[Any, Sequence[float]]],
    k: int,
    min_similarity: float = 0.0,
) -> list[SimilarityMatch]:
    """Rank ``(item, vector)`` pairs against ``query``.

    Mismatched candidates are dropped, the rest filtered by ``min_similarity``
    and sorted descending. Python's sort is stable so ties keep input order.
    """
    matches: list[SimilarityMatch] = []
    for item, vector in candidates:
        score = safe_similarity(query, vector)
        if score is None or score < min_similarity:
            continue
        matches.append(SimilarityMatch(item=item, similarity=score))
    matches.sort(key=lambda match: match.similarity, reverse=True)
    return matches[:k] if k > 0 else []
