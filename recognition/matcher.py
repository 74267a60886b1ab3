"""Cosine-similarity matching between face feature vectors.

The functions here are pure so the matching rules can be exercised with
synthetic vectors; callers are responsible for logging.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence, Tuple

import numpy as np

from .errors import DegenerateVectorError, DimensionMismatchError

DEFAULT_MATCH_THRESHOLD = 0.6


@dataclass(frozen=True)
class MatchResult:
    """Similarity between two vectors and the resulting decision."""

    similarity: float
    is_match: bool
    threshold: float


@dataclass(frozen=True)
class BestMatch:
    """Highest-scoring enrolled template for a probe vector."""

    template_id: Any
    similarity: float
    evaluated: int


def as_feature_vector(values: Sequence[float] | np.ndarray) -> np.ndarray:
    """Coerce ``values`` into a flat float64 vector."""

    vector = np.asarray(values, dtype=np.float64).reshape(-1)
    if vector.size == 0:
        raise DegenerateVectorError("Feature vector is empty.")
    return vector


def cosine_similarity(
    vector_a: Sequence[float] | np.ndarray, vector_b: Sequence[float] | np.ndarray
) -> float:
    """Return dot(A, B) / (|A| * |B|), clipped to [-1, 1].

    Raises:
        DegenerateVectorError: when either vector has zero norm or non-finite values.
        DimensionMismatchError: when the vectors differ in length.
    """

    a = as_feature_vector(vector_a)
    b = as_feature_vector(vector_b)
    if a.shape != b.shape:
        raise DimensionMismatchError(f"Cannot compare vectors of length {a.size} and {b.size}.")
    if not (np.all(np.isfinite(a)) and np.all(np.isfinite(b))):
        raise DegenerateVectorError("Feature vectors must contain only finite values.")

    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        raise DegenerateVectorError("Cosine similarity is undefined for a zero-norm vector.")

    similarity = float(np.dot(a, b) / (norm_a * norm_b))
    return float(np.clip(similarity, -1.0, 1.0))


def compare(
    vector_a: Sequence[float] | np.ndarray,
    vector_b: Sequence[float] | np.ndarray,
    threshold: float = DEFAULT_MATCH_THRESHOLD,
) -> MatchResult:
    """Compare two feature vectors; a match requires similarity strictly above ``threshold``."""

    similarity = cosine_similarity(vector_a, vector_b)
    return MatchResult(similarity=similarity, is_match=similarity > threshold, threshold=threshold)


def best_match(
    probe: Sequence[float] | np.ndarray,
    candidates: Iterable[Tuple[Any, Sequence[float] | np.ndarray]],
) -> Tuple[Optional[BestMatch], list[Any]]:
    """Return the maximum-similarity candidate for ``probe``.

    ``candidates`` yields ``(template_id, vector)`` pairs in a stable order. On an
    exact similarity tie the earlier candidate is kept. Candidates that cannot be
    compared (degenerate or wrong length) are skipped and their ids are returned
    in the second element so the caller can log them.

    Raises:
        DegenerateVectorError: when the probe itself is degenerate.
    """

    probe_vector = as_feature_vector(probe)
    if not np.all(np.isfinite(probe_vector)) or float(np.linalg.norm(probe_vector)) == 0.0:
        raise DegenerateVectorError("Probe feature vector is degenerate.")

    best: Optional[BestMatch] = None
    skipped: list[Any] = []
    evaluated = 0
    for template_id, vector in candidates:
        try:
            similarity = cosine_similarity(probe_vector, vector)
        except (DegenerateVectorError, DimensionMismatchError):
            skipped.append(template_id)
            continue
        evaluated += 1
        if best is None or similarity > best.similarity:
            best = BestMatch(template_id=template_id, similarity=similarity, evaluated=evaluated)

    if best is not None:
        best = BestMatch(
            template_id=best.template_id, similarity=best.similarity, evaluated=evaluated
        )
    return best, skipped


__all__ = [
    "BestMatch",
    "DEFAULT_MATCH_THRESHOLD",
    "MatchResult",
    "as_feature_vector",
    "best_match",
    "compare",
    "cosine_similarity",
]
