"""Cosine-similarity ranking over in-memory candidates.

Pure functions, no I/O. Vectors are converted to float64 before any arithmetic so
near-ties rank the same way on every call.
"""
import logging
from dataclasses import dataclass
from typing import Generic, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

logger = logging.getLogger(__name__)

K = TypeVar("K")


@dataclass(frozen=True)
class ScoredCandidate(Generic[K]):
    """A candidate identifier paired with its similarity to the query, in [-1, 1]."""
    id: K
    score: float


def _as_vector(values: Optional[Sequence[float]]) -> Optional[np.ndarray]:
    if values is None:
        return None
    arr = np.asarray(values, dtype=np.float64)
    if arr.ndim != 1 or arr.size == 0:
        return None
    return arr


def _cosine(va: np.ndarray, vb: np.ndarray) -> Optional[float]:
    # None when either vector has zero length
    denom = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if denom == 0.0:
        return None
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity dot(a, b) / (|a| * |b|), clipped to [-1, 1].

    Raises:
        ValueError: If either vector is empty, zero-length or the shapes differ.
    """
    va, vb = _as_vector(a), _as_vector(b)
    if va is None or vb is None:
        raise ValueError("cosine similarity needs two non-empty vectors")
    if va.shape != vb.shape:
        raise ValueError(f"dimension mismatch: {va.shape[0]} != {vb.shape[0]}")
    score = _cosine(va, vb)
    if score is None:
        raise ValueError("cosine similarity is undefined for a zero vector")
    return score


def rank(
    query_vector: Sequence[float],
    candidates: Sequence[Tuple[K, Optional[Sequence[float]]]],
    top_k: int,
) -> List[ScoredCandidate[K]]:
    """Score candidates against the query and return the best top_k.

    Candidates whose vector is None, empty, all zeros or of the wrong dimension are
    excluded before scoring. Ordering is by descending score; exact ties keep the
    original candidate order.

    Args:
        query_vector: The query embedding.
        candidates: (id, vector) pairs.
        top_k: Maximum number of results.

    Returns:
        List[ScoredCandidate]: At most top_k scored candidates; empty if none qualify.
    """
    q = _as_vector(query_vector)
    if q is None or top_k <= 0 or not np.any(q):
        return []

    scored: List[ScoredCandidate[K]] = []
    for cid, values in candidates:
        v = _as_vector(values)
        if v is None:
            continue
        if v.shape != q.shape:
            logger.warning("Skipping candidate %s: %d dimensions, query has %d", cid, v.shape[0], q.shape[0])
            continue
        score = _cosine(q, v)
        if score is None:
            continue
        scored.append(ScoredCandidate(id=cid, score=score))

    # sorted() is stable, so equal scores keep input order
    scored = sorted(scored, key=lambda c: -c.score)
    return scored[:top_k]
