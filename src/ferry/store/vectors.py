"""Cosine scoring and ranking for chunk vector search.

:func:`rank` is the reference scan: it scores every candidate with numpy.
:class:`UsearchVectorIndex` narrows the candidate set with an exact usearch
index first, then the same ranking applies so ties and thresholds behave
identically on both paths.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from usearch.index import Index

if TYPE_CHECKING:
    from collections.abc import Sequence

    from ferry.models.chunks import Chunk

logger = logging.getLogger(__name__)

# Rounding slack for exactly parallel vectors; a few ulps of 1.0, no more.
_SCORE_EPSILON = 1e-12


@dataclass(frozen=True, slots=True)
class ScoredChunk:
    chunk: Chunk
    score: float


def cosine(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Cosine similarity; ``0.0`` when either vector has zero norm."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        return 0.0
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / (na * nb), -1.0, 1.0))


def rank(
    candidates: Sequence[Chunk],
    query: Sequence[float],
    *,
    k: int,
    threshold: float,
) -> list[ScoredChunk]:
    """Top *k* candidates with cosine >= *threshold*.

    Ordered by descending score, then descending complexity, then
    ascending file path.
    """
    if k <= 0:
        return []
    scored: list[ScoredChunk] = []
    for chunk in candidates:
        if not chunk.embedding:
            continue
        score = cosine(chunk.embedding, query)
        if score >= threshold - _SCORE_EPSILON:
            scored.append(ScoredChunk(chunk, score))
    scored.sort(key=lambda s: (-s.score, -s.chunk.complexity, s.chunk.file_path, s.chunk.start_byte))
    return scored[:k]


class UsearchVectorIndex:
    """Exact usearch index over one job's chunk vectors.

    Built on demand from the stored vectors; it is a candidate filter only.
    """

    def __init__(self, chunks: Sequence[Chunk], *, dimension: int) -> None:
        self._dimension = dimension
        self._index = Index(ndim=dimension, metric="cos", dtype="f32")
        self._chunks: list[Chunk] = []
        for chunk in chunks:
            if not chunk.embedding or len(chunk.embedding) != dimension:
                continue
            vector = np.asarray(chunk.embedding, dtype=np.float32)
            if not np.any(vector):
                continue
            self._index.add(len(self._chunks), vector)
            self._chunks.append(chunk)

    def __len__(self) -> int:
        return len(self._chunks)

    def search(
        self, query: Sequence[float], *, k: int, threshold: float
    ) -> list[ScoredChunk]:
        if len(self._chunks) == 0 or k <= 0 or len(query) != self._dimension:
            return []
        vector = np.asarray(query, dtype=np.float32)
        if not np.any(vector):
            return []
        # Over-fetch so tie-breaking sees every candidate near the cut.
        fetch = min(len(self._chunks), k * 3)
        matches = self._index.search(vector, fetch, exact=True)
        candidates = [self._chunks[int(key)] for key in matches.keys.tolist()]
        return rank(candidates, query, k=k, threshold=threshold)
