"""
Similarity scoring and ranking of catalog matches.

Embeddings are compared by cosine similarity, converted to a 0-100
percentage and ranked. Bulk scoring for a ranking call goes through a
FAISS inner-product index over L2-normalized vectors, which yields the
same cosine values as the pairwise scorer.

Ranking policy:
    - items without an embedding are skipped
    - items whose embedding dimension differs from the query are skipped
      with a warning (catalog/extractor version mismatch)
    - scores below min_score are dropped
    - highest score first, equal scores by ascending catalog id
"""

import os
import math
import logging
from typing import List, Optional, Sequence, Tuple

import faiss
import numpy as np

from .errors import DimensionMismatchError
from .models import CatalogItem, MatchCandidate, as_embedding

logger = logging.getLogger(__name__)

DEFAULT_TOP_N = int(os.environ.get("MATCH_TOP_N", "50"))
DEFAULT_MIN_SCORE = float(os.environ.get("MATCH_MIN_SCORE", "0"))

# Scores are reported with this many decimals
SCORE_DECIMALS = 2


def check_dimensions(a: np.ndarray, b: np.ndarray) -> None:
    """Raise DimensionMismatchError unless both vectors have equal length."""
    if len(a) != len(b):
        raise DimensionMismatchError(len(a), len(b))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine of the angle between two vectors.

    Returns:
        Similarity in [-1, 1]; 0.0 when either vector has zero magnitude
        or contains NaN/inf.

    Raises:
        DimensionMismatchError: If the vectors differ in length.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    check_dimensions(a, b)

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    similarity = float(np.dot(a, b) / (norm_a * norm_b))
    if not math.isfinite(similarity):
        return 0.0
    return max(-1.0, min(1.0, similarity))


def to_percentage(similarity: float) -> float:
    """Map a similarity to a percentage clamped into [0, 100]; NaN maps to 0."""
    if math.isnan(similarity):
        return 0.0
    return max(0.0, min(100.0, similarity * 100))


def normalize_vector(vector: Sequence[float]) -> np.ndarray:
    """Scale a vector to unit length; zero vectors are returned unchanged."""
    vector = np.asarray(vector, dtype=np.float32)
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector.copy()
    return vector / norm


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return np.ascontiguousarray(matrix / norms, dtype=np.float32)


def batch_cosine_similarity(query: Sequence[float],
                            matrix: np.ndarray) -> np.ndarray:
    """
    Cosine similarity of one query against every row of a matrix.

    Args:
        query: Query vector of dimension d.
        matrix: Array of shape (n, d).

    Returns:
        Float32 array of n similarities in the original row order.

    Raises:
        DimensionMismatchError: If the matrix width differs from the query.
    """
    query = np.asarray(query, dtype=np.float32)
    matrix = np.asarray(matrix, dtype=np.float32)
    if matrix.ndim != 2:
        raise ValueError(f"Expected a 2-D matrix, got shape {matrix.shape}")

    n, dim = matrix.shape
    if dim != len(query):
        raise DimensionMismatchError(len(query), dim)
    if n == 0 or dim == 0 or not np.isfinite(query).all():
        return np.zeros(n, dtype=np.float32)

    # Rows with NaN/inf score 0, like the pairwise scorer
    finite = np.isfinite(matrix).all(axis=1)
    matrix = np.where(finite[:, None], matrix, 0.0).astype(np.float32)

    index = faiss.IndexFlatIP(dim)
    index.add(_normalize_rows(matrix))

    q = normalize_vector(query).reshape(1, -1)
    similarities, indices = index.search(np.ascontiguousarray(q), n)

    # FAISS returns neighbours best-first; put them back in row order
    scores = np.zeros(n, dtype=np.float32)
    scores[indices[0]] = similarities[0]
    scores[~finite] = 0.0
    return np.clip(scores, -1.0, 1.0)


def rank_matches(query: Sequence[float],
                 entries: Sequence[Tuple[CatalogItem, Optional[np.ndarray]]],
                 top_n: Optional[int] = None,
                 min_score: Optional[float] = None) -> List[MatchCandidate]:
    """
    Score catalog entries against a query embedding and rank them.

    Args:
        query: Query embedding.
        entries: (item, embedding) pairs; embedding may be None when the
                 item has no usable vector.
        top_n: Maximum number of matches (defaults to DEFAULT_TOP_N).
        min_score: Minimum percentage score to keep (defaults to
                   DEFAULT_MIN_SCORE).

    Returns:
        Matches sorted by score descending, ties by ascending item id.
    """
    top_n = DEFAULT_TOP_N if top_n is None else top_n
    min_score = DEFAULT_MIN_SCORE if min_score is None else min_score
    if top_n <= 0:
        return []

    query = as_embedding(query)

    items = []
    vectors = []
    skipped = 0
    for item, embedding in entries:
        if embedding is None:
            continue
        try:
            check_dimensions(query, embedding)
        except DimensionMismatchError as e:
            logger.warning(f"Skipping item {item.id}: {e}")
            skipped += 1
            continue
        items.append(item)
        vectors.append(np.asarray(embedding, dtype=np.float32))

    if not items:
        return []

    similarities = batch_cosine_similarity(query, np.vstack(vectors))

    candidates = []
    for item, similarity in zip(items, similarities):
        score = round(to_percentage(float(similarity)), SCORE_DECIMALS)
        if score >= min_score:
            candidates.append(MatchCandidate(item=item, score=score))

    ranked = sorted(candidates, key=lambda c: (-c.score, c.item.id))[:top_n]

    logger.debug(
        f"Ranked {len(items)} items ({skipped} skipped) -> "
        f"{len(ranked)} matches"
    )
    return ranked
