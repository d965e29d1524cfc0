"""
Vector math helpers.

All similarity scoring in the pipeline goes through these functions so that
empty, mismatched or zero-norm vectors behave the same everywhere (score 0).
"""

from collections.abc import Callable, Sequence
from typing import TypeVar

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity as sk_cosine_similarity

T = TypeVar("T")

Vector = Sequence[float]


def cosine_similarity(a: Vector | None, b: Vector | None) -> float:
    """
    Compute cosine similarity between two vectors.

    Args:
        a: First vector
        b: Second vector

    Returns:
        Similarity in [-1, 1]; 0.0 for empty, mismatched or zero-norm input
    """
    if a is None or b is None or len(a) == 0 or len(b) == 0 or len(a) != len(b):
        return 0.0

    vec1 = np.asarray(a, dtype=np.float64)
    vec2 = np.asarray(b, dtype=np.float64)
    norm1 = float(np.linalg.norm(vec1))
    norm2 = float(np.linalg.norm(vec2))
    if norm1 == 0.0 or norm2 == 0.0:
        return 0.0

    similarity = float(np.dot(vec1, vec2) / (norm1 * norm2))
    return max(-1.0, min(1.0, similarity))


def cosine_scores(query: Vector, vectors: Sequence[Vector]) -> list[float]:
    """
    Compute cosine similarity between a query and multiple vectors.

    Rows whose length differs from the query score 0.

    Args:
        query: Query vector
        vectors: Candidate vectors

    Returns:
        One score per candidate, in input order
    """
    if not vectors:
        return []
    if query is None or len(query) == 0:
        return [0.0] * len(vectors)

    dim = len(query)
    valid = [i for i, v in enumerate(vectors) if v is not None and len(v) == dim]
    scores = [0.0] * len(vectors)
    if not valid:
        return scores

    query_vec = np.asarray(query, dtype=np.float64).reshape(1, -1)
    matrix = np.asarray([vectors[i] for i in valid], dtype=np.float64)
    # sklearn maps zero-norm rows to 0
    similarities = np.clip(sk_cosine_similarity(query_vec, matrix)[0], -1.0, 1.0)
    for idx, sim in zip(valid, similarities):
        scores[idx] = float(sim)
    return scores


def weighted_average_vectors(
    vectors: Sequence[Vector | None], weights: Sequence[float]
) -> list[float] | None:
    """
    Weighted sum of vectors (weights are expected to be normalized).

    Args:
        vectors: Input vectors; empty entries are skipped
        weights: One weight per vector

    Returns:
        Combined vector, or None when inputs are empty or counts mismatch
    """
    if not vectors or not weights or len(vectors) != len(weights):
        return None

    first = next((v for v in vectors if v is not None and len(v) > 0), None)
    if first is None:
        return []

    dims = len(first)
    result = np.zeros(dims, dtype=np.float64)
    for vector, weight in zip(vectors, weights):
        if vector is None or len(vector) == 0:
            continue
        arr = np.asarray(vector, dtype=np.float64)
        n = min(dims, arr.shape[0])
        result[:n] += weight * arr[:n]

    return result.tolist()


def mmr_select(
    candidates: Sequence[T],
    k: int,
    lambda_: float,
    get_vector: Callable[[T], Vector | None],
    get_score: Callable[[T], float],
) -> list[T]:
    """
    Maximal marginal relevance selection.

    Greedily picks the candidate maximizing
    ``lambda * relevance - (1 - lambda) * max_sim_to_selected``.

    Args:
        candidates: Candidate items (relevance order not required)
        k: Maximum number of items to select
        lambda_: Relevance/diversity balance
        get_vector: Returns the item's vector (may be empty)
        get_score: Returns the item's relevance score

    Returns:
        Selected items in selection order
    """
    selected: list[T] = []
    selected_idx: set[int] = set()

    while len(selected) < k and len(selected_idx) < len(candidates):
        best_idx = -1
        best_score = float("-inf")

        for i, candidate in enumerate(candidates):
            if i in selected_idx:
                continue

            relevance = get_score(candidate)
            diversity = 0.0
            if selected:
                vector = get_vector(candidate)
                if vector is not None and len(vector) > 0:
                    for chosen in selected:
                        sim = cosine_similarity(vector, get_vector(chosen))
                        if sim > diversity:
                            diversity = sim

            score = lambda_ * relevance - (1 - lambda_) * diversity
            if score > best_score:
                best_score = score
                best_idx = i

        if best_idx < 0:
            break
        selected.append(candidates[best_idx])
        selected_idx.add(best_idx)

    return selected
