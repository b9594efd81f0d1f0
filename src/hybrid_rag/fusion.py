"""Reciprocal Rank Fusion of ranked id lists."""

from typing import Optional, Sequence


def reciprocal_rank_fusion(
    runs: Sequence[Sequence[str]],
    k: int = 60,
    limit: Optional[int] = None,
    weights: Optional[Sequence[float]] = None,
) -> list[tuple[str, float]]:
    """
    Fuse ranked lists by summing ``weight / (k + rank)`` per id.

    Ranks are 1-indexed. Only rank positions are used, so lists scored on
    different scales (cosine similarity, BM25) need no normalization. An id
    repeated within one run only counts at its best rank.

    Args:
        runs: Ranked id lists, best first.
        k: Fusion constant; larger values flatten the rank curve.
        limit: Keep only the best ``limit`` ids.
        weights: Optional per-run multipliers, same length as ``runs``.

    Returns:
        (id, score) pairs sorted by descending score. Ties keep the order in
        which ids were first seen.
    """
    if weights is not None and len(weights) != len(runs):
        raise ValueError("Length of weights must match number of runs")
    if weights is None:
        weights = [1.0] * len(runs)

    scores: dict[str, float] = {}
    for weight, run in zip(weights, runs):
        seen: set[str] = set()
        for rank, doc_id in enumerate(run, start=1):
            if doc_id in seen:
                continue
            seen.add(doc_id)
            scores[doc_id] = scores.get(doc_id, 0.0) + weight / (k + rank)

    fused = sorted(scores.items(), key=lambda item: item[1], reverse=True)
    return fused[:limit] if limit is not None else fused
