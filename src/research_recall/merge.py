"""Score normalization and weighted merging of heterogeneous result sets.

Raw scores from different sources live on different scales: cosine similarity
sits in [-1, 1], BM25 is unbounded. Each set is normalized by its own maximum
(floored at 1) before weighting, so a source cannot dominate the merged list
just because its raw numbers run higher.
"""

from __future__ import annotations

from .models import SearchResult, SearchType

SEMANTIC_WEIGHT = 0.6
KEYWORD_WEIGHT = 0.4
RANK_DECAY = 0.98

DEFAULT_WEIGHTS = {
    SearchType.SEMANTIC.value: SEMANTIC_WEIGHT,
    SearchType.KEYWORD.value: KEYWORD_WEIGHT,
}


def normalize_scores(results: list[SearchResult]) -> list[tuple[SearchResult, float]]:
    """Pair each result with ``raw / max(raw scores, 1)``, clamped to [0, 1]."""
    if not results:
        return []
    max_score = max(max(r.score for r in results), 1.0)
    return [(r, min(max(r.score, 0.0) / max_score, 1.0)) for r in results]


def validate_weights(weights: list[float]) -> None:
    if any(w < 0 for w in weights):
        raise ValueError(f"Source weights must be non-negative: {weights}")
    if sum(weights) > 1.0 + 1e-9:
        raise ValueError(f"Source weights must sum to at most 1: {weights}")


def merge_results(
    result_sets: list[tuple[list[SearchResult], str, float]],
    limit: int,
) -> list[SearchResult]:
    """Merge ``(results, source_name, weight)`` sets into one ranked list.

    A result seen in several sets keeps the maximum of its weighted scores and
    accumulates a ``match_details`` entry per source. After sorting, the score
    at rank ``r`` is multiplied by ``0.98 ** r``. Deterministic: ties keep the
    order in which results were first seen.
    """
    validate_weights([weight for _, _, weight in result_sets])

    merged: dict[str, SearchResult] = {}
    for results, source, weight in result_sets:
        for result, normalized in normalize_scores(results):
            weighted = normalized * weight
            existing = merged.get(result.id)
            if existing is None:
                merged[result.id] = result.model_copy(
                    update={
                        "score": weighted,
                        "match_details": {source: normalized, "weighted": weighted},
                        "search_type": SearchType.HYBRID,
                    }
                )
            else:
                existing.score = max(existing.score, weighted)
                existing.match_details = {
                    **existing.match_details,
                    source: normalized,
                    "weighted": existing.score,
                }

    ranked = sorted(merged.values(), key=lambda r: r.score, reverse=True)
    for rank, result in enumerate(ranked):
        result.score = result.score * RANK_DECAY**rank
    return ranked[:limit]
