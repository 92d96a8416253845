"""Score fusion for hybrid search.

Pure functions over `{item_id: score}` maps, so fusion policies can be tested
and swapped without touching storage or providers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Mapping, Optional

from .database import recency_key


def _ranked(
    scores: Mapping[str, float], updated_at: Optional[Mapping[str, datetime]]
) -> list[tuple[str, float]]:
    updated_at = updated_at or {}
    return sorted(
        scores.items(),
        key=lambda kv: (-kv[1], recency_key(updated_at.get(kv[0])), kv[0]),
    )


def fuse_scores(
    semantic: Mapping[str, float],
    lexical: Mapping[str, float],
    alpha: float,
    updated_at: Optional[Mapping[str, datetime]] = None,
) -> list[tuple[str, float]]:
    """Combine semantic and lexical scores into one ranking.

    An item found by both signals scores `alpha * s + (1 - alpha) * l`. An item
    found by only one signal keeps that signal's weighted score, so a hit both
    branches agree on outranks one only a single branch saw.

    Args:
        semantic: Similarity per item id, in [0, 1]
        lexical: Lexical relevance per item id, in [0, 1]
        alpha: Weight of the semantic signal, in [0, 1]
        updated_at: Last update per item id, used to break score ties

    Returns:
        `(item_id, fused_score)` pairs ordered by score desc, most recent
        update, then id
    """
    if not 0.0 <= alpha <= 1.0:
        raise ValueError(f"alpha must be within [0, 1], got {alpha}")

    fused: dict[str, float] = {}
    for item_id in set(semantic) | set(lexical):
        fused[item_id] = alpha * semantic.get(item_id, 0.0) + (1.0 - alpha) * lexical.get(
            item_id, 0.0
        )
    return _ranked(fused, updated_at)


def single_branch_scores(
    scores: Mapping[str, float], updated_at: Optional[Mapping[str, datetime]] = None
) -> list[tuple[str, float]]:
    """Rank one branch's scores unscaled, for when the other branch is missing."""
    return _ranked(dict(scores), updated_at)
