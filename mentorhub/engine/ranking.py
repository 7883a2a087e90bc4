"""
mentorhub.engine.ranking — Analytics Event Weights & Decay
===========================================================

Pure math behind the discovery ranking score.  The service layer
(:mod:`mentorhub.services.ranking_service`) feeds batches of unprocessed
analytics events through :func:`score_deltas` and applies the result in
the same transaction that marks the events processed.

Increment and decay are kept as separate operations:

* increment:  ``score' = score + Σ weight(event)``
* decay:      ``score' = score × factor``

Each is correct against its own formula whichever runs first.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from mentorhub.config import DEFAULT_RANKING_WEIGHTS
from mentorhub.database.models import AnalyticsEventType

__all__ = ["WEIGHTS", "WeightedEvent", "score_deltas", "apply_increment", "apply_decay"]

WEIGHTS: dict[AnalyticsEventType, float] = {
    AnalyticsEventType(k): v for k, v in DEFAULT_RANKING_WEIGHTS.items()
}


@dataclass(frozen=True, slots=True)
class WeightedEvent:
    mentor_id: int
    event_type: AnalyticsEventType


def weight_for(event_type: AnalyticsEventType | str, weights: Mapping[str, float]) -> float:
    """Weight of a single event; unknown types contribute nothing."""
    return float(weights.get(str(event_type), 0.0))


def score_deltas(
    events: Iterable[WeightedEvent], weights: Mapping[str, float] | None = None
) -> dict[int, float]:
    """Sum weighted contributions per mentor.

    Uses :func:`math.fsum` so that e.g. ten 0.3-weight views add up to
    exactly 3.0 instead of accumulating rounding error.
    """
    weights = weights if weights is not None else WEIGHTS
    per_mentor: dict[int, list[float]] = defaultdict(list)
    for ev in events:
        per_mentor[ev.mentor_id].append(weight_for(ev.event_type, weights))
    return {mentor_id: math.fsum(parts) for mentor_id, parts in per_mentor.items()}


def apply_increment(score: float, delta: float) -> float:
    return score + delta


def apply_decay(score: float, factor: float) -> float:
    if not 0 < factor <= 1:
        raise ValueError(f"decay factor must be within (0, 1], got {factor}")
    return score * factor
