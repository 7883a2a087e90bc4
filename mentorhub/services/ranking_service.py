"""
mentorhub.services.ranking_service — Ranking Score Updater
===========================================================

Consumes unprocessed ``analytics_events`` in bounded batches.  For each
batch, in **one** transaction:

1. lock the batch (``FOR UPDATE SKIP LOCKED`` on PostgreSQL, so
   overlapping cron runs take disjoint batches);
2. sum weighted contributions per mentor (:func:`~mentorhub.engine.ranking.score_deltas`);
3. ``ranking_score = ranking_score + delta`` for each mentor;
4. mark the batch processed.

Decay is a separate operation (``ranking_score = ranking_score * factor``).
Both are single SQL expressions on the current value, so either may run
first without losing the other's effect.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from sqlalchemy import Engine, select, update

from mentorhub.database.engine import get_session
from mentorhub.database.models import AnalyticsEvent, AnalyticsEventType, MentorProfile
from mentorhub.engine.ranking import WEIGHTS, WeightedEvent, score_deltas

logger = logging.getLogger(__name__)

BATCH_SIZE = 500


def record_event(
    engine: Engine,
    mentor_id: int,
    event_type: AnalyticsEventType | str,
    actor_id: int | None = None,
) -> int:
    """Append one analytics event and return its id."""
    event_type = AnalyticsEventType(event_type)
    with get_session(engine) as session:
        row = AnalyticsEvent(mentor_id=mentor_id, actor_id=actor_id, event_type=event_type)
        session.add(row)
        session.flush()
        return row.id


def process_analytics_events(
    engine: Engine,
    weights: Mapping[str, float] | None = None,
    batch_size: int = BATCH_SIZE,
) -> dict[str, int]:
    """Apply every unprocessed event to its mentor's ranking score.

    Returns ``{"events_processed": N, "mentors_updated": M, "batches": B}``.
    """
    weights = weights if weights is not None else WEIGHTS
    events_processed = 0
    mentors_updated = 0
    batches = 0

    while True:
        with get_session(engine) as session:
            rows = session.execute(
                select(AnalyticsEvent.id, AnalyticsEvent.mentor_id, AnalyticsEvent.event_type)
                .where(AnalyticsEvent.processed.is_(False))
                .order_by(AnalyticsEvent.id)
                .limit(batch_size)
                .with_for_update(skip_locked=True)
            ).all()
            if not rows:
                break

            deltas = score_deltas(
                (WeightedEvent(r.mentor_id, AnalyticsEventType(r.event_type)) for r in rows),
                weights,
            )
            for mentor_id, delta in deltas.items():
                result = session.execute(
                    update(MentorProfile)
                    .where(MentorProfile.user_id == mentor_id)
                    .values(ranking_score=MentorProfile.ranking_score + delta)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount:
                    mentors_updated += 1
                else:
                    logger.warning("No mentor profile for %d; %.2f points dropped",
                                   mentor_id, delta)

            session.execute(
                update(AnalyticsEvent)
                .where(AnalyticsEvent.id.in_([r.id for r in rows]))
                .values(processed=True)
                .execution_options(synchronize_session=False)
            )
            events_processed += len(rows)
            batches += 1

    logger.info("Ranking: %d events applied to %d mentor(s) in %d batch(es)",
                events_processed, mentors_updated, batches)
    return {
        "events_processed": events_processed,
        "mentors_updated": mentors_updated,
        "batches": batches,
    }


def decay_scores(engine: Engine, factor: float) -> dict[str, int]:
    """Multiply every mentor's ranking score by *factor*."""
    if not 0 < factor <= 1:
        raise ValueError(f"decay factor must be within (0, 1], got {factor}")
    with get_session(engine) as session:
        result = session.execute(
            update(MentorProfile)
            .values(ranking_score=MentorProfile.ranking_score * factor)
            .execution_options(synchronize_session=False)
        )
        decayed = result.rowcount
    logger.info("Ranking: decayed %d score(s) by ×%.4f", decayed, factor)
    return {"mentors_decayed": decayed}


def get_ranking_score(engine: Engine, mentor_id: int) -> float | None:
    with get_session(engine) as session:
        return session.scalar(
            select(MentorProfile.ranking_score).where(MentorProfile.user_id == mentor_id)
        )
