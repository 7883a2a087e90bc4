"""
mentorhub.services.availability_service — Mentor Availability
==============================================================

Reads and writes the mentor's default schedule on the scheduling provider.
Nothing is stored locally; the provider is the system of record and this
module only maps between its shape and :class:`WeeklyAvailability`.
"""

from __future__ import annotations

import logging

from mentorhub.engine.availability import (
    DateOverride,
    TimeRange,
    WeeklyAvailability,
    from_provider,
    group_overrides,
    normalize_time,
    to_provider,
)
from mentorhub.errors import ProcessorError
from mentorhub.services.scheduling_client import SchedulingClient
from mentorhub.services.token_service import TokenLifecycleManager

logger = logging.getLogger(__name__)


def _parse_schedule(schedule: dict, mentor_id: int) -> WeeklyAvailability:
    try:
        return from_provider(schedule)
    except (KeyError, TypeError, ValueError) as exc:
        raise ProcessorError(
            f"Unreadable schedule for mentor {mentor_id}: {exc}",
            provider="scheduling",
        ) from exc


def get_availability(
    tokens: TokenLifecycleManager, client: SchedulingClient, mentor_id: int
) -> WeeklyAvailability:
    access_token = tokens.get_valid_access_token(mentor_id)
    return _parse_schedule(client.get_default_schedule(access_token), mentor_id)


def update_availability(
    tokens: TokenLifecycleManager,
    client: SchedulingClient,
    mentor_id: int,
    availability: WeeklyAvailability,
) -> WeeklyAvailability:
    """Replace the mentor's weekly hours and overrides; return the saved schedule."""
    body = to_provider(availability)
    access_token = tokens.get_valid_access_token(mentor_id)
    schedule_id = availability.schedule_id
    if schedule_id is None:
        schedule_id = client.get_default_schedule(access_token).get("id")
        if schedule_id is None:
            raise ProcessorError(
                f"Mentor {mentor_id} has no default schedule", provider="scheduling"
            )

    saved = client.update_schedule(access_token, int(schedule_id), body)
    logger.info("Availability updated for mentor %d (schedule %s)", mentor_id, schedule_id)
    return _parse_schedule(saved, mentor_id) if saved.get("availability") else availability


# ---------------------------------------------------------------------------
# Date overrides
# ---------------------------------------------------------------------------
def _replace_override(
    overrides: list[DateOverride], date: str, ranges: list[TimeRange] | None
) -> list[DateOverride]:
    kept = [(o.date, r) for o in overrides if o.date != date for r in (o.ranges or [None])]
    if ranges is not None:
        kept.extend((date, r) for r in (ranges or [None]))
    return group_overrides(kept)


def set_date_override(
    tokens: TokenLifecycleManager,
    client: SchedulingClient,
    mentor_id: int,
    date: str,
    ranges: list[dict],
) -> WeeklyAvailability:
    """Create or replace the override for *date*.

    An empty *ranges* list marks the whole day unavailable.
    """
    parsed = [TimeRange(normalize_time(r["start"]), normalize_time(r["end"])) for r in ranges]
    current = get_availability(tokens, client, mentor_id)
    current.date_overrides = _replace_override(current.date_overrides, date, parsed)
    return update_availability(tokens, client, mentor_id, current)


def delete_date_override(
    tokens: TokenLifecycleManager,
    client: SchedulingClient,
    mentor_id: int,
    date: str,
) -> WeeklyAvailability | None:
    """Drop the override for *date*.  Returns None if there was none."""
    current = get_availability(tokens, client, mentor_id)
    if not any(o.date == date for o in current.date_overrides):
        return None
    current.date_overrides = _replace_override(current.date_overrides, date, None)
    return update_availability(tokens, client, mentor_id, current)
