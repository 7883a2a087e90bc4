"""
mentorhub.engine.clock — UTC helpers
=====================================

SQLite (tests) hands back naive datetimes while PostgreSQL returns aware
ones.  Everything compared in Python goes through :func:`as_utc` first.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def from_epoch_ms(value: int | float) -> datetime:
    return datetime.fromtimestamp(float(value) / 1000.0, tz=UTC)
