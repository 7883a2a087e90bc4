"""
mentorhub.engine.availability — Weekly Availability Mapper
===========================================================

Translates between the local schedule shape::

    WeeklyAvailability(
        weekly={"monday": [TimeRange("09:00", "12:00"), ...], ...},   # 7 keys
        date_overrides=[DateOverride("2026-03-02", [TimeRange(...)])],
        time_zone="Europe/Berlin",
    )

and the scheduling provider's shape::

    {
        "availability": [[{"start": ISO, "end": ISO}, ...], ...],  # index 0 = Sunday
        "dateOverrides": [{"date": "2026-03-02", "ranges": [{"start": ISO, "end": ISO}]}],
        "timeZone": "Europe/Berlin",
    }

Ingest normalises every time to ``HH:mm`` (date and offset are stripped);
egress expands it back to a full ISO timestamp.  Overrides are grouped by
calendar date so one date never appears twice.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

DAYS: tuple[str, ...] = (
    "sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday",
)

# Weekly intervals carry no real date; egress anchors them here.
WEEKLY_ANCHOR_DATE = "1970-01-01"

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::\d{2}(?:\.\d+)?)?")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True, slots=True)
class TimeRange:
    start: str  # HH:mm
    end: str    # HH:mm

    def __post_init__(self):
        object.__setattr__(self, "start", normalize_time(self.start))
        object.__setattr__(self, "end", normalize_time(self.end))
        if self.start >= self.end:
            raise ValueError(f"Interval start {self.start} must be before end {self.end}")


@dataclass(slots=True)
class DateOverride:
    date: str  # YYYY-MM-DD
    ranges: list[TimeRange] = field(default_factory=list)


@dataclass(slots=True)
class WeeklyAvailability:
    weekly: dict[str, list[TimeRange]] = field(
        default_factory=lambda: {day: [] for day in DAYS}
    )
    date_overrides: list[DateOverride] = field(default_factory=list)
    time_zone: str | None = None
    schedule_id: int | None = None


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------
def normalize_time(value: str) -> str:
    """Reduce ``"2026-03-02T09:00:00.000Z"``, ``"09:00:00"`` or ``"9:00"`` to ``"09:00"``."""
    text = str(value).strip()
    if "T" in text:
        text = text.split("T", 1)[1]
    match = _TIME_RE.match(text)
    if not match:
        raise ValueError(f"Unrecognised time value: {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Time out of range: {value!r}")
    return f"{hour:02d}:{minute:02d}"


def to_iso(time: str, date: str = WEEKLY_ANCHOR_DATE) -> str:
    return f"{date}T{normalize_time(time)}:00.000Z"


def _date_of(value: str) -> str:
    date = str(value).strip()[:10]
    if not _DATE_RE.match(date):
        raise ValueError(f"Unrecognised date value: {value!r}")
    return date


def _ranges(items: Iterable[dict]) -> list[TimeRange]:
    out = [TimeRange(normalize_time(i["start"]), normalize_time(i["end"])) for i in items]
    return sorted(out, key=lambda r: (r.start, r.end))


def group_overrides(pairs: Iterable[tuple[str, TimeRange | None]]) -> list[DateOverride]:
    """Merge ``(date, range)`` pairs into one override per date, ordered by date.

    A ``None`` range marks a date with no availability at all.
    """
    grouped: dict[str, list[TimeRange]] = {}
    for date, rng in pairs:
        bucket = grouped.setdefault(date, [])
        if rng is not None:
            bucket.append(rng)
    return [
        DateOverride(date=d, ranges=sorted(set(rs), key=lambda r: (r.start, r.end)))
        for d, rs in sorted(grouped.items())
    ]


# ---------------------------------------------------------------------------
# Provider → local
# ---------------------------------------------------------------------------
def from_provider(schedule: dict) -> WeeklyAvailability:
    """Parse a provider schedule into :class:`WeeklyAvailability`.

    Raises
    ------
    ValueError
        If the availability array is not 7 entries long or a time is invalid.
    """
    days = schedule.get("availability") or [[] for _ in DAYS]
    if len(days) != len(DAYS):
        raise ValueError(f"Expected {len(DAYS)} availability days, got {len(days)}")

    weekly = {DAYS[idx]: _ranges(intervals or []) for idx, intervals in enumerate(days)}

    pairs: list[tuple[str, TimeRange | None]] = []
    for override in schedule.get("dateOverrides") or []:
        ranges = override.get("ranges")
        if ranges is None:
            # Flat form: {"start": ISO, "end": ISO}
            ranges = [override]
        if not ranges and override.get("date"):
            pairs.append((_date_of(override["date"]), None))
        for rng in ranges:
            date = override.get("date") or rng.get("date") or rng["start"]
            pairs.append((
                _date_of(date),
                TimeRange(normalize_time(rng["start"]), normalize_time(rng["end"])),
            ))

    return WeeklyAvailability(
        weekly=weekly,
        date_overrides=group_overrides(pairs),
        time_zone=schedule.get("timeZone"),
        schedule_id=schedule.get("id"),
    )


# ---------------------------------------------------------------------------
# Local → provider
# ---------------------------------------------------------------------------
def to_provider(availability: WeeklyAvailability) -> dict:
    unknown = set(availability.weekly) - set(DAYS)
    if unknown:
        raise ValueError(f"Unknown weekday keys: {sorted(unknown)}")

    days = []
    for day in DAYS:
        ranges = sorted(availability.weekly.get(day, []), key=lambda r: (r.start, r.end))
        days.append([{"start": to_iso(r.start), "end": to_iso(r.end)} for r in ranges])

    overrides = group_overrides(
        (_date_of(o.date), rng)
        for o in availability.date_overrides
        for rng in (o.ranges or [None])
    )
    body: dict = {
        "availability": days,
        "dateOverrides": [
            {
                "date": o.date,
                "ranges": [
                    {"start": to_iso(r.start, o.date), "end": to_iso(r.end, o.date)}
                    for r in o.ranges
                ],
            }
            for o in overrides
        ],
    }
    if availability.time_zone:
        body["timeZone"] = availability.time_zone
    return body
