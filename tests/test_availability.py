"""
tests/test_availability.py — Availability Mapper & Service
===========================================================

The mapper is pure.  The service tests stub the token manager and the
scheduling client with ``MagicMock`` and inspect the PATCH body.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from mentorhub.engine.availability import (
    DAYS,
    DateOverride,
    TimeRange,
    WeeklyAvailability,
    from_provider,
    normalize_time,
    to_provider,
)
from mentorhub.errors import ProcessorError
from mentorhub.services import availability_service
from mentorhub.services.scheduling_client import SchedulingClient
from mentorhub.services.token_service import TokenLifecycleManager


def provider_schedule(**extra) -> dict:
    days = [[] for _ in DAYS]
    days[1] = [{"start": "1970-01-01T09:00:00.000Z", "end": "1970-01-01T12:00:00.000Z"}]
    schedule = {"id": 77, "availability": days, "dateOverrides": [], "timeZone": "Europe/Berlin"}
    schedule.update(extra)
    return schedule


# ===========================================================================
# Mapper
# ===========================================================================
class TestNormalizeTime:
    @pytest.mark.parametrize("raw, expected", [
        ("2026-03-02T09:00:00.000Z", "09:00"),
        ("09:00:00", "09:00"),
        ("9:30", "09:30"),
        ("23:59", "23:59"),
    ])
    def test_formats(self, raw, expected):
        assert normalize_time(raw) == expected

    @pytest.mark.parametrize("raw", ["noon", "24:00", "12:60", ""])
    def test_rejects(self, raw):
        with pytest.raises(ValueError):
            normalize_time(raw)


class TestFromProvider:
    def test_weekly_hours_keyed_by_day(self):
        av = from_provider(provider_schedule())
        assert av.weekly["monday"] == [TimeRange("09:00", "12:00")]
        assert av.weekly["sunday"] == []
        assert set(av.weekly) == set(DAYS)
        assert av.time_zone == "Europe/Berlin"
        assert av.schedule_id == 77

    def test_overrides_grouped_by_date(self):
        av = from_provider(provider_schedule(dateOverrides=[
            {"start": "2026-03-03T14:00:00.000Z", "end": "2026-03-03T15:00:00.000Z"},
            {"start": "2026-03-02T10:00:00.000Z", "end": "2026-03-02T11:00:00.000Z"},
            {"start": "2026-03-03T09:00:00.000Z", "end": "2026-03-03T10:00:00.000Z"},
        ]))
        assert [o.date for o in av.date_overrides] == ["2026-03-02", "2026-03-03"]
        assert av.date_overrides[1].ranges == [TimeRange("09:00", "10:00"), TimeRange("14:00", "15:00")]

    def test_empty_override_means_day_off(self):
        av = from_provider(provider_schedule(dateOverrides=[{"date": "2026-03-04", "ranges": []}]))
        assert av.date_overrides == [DateOverride("2026-03-04", [])]

    def test_wrong_day_count(self):
        with pytest.raises(ValueError):
            from_provider({"availability": [[]] * 6})

    def test_inverted_interval(self):
        with pytest.raises(ValueError):
            TimeRange("12:00", "09:00")


class TestToProvider:
    def test_egress_uses_iso_timestamps(self):
        av = WeeklyAvailability(time_zone="UTC")
        av.weekly["friday"] = [TimeRange("13:00", "17:00")]
        av.date_overrides = [DateOverride("2026-03-02", [TimeRange("8:00", "9:00")])]

        body = to_provider(av)

        assert len(body["availability"]) == 7
        assert body["availability"][5] == [
            {"start": "1970-01-01T13:00:00.000Z", "end": "1970-01-01T17:00:00.000Z"}
        ]
        assert body["dateOverrides"] == [{
            "date": "2026-03-02",
            "ranges": [{"start": "2026-03-02T08:00:00.000Z", "end": "2026-03-02T09:00:00.000Z"}],
        }]
        assert body["timeZone"] == "UTC"

    def test_duplicate_dates_are_merged(self):
        av = WeeklyAvailability(date_overrides=[
            DateOverride("2026-03-02", [TimeRange("10:00", "11:00")]),
            DateOverride("2026-03-02", [TimeRange("08:00", "09:00")]),
        ])
        overrides = to_provider(av)["dateOverrides"]
        assert len(overrides) == 1
        assert [r["start"] for r in overrides[0]["ranges"]] == [
            "2026-03-02T08:00:00.000Z", "2026-03-02T10:00:00.000Z",
        ]

    def test_unknown_weekday(self):
        av = WeeklyAvailability()
        av.weekly["funday"] = []
        with pytest.raises(ValueError):
            to_provider(av)

    def test_provider_shape_survives_the_mapper(self):
        original = provider_schedule()
        body = to_provider(from_provider(original))
        assert body["availability"] == original["availability"]


# ===========================================================================
# Service
# ===========================================================================
@pytest.fixture
def tokens():
    tm = MagicMock(spec=TokenLifecycleManager)
    tm.get_valid_access_token.return_value = "tok"
    return tm


@pytest.fixture
def sched():
    client = MagicMock(spec=SchedulingClient)
    client.get_default_schedule.return_value = provider_schedule()
    client.update_schedule.side_effect = lambda token, sid, body: {"id": sid, **body}
    return client


class TestAvailabilityService:
    def test_get(self, tokens, sched):
        av = availability_service.get_availability(tokens, sched, 1)
        sched.get_default_schedule.assert_called_once_with("tok")
        assert av.weekly["monday"] == [TimeRange("09:00", "12:00")]

    def test_unreadable_schedule(self, tokens, sched):
        sched.get_default_schedule.return_value = {"availability": [[{"start": "x"}]] * 7}
        with pytest.raises(ProcessorError):
            availability_service.get_availability(tokens, sched, 1)

    def test_update_looks_up_schedule_id(self, tokens, sched):
        av = WeeklyAvailability()
        av.weekly["tuesday"] = [TimeRange("10:00", "11:00")]

        saved = availability_service.update_availability(tokens, sched, 1, av)

        schedule_id = sched.update_schedule.call_args.args[1]
        assert schedule_id == 77
        assert saved.weekly["tuesday"] == [TimeRange("10:00", "11:00")]

    def test_set_override_replaces_date(self, tokens, sched):
        sched.get_default_schedule.return_value = provider_schedule(dateOverrides=[
            {"date": "2026-03-02", "ranges": [
                {"start": "2026-03-02T10:00:00.000Z", "end": "2026-03-02T11:00:00.000Z"},
            ]},
        ])
        availability_service.set_date_override(
            tokens, sched, 1, "2026-03-02", [{"start": "14:00", "end": "15:00"}]
        )
        body = sched.update_schedule.call_args.args[2]
        assert body["dateOverrides"] == [{
            "date": "2026-03-02",
            "ranges": [{"start": "2026-03-02T14:00:00.000Z", "end": "2026-03-02T15:00:00.000Z"}],
        }]

    def test_set_empty_override_blocks_day(self, tokens, sched):
        availability_service.set_date_override(tokens, sched, 1, "2026-03-05", [])
        body = sched.update_schedule.call_args.args[2]
        assert body["dateOverrides"] == [{"date": "2026-03-05", "ranges": []}]

    def test_delete_override(self, tokens, sched):
        sched.get_default_schedule.return_value = provider_schedule(
            dateOverrides=[{"date": "2026-03-02", "ranges": []}]
        )
        assert availability_service.delete_date_override(tokens, sched, 1, "2026-03-02") is not None
        assert sched.update_schedule.call_args.args[2]["dateOverrides"] == []

    def test_delete_missing_override(self, tokens, sched):
        assert availability_service.delete_date_override(tokens, sched, 1, "2026-03-09") is None
        sched.update_schedule.assert_not_called()
