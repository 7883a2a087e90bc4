"""
tests/test_booking_service.py — Booking Synchronizer Integration Tests
=======================================================================

Idempotent upserts, terminal-state monotonicity and the analytics side
effects of status changes.  Uses the shared in-memory SQLite engine.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conftest import make_mentor
from mentorhub.database.models import (
    AnalyticsEvent,
    AnalyticsEventType,
    Booking,
    BookingAttendee,
    BookingStatus,
)
from mentorhub.engine.clock import as_utc
from mentorhub.errors import InvariantViolation, MalformedWebhookError
from mentorhub.services import booking_service


def booking_payload(
    uid: str = "uid-1",
    booking_id: int = 101,
    status: str | None = "ACCEPTED",
    **extra,
) -> dict:
    payload = {
        "bookingId": booking_id,
        "uid": uid,
        "title": "Intro call",
        "startTime": "2026-03-05T10:00:00Z",
        "endTime": "2026-03-05T10:30:00Z",
        "attendees": [
            {"name": "Ana", "email": "ana@example.com", "timeZone": "Europe/Berlin"},
        ],
        "organizer": {
            "id": 4242,
            "name": "Mentor",
            "email": "mentor@example.com",
            "username": "mentor",
        },
    }
    if status is not None:
        payload["status"] = status
    payload.update(extra)
    return payload


def _count(engine, model) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(model))


def _events(engine, event_type: AnalyticsEventType) -> int:
    with Session(engine) as session:
        return session.scalar(
            select(func.count()).select_from(AnalyticsEvent)
            .where(AnalyticsEvent.event_type == event_type)
        )


@pytest.fixture
def mentor_id(db_engine):
    return make_mentor(db_engine)


# ===========================================================================
# Idempotent upsert
# ===========================================================================
class TestUpsertIdempotency:
    def test_first_delivery_creates_booking(self, db_engine, mentor_id):
        booking = booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload())
        assert booking.status == BookingStatus.ACCEPTED
        assert booking.title == "Intro call"
        assert [a.email for a in booking.attendees] == ["ana@example.com"]
        assert booking.organizers[0].user_id == mentor_id

    def test_redelivery_does_not_duplicate(self, db_engine, mentor_id):
        first = booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload())
        second = booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload())

        assert first.id == second.id
        assert _count(db_engine, Booking) == 1
        assert _count(db_engine, BookingAttendee) == 1

    def test_update_refreshes_snapshot(self, db_engine, mentor_id):
        booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload())
        updated = booking_service.upsert_booking(
            db_engine, 101, "uid-1", booking_payload(title="Career chat", meetingUrl="https://meet/x"),
        )
        assert updated.title == "Career chat"
        assert updated.meeting_url == "https://meet/x"

    def test_new_attendee_is_added_never_removed(self, db_engine, mentor_id):
        booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload())
        payload = booking_payload(attendees=[{"name": "Bo", "email": "bo@example.com"}])
        booking = booking_service.upsert_booking(db_engine, 101, "uid-1", payload)
        assert sorted(a.email for a in booking.attendees) == ["ana@example.com", "bo@example.com"]

    def test_missing_status_defaults_to_accepted(self, db_engine, mentor_id):
        booking = booking_service.upsert_booking(
            db_engine, 101, "uid-1", booking_payload(status=None)
        )
        assert booking.status == BookingStatus.ACCEPTED

    def test_provider_spelling_of_cancelled_is_accepted(self, db_engine, mentor_id):
        booking = booking_service.upsert_booking(
            db_engine, 101, "uid-1", booking_payload(status="canceled")
        )
        assert booking.status == BookingStatus.CANCELLED

    def test_keys_pointing_at_two_rows_is_a_violation(self, db_engine, mentor_id):
        booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload())
        booking_service.upsert_booking(
            db_engine, 202, "uid-2", booking_payload(uid="uid-2", booking_id=202)
        )
        with pytest.raises(InvariantViolation):
            booking_service.upsert_booking(
                db_engine, 101, "uid-2", booking_payload(uid="uid-2", booking_id=101)
            )


# ===========================================================================
# Terminal states
# ===========================================================================
class TestTerminalStates:
    def test_cancelled_cannot_be_reopened(self, db_engine, mentor_id):
        booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload())
        booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload(status="CANCELLED"))

        with pytest.raises(InvariantViolation):
            booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload(status="ACCEPTED"))

        assert booking_service.get_booking(db_engine, "uid-1").status == BookingStatus.CANCELLED

    def test_first_terminal_status_is_kept(self, db_engine, mentor_id):
        booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload(status="CANCELLED"))
        booking = booking_service.upsert_booking(
            db_engine, 101, "uid-1", booking_payload(), status=BookingStatus.COMPLETED
        )
        assert booking.status == BookingStatus.CANCELLED
        assert _events(db_engine, AnalyticsEventType.COMPLETED_BOOKING) == 0

    def test_unseen_cancelled_booking_is_created_cancelled(self, db_engine, mentor_id):
        booking = booking_service.upsert_booking(
            db_engine, 101, "uid-1",
            booking_payload(status="CANCELLED", cancellationReason="Conflict"),
        )
        assert booking.status == BookingStatus.CANCELLED
        assert booking.cancellation_reason == "Conflict"
        assert _count(db_engine, Booking) == 1
        assert _events(db_engine, AnalyticsEventType.CANCELLED_BOOKING) == 1

    def test_completion_records_one_analytics_event(self, db_engine, mentor_id):
        booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload())
        for _ in range(2):
            booking_service.upsert_booking(
                db_engine, 101, "uid-1", booking_payload(), status=BookingStatus.COMPLETED
            )
        assert _events(db_engine, AnalyticsEventType.COMPLETED_BOOKING) == 1

    def test_late_pending_delivery_keeps_accepted_snapshot(self, db_engine, mentor_id):
        booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload())
        stale = booking_payload(
            status="PENDING", title="Old title",
            startTime="2026-03-01T08:00:00Z", endTime="2026-03-01T08:30:00Z",
        )
        booking = booking_service.upsert_booking(db_engine, 101, "uid-1", stale)

        assert booking.status == BookingStatus.ACCEPTED
        assert booking.title == "Intro call"
        assert as_utc(booking.start_time) == datetime(2026, 3, 5, 10, 0, tzinfo=timezone.utc)
        assert as_utc(booking.end_time) == datetime(2026, 3, 5, 10, 30, tzinfo=timezone.utc)
        assert booking.webhook_payload["status"] == "ACCEPTED"

    def test_second_terminal_delivery_keeps_first_snapshot(self, db_engine, mentor_id):
        booking_service.upsert_booking(
            db_engine, 101, "uid-1", booking_payload(status="CANCELLED", cancellationReason="Conflict"),
        )
        booking = booking_service.upsert_booking(
            db_engine, 101, "uid-1", booking_payload(title="Wrap-up"), status=BookingStatus.COMPLETED
        )
        assert booking.status == BookingStatus.CANCELLED
        assert booking.title == "Intro call"
        assert booking.cancellation_reason == "Conflict"


# ===========================================================================
# Malformed payloads
# ===========================================================================
class TestMalformedPayloads:
    @pytest.mark.parametrize("field", ["uid", "bookingId", "startTime", "attendees", "organizer"])
    def test_missing_required_field(self, db_engine, field):
        payload = booking_payload()
        del payload[field]
        with pytest.raises(MalformedWebhookError):
            booking_service.upsert_booking(db_engine, 101, "uid-1", payload)
        assert _count(db_engine, Booking) == 0

    def test_end_before_start(self, db_engine):
        payload = booking_payload(endTime="2026-03-05T09:00:00Z")
        with pytest.raises(MalformedWebhookError):
            booking_service.upsert_booking(db_engine, 101, "uid-1", payload)

    def test_keys_must_match_payload(self, db_engine):
        with pytest.raises(MalformedWebhookError):
            booking_service.upsert_booking(db_engine, 999, "uid-1", booking_payload())

    def test_unknown_fields_are_kept(self, db_engine, mentor_id):
        booking = booking_service.upsert_booking(
            db_engine, 101, "uid-1", booking_payload(customField={"x": 1})
        )
        assert booking.webhook_payload["customField"] == {"x": 1}


# ===========================================================================
# Local actions
# ===========================================================================
class TestLocalActions:
    def test_cancel_keeps_participants(self, db_engine, mentor_id):
        booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload())
        booking = booking_service.cancel_booking(db_engine, "uid-1", "Sick")
        assert booking.status == BookingStatus.CANCELLED
        assert booking.cancellation_reason == "Sick"
        assert len(booking.attendees) == 1

    def test_cancel_unknown_booking(self, db_engine):
        assert booking_service.cancel_booking(db_engine, "nope") is None

    def test_no_show_flags_are_independent(self, db_engine, mentor_id):
        booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload())
        booking = booking_service.mark_no_show(db_engine, "uid-1", attendee=True)
        assert booking.attendee_no_show is True
        assert booking.host_no_show is False
        assert booking.status == BookingStatus.NO_SHOW

        booking = booking_service.mark_no_show(db_engine, "uid-1", host=True)
        assert booking.host_no_show is True
        assert booking.attendee_no_show is True

    def test_mentor_lookup_and_listing(self, db_engine, mentor_id):
        booking_service.upsert_booking(db_engine, 101, "uid-1", booking_payload())
        assert booking_service.get_booking_mentor_id(db_engine, "uid-1") == mentor_id
        assert [b.external_uid for b in booking_service.list_mentor_bookings(db_engine, mentor_id)] == ["uid-1"]
