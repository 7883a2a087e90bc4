"""
tests/test_event_types.py — Event Types & Paid Checkout
========================================================
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from conftest import T0, make_mentor
from mentorhub.config import PaymentsConfig
from mentorhub.database.models import PaymentStatus
from mentorhub.errors import MalformedWebhookError, ProcessorError
from mentorhub.services import checkout_service, event_type_service
from mentorhub.services.payment_service import get_payment
from mentorhub.services.scheduling_client import SchedulingClient
from mentorhub.services.stripe_gateway import StripeGateway
from mentorhub.services.token_service import TokenLifecycleManager

CFG = PaymentsConfig()


@pytest.fixture
def tokens():
    tm = MagicMock(spec=TokenLifecycleManager)
    tm.get_valid_access_token.return_value = "tok"
    return tm


@pytest.fixture
def sched():
    client = MagicMock(spec=SchedulingClient)
    client.list_event_types.return_value = [
        {"id": 9001, "title": "Intro call", "lengthInMinutes": 30},
        {"id": 9002, "slug": "deep-dive", "lengthInMinutes": 60, "description": "Long"},
        {"title": "no id, skipped"},
    ]
    return client


def synced(engine, tokens, sched, mentor_id):
    event_type_service.sync_event_types(engine, tokens, sched, mentor_id)
    return event_type_service.list_event_types(engine, mentor_id)


# ===========================================================================
# Sync & update
# ===========================================================================
class TestEventTypes:
    def test_sync_creates_disabled_types(self, db_engine, tokens, sched):
        mentor = make_mentor(db_engine)
        rows = synced(db_engine, tokens, sched, mentor)
        assert [(r.title, r.duration, r.is_enabled) for r in rows] == [
            ("Intro call", 30, False),
            ("deep-dive", 60, False),
        ]

    def test_resync_keeps_price_and_flag(self, db_engine, tokens, sched):
        mentor = make_mentor(db_engine)
        row = synced(db_engine, tokens, sched, mentor)[0]
        event_type_service.update_event_type(db_engine, mentor, row.id, is_enabled=True)
        sched.list_event_types.return_value = [{"id": 9001, "title": "Renamed", "lengthInMinutes": 45}]

        summary = event_type_service.sync_event_types(db_engine, tokens, sched, mentor)

        assert summary == {"created": 0, "updated": 1}
        refreshed = event_type_service.list_event_types(db_engine, mentor)[0]
        assert (refreshed.title, refreshed.duration, refreshed.is_enabled) == ("Renamed", 45, True)

    def test_paid_type_needs_payout_account(self, db_engine, tokens, sched):
        mentor = make_mentor(db_engine)
        row = synced(db_engine, tokens, sched, mentor)[0]
        with pytest.raises(ProcessorError):
            event_type_service.update_event_type(
                db_engine, mentor, row.id, custom_price=5000, is_enabled=True
            )
        assert event_type_service.get_bookable_event_type(db_engine, row.id) is None

    def test_paid_type_with_payouts(self, db_engine, tokens, sched):
        mentor = make_mentor(db_engine, stripe_account_id="acct_1")
        row = synced(db_engine, tokens, sched, mentor)[0]
        updated = event_type_service.update_event_type(
            db_engine, mentor, row.id, custom_price=5000, currency="EUR", is_enabled=True
        )
        assert (updated.custom_price, updated.currency, updated.is_enabled) == (5000, "eur", True)

    def test_other_mentors_type_is_invisible(self, db_engine, tokens, sched):
        mentor = make_mentor(db_engine)
        other = make_mentor(db_engine, "other@example.com")
        row = synced(db_engine, tokens, sched, mentor)[0]
        assert event_type_service.update_event_type(db_engine, other, row.id, is_enabled=True) is None

    @pytest.mark.parametrize("kwargs", [{"custom_price": -1}, {"currency": "euro"}])
    def test_bad_values(self, db_engine, kwargs):
        with pytest.raises(ValueError):
            event_type_service.update_event_type(db_engine, 1, 1, **kwargs)


# ===========================================================================
# Checkout
# ===========================================================================
@pytest.fixture
def paid_type(db_engine, tokens, sched):
    mentor = make_mentor(db_engine, stripe_account_id="acct_1")
    row = synced(db_engine, tokens, sched, mentor)[0]
    event_type_service.update_event_type(db_engine, mentor, row.id, custom_price=5000, is_enabled=True)
    return mentor, row.id


def completed_checkout(mentor, event_type_id, **extra) -> dict:
    checkout = {
        "id": "cs_1",
        "amount_total": 5000,
        "currency": "usd",
        "payment_intent": "pi_1",
        "payment_status": "paid",
        "status": "complete",
        "customer_details": {"email": "mentee@example.com", "name": "Mentee"},
        "metadata": {
            "mentorUserId": str(mentor),
            "eventTypeId": str(event_type_id),
            "startTime": "2026-03-05T10:00:00+00:00",
            "timeZone": "UTC",
        },
    }
    checkout.update(extra)
    return checkout


class TestCheckout:
    def test_start_checkout_passes_fee_split(self, db_engine, paid_type):
        mentor, et_id = paid_type
        gateway = MagicMock(spec=StripeGateway)
        gateway.create_checkout_session.return_value = {"id": "cs_1", "url": "https://pay"}

        result = checkout_service.start_checkout(
            db_engine, gateway, CFG, event_type_id=et_id,
            customer_email="mentee@example.com", customer_name="Mentee", start_time=T0,
        )

        assert result == {"id": "cs_1", "url": "https://pay"}
        kwargs = gateway.create_checkout_session.call_args.kwargs
        assert kwargs["amount"] == 5000
        assert kwargs["metadata"]["mentorFee"] == "4500"
        assert kwargs["metadata"]["platformFee"] == "500"

    def test_disabled_type_is_not_bookable(self, db_engine, tokens, sched):
        mentor = make_mentor(db_engine)
        row = synced(db_engine, tokens, sched, mentor)[0]
        with pytest.raises(LookupError):
            checkout_service.start_checkout(
                db_engine, MagicMock(spec=StripeGateway), CFG, event_type_id=row.id,
                customer_email="m@example.com", customer_name="M", start_time=T0,
            )

    def test_completed_checkout_creates_succeeded_payment_once(self, db_engine, paid_type):
        mentor, et_id = paid_type
        payment, created = checkout_service.record_checkout_completed(
            db_engine, CFG, completed_checkout(mentor, et_id), now=T0
        )
        again, created_again = checkout_service.record_checkout_completed(
            db_engine, CFG, completed_checkout(mentor, et_id), now=T0
        )
        assert created and not created_again
        assert again.id == payment.id
        assert payment.platform_status == PaymentStatus.SUCCEEDED
        assert payment.mentor_fee + payment.platform_fee == payment.amount

    def test_checkout_without_metadata_is_malformed(self, db_engine):
        with pytest.raises(MalformedWebhookError):
            checkout_service.record_checkout_completed(
                db_engine, CFG, {"id": "cs_x", "amount_total": 100}
            )

    def test_fulfil_books_slot(self, db_engine, tokens, sched, paid_type):
        mentor, et_id = paid_type
        payment, _ = checkout_service.record_checkout_completed(
            db_engine, CFG, completed_checkout(mentor, et_id), now=T0
        )
        sched.create_booking.return_value = {
            "id": 555, "uid": "uid-paid", "title": "Intro call",
            "startTime": "2026-03-05T10:00:00Z", "endTime": "2026-03-05T10:30:00Z",
            "status": "accepted",
            "attendees": [{"name": "Mentee", "email": "mentee@example.com"}],
            "organizer": {"id": 4242, "name": "Mentor", "email": "mentor@example.com"},
            "metadata": {"paymentId": str(payment.id)},
        }
        gateway = MagicMock(spec=StripeGateway)

        result = checkout_service.fulfil_checkout(db_engine, tokens, sched, gateway, CFG, payment.id)

        assert result["status"] == "booked"
        assert result["booking_uid"] == "uid-paid"
        body = sched.create_booking.call_args.args[1]
        assert body["eventTypeId"] == 9001
        gateway.refund.assert_not_called()

    def test_failed_booking_is_refunded(self, db_engine, tokens, sched, paid_type):
        mentor, et_id = paid_type
        payment, _ = checkout_service.record_checkout_completed(
            db_engine, CFG, completed_checkout(mentor, et_id), now=T0
        )
        sched.create_booking.side_effect = ProcessorError("slot taken", provider="scheduling")
        gateway = MagicMock(spec=StripeGateway)

        result = checkout_service.fulfil_checkout(db_engine, tokens, sched, gateway, CFG, payment.id)

        assert result == {"status": "refunded", "payment_id": payment.id}
        assert get_payment(db_engine, payment.id).platform_status == PaymentStatus.REFUNDED

    def test_failed_refund_holds_payment(self, db_engine, tokens, sched, paid_type):
        mentor, et_id = paid_type
        payment, _ = checkout_service.record_checkout_completed(
            db_engine, CFG, completed_checkout(mentor, et_id), now=T0
        )
        sched.create_booking.side_effect = ProcessorError("slot taken", provider="scheduling")
        gateway = MagicMock(spec=StripeGateway)
        gateway.refund.side_effect = ProcessorError("refund failed", provider="payments")

        result = checkout_service.fulfil_checkout(db_engine, tokens, sched, gateway, CFG, payment.id)

        assert result["status"] == "held"
        assert get_payment(db_engine, payment.id).dispute_requested is True

    def test_non_numeric_event_type_is_refunded(self, db_engine, tokens, sched, paid_type):
        mentor, et_id = paid_type
        checkout = completed_checkout(mentor, et_id)
        checkout["metadata"]["eventTypeId"] = "intro-call"
        payment, _ = checkout_service.record_checkout_completed(db_engine, CFG, checkout, now=T0)
        gateway = MagicMock(spec=StripeGateway)

        result = checkout_service.fulfil_checkout(db_engine, tokens, sched, gateway, CFG, payment.id)

        assert result == {"status": "refunded", "payment_id": payment.id}
        sched.create_booking.assert_not_called()
        gateway.refund.assert_called_once()
