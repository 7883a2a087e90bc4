"""
mentorhub.services.checkout_service — Paid Booking Checkout
============================================================

Flow for a paid session:

1. :func:`start_checkout` opens a processor checkout for an enabled, paid
   event type whose mentor can receive payouts.
2. The processor's ``checkout.session.completed`` webhook lands in
   :func:`record_checkout_completed`, which creates the payment (fee split
   from the fee policy) and moves it to SUCCEEDED once paid.
3. :func:`fulfil_checkout` books the slot with the scheduling provider.
   If that fails the charge is refunded; if the refund fails too, the
   payment is put on hold so it is never transferred.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from mentorhub.config import PaymentsConfig
from mentorhub.database.models import MentorEventType, Payment, PaymentStatus
from mentorhub.engine.fees import FeePolicy, compute_fee_split
from mentorhub.errors import MalformedWebhookError, MentorhubError
from mentorhub.services.booking_service import upsert_booking
from mentorhub.services.event_type_service import get_bookable_event_type
from mentorhub.services.payment_service import (
    create_payment,
    get_payment,
    hold_payment,
    refund_payment,
    transition_payment,
)
from mentorhub.services.scheduling_client import SchedulingClient
from mentorhub.services.stripe_account_service import can_accept_payments
from mentorhub.services.stripe_gateway import StripeGateway, setup_required_error
from mentorhub.services.token_service import TokenLifecycleManager

logger = logging.getLogger(__name__)


def _dispute_period(cfg: PaymentsConfig) -> timedelta:
    return timedelta(days=cfg.dispute_period_days)


def start_checkout(
    engine: Engine,
    gateway: StripeGateway,
    cfg: PaymentsConfig,
    *,
    event_type_id: int,
    customer_email: str,
    customer_name: str,
    start_time: datetime,
    time_zone: str = "UTC",
) -> dict:
    """Open a checkout session for one paid booking.

    Raises
    ------
    LookupError
        The event type does not exist or is disabled.
    ValueError
        The event type is free.
    ProcessorError
        The mentor cannot receive payouts, or the processor call failed.
    """
    event_type = get_bookable_event_type(engine, event_type_id)
    if event_type is None:
        raise LookupError(f"Event type {event_type_id} is not bookable")
    if not event_type.is_paid:
        raise ValueError(f"Event type {event_type_id} is free; book it directly")
    if not can_accept_payments(engine, event_type.mentor_id):
        raise setup_required_error(
            f"Mentor {event_type.mentor_id} has no active payout account"
        )

    split = compute_fee_split(event_type.custom_price, event_type.currency, FeePolicy.from_config(cfg))
    metadata = {
        "mentorUserId": str(event_type.mentor_id),
        "eventTypeId": str(event_type.id),
        "startTime": start_time.isoformat(),
        "timeZone": time_zone,
        "customerName": customer_name,
        "mentorFee": str(split.mentor_fee),
        "platformFee": str(split.platform_fee),
    }
    session = gateway.create_checkout_session(
        amount=split.amount,
        currency=split.currency,
        product_name=event_type.title,
        customer_email=customer_email,
        success_url=cfg.checkout_success_url,
        cancel_url=cfg.checkout_cancel_url,
        metadata=metadata,
    )
    logger.info("Checkout %s opened for event type %d", session["id"], event_type_id)
    return session


def record_checkout_completed(
    engine: Engine,
    cfg: PaymentsConfig,
    checkout: dict,
    *,
    now: datetime | None = None,
) -> tuple[Payment, bool]:
    """Create (or find) the payment for a completed checkout session.

    Returns ``(payment, created)``.

    Raises
    ------
    MalformedWebhookError
        Required checkout fields or metadata are missing.
    """
    metadata = dict(checkout.get("metadata") or {})
    customer = dict(checkout.get("customer_details") or {})
    try:
        session_id = str(checkout["id"])
        mentor_user_id = int(metadata["mentorUserId"])
        amount = int(checkout["amount_total"])
        currency = str(checkout.get("currency") or cfg.default_currency)
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedWebhookError(f"Checkout session is missing required data: {exc}") from exc
    customer_email = customer.get("email") or checkout.get("customer_email")
    if not customer_email:
        raise MalformedWebhookError(f"Checkout session {session_id} has no customer email")

    payment, created = create_payment(
        engine,
        mentor_user_id=mentor_user_id,
        amount=amount,
        currency=currency,
        customer_email=customer_email,
        customer_name=customer.get("name") or metadata.get("customerName"),
        policy=FeePolicy.from_config(cfg),
        dispute_period=_dispute_period(cfg),
        stripe_payment_intent_id=checkout.get("payment_intent"),
        stripe_checkout_session_id=session_id,
        status=PaymentStatus.PROCESSING,
        stripe_status=checkout.get("status"),
        metadata=metadata,
        now=now,
    )
    if checkout.get("payment_status") == "paid":
        payment = transition_payment(
            engine, payment.id, PaymentStatus.SUCCEEDED,
            dispute_period=_dispute_period(cfg),
            stripe_status=checkout.get("status"),
        )
    return payment, created


def fulfil_checkout(
    engine: Engine,
    tokens: TokenLifecycleManager,
    client: SchedulingClient,
    gateway: StripeGateway,
    cfg: PaymentsConfig,
    payment_id: int,
) -> dict:
    """Book the paid slot with the scheduling provider, refunding on failure."""
    payment = get_payment(engine, payment_id)
    if payment is None:
        raise LookupError(f"Payment {payment_id} does not exist")
    metadata = payment.metadata_ or {}

    try:
        try:
            event_type_id = int(metadata.get("eventTypeId", 0))
        except (TypeError, ValueError) as exc:
            raise MalformedWebhookError(
                f"Payment {payment_id} carries a non-numeric eventTypeId "
                f"{metadata.get('eventTypeId')!r}"
            ) from exc
        with Session(engine) as session:
            external_event_type_id = session.scalar(
                select(MentorEventType.external_event_type_id)
                .where(MentorEventType.id == event_type_id)
            )
        if external_event_type_id is None:
            raise MalformedWebhookError(f"Payment {payment_id} references no known event type")
        access_token = tokens.get_valid_access_token(payment.mentor_user_id)
        data = client.create_booking(access_token, {
            "eventTypeId": external_event_type_id,
            "start": metadata.get("startTime"),
            "attendee": {
                "name": payment.customer_name or payment.customer_email,
                "email": payment.customer_email,
                "timeZone": metadata.get("timeZone", "UTC"),
            },
            "metadata": {"paymentId": str(payment_id)},
        })
        if not isinstance(data, dict) or "id" not in data or "uid" not in data:
            raise MalformedWebhookError(f"Provider returned no booking for payment {payment_id}")
        booking = upsert_booking(engine, int(data["id"]), str(data["uid"]), data)
    except MentorhubError as exc:
        logger.error("Booking for payment %d failed: %s; refunding", payment_id, exc.message)
        try:
            refund_payment(engine, gateway, payment_id, dispute_period=_dispute_period(cfg))
        except MentorhubError as refund_exc:
            logger.critical(
                "Refund for payment %d failed after booking failure: %s; payment held",
                payment_id, refund_exc.message,
            )
            hold_payment(engine, payment_id, True)
            return {"status": "held", "payment_id": payment_id}
        return {"status": "refunded", "payment_id": payment_id}

    return {"status": "booked", "payment_id": payment_id, "booking_uid": booking.external_uid}
