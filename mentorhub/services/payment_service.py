"""
mentorhub.services.payment_service — Payment Records & State Changes
=====================================================================

* :func:`create_payment` is the only way a payment row is written.  The
  fee split always comes from :func:`~mentorhub.engine.fees.compute_fee_split`,
  and creation is idempotent by payment-intent id / checkout-session id.
* :func:`transition_payment` drives the state table in
  :mod:`mentorhub.engine.payment_state`.  Stale processor redeliveries are
  ignored; anything else illegal is an :class:`InvariantViolation`.
* :func:`get_mentor_earnings` aggregates a mentor's settled amounts.

Payout to mentors lives in :mod:`mentorhub.services.transfer_service`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Engine, case, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mentorhub.database.models import Payment, PaymentStatus
from mentorhub.engine.clock import as_utc, utcnow
from mentorhub.engine.fees import FeePolicy, compute_fee_split
from mentorhub.engine.payment_state import can_transition, is_stale
from mentorhub.errors import InvariantViolation, ProcessorError
from mentorhub.services.stripe_gateway import StripeGateway
from mentorhub.services.transfer_service import ORPHANED_TRANSFER_KEY

logger = logging.getLogger(__name__)

# Statuses whose mentor share counts as earned.
SETTLED_STATUSES = (PaymentStatus.SUCCEEDED, PaymentStatus.TRANSFERRED)


def _find_payment(
    session: Session,
    *,
    payment_intent_id: str | None = None,
    checkout_session_id: str | None = None,
) -> Payment | None:
    keys = []
    if payment_intent_id:
        keys.append(Payment.stripe_payment_intent_id == payment_intent_id)
    if checkout_session_id:
        keys.append(Payment.stripe_checkout_session_id == checkout_session_id)
    if not keys:
        return None
    return session.scalars(select(Payment).where(or_(*keys))).first()


def get_payment(engine: Engine, payment_id: int) -> Payment | None:
    with Session(engine, expire_on_commit=False) as session:
        payment = session.get(Payment, payment_id)
        if payment is not None:
            session.expunge(payment)
        return payment


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------
def create_payment(
    engine: Engine,
    *,
    mentor_user_id: int,
    amount: int,
    currency: str,
    customer_email: str,
    policy: FeePolicy,
    dispute_period: timedelta,
    customer_name: str | None = None,
    stripe_payment_intent_id: str | None = None,
    stripe_checkout_session_id: str | None = None,
    status: PaymentStatus = PaymentStatus.PENDING,
    stripe_status: str | None = None,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> tuple[Payment, bool]:
    """Insert a payment with its fee split fixed for good.

    Returns ``(payment, created)``.  If a row with the same payment-intent
    or checkout-session id exists, it is returned unchanged.
    """
    now = now or utcnow()
    split = compute_fee_split(amount, currency, policy)

    with Session(engine, expire_on_commit=False) as session:
        existing = _find_payment(
            session,
            payment_intent_id=stripe_payment_intent_id,
            checkout_session_id=stripe_checkout_session_id,
        )
        if existing is not None:
            session.expunge(existing)
            return existing, False

        payment = Payment(
            mentor_user_id=mentor_user_id,
            customer_email=customer_email,
            customer_name=customer_name,
            amount=split.amount,
            mentor_fee=split.mentor_fee,
            platform_fee=split.platform_fee,
            currency=split.currency,
            platform_status=status,
            stripe_status=stripe_status,
            stripe_payment_intent_id=stripe_payment_intent_id,
            stripe_checkout_session_id=stripe_checkout_session_id,
            dispute_period_ends=now + dispute_period,
            metadata_=metadata,
            created_at=now,
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(payment)
                session.flush()
        except IntegrityError:
            # Same processor ids inserted concurrently.
            existing = _find_payment(
                session,
                payment_intent_id=stripe_payment_intent_id,
                checkout_session_id=stripe_checkout_session_id,
            )
            if existing is None:
                raise
            session.expunge(existing)
            return existing, False

        session.commit()
        logger.info(
            "Created payment %d for mentor %d: %d %s (mentor %d / platform %d)",
            payment.id, mentor_user_id, split.amount, split.currency,
            split.mentor_fee, split.platform_fee,
        )
        session.expunge(payment)
        return payment, True


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------
def _transition(
    session: Session,
    payment: Payment,
    target: PaymentStatus,
    dispute_period: timedelta,
    stripe_status: str | None = None,
) -> bool:
    """Apply *target* to an attached *payment*.  Returns True if it changed."""
    if stripe_status is not None:
        payment.stripe_status = stripe_status

    current = PaymentStatus(payment.platform_status)
    if current == target:
        return False
    if not can_transition(current, target) and is_stale(current, target):
        logger.info(
            "Ignoring stale status %s for payment %d (already %s)",
            target, payment.id, current,
        )
        return False
    if not can_transition(current, target):
        logger.error(
            "Illegal payment transition %s → %s for payment %d", current, target, payment.id
        )
        raise InvariantViolation(
            f"Payment {payment.id} cannot move from {current} to {target}"
        )

    payment.platform_status = target
    if target is PaymentStatus.SUCCEEDED and current is not PaymentStatus.DISPUTED:
        payment.dispute_period_ends = as_utc(payment.created_at) + dispute_period
    logger.info("Payment %d: %s → %s", payment.id, current, target)
    return True


def transition_payment(
    engine: Engine,
    payment_id: int,
    target: PaymentStatus,
    *,
    dispute_period: timedelta,
    stripe_status: str | None = None,
) -> Payment | None:
    with Session(engine, expire_on_commit=False) as session:
        payment = session.get(Payment, payment_id)
        if payment is None:
            return None
        _transition(session, payment, PaymentStatus(target), dispute_period, stripe_status)
        session.commit()
        session.expunge(payment)
        return payment


def apply_processor_status(
    engine: Engine,
    payment_intent_id: str,
    target: PaymentStatus,
    *,
    dispute_period: timedelta,
    stripe_status: str | None = None,
) -> Payment | None:
    """Apply a processor webhook's status to the payment it refers to.

    Returns None when the payment intent is unknown locally.
    """
    with Session(engine, expire_on_commit=False) as session:
        payment = _find_payment(session, payment_intent_id=payment_intent_id)
        if payment is None:
            logger.info("No local payment for intent %s; status %s dropped",
                        payment_intent_id, target)
            return None
        _transition(session, payment, PaymentStatus(target), dispute_period, stripe_status)
        session.commit()
        session.expunge(payment)
        return payment


def hold_payment(engine: Engine, payment_id: int, hold: bool = True) -> bool:
    """Toggle the operator hold that keeps a payment out of transfer batches."""
    with Session(engine) as session:
        payment = session.get(Payment, payment_id)
        if payment is None:
            return False
        payment.dispute_requested = hold
        session.commit()
    logger.info("Payment %d hold=%s", payment_id, hold)
    return True


def refund_payment(
    engine: Engine,
    gateway: StripeGateway,
    payment_id: int,
    *,
    dispute_period: timedelta,
) -> Payment:
    """Refund a settled payment through the processor and mark it REFUNDED.

    A transfer already sent for the payment (stamped or orphaned) is
    reversed first.

    Raises
    ------
    InvariantViolation
        The payment is not in a refundable status.
    ProcessorError
        The processor rejected the reversal or refund.
    """
    payment = get_payment(engine, payment_id)
    if payment is None:
        raise InvariantViolation(f"Payment {payment_id} does not exist")
    if payment.platform_status == PaymentStatus.REFUNDED:
        return payment
    if not can_transition(payment.platform_status, PaymentStatus.REFUNDED):
        raise InvariantViolation(
            f"Payment {payment_id} in status {payment.platform_status} cannot be refunded"
        )
    if not payment.stripe_payment_intent_id:
        raise ProcessorError(
            f"Payment {payment_id} has no payment intent to refund", provider="payments"
        )

    sent_transfer = payment.transfer_id or (payment.metadata_ or {}).get(ORPHANED_TRANSFER_KEY)
    if sent_transfer:
        gateway.reverse_transfer(
            sent_transfer, idempotency_key=f"payment-{payment_id}-reversal"
        )
    gateway.refund(
        payment.stripe_payment_intent_id, idempotency_key=f"payment-{payment_id}-refund"
    )
    return transition_payment(
        engine, payment_id, PaymentStatus.REFUNDED, dispute_period=dispute_period
    )


# ---------------------------------------------------------------------------
# Earnings
# ---------------------------------------------------------------------------
def get_mentor_earnings(engine: Engine, mentor_user_id: int) -> dict:
    """Aggregate a mentor's earnings per currency.

    * ``total_earnings``  — mentor fees of settled (SUCCEEDED/TRANSFERRED) payments
    * ``pending_payout``  — mentor fees of SUCCEEDED payments not yet transferred
    * ``transferred_count`` — payments carrying a transfer id
    """
    settled = Payment.platform_status.in_([s.value for s in SETTLED_STATUSES])
    pending = (Payment.platform_status == PaymentStatus.SUCCEEDED) & Payment.transfer_id.is_(None)

    with Session(engine) as session:
        rows = session.execute(
            select(
                Payment.currency,
                func.coalesce(func.sum(case((settled, Payment.mentor_fee), else_=0)), 0),
                func.coalesce(func.sum(case((pending, Payment.mentor_fee), else_=0)), 0),
                func.count(Payment.transfer_id),
            )
            .where(Payment.mentor_user_id == mentor_user_id)
            .group_by(Payment.currency)
        ).all()

    return {
        "total_earnings": {cur: int(total) for cur, total, _, _ in rows if total},
        "pending_payout": {cur: int(p) for cur, _, p, _ in rows if p},
        "transferred_count": sum(int(n) for _, _, _, n in rows),
    }
