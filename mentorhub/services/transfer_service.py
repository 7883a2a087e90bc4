"""
mentorhub.services.transfer_service — Dispute-Hold Transfer Batch
==================================================================

Pays the mentor's share of each settled charge once its dispute window
has closed.  Triggered externally (cron); safe to run concurrently with
itself and with webhook traffic.

A payment is eligible when

* ``platform_status == SUCCEEDED``
* ``transfer_id IS NULL``
* ``now >= dispute_period_ends``
* no operator hold (``dispute_requested``) and retries left
* it is not claimed by another run (or the claim went stale)
* the mentor's connected account has payouts enabled

Per payment the batch:

1. **claims** the row with a conditional UPDATE (``transfer_status =
   in_progress``); losing the claim means another run owns it;
2. calls the processor with an idempotency key that is stable for this
   attempt, so a crash between steps 2 and 3 cannot pay twice;
3. stamps ``transfer_id`` and moves the payment to TRANSFERRED in one
   UPDATE that re-checks ``platform_status == SUCCEEDED``.

A failed transfer releases the claim, bumps the retry counter and leaves
``transfer_id`` NULL for the next run.  Once the counter reaches
``transfer_max_retries`` the payment is logged at ERROR and left to an
operator.

If step 3 finds the payment no longer SUCCEEDED (a refund or dispute
landed mid-flight) the row is marked ``transfer_status = orphaned`` and the
sent transfer id goes into ``metadata["orphanedTransferId"]``;
``transfer_id`` stays NULL because only SUCCEEDED payments may carry one.
An orphaned payment never re-enters eligibility, even if a won dispute
returns it to SUCCEEDED, and a later refund reverses the recorded transfer.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import Engine, and_, or_, select, update

from mentorhub.config import PaymentsConfig
from mentorhub.database.engine import get_session
from mentorhub.database.models import (
    MentorStripeAccount,
    Payment,
    PaymentStatus,
    TransferStatus,
)
from mentorhub.engine.clock import utcnow
from mentorhub.errors import ProcessorError
from mentorhub.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

ORPHANED_TRANSFER_KEY = "orphanedTransferId"


def _claimable(now: datetime, claim_ttl: timedelta):
    stale_before = now - claim_ttl
    return or_(
        Payment.transfer_status.is_(None),
        Payment.transfer_status == TransferStatus.FAILED,
        and_(
            Payment.transfer_status == TransferStatus.IN_PROGRESS,
            Payment.transfer_claimed_at < stale_before,
        ),
    )


def eligibility_clause(now: datetime, cfg: PaymentsConfig):
    """SQL predicate for payments that may be transferred at *now*."""
    return and_(
        Payment.platform_status == PaymentStatus.SUCCEEDED,
        Payment.transfer_id.is_(None),
        Payment.dispute_period_ends <= now,
        Payment.dispute_requested.is_(False),
        Payment.transfer_retry_count < cfg.transfer_max_retries,
        _claimable(now, timedelta(seconds=cfg.transfer_claim_ttl_seconds)),
    )


def find_eligible_payments(engine: Engine, cfg: PaymentsConfig, now: datetime) -> list[dict]:
    """Eligible payments joined with the mentor's payout destination."""
    with get_session(engine) as session:
        rows = session.execute(
            select(
                Payment.id,
                Payment.mentor_user_id,
                Payment.mentor_fee,
                Payment.currency,
                Payment.transfer_retry_count,
                MentorStripeAccount.stripe_account_id,
                MentorStripeAccount.payouts_enabled,
            )
            .outerjoin(
                MentorStripeAccount,
                MentorStripeAccount.user_id == Payment.mentor_user_id,
            )
            .where(eligibility_clause(now, cfg))
            .order_by(Payment.dispute_period_ends, Payment.id)
        ).all()
    return [dict(r._mapping) for r in rows]


def _claim(engine: Engine, payment_id: int, cfg: PaymentsConfig, now: datetime) -> bool:
    with get_session(engine) as session:
        result = session.execute(
            update(Payment)
            .where(Payment.id == payment_id, eligibility_clause(now, cfg))
            .values(
                transfer_status=TransferStatus.IN_PROGRESS,
                transfer_claimed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def _stamp(engine: Engine, payment_id: int, transfer_id: str) -> bool:
    with get_session(engine) as session:
        result = session.execute(
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.platform_status == PaymentStatus.SUCCEEDED,
                Payment.transfer_id.is_(None),
            )
            .values(
                transfer_id=transfer_id,
                transfer_status=TransferStatus.TRANSFERRED,
                platform_status=PaymentStatus.TRANSFERRED,
                transfer_claimed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


def _orphan(engine: Engine, payment_id: int, transfer_id: str) -> None:
    with get_session(engine) as session:
        payment = session.get(Payment, payment_id, with_for_update=True)
        if payment is None or payment.transfer_id is not None:
            return
        payment.transfer_status = TransferStatus.ORPHANED
        payment.transfer_claimed_at = None
        payment.metadata_ = {**(payment.metadata_ or {}), ORPHANED_TRANSFER_KEY: transfer_id}


def _release(engine: Engine, payment_id: int) -> int:
    """Mark the attempt failed; returns the new retry count."""
    with get_session(engine) as session:
        session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.transfer_id.is_(None))
            .values(
                transfer_status=TransferStatus.FAILED,
                transfer_claimed_at=None,
                transfer_retry_count=Payment.transfer_retry_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return session.scalar(
            select(Payment.transfer_retry_count).where(Payment.id == payment_id)
        ) or 0


def run_transfer_batch(
    engine: Engine,
    gateway: StripeGateway,
    cfg: PaymentsConfig,
    *,
    now: datetime | None = None,
) -> dict:
    """Transfer every eligible payment.  Returns a summary dict."""
    now = now or utcnow()
    summary = {
        "eligible": 0, "transferred": 0, "failed": 0, "skipped": 0,
        "orphaned": 0, "exhausted": 0, "transfer_ids": [],
    }

    for row in find_eligible_payments(engine, cfg, now):
        summary["eligible"] += 1
        payment_id = row["id"]

        if not row["stripe_account_id"] or not row["payouts_enabled"]:
            logger.info("Payment %d skipped: mentor %d has no payout-enabled account",
                        payment_id, row["mentor_user_id"])
            summary["skipped"] += 1
            continue
        if not _claim(engine, payment_id, cfg, now):
            logger.info("Payment %d claimed by another run", payment_id)
            summary["skipped"] += 1
            continue

        try:
            transfer_id = gateway.create_transfer(
                amount=row["mentor_fee"],
                currency=row["currency"],
                destination=row["stripe_account_id"],
                idempotency_key=f"payment-{payment_id}-transfer-{row['transfer_retry_count']}",
                metadata={
                    "paymentId": str(payment_id),
                    "mentorUserId": str(row["mentor_user_id"]),
                },
            )
        except ProcessorError as exc:
            logger.warning("Transfer for payment %d failed: %s", payment_id, exc.message)
            retries = _release(engine, payment_id)
            if retries >= cfg.transfer_max_retries:
                logger.error(
                    "Transfer for payment %d exhausted after %d attempts; "
                    "mentor %d needs a manual payout",
                    payment_id, retries, row["mentor_user_id"],
                )
                summary["exhausted"] += 1
            summary["failed"] += 1
            continue

        if not _stamp(engine, payment_id, transfer_id):
            _orphan(engine, payment_id, transfer_id)
            logger.critical(
                "Transfer %s sent for payment %d but the payment is no longer "
                "SUCCEEDED; marked orphaned, manual reversal required",
                transfer_id, payment_id,
            )
            summary["failed"] += 1
            summary["orphaned"] += 1
            continue

        logger.info("Payment %d transferred (%s)", payment_id, transfer_id)
        summary["transferred"] += 1
        summary["transfer_ids"].append(transfer_id)

    logger.info(
        "Transfer batch: %d eligible, %d transferred, %d failed, %d skipped",
        summary["eligible"], summary["transferred"], summary["failed"], summary["skipped"],
    )
    return summary
