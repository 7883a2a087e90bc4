"""
mentorhub.services.stripe_account_service — Connected Payout Accounts
======================================================================

Tracks each mentor's connected account.  Only the account id and the
``charges_enabled`` / ``payouts_enabled`` / ``details_submitted``
booleans are kept; everything else Stripe reports is discarded.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mentorhub.database.models import MentorStripeAccount, StripeAccountStatus, User
from mentorhub.engine.clock import utcnow
from mentorhub.services.stripe_gateway import StripeGateway, setup_required_error

logger = logging.getLogger(__name__)


def derive_status(charges_enabled: bool, payouts_enabled: bool, details_submitted: bool) -> str:
    if charges_enabled and payouts_enabled:
        return StripeAccountStatus.ACTIVE
    if details_submitted:
        return StripeAccountStatus.RESTRICTED
    return StripeAccountStatus.PENDING


def get_account(engine: Engine, user_id: int) -> MentorStripeAccount | None:
    with Session(engine, expire_on_commit=False) as session:
        row = session.scalar(
            select(MentorStripeAccount).where(MentorStripeAccount.user_id == user_id)
        )
        if row is not None:
            session.expunge(row)
        return row


def can_accept_payments(engine: Engine, user_id: int) -> bool:
    account = get_account(engine, user_id)
    return bool(account and account.charges_enabled and account.payouts_enabled)


def upsert_account_status(
    engine: Engine,
    *,
    stripe_account_id: str,
    charges_enabled: bool,
    payouts_enabled: bool,
    details_submitted: bool,
    user_id: int | None = None,
) -> MentorStripeAccount | None:
    """Mirror an ``account.updated`` notification.

    *user_id* comes from the account's ``metadata.userId``; it is only
    needed when the account is not yet known locally.  Returns None if the
    account cannot be tied to a user.
    """
    status = derive_status(charges_enabled, payouts_enabled, details_submitted)
    with Session(engine, expire_on_commit=False) as session:
        row = session.scalar(
            select(MentorStripeAccount)
            .where(MentorStripeAccount.stripe_account_id == stripe_account_id)
        )
        if row is None:
            if user_id is None or session.get(User, user_id) is None:
                logger.warning(
                    "account.updated for unknown account %s (userId=%s) ignored",
                    stripe_account_id, user_id,
                )
                return None
            row = MentorStripeAccount(user_id=user_id, stripe_account_id=stripe_account_id)
            try:
                with session.begin_nested():   # SAVEPOINT
                    session.add(row)
                    session.flush()
            except IntegrityError:
                row = session.scalar(
                    select(MentorStripeAccount).where(MentorStripeAccount.user_id == user_id)
                )
                if row is None:
                    raise
                row.stripe_account_id = stripe_account_id

        became_active = status == StripeAccountStatus.ACTIVE and row.status != StripeAccountStatus.ACTIVE
        row.charges_enabled = charges_enabled
        row.payouts_enabled = payouts_enabled
        row.details_submitted = details_submitted
        row.status = status
        if became_active and row.onboarding_completed_at is None:
            row.onboarding_completed_at = utcnow()
        session.commit()
        session.expunge(row)

    logger.info("Stripe account %s for user %d is %s", stripe_account_id, row.user_id, status)
    return row


def start_onboarding(engine: Engine, gateway: StripeGateway, user_id: int) -> dict:
    """Ensure the mentor has a connected account and return an onboarding session."""
    with Session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise setup_required_error(f"User {user_id} does not exist")
        email = user.email

    account = get_account(engine, user_id)
    if account is None:
        account_id = gateway.create_connected_account(user_id, email)
        account = upsert_account_status(
            engine,
            stripe_account_id=account_id,
            charges_enabled=False,
            payouts_enabled=False,
            details_submitted=False,
            user_id=user_id,
        )
    client_secret = gateway.create_account_session(account.stripe_account_id)
    return {
        "account_id": account.stripe_account_id,
        "client_secret": client_secret,
        "status": account.status,
    }
