"""
mentorhub.services.payment_webhooks — Payment Processor Webhooks
=================================================================

Entry point for ``POST /api/webhooks/stripe``.  The body is audited,
its ``Stripe-Signature`` verified, and the event routed:

==============================  ==========================================
checkout.session.completed      create payment; schedule booking fulfilment
payment_intent.processing       → PROCESSING
payment_intent.succeeded        → SUCCEEDED
payment_intent.payment_failed   → FAILED
charge.refunded                 → REFUNDED (full refunds only)
charge.dispute.created          → DISPUTED
charge.dispute.closed           won → SUCCEEDED; otherwise stays DISPUTED
account.updated                 mirror connected-account flags
==============================  ==========================================

Status changes on unknown payment intents are acknowledged and ignored;
stale redeliveries are dropped by the payment state table.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import Engine

from mentorhub.config import PaymentsConfig
from mentorhub.database.models import PaymentStatus, WebhookOutcome, WebhookSource
from mentorhub.errors import InvariantViolation, MalformedWebhookError
from mentorhub.services.checkout_service import record_checkout_completed
from mentorhub.services.payment_service import apply_processor_status
from mentorhub.services.stripe_account_service import upsert_account_status
from mentorhub.services.stripe_gateway import StripeGateway
from mentorhub.services.webhook_audit import mark_delivery, record_delivery

logger = logging.getLogger(__name__)

INTENT_STATUS = {
    "payment_intent.processing": PaymentStatus.PROCESSING,
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
}

DISPUTE_OUTCOME = {
    "won": PaymentStatus.SUCCEEDED,
}


def _object(event: dict) -> dict:
    obj = (event.get("data") or {}).get("object")
    if not isinstance(obj, dict):
        raise MalformedWebhookError(f"Event {event.get('id')} carries no data.object")
    return obj


def _user_id(metadata: dict | None) -> int | None:
    try:
        return int((metadata or {})["userId"])
    except (KeyError, TypeError, ValueError):
        return None


def _apply(
    engine: Engine, intent_id: str | None, target: PaymentStatus, cfg: PaymentsConfig,
    stripe_status: str | None,
) -> WebhookOutcome:
    if not intent_id:
        raise MalformedWebhookError(f"No payment intent for status {target}")
    payment = apply_processor_status(
        engine, intent_id, target,
        dispute_period=timedelta(days=cfg.dispute_period_days),
        stripe_status=stripe_status,
    )
    return WebhookOutcome.IGNORED if payment is None else WebhookOutcome.APPLIED


def _dispatch(
    engine: Engine, cfg: PaymentsConfig, event_type: str, obj: dict
) -> tuple[WebhookOutcome, str | None, int | None]:
    """Route one verified event.  Returns ``(outcome, external_ref, fulfil_payment_id)``."""
    if event_type == "checkout.session.completed":
        payment, created = record_checkout_completed(engine, cfg, obj)
        fulfil = payment.id if created and payment.platform_status == PaymentStatus.SUCCEEDED else None
        return WebhookOutcome.APPLIED, obj.get("id"), fulfil

    if event_type in INTENT_STATUS:
        intent_id = obj.get("id")
        return _apply(engine, intent_id, INTENT_STATUS[event_type], cfg, obj.get("status")), intent_id, None

    if event_type == "charge.refunded":
        intent_id = obj.get("payment_intent")
        if not obj.get("refunded"):
            logger.info("Partial refund on %s not mirrored", intent_id)
            return WebhookOutcome.IGNORED, intent_id, None
        return _apply(engine, intent_id, PaymentStatus.REFUNDED, cfg, "refunded"), intent_id, None

    if event_type == "charge.dispute.created":
        intent_id = obj.get("payment_intent")
        return _apply(engine, intent_id, PaymentStatus.DISPUTED, cfg, obj.get("status")), intent_id, None

    if event_type == "charge.dispute.closed":
        intent_id = obj.get("payment_intent")
        target = DISPUTE_OUTCOME.get(obj.get("status", ""))
        if target is None:
            logger.info("Dispute on %s closed as %s; nothing to apply", intent_id, obj.get("status"))
            return WebhookOutcome.IGNORED, intent_id, None
        return _apply(engine, intent_id, target, cfg, f"dispute_{obj['status']}"), intent_id, None

    if event_type == "account.updated":
        account_id = obj.get("id")
        if not account_id:
            raise MalformedWebhookError("account.updated carries no account id")
        account = upsert_account_status(
            engine,
            stripe_account_id=account_id,
            charges_enabled=bool(obj.get("charges_enabled")),
            payouts_enabled=bool(obj.get("payouts_enabled")),
            details_submitted=bool(obj.get("details_submitted")),
            user_id=_user_id(obj.get("metadata")),
        )
        return (WebhookOutcome.IGNORED if account is None else WebhookOutcome.APPLIED), account_id, None

    logger.debug("Unhandled Stripe event %s", event_type)
    return WebhookOutcome.IGNORED, obj.get("id"), None


def handle_payment_webhook(
    engine: Engine,
    cfg: PaymentsConfig,
    raw_body: bytes,
    signature: str | None,
    secret: str,
) -> dict:
    """Authenticate, audit and apply one processor webhook delivery.

    Returns ``{"type", "outcome", "fulfil_payment_id"}``; the caller runs
    booking fulfilment for ``fulfil_payment_id`` after acknowledging.

    Raises
    ------
    MalformedWebhookError
        Bad signature or event shape.  Already recorded as ``rejected``.
    """
    delivery_id = record_delivery(engine, WebhookSource.PAYMENTS, raw_body)
    event_type: str | None = None
    external_ref: str | None = None
    try:
        event = StripeGateway.construct_event(raw_body, signature, secret)
        event_type = str(event["type"])
        obj = _object(event)
        outcome, external_ref, fulfil_id = _dispatch(engine, cfg, event_type, obj)
    except MalformedWebhookError as exc:
        mark_delivery(engine, delivery_id, WebhookOutcome.REJECTED,
                      trigger=event_type, external_ref=external_ref, error=exc.message)
        raise
    except InvariantViolation as exc:
        logger.error("Stripe webhook %d (%s) not applied: %s", delivery_id, event_type, exc.message)
        mark_delivery(engine, delivery_id, WebhookOutcome.IGNORED,
                      trigger=event_type, external_ref=external_ref, error=exc.message)
        return {"type": event_type, "outcome": WebhookOutcome.IGNORED.value, "fulfil_payment_id": None}

    mark_delivery(engine, delivery_id, outcome, trigger=event_type, external_ref=external_ref)
    logger.info("Stripe webhook %s → %s", event_type, outcome)
    return {"type": event_type, "outcome": outcome.value, "fulfil_payment_id": fulfil_id}
