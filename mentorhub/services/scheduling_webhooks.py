"""
mentorhub.services.scheduling_webhooks — Scheduling Provider Webhooks
======================================================================

Entry point for ``POST /api/webhooks/cal``.  Each delivery is

1. written to the audit trail exactly as received;
2. authenticated with HMAC-SHA256 over the raw body
   (``x-cal-signature-256`` header, hex digest);
3. parsed as ``{"triggerEvent", "createdAt", "payload"}`` and routed by
   trigger onto :mod:`mentorhub.services.booking_service`.

Trigger → status:

=======================  =============================
BOOKING_CREATED          payload status (ACCEPTED)
BOOKING_REQUESTED        PENDING
BOOKING_RESCHEDULED      payload status; the old UID is cancelled
BOOKING_CANCELLED        CANCELLED
BOOKING_REJECTED         REJECTED
MEETING_ENDED            COMPLETED
BOOKING_NO_SHOW_UPDATED  no-show flags only
PING                     acknowledged, nothing applied
=======================  =============================
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging

from sqlalchemy import Engine

from mentorhub.database.models import BookingStatus, WebhookOutcome, WebhookSource
from mentorhub.errors import InvariantViolation, MalformedWebhookError
from mentorhub.services.booking_service import (
    cancel_booking,
    mark_no_show,
    parse_booking_payload,
    upsert_booking,
)
from mentorhub.services.webhook_audit import mark_delivery, record_delivery

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-cal-signature-256"

TRIGGER_STATUS: dict[str, BookingStatus | None] = {
    "BOOKING_CREATED": None,
    "BOOKING_REQUESTED": BookingStatus.PENDING,
    "BOOKING_RESCHEDULED": None,
    "BOOKING_CANCELLED": BookingStatus.CANCELLED,
    "BOOKING_REJECTED": BookingStatus.REJECTED,
    "MEETING_ENDED": BookingStatus.COMPLETED,
}


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> None:
    """Raise :class:`MalformedWebhookError` unless *signature* matches *raw_body*."""
    if not secret:
        raise MalformedWebhookError("Scheduling webhook secret is not configured")
    if not signature:
        raise MalformedWebhookError(f"Missing {SIGNATURE_HEADER} header")
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise MalformedWebhookError("Scheduling webhook signature mismatch")


def _parse_envelope(raw_body: bytes) -> tuple[str, dict]:
    try:
        event = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedWebhookError(f"Webhook body is not JSON: {exc}") from exc
    if not isinstance(event, dict) or not isinstance(event.get("triggerEvent"), str):
        raise MalformedWebhookError("Webhook envelope has no triggerEvent")
    payload = event.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise MalformedWebhookError("Webhook payload must be a JSON object")
    return event["triggerEvent"].upper(), payload


# ---------------------------------------------------------------------------
# Trigger handlers: each returns (outcome, external_ref)
# ---------------------------------------------------------------------------
def _handle_booking(
    engine: Engine, trigger: str, payload: dict
) -> tuple[WebhookOutcome, str]:
    parsed = parse_booking_payload(payload)
    upsert_booking(engine, parsed.id, parsed.uid, payload, status=TRIGGER_STATUS[trigger])

    if trigger == "BOOKING_RESCHEDULED":
        old_uid = payload.get("rescheduleUid") or payload.get("fromReschedule")
        if old_uid and old_uid != parsed.uid:
            if cancel_booking(engine, str(old_uid), "Rescheduled") is None:
                logger.info("Rescheduled-from booking %s is not known locally", old_uid)
    return WebhookOutcome.APPLIED, parsed.uid


def _handle_no_show(engine: Engine, payload: dict) -> tuple[WebhookOutcome, str | None]:
    uid = payload.get("bookingUid") or payload.get("uid")
    if not uid:
        raise MalformedWebhookError("No-show update carries no booking UID")
    host = bool(payload["noShowHost"]) if payload.get("noShowHost") is not None else None
    attendees = payload.get("attendees") or []
    attendee = any(bool(a.get("noShow")) for a in attendees if isinstance(a, dict)) if attendees else None

    booking = mark_no_show(engine, str(uid), host=host, attendee=attendee)
    if booking is None:
        logger.info("No-show update for unknown booking %s ignored", uid)
        return WebhookOutcome.IGNORED, str(uid)
    return WebhookOutcome.APPLIED, str(uid)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def handle_scheduling_webhook(
    engine: Engine, raw_body: bytes, signature: str | None, secret: str
) -> dict:
    """Authenticate, audit and apply one scheduling webhook delivery.

    Returns ``{"trigger": ..., "outcome": ...}``.  Out-of-order deliveries
    that would reopen a closed booking are acknowledged as ``ignored``.

    Raises
    ------
    MalformedWebhookError
        Bad signature, body or booking payload.  The delivery is already
        recorded as ``rejected`` when this propagates.
    """
    delivery_id = record_delivery(engine, WebhookSource.SCHEDULING, raw_body)
    trigger: str | None = None
    external_ref: str | None = None
    try:
        verify_signature(raw_body, signature, secret)
        trigger, payload = _parse_envelope(raw_body)

        if trigger == "PING":
            outcome = WebhookOutcome.IGNORED
        elif trigger in TRIGGER_STATUS:
            outcome, external_ref = _handle_booking(engine, trigger, payload)
        elif trigger == "BOOKING_NO_SHOW_UPDATED":
            outcome, external_ref = _handle_no_show(engine, payload)
        else:
            logger.info("Unhandled scheduling trigger %s", trigger)
            outcome = WebhookOutcome.IGNORED
    except MalformedWebhookError as exc:
        mark_delivery(engine, delivery_id, WebhookOutcome.REJECTED,
                      trigger=trigger, external_ref=external_ref, error=exc.message)
        raise
    except InvariantViolation as exc:
        logger.error("Scheduling webhook %d (%s) not applied: %s",
                     delivery_id, trigger, exc.message)
        mark_delivery(engine, delivery_id, WebhookOutcome.IGNORED,
                      trigger=trigger, external_ref=external_ref, error=exc.message)
        return {"trigger": trigger, "outcome": WebhookOutcome.IGNORED.value}

    mark_delivery(engine, delivery_id, outcome, trigger=trigger, external_ref=external_ref)
    logger.info("Scheduling webhook %s → %s", trigger, outcome)
    return {"trigger": trigger, "outcome": outcome.value}
