"""
mentorhub.services.webhook_audit — Inbound Webhook Audit Trail
===============================================================

Every webhook body is written to ``webhook_deliveries`` in its own
transaction *before* any validation runs, so rejected payloads still
leave a trace for operators.  The outcome is stamped afterwards.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, update

from mentorhub.database.engine import get_session
from mentorhub.database.models import WebhookDelivery, WebhookOutcome, WebhookSource

logger = logging.getLogger(__name__)


def record_delivery(
    engine: Engine,
    source: WebhookSource,
    raw_body: bytes | str,
    *,
    trigger: str | None = None,
    external_ref: str | None = None,
) -> int:
    """Append a delivery row and return its id."""
    if isinstance(raw_body, bytes):
        raw_body = raw_body.decode("utf-8", errors="replace")
    with get_session(engine) as session:
        row = WebhookDelivery(
            source=source,
            trigger=trigger,
            external_ref=external_ref,
            raw_body=raw_body,
            outcome=WebhookOutcome.RECEIVED,
        )
        session.add(row)
        session.flush()
        delivery_id = row.id
    logger.debug("Recorded %s webhook delivery %d (%s)", source, delivery_id, trigger)
    return delivery_id


def mark_delivery(
    engine: Engine,
    delivery_id: int,
    outcome: WebhookOutcome,
    *,
    trigger: str | None = None,
    external_ref: str | None = None,
    error: str | None = None,
) -> None:
    values: dict = {"outcome": outcome}
    if trigger is not None:
        values["trigger"] = trigger
    if external_ref is not None:
        values["external_ref"] = external_ref
    if error is not None:
        values["error"] = error[:2000]
    with get_session(engine) as session:
        session.execute(
            update(WebhookDelivery)
            .where(WebhookDelivery.id == delivery_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    if outcome is WebhookOutcome.REJECTED:
        logger.warning("Webhook delivery %d rejected: %s", delivery_id, error)
