"""
mentorhub.services.event_type_service — Bookable Session Templates
===================================================================

Event types are mirrored from the scheduling provider and always start
out disabled.  A mentor enables one only after it is priced and, if it
is paid, after their payout account can take charges and payouts.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from mentorhub.database.models import MentorEventType
from mentorhub.services.scheduling_client import SchedulingClient
from mentorhub.services.stripe_account_service import can_accept_payments
from mentorhub.services.stripe_gateway import setup_required_error
from mentorhub.services.token_service import TokenLifecycleManager

logger = logging.getLogger(__name__)


def list_event_types(engine: Engine, mentor_id: int) -> list[MentorEventType]:
    with Session(engine, expire_on_commit=False) as session:
        rows = list(session.scalars(
            select(MentorEventType)
            .where(MentorEventType.mentor_id == mentor_id)
            .order_by(MentorEventType.id)
        ).all())
        session.expunge_all()
        return rows


def sync_event_types(
    engine: Engine,
    tokens: TokenLifecycleManager,
    client: SchedulingClient,
    mentor_id: int,
    default_currency: str = "usd",
) -> dict:
    """Pull the mentor's event types from the provider.

    New types are created disabled; existing ones get title, description
    and duration refreshed while price and enabled flag are kept.
    """
    access_token = tokens.get_valid_access_token(mentor_id)
    remote = client.list_event_types(access_token)

    created = updated = 0
    with Session(engine) as session:
        for item in remote:
            ext_id = item.get("id")
            if ext_id is None:
                continue
            row = session.scalar(
                select(MentorEventType)
                .where(MentorEventType.external_event_type_id == int(ext_id))
            )
            title = item.get("title") or item.get("slug") or f"Event {ext_id}"
            duration = int(item.get("lengthInMinutes") or item.get("length") or 30)
            if row is None:
                session.add(MentorEventType(
                    mentor_id=mentor_id,
                    external_event_type_id=int(ext_id),
                    title=title,
                    description=item.get("description"),
                    duration=duration,
                    is_enabled=False,
                    currency=default_currency,
                ))
                created += 1
            elif row.mentor_id == mentor_id:
                row.title = title
                row.description = item.get("description")
                row.duration = duration
                updated += 1
            else:
                logger.error("Event type %s belongs to mentor %d, not %d",
                             ext_id, row.mentor_id, mentor_id)
        session.commit()

    logger.info("Synced event types for mentor %d: %d created, %d updated",
                mentor_id, created, updated)
    return {"created": created, "updated": updated}


def update_event_type(
    engine: Engine,
    mentor_id: int,
    event_type_id: int,
    *,
    custom_price: int | None = None,
    currency: str | None = None,
    is_enabled: bool | None = None,
    clear_price: bool = False,
) -> MentorEventType | None:
    """Change price, currency and/or enabled flag of one event type.

    Raises
    ------
    ValueError
        Negative price or malformed currency.
    ProcessorError
        Enabling a paid type before payouts are set up.
    """
    if custom_price is not None and custom_price < 0:
        raise ValueError("custom_price must not be negative")
    if currency is not None and (len(currency) != 3 or not currency.isalpha()):
        raise ValueError(f"currency must be a 3-letter ISO code, got {currency!r}")

    payments_ready = can_accept_payments(engine, mentor_id)

    with Session(engine, expire_on_commit=False) as session:
        row = session.get(MentorEventType, event_type_id)
        if row is None or row.mentor_id != mentor_id:
            return None
        if clear_price:
            row.custom_price = None
        elif custom_price is not None:
            row.custom_price = custom_price
        if currency is not None:
            row.currency = currency.lower()

        enable = row.is_enabled if is_enabled is None else is_enabled
        if enable and row.is_paid and not payments_ready:
            raise setup_required_error(
                f"Mentor {mentor_id} cannot enable paid event type {event_type_id} "
                "without an active payout account"
            )
        row.is_enabled = enable
        session.commit()
        session.expunge(row)

    logger.info("Event type %d: enabled=%s price=%s %s",
                event_type_id, row.is_enabled, row.custom_price, row.currency)
    return row


def get_bookable_event_type(engine: Engine, event_type_id: int) -> MentorEventType | None:
    """Return the event type if it exists and is enabled."""
    with Session(engine, expire_on_commit=False) as session:
        row = session.get(MentorEventType, event_type_id)
        if row is None or not row.is_enabled:
            return None
        session.expunge(row)
        return row
