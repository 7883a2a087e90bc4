"""
mentorhub.api.routes.mentor — Mentor self-service endpoints (JWT‑protected)
============================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from mentorhub.api.deps import (
    get_config,
    get_current_user,
    get_engine,
    get_gateway,
    get_scheduling_client,
    get_token_manager,
)
from mentorhub.config import MentorhubConfig
from mentorhub.database.models import Booking, BookingStatus, MentorEventType
from mentorhub.engine.availability import DateOverride, TimeRange, WeeklyAvailability
from mentorhub.services import (
    availability_service,
    booking_service,
    event_type_service,
    payment_service,
    stripe_account_service,
)
from mentorhub.services.ranking_service import get_ranking_score
from mentorhub.services.scheduling_client import SchedulingClient
from mentorhub.services.stripe_gateway import StripeGateway
from mentorhub.services.token_service import TokenLifecycleManager

router = APIRouter(prefix="/mentor", tags=["mentor"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class RangeIn(BaseModel):
    start: str
    end: str


class OverrideIn(BaseModel):
    date: str
    ranges: list[RangeIn] = Field(default_factory=list)


class AvailabilityIn(BaseModel):
    weekly: dict[str, list[RangeIn]]
    date_overrides: list[OverrideIn] = Field(default_factory=list)
    time_zone: str | None = None
    schedule_id: int | None = None


class OverrideRangesIn(BaseModel):
    ranges: list[RangeIn] = Field(default_factory=list)  # empty = unavailable all day


class EventTypeUpdate(BaseModel):
    custom_price: int | None = Field(default=None, ge=0)
    currency: str | None = None
    is_enabled: bool | None = None
    clear_price: bool = False


class CancelIn(BaseModel):
    reason: str | None = None


class NoShowIn(BaseModel):
    host: bool | None = None
    attendee: bool | None = None


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------
def _availability_dict(av: WeeklyAvailability) -> dict:
    return {
        "schedule_id": av.schedule_id,
        "time_zone": av.time_zone,
        "weekly": {
            day: [{"start": r.start, "end": r.end} for r in ranges]
            for day, ranges in av.weekly.items()
        },
        "date_overrides": [
            {"date": o.date, "ranges": [{"start": r.start, "end": r.end} for r in o.ranges]}
            for o in av.date_overrides
        ],
    }


def _event_type_dict(et: MentorEventType) -> dict:
    return {
        "id": et.id,
        "external_event_type_id": et.external_event_type_id,
        "title": et.title,
        "duration": et.duration,
        "custom_price": et.custom_price,
        "currency": et.currency,
        "is_enabled": et.is_enabled,
        "is_paid": et.is_paid,
    }


def _booking_dict(b: Booking) -> dict:
    return {
        "uid": b.external_uid,
        "title": b.title,
        "status": b.status,
        "start_time": b.start_time.isoformat(),
        "end_time": b.end_time.isoformat(),
        "meeting_url": b.meeting_url,
        "host_no_show": b.host_no_show,
        "attendee_no_show": b.attendee_no_show,
        "cancellation_reason": b.cancellation_reason,
    }


def _own_booking(engine: Engine, uid: str, user_id: int) -> None:
    if booking_service.get_booking_mentor_id(engine, uid) != user_id:
        raise HTTPException(404, "Booking not found")


# ---------------------------------------------------------------------------
# Scheduling credential
# ---------------------------------------------------------------------------
@router.get("/scheduling/token")
def scheduling_token(
    user_id: int = Depends(get_current_user),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
):
    """A currently valid provider access token for embedded scheduling widgets."""
    return {"access_token": tokens.get_valid_access_token(user_id)}


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------
@router.get("/availability")
def get_availability(
    user_id: int = Depends(get_current_user),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
    client: SchedulingClient = Depends(get_scheduling_client),
):
    return _availability_dict(availability_service.get_availability(tokens, client, user_id))


@router.put("/availability")
def put_availability(
    body: AvailabilityIn,
    user_id: int = Depends(get_current_user),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
    client: SchedulingClient = Depends(get_scheduling_client),
):
    try:
        av = WeeklyAvailability(
            weekly={day: [TimeRange(r.start, r.end) for r in rs] for day, rs in body.weekly.items()},
            date_overrides=[
                DateOverride(o.date, [TimeRange(r.start, r.end) for r in o.ranges])
                for o in body.date_overrides
            ],
            time_zone=body.time_zone,
            schedule_id=body.schedule_id,
        )
        saved = availability_service.update_availability(tokens, client, user_id, av)
    except ValueError as exc:
        raise HTTPException(422, str(exc))
    return _availability_dict(saved)


@router.put("/availability/overrides/{date}")
def put_override(
    date: str,
    body: OverrideRangesIn,
    user_id: int = Depends(get_current_user),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
    client: SchedulingClient = Depends(get_scheduling_client),
):
    try:
        saved = availability_service.set_date_override(
            tokens, client, user_id, date, [r.model_dump() for r in body.ranges]
        )
    except ValueError as exc:
        raise HTTPException(422, str(exc))
    return _availability_dict(saved)


@router.delete("/availability/overrides/{date}")
def delete_override(
    date: str,
    user_id: int = Depends(get_current_user),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
    client: SchedulingClient = Depends(get_scheduling_client),
):
    saved = availability_service.delete_date_override(tokens, client, user_id, date)
    if saved is None:
        raise HTTPException(404, "No override for that date")
    return _availability_dict(saved)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------
@router.get("/event-types")
def list_event_types(
    user_id: int = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    return [_event_type_dict(et) for et in event_type_service.list_event_types(engine, user_id)]


@router.post("/event-types/sync")
def sync_event_types(
    user_id: int = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
    cfg: MentorhubConfig = Depends(get_config),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
    client: SchedulingClient = Depends(get_scheduling_client),
):
    return event_type_service.sync_event_types(
        engine, tokens, client, user_id, cfg.payments.default_currency
    )


@router.patch("/event-types/{event_type_id}")
def update_event_type(
    event_type_id: int,
    body: EventTypeUpdate,
    user_id: int = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    try:
        row = event_type_service.update_event_type(
            engine, user_id, event_type_id,
            custom_price=body.custom_price,
            currency=body.currency,
            is_enabled=body.is_enabled,
            clear_price=body.clear_price,
        )
    except ValueError as exc:
        raise HTTPException(422, str(exc))
    if row is None:
        raise HTTPException(404, "Event type not found")
    return _event_type_dict(row)


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------
@router.get("/bookings")
def list_bookings(
    status: BookingStatus | None = Query(None),
    user_id: int = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    return [_booking_dict(b) for b in booking_service.list_mentor_bookings(engine, user_id, status)]


@router.post("/bookings/{uid}/cancel")
def cancel_booking(
    uid: str,
    body: CancelIn,
    user_id: int = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
    client: SchedulingClient = Depends(get_scheduling_client),
):
    _own_booking(engine, uid, user_id)
    booking = booking_service.cancel_booking_with_provider(
        engine, tokens, client, user_id, uid, body.reason
    )
    return _booking_dict(booking)


@router.post("/bookings/{uid}/no-show")
def mark_no_show(
    uid: str,
    body: NoShowIn,
    user_id: int = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    _own_booking(engine, uid, user_id)
    booking = booking_service.mark_no_show(engine, uid, host=body.host, attendee=body.attendee)
    return _booking_dict(booking)


@router.post("/bookings/{uid}/sync")
def sync_booking(
    uid: str,
    user_id: int = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
    client: SchedulingClient = Depends(get_scheduling_client),
):
    booking = booking_service.sync_booking_from_provider(engine, tokens, client, user_id, uid)
    return _booking_dict(booking)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------
@router.get("/earnings")
def earnings(
    user_id: int = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    return payment_service.get_mentor_earnings(engine, user_id)


@router.post("/payments/onboarding")
def payments_onboarding(
    user_id: int = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
    gateway: StripeGateway = Depends(get_gateway),
):
    return stripe_account_service.start_onboarding(engine, gateway, user_id)


@router.get("/payments/account")
def payments_account(
    user_id: int = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    account = stripe_account_service.get_account(engine, user_id)
    if account is None:
        return {"status": None, "charges_enabled": False, "payouts_enabled": False}
    return {
        "status": account.status,
        "charges_enabled": account.charges_enabled,
        "payouts_enabled": account.payouts_enabled,
        "details_submitted": account.details_submitted,
    }


@router.get("/ranking")
def ranking(
    user_id: int = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    score = get_ranking_score(engine, user_id)
    if score is None:
        raise HTTPException(404, "No mentor profile")
    return {"ranking_score": score}
