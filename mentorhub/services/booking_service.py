"""
mentorhub.services.booking_service — Booking Synchronizer
==========================================================

Maps scheduling-provider booking payloads (webhooks and direct API
responses) onto local :class:`~mentorhub.database.models.Booking` rows.

* Upserts are keyed by *both* the external booking id and the external
  UID; a redelivery never creates a second row.
* Status changes go through :func:`~mentorhub.engine.booking_state.resolve_transition`.
  Terminal statuses win, and an attempt to reopen a closed booking is
  rejected with :class:`~mentorhub.errors.InvariantViolation`.
* A transition into COMPLETED or CANCELLED appends the matching analytics
  event in the same transaction.
* Unknown payload fields are accepted and kept in ``webhook_payload``.
"""

from __future__ import annotations

import logging
from datetime import datetime

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from sqlalchemy import Engine, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from mentorhub.database.models import (
    AnalyticsEvent,
    AnalyticsEventType,
    Booking,
    BookingAttendee,
    BookingOrganizer,
    BookingStatus,
    MentorCredential,
    MentorEventType,
    Payment,
    User,
)
from mentorhub.engine.booking_state import Transition, Verdict, is_terminal, resolve_transition
from mentorhub.engine.clock import as_utc
from mentorhub.errors import InvariantViolation, MalformedWebhookError
from mentorhub.services.scheduling_client import SchedulingClient
from mentorhub.services.token_service import TokenLifecycleManager

logger = logging.getLogger(__name__)

_STATUS_ALIASES = {
    "CANCELED": BookingStatus.CANCELLED,
    "NOSHOW": BookingStatus.NO_SHOW,
    "AWAITING_HOST": BookingStatus.PENDING,
    "UNCONFIRMED": BookingStatus.PENDING,
}

# Analytics event appended when a booking enters one of these statuses.
_STATUS_EVENTS = {
    BookingStatus.COMPLETED: AnalyticsEventType.COMPLETED_BOOKING,
    BookingStatus.CANCELLED: AnalyticsEventType.CANCELLED_BOOKING,
}


# ---------------------------------------------------------------------------
# Payload schema
# ---------------------------------------------------------------------------
class AttendeePayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    email: str
    time_zone: str | None = Field(
        default=None, validation_alias=AliasChoices("timeZone", "time_zone")
    )
    phone_number: str | None = Field(
        default=None, validation_alias=AliasChoices("phoneNumber", "phone_number")
    )


class OrganizerPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int | None = None
    name: str
    email: str
    username: str | None = None


class BookingPayload(BaseModel):
    """Minimum shape of a provider booking.  Extra fields are allowed."""

    model_config = ConfigDict(extra="allow")

    id: int = Field(validation_alias=AliasChoices("id", "bookingId"))
    uid: str = Field(min_length=1)
    status: BookingStatus | None = None
    start: datetime = Field(validation_alias=AliasChoices("start", "startTime"))
    end: datetime = Field(validation_alias=AliasChoices("end", "endTime"))
    title: str
    description: str | None = None
    attendees: list[AttendeePayload]
    organizer: OrganizerPayload
    meeting_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("meetingUrl", "videoCallUrl", "location"),
    )
    event_type_id: int | None = Field(
        default=None, validation_alias=AliasChoices("eventTypeId", "event_type_id")
    )
    cancellation_reason: str | None = Field(
        default=None, validation_alias=AliasChoices("cancellationReason", "cancellation_reason")
    )
    responses: dict | None = None
    metadata: dict | None = None

    @model_validator(mode="before")
    @classmethod
    def _organizer_from_hosts(cls, data):
        # Direct API responses list hosts instead of a single organizer.
        if isinstance(data, dict) and "organizer" not in data and data.get("hosts"):
            data = {**data, "organizer": data["hosts"][0]}
        return data

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        if value is None:
            return None
        text = str(value).strip().upper()
        return _STATUS_ALIASES.get(text, text)


def parse_booking_payload(payload: object) -> BookingPayload:
    if not isinstance(payload, dict):
        raise MalformedWebhookError("Booking payload must be a JSON object")
    try:
        parsed = BookingPayload.model_validate(payload)
    except ValidationError as exc:
        raise MalformedWebhookError(f"Booking payload failed validation: {exc}") from exc
    if parsed.end < parsed.start:
        raise MalformedWebhookError(
            f"Booking {parsed.uid} ends before it starts ({parsed.start} > {parsed.end})"
        )
    return parsed


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------
def _find_booking(
    session: Session, external_booking_id: int | None, external_uid: str
) -> Booking | None:
    keys = [Booking.external_uid == external_uid]
    if external_booking_id is not None:
        keys.append(Booking.external_booking_id == external_booking_id)
    rows = session.scalars(
        select(Booking)
        .where(or_(*keys))
        .options(selectinload(Booking.attendees), selectinload(Booking.organizers))
    ).all()
    if len(rows) > 1:
        logger.error(
            "Booking keys split across rows: id=%s uid=%s → %s",
            external_booking_id, external_uid, [r.id for r in rows],
        )
        raise InvariantViolation(
            f"External booking id {external_booking_id} and uid {external_uid!r} "
            "identify different local bookings"
        )
    return rows[0] if rows else None


def _resolve_mentor_id(session: Session, organizer: OrganizerPayload) -> int | None:
    if organizer.id is not None:
        mentor_id = session.scalar(
            select(MentorCredential.mentor_id)
            .where(MentorCredential.external_account_id == organizer.id)
        )
        if mentor_id is not None:
            return mentor_id
    return session.scalar(select(User.id).where(User.email == organizer.email))


def _resolve_event_type_id(session: Session, external_event_type_id: int | None) -> int | None:
    if external_event_type_id is None:
        return None
    return session.scalar(
        select(MentorEventType.id)
        .where(MentorEventType.external_event_type_id == external_event_type_id)
    )


def _resolve_payment_id(session: Session, metadata: dict | None) -> int | None:
    if not metadata:
        return None
    payment_id = metadata.get("paymentId")
    if payment_id is not None:
        try:
            return session.scalar(select(Payment.id).where(Payment.id == int(payment_id)))
        except (TypeError, ValueError):
            return None
    intent = metadata.get("stripePaymentIntentId")
    if intent:
        return session.scalar(
            select(Payment.id).where(Payment.stripe_payment_intent_id == str(intent))
        )
    return None


# ---------------------------------------------------------------------------
# Row mutation helpers
# ---------------------------------------------------------------------------
def _apply_snapshot(session: Session, booking: Booking, parsed: BookingPayload, raw: dict) -> None:
    booking.title = parsed.title
    booking.description = parsed.description
    booking.start_time = as_utc(parsed.start)
    booking.end_time = as_utc(parsed.end)
    if parsed.meeting_url:
        booking.meeting_url = parsed.meeting_url
    if parsed.responses is not None:
        booking.responses = parsed.responses
    booking.webhook_payload = raw

    event_type_id = _resolve_event_type_id(session, parsed.event_type_id)
    if event_type_id is not None:
        booking.event_type_id = event_type_id
    payment_id = _resolve_payment_id(session, parsed.metadata)
    if payment_id is not None:
        booking.payment_id = payment_id


def _sync_participants(session: Session, booking: Booking, parsed: BookingPayload) -> int | None:
    """Add attendees/organizer not yet recorded.  Existing rows are never removed."""
    known_emails = {a.email.lower() for a in booking.attendees}
    for att in parsed.attendees:
        if att.email.lower() in known_emails:
            continue
        booking.attendees.append(BookingAttendee(
            user_id=session.scalar(select(User.id).where(User.email == att.email)),
            name=att.name,
            email=att.email,
            phone_number=att.phone_number,
            time_zone=att.time_zone,
        ))
        known_emails.add(att.email.lower())

    mentor_id = _resolve_mentor_id(session, parsed.organizer)
    if not booking.organizers:
        if mentor_id is None:
            logger.warning(
                "Organizer %s of booking %s does not match a local mentor",
                parsed.organizer.email, parsed.uid,
            )
        booking.organizers.append(BookingOrganizer(
            user_id=mentor_id,
            name=parsed.organizer.name,
            email=parsed.organizer.email,
            username=parsed.organizer.username,
        ))
    return mentor_id


def _mentor_of(session: Session, booking: Booking) -> int | None:
    for org in booking.organizers:
        if org.user_id is not None:
            return org.user_id
    if booking.event_type_id is not None:
        return session.scalar(
            select(MentorEventType.mentor_id).where(MentorEventType.id == booking.event_type_id)
        )
    return None


def _apply_status(
    session: Session,
    booking: Booking,
    transition: Transition,
    *,
    reason: str | None = None,
) -> None:
    if not transition.changed:
        return
    booking.status = transition.status
    if transition.status is BookingStatus.CANCELLED and reason:
        booking.cancellation_reason = reason

    event_type = _STATUS_EVENTS.get(transition.status)
    if event_type is None:
        return
    mentor_id = _mentor_of(session, booking)
    if mentor_id is None:
        logger.info("Booking %s reached %s with no local mentor; no ranking event",
                    booking.external_uid, transition.status)
        return
    session.add(AnalyticsEvent(mentor_id=mentor_id, event_type=event_type))


def _resolve_or_reject(booking: Booking, incoming: BookingStatus) -> Transition:
    transition = resolve_transition(booking.status, incoming)
    if transition.verdict is Verdict.REJECT:
        logger.error(
            "Refusing to move closed booking %s from %s back to %s",
            booking.external_uid, booking.status, incoming,
        )
        raise InvariantViolation(
            f"Booking {booking.external_uid} is {booking.status}; "
            f"cannot move back to {incoming}"
        )
    if transition.verdict is Verdict.KEEP and booking.status != incoming:
        logger.info(
            "Booking %s stays %s (incoming %s ignored)",
            booking.external_uid, booking.status, incoming,
        )
    return transition


def _detach(session: Session, booking: Booking) -> Booking:
    session.refresh(booking)
    _ = booking.attendees, booking.organizers
    session.expunge(booking)
    return booking


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def upsert_booking(
    engine: Engine,
    external_booking_id: int,
    external_uid: str,
    payload: dict,
    *,
    status: BookingStatus | None = None,
) -> Booking:
    """Insert or update the booking identified by either external key.

    ``status`` overrides the payload's own status (used when the webhook
    trigger is more specific than the payload, e.g. ``MEETING_ENDED``).
    A delivery whose status is held back by the transition table (a late
    PENDING after acceptance, a second terminal status) leaves the stored
    row untouched; its raw body survives in the webhook audit.

    Raises
    ------
    MalformedWebhookError
        The payload fails validation or disagrees with the given keys.
    InvariantViolation
        The update would reopen a closed booking, or the two keys point at
        different rows.
    """
    parsed = parse_booking_payload(payload)
    if parsed.id != external_booking_id or parsed.uid != external_uid:
        raise MalformedWebhookError(
            f"Payload keys ({parsed.id}, {parsed.uid!r}) do not match "
            f"({external_booking_id}, {external_uid!r})"
        )
    incoming = status or parsed.status or BookingStatus.ACCEPTED

    with Session(engine, expire_on_commit=False) as session:
        booking = _find_booking(session, external_booking_id, external_uid)
        if booking is None:
            try:
                with session.begin_nested():   # SAVEPOINT
                    booking = Booking(
                        external_booking_id=external_booking_id,
                        external_uid=external_uid,
                        status=incoming,
                    )
                    _apply_snapshot(session, booking, parsed, payload)
                    session.add(booking)
                    _sync_participants(session, booking, parsed)
                    _apply_status(
                        session, booking, resolve_transition(None, incoming),
                        reason=parsed.cancellation_reason,
                    )
                    session.flush()
                logger.info("Created booking %s as %s", external_uid, incoming)
                session.commit()
                return _detach(session, booking)
            except IntegrityError:
                # Concurrent delivery inserted it first; continue as an update.
                booking = _find_booking(session, external_booking_id, external_uid)
                if booking is None:
                    raise

        transition = _resolve_or_reject(booking, incoming)
        if transition.verdict is Verdict.KEEP and booking.status != incoming:
            # Out-of-order delivery; the stored snapshot is newer.
            return _detach(session, booking)
        _apply_snapshot(session, booking, parsed, payload)
        _sync_participants(session, booking, parsed)
        _apply_status(session, booking, transition, reason=parsed.cancellation_reason)
        session.commit()
        if transition.changed:
            logger.info("Booking %s → %s", external_uid, transition.status)
        return _detach(session, booking)


def get_booking(engine: Engine, external_uid: str) -> Booking | None:
    with Session(engine, expire_on_commit=False) as session:
        booking = session.scalar(
            select(Booking)
            .where(Booking.external_uid == external_uid)
            .options(selectinload(Booking.attendees), selectinload(Booking.organizers))
        )
        if booking is None:
            return None
        session.expunge(booking)
        return booking


def get_booking_mentor_id(engine: Engine, external_uid: str) -> int | None:
    """The local mentor hosting the booking, if one can be resolved."""
    with Session(engine) as session:
        booking = _find_booking(session, None, external_uid)
        return None if booking is None else _mentor_of(session, booking)


def list_mentor_bookings(
    engine: Engine, mentor_id: int, status: BookingStatus | None = None
) -> list[Booking]:
    """Bookings organised by *mentor_id*, newest start first."""
    query = (
        select(Booking)
        .join(BookingOrganizer, BookingOrganizer.booking_id == Booking.id)
        .where(BookingOrganizer.user_id == mentor_id)
        .options(selectinload(Booking.attendees))
        .order_by(Booking.start_time.desc())
    )
    if status is not None:
        query = query.where(Booking.status == status)
    with Session(engine, expire_on_commit=False) as session:
        rows = list(session.scalars(query).unique().all())
        session.expunge_all()
        return rows


def cancel_booking(engine: Engine, external_uid: str, reason: str | None = None) -> Booking | None:
    """Mark a booking CANCELLED locally.  Attendee/organizer rows are kept.

    Returns None if the booking is unknown.  A booking already in another
    terminal status keeps that status.
    """
    with Session(engine, expire_on_commit=False) as session:
        booking = _find_booking(session, None, external_uid)
        if booking is None:
            return None
        transition = _resolve_or_reject(booking, BookingStatus.CANCELLED)
        _apply_status(session, booking, transition, reason=reason)
        session.commit()
        return _detach(session, booking)


def mark_no_show(
    engine: Engine,
    external_uid: str,
    *,
    host: bool | None = None,
    attendee: bool | None = None,
) -> Booking | None:
    """Set the host and/or attendee no-show flag independently.

    An open booking with either flag set moves to NO_SHOW; a closed one
    only has its flags updated.
    """
    with Session(engine, expire_on_commit=False) as session:
        booking = _find_booking(session, None, external_uid)
        if booking is None:
            return None
        if host is not None:
            booking.host_no_show = host
        if attendee is not None:
            booking.attendee_no_show = attendee
        if (booking.host_no_show or booking.attendee_no_show) and not is_terminal(booking.status):
            _apply_status(session, booking, resolve_transition(booking.status, BookingStatus.NO_SHOW))
        session.commit()
        logger.info(
            "No-show flags for %s: host=%s attendee=%s",
            external_uid, booking.host_no_show, booking.attendee_no_show,
        )
        return _detach(session, booking)


# ---------------------------------------------------------------------------
# Provider-backed actions
# ---------------------------------------------------------------------------
def sync_booking_from_provider(
    engine: Engine,
    tokens: TokenLifecycleManager,
    client: SchedulingClient,
    mentor_id: int,
    external_uid: str,
) -> Booking:
    """Fetch one booking by UID from the provider and upsert it."""
    access_token = tokens.get_valid_access_token(mentor_id)
    data = client.get_booking(access_token, external_uid)
    if not isinstance(data, dict) or "id" not in data:
        raise MalformedWebhookError(f"Provider returned no booking for uid {external_uid!r}")
    return upsert_booking(engine, int(data["id"]), str(data.get("uid", external_uid)), data)


def cancel_booking_with_provider(
    engine: Engine,
    tokens: TokenLifecycleManager,
    client: SchedulingClient,
    mentor_id: int,
    external_uid: str,
    reason: str | None = None,
) -> Booking | None:
    """Cancel at the provider first, then mirror the cancellation locally."""
    access_token = tokens.get_valid_access_token(mentor_id)
    client.cancel_booking(access_token, external_uid, reason)
    return cancel_booking(engine, external_uid, reason)
