"""
mentorhub.database.models — SQLAlchemy 2.0 Data Models
=======================================================

Tables:
- users                  — Marketplace accounts (mentors and mentees)
- mentor_profiles        — Discovery data incl. the ranking score
- mentor_credentials     — One scheduling-provider OAuth token pair per mentor
- mentor_event_types     — Bookable session templates (price, enabled flag)
- bookings               — Local mirror of provider bookings
- booking_attendees      — Attendees of a booking (guest rows allowed)
- booking_organizers     — Organizer of a booking
- payments               — Charges, fee split, dispute hold, transfer stamp
- mentor_stripe_accounts — Connected payout account per mentor
- analytics_events       — Append-only ranking input
- webhook_deliveries     — Append-only audit of inbound webhooks
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from mentorhub.errors import InvariantViolation


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all mentorhub ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class BookingStatus(enum.StrEnum):
    """Local booking lifecycle.  PENDING and ACCEPTED are the only open states."""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    NO_SHOW = "NO_SHOW"


class PaymentStatus(enum.StrEnum):
    """Platform-side payment lifecycle."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    DISPUTED = "DISPUTED"
    REFUNDED = "REFUNDED"
    TRANSFERRED = "TRANSFERRED"


class TransferStatus(enum.StrEnum):
    """Progress marker for the payout of a single payment."""
    IN_PROGRESS = "in_progress"
    TRANSFERRED = "transferred"
    FAILED = "failed"
    ORPHANED = "orphaned"


class StripeAccountStatus(enum.StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    RESTRICTED = "restricted"
    INACTIVE = "inactive"


class AnalyticsEventType(enum.StrEnum):
    """Events consumed by the ranking score updater."""
    PROFILE_VIEW = "PROFILE_VIEW"
    COMPLETED_BOOKING = "COMPLETED_BOOKING"
    REVIEW_RECEIVED = "REVIEW_RECEIVED"
    CANCELLED_BOOKING = "CANCELLED_BOOKING"


class WebhookSource(enum.StrEnum):
    SCHEDULING = "scheduling"
    PAYMENTS = "payments"


class WebhookOutcome(enum.StrEnum):
    RECEIVED = "received"
    APPLIED = "applied"
    IGNORED = "ignored"
    REJECTED = "rejected"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(200), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    profile: Mapped[MentorProfile | None] = relationship(
        back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    credential: Mapped[MentorCredential | None] = relationship(
        back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    event_types: Mapped[list[MentorEventType]] = relationship(
        back_populates="mentor", cascade="all, delete-orphan"
    )
    stripe_account: Mapped[MentorStripeAccount | None] = relationship(
        back_populates="user", uselist=False, cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r}>"


# ---------------------------------------------------------------------------
# MentorProfile: discovery data; ranking_score is owned by ranking_service
# ---------------------------------------------------------------------------
class MentorProfile(Base):
    __tablename__ = "mentor_profiles"

    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    bio: Mapped[str | None] = mapped_column(Text, default=None)
    ranking_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped[User] = relationship(back_populates="profile")

    __table_args__ = (
        Index("ix_mentor_profiles_ranking", "ranking_score"),
    )

    def __repr__(self) -> str:
        return f"<MentorProfile user={self.user_id} score={self.ranking_score:.2f}>"


# ---------------------------------------------------------------------------
# MentorCredential: scheduling provider OAuth token pair
# ---------------------------------------------------------------------------
class MentorCredential(Base):
    """One token pair per mentor.

    ``version`` is bumped on every refresh and acts as the compare-and-swap
    guard that keeps concurrent refreshes from overwriting each other.
    """
    __tablename__ = "mentor_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mentor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    external_account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    external_username: Mapped[str] = mapped_column(String(200), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    access_token_expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    refresh_token_expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped[User] = relationship(back_populates="credential")

    def __repr__(self) -> str:
        return (
            f"<MentorCredential mentor={self.mentor_id} "
            f"account={self.external_account_id} v={self.version}>"
        )


# ---------------------------------------------------------------------------
# MentorEventType: bookable session template
# ---------------------------------------------------------------------------
class MentorEventType(Base):
    __tablename__ = "mentor_event_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mentor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    external_event_type_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    custom_price: Mapped[int | None] = mapped_column(Integer, default=None)  # minor units
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    mentor: Mapped[User] = relationship(back_populates="event_types")
    bookings: Mapped[list[Booking]] = relationship(back_populates="event_type")

    __table_args__ = (
        Index("ix_event_types_mentor", "mentor_id"),
        CheckConstraint(
            "custom_price IS NULL OR custom_price >= 0",
            name="ck_event_types_price_non_negative",
        ),
    )

    @property
    def is_paid(self) -> bool:
        return bool(self.custom_price)

    def __repr__(self) -> str:
        return (
            f"<MentorEventType id={self.id} ext={self.external_event_type_id} "
            f"enabled={self.is_enabled} price={self.custom_price}>"
        )


# ---------------------------------------------------------------------------
# Booking: local mirror of a provider booking
# ---------------------------------------------------------------------------
class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_booking_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    external_uid: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    meeting_url: Mapped[str | None] = mapped_column(Text, default=None)
    host_no_show: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attendee_no_show: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, default=None)
    event_type_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("mentor_event_types.id", ondelete="SET NULL"), nullable=True
    )
    payment_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("payments.id", ondelete="SET NULL"), nullable=True
    )
    responses: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    webhook_payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    event_type: Mapped[MentorEventType | None] = relationship(back_populates="bookings")
    payment: Mapped[Payment | None] = relationship(back_populates="bookings")
    attendees: Mapped[list[BookingAttendee]] = relationship(
        back_populates="booking", cascade="all, delete-orphan"
    )
    organizers: Mapped[list[BookingOrganizer]] = relationship(
        back_populates="booking", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_start", "start_time"),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking id={self.id} ext={self.external_booking_id} "
            f"uid={self.external_uid!r} status={self.status}>"
        )


class BookingAttendee(Base):
    __tablename__ = "booking_attendees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String(50), default=None)
    time_zone: Mapped[str | None] = mapped_column(String(64), default=None)

    booking: Mapped[Booking] = relationship(back_populates="attendees")

    __table_args__ = (
        UniqueConstraint("booking_id", "email", name="uq_booking_attendees_booking_email"),
    )

    def __repr__(self) -> str:
        return f"<BookingAttendee booking={self.booking_id} email={self.email!r}>"


class BookingOrganizer(Base):
    __tablename__ = "booking_organizers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    username: Mapped[str | None] = mapped_column(String(200), default=None)

    booking: Mapped[Booking] = relationship(back_populates="organizers")

    def __repr__(self) -> str:
        return f"<BookingOrganizer booking={self.booking_id} user={self.user_id}>"


# ---------------------------------------------------------------------------
# Payment: charge, fee split, dispute hold, transfer stamp
# ---------------------------------------------------------------------------
class Payment(Base):
    """A single charge collected by the platform on a mentor's behalf.

    The fee split is fixed at creation.  ``transfer_id`` is stamped by the
    transfer batch once the dispute window has passed.
    """
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    stripe_checkout_session_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )
    mentor_user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(200), default=None)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    mentor_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    platform_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING
    )
    stripe_status: Mapped[str | None] = mapped_column(String(50), default=None)
    dispute_period_ends: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    dispute_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    transfer_id: Mapped[str | None] = mapped_column(String(255), default=None)
    transfer_status: Mapped[str | None] = mapped_column(String(20), default=None)
    transfer_retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transfer_claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    bookings: Mapped[list[Booking]] = relationship(back_populates="payment")

    __table_args__ = (
        CheckConstraint(
            "mentor_fee + platform_fee = amount", name="ck_payments_fee_split"
        ),
        CheckConstraint(
            "amount >= 0 AND mentor_fee >= 0 AND platform_fee >= 0",
            name="ck_payments_non_negative",
        ),
        Index("ix_payments_mentor_status", "mentor_user_id", "platform_status"),
        Index("ix_payments_transfer_scan", "platform_status", "dispute_period_ends"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment id={self.id} mentor={self.mentor_user_id} amount={self.amount} "
            f"status={self.platform_status} transfer={self.transfer_id!r}>"
        )


@event.listens_for(Payment, "before_insert")
@event.listens_for(Payment, "before_update")
def _check_fee_split(mapper, connection, target: Payment) -> None:
    """Refuse to write a payment whose fees do not add up to the gross amount."""
    if (
        target.mentor_fee is None
        or target.platform_fee is None
        or target.mentor_fee + target.platform_fee != target.amount
    ):
        raise InvariantViolation(
            f"Payment {target.id}: mentor_fee={target.mentor_fee} + "
            f"platform_fee={target.platform_fee} != amount={target.amount}"
        )


# ---------------------------------------------------------------------------
# MentorStripeAccount: connected payout account
# ---------------------------------------------------------------------------
class MentorStripeAccount(Base):
    __tablename__ = "mentor_stripe_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    stripe_account_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StripeAccountStatus.PENDING
    )
    charges_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    details_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    onboarding_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped[User] = relationship(back_populates="stripe_account")

    def __repr__(self) -> str:
        return (
            f"<MentorStripeAccount user={self.user_id} "
            f"account={self.stripe_account_id!r} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# AnalyticsEvent: append-only ranking input
# ---------------------------------------------------------------------------
class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mentor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    actor_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_analytics_events_unprocessed", "processed", "id"),
        Index("ix_analytics_events_mentor", "mentor_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<AnalyticsEvent id={self.id} mentor={self.mentor_id} "
            f"type={self.event_type} processed={self.processed}>"
        )


# ---------------------------------------------------------------------------
# WebhookDelivery: append-only audit of inbound webhooks
# ---------------------------------------------------------------------------
class WebhookDelivery(Base):
    """Every inbound webhook is written here *before* validation.

    Rows are never deleted by the application; ``outcome`` records what the
    handler eventually did with the delivery.
    """
    __tablename__ = "webhook_deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    trigger: Mapped[str | None] = mapped_column(String(100), default=None)
    external_ref: Mapped[str | None] = mapped_column(String(255), default=None)
    raw_body: Mapped[str] = mapped_column(Text, nullable=False)
    outcome: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WebhookOutcome.RECEIVED
    )
    error: Mapped[str | None] = mapped_column(Text, default=None)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_webhook_deliveries_source_time", "source", "received_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookDelivery id={self.id} source={self.source} "
            f"trigger={self.trigger!r} outcome={self.outcome}>"
        )
