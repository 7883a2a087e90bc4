"""Initial scheduling & settlement schema

Revision ID: 5c2e8a1f9d40
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5c2e8a1f9d40"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create every table used by mentorhub."""
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "mentor_profiles",
        sa.Column(
            "user_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("bio", sa.Text(), nullable=True),
        sa.Column("ranking_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_mentor_profiles_ranking", "mentor_profiles", ["ranking_score"])

    op.create_table(
        "mentor_credentials",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "mentor_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True,
        ),
        sa.Column("external_account_id", sa.Integer(), nullable=False),
        sa.Column("external_username", sa.String(200), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
        sa.Column("access_token_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("refresh_token_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "mentor_event_types",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "mentor_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("external_event_type_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("custom_price", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        *_timestamps(),
        sa.CheckConstraint(
            "custom_price IS NULL OR custom_price >= 0",
            name="ck_event_types_price_non_negative",
        ),
    )
    op.create_index("ix_event_types_mentor", "mentor_event_types", ["mentor_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True, unique=True),
        sa.Column("stripe_checkout_session_id", sa.String(255), nullable=True, unique=True),
        sa.Column(
            "mentor_user_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("customer_email", sa.String(255), nullable=False),
        sa.Column("customer_name", sa.String(200), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("mentor_fee", sa.Integer(), nullable=False),
        sa.Column("platform_fee", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("platform_status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("stripe_status", sa.String(50), nullable=True),
        sa.Column("dispute_period_ends", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dispute_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("transfer_id", sa.String(255), nullable=True),
        sa.Column("transfer_status", sa.String(20), nullable=True),
        sa.Column("transfer_retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("transfer_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("mentor_fee + platform_fee = amount", name="ck_payments_fee_split"),
        sa.CheckConstraint(
            "amount >= 0 AND mentor_fee >= 0 AND platform_fee >= 0",
            name="ck_payments_non_negative",
        ),
    )
    op.create_index(
        "ix_payments_mentor_status", "payments", ["mentor_user_id", "platform_status"]
    )
    op.create_index(
        "ix_payments_transfer_scan", "payments", ["platform_status", "dispute_period_ends"]
    )

    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("external_booking_id", sa.Integer(), nullable=False, unique=True),
        sa.Column("external_uid", sa.String(100), nullable=False, unique=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("meeting_url", sa.Text(), nullable=True),
        sa.Column("host_no_show", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attendee_no_show", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column(
            "event_type_id", sa.Integer(),
            sa.ForeignKey("mentor_event_types.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column(
            "payment_id", sa.Integer(),
            sa.ForeignKey("payments.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("responses", postgresql.JSONB(), nullable=True),
        sa.Column("webhook_payload", postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_bookings_status", "bookings", ["status"])
    op.create_index("ix_bookings_start", "bookings", ["start_time"])

    op.create_table(
        "booking_attendees",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "booking_id", sa.Integer(),
            sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "user_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("phone_number", sa.String(50), nullable=True),
        sa.Column("time_zone", sa.String(64), nullable=True),
        sa.UniqueConstraint("booking_id", "email", name="uq_booking_attendees_booking_email"),
    )

    op.create_table(
        "booking_organizers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "booking_id", sa.Integer(),
            sa.ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "user_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("username", sa.String(200), nullable=True),
    )

    op.create_table(
        "mentor_stripe_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True,
        ),
        sa.Column("stripe_account_id", sa.String(255), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("charges_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payouts_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("details_submitted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("onboarding_completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "analytics_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "mentor_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "actor_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_analytics_events_unprocessed", "analytics_events", ["processed", "id"]
    )
    op.create_index("ix_analytics_events_mentor", "analytics_events", ["mentor_id"])

    op.create_table(
        "webhook_deliveries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("trigger", sa.String(100), nullable=True),
        sa.Column("external_ref", sa.String(255), nullable=True),
        sa.Column("raw_body", sa.Text(), nullable=False),
        sa.Column("outcome", sa.String(20), nullable=False, server_default="received"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_webhook_deliveries_source_time", "webhook_deliveries", ["source", "received_at"]
    )


def downgrade() -> None:
    """Drop every mentorhub table."""
    op.drop_index("ix_webhook_deliveries_source_time", table_name="webhook_deliveries")
    op.drop_table("webhook_deliveries")
    op.drop_index("ix_analytics_events_mentor", table_name="analytics_events")
    op.drop_index("ix_analytics_events_unprocessed", table_name="analytics_events")
    op.drop_table("analytics_events")
    op.drop_table("mentor_stripe_accounts")
    op.drop_table("booking_organizers")
    op.drop_table("booking_attendees")
    op.drop_index("ix_bookings_start", table_name="bookings")
    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_table("bookings")
    op.drop_index("ix_payments_transfer_scan", table_name="payments")
    op.drop_index("ix_payments_mentor_status", table_name="payments")
    op.drop_table("payments")
    op.drop_index("ix_event_types_mentor", table_name="mentor_event_types")
    op.drop_table("mentor_event_types")
    op.drop_table("mentor_credentials")
    op.drop_index("ix_mentor_profiles_ranking", table_name="mentor_profiles")
    op.drop_table("mentor_profiles")
    op.drop_table("users")
