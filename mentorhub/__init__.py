"""
mentorhub — Scheduling & Settlement Core for a Mentorship Marketplace
======================================================================
Keeps mentors' scheduling-provider credentials alive, mirrors bookings
pushed by the provider's webhooks, settles payments to mentors once the
dispute hold has passed, and keeps the discovery ranking score current.

Package layout::

    mentorhub/
    ├── config.py          # YAML → typed Python config
    ├── errors.py          # Error taxonomy shared by every layer
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # All ORM models
    ├── engine/
    │   ├── clock.py       # UTC helpers
    │   ├── fees.py        # Fee policy (pure)
    │   ├── booking_state.py   # Booking status transition table
    │   ├── payment_state.py   # Payment status transition table
    │   ├── ranking.py     # Analytics event weights + decay math
    │   └── availability.py    # Weekly schedule ⇄ provider format
    ├── services/
    │   ├── scheduling_client.py      # Scheduling provider HTTP client
    │   ├── credential_store.py       # Token pair persistence + CAS
    │   ├── token_service.py          # Access-token lifecycle
    │   ├── webhook_audit.py          # Raw delivery audit trail
    │   ├── scheduling_webhooks.py    # Scheduling trigger routing
    │   ├── booking_service.py        # Booking upserts + local actions
    │   ├── availability_service.py   # Weekly hours + date overrides
    │   ├── event_type_service.py     # Bookable session templates
    │   ├── stripe_gateway.py         # Stripe calls + signature checks
    │   ├── stripe_account_service.py # Connected payout accounts
    │   ├── payment_webhooks.py       # Stripe event routing
    │   ├── checkout_service.py       # Paid checkout + fulfilment
    │   ├── payment_service.py        # Payment records + state changes
    │   ├── transfer_service.py       # Dispute-hold transfer batch
    │   └── ranking_service.py        # Event consumption + decay
    └── api/
        ├── main.py        # FastAPI app + error mapping
        ├── deps.py        # Engine, config, clients, auth guards
        └── routes/        # webhooks, cron, mentor, analytics, checkout
"""

__version__ = "0.1.0"
