"""
mentorhub.engine.payment_state — Payment Status Transition Table
=================================================================

::

    PENDING → PROCESSING → {SUCCEEDED, FAILED}
    SUCCEEDED → {DISPUTED, REFUNDED, TRANSFERRED}
    DISPUTED → {SUCCEEDED (dispute won), REFUNDED}
    TRANSFERRED → {DISPUTED, REFUNDED}

Processor webhooks arrive out of order, so a status that lies *behind*
the current one (e.g. ``payment_intent.processing`` after the charge
already succeeded) is reported as stale and ignored rather than treated
as a violation.
"""

from __future__ import annotations

from mentorhub.database.models import PaymentStatus

ALLOWED: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING, PaymentStatus.SUCCEEDED, PaymentStatus.FAILED,
    }),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED}),
    PaymentStatus.SUCCEEDED: frozenset({
        PaymentStatus.DISPUTED, PaymentStatus.REFUNDED, PaymentStatus.TRANSFERRED,
    }),
    PaymentStatus.DISPUTED: frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED}),
    PaymentStatus.TRANSFERRED: frozenset({PaymentStatus.DISPUTED, PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# Position in the happy path; used only to recognise stale deliveries.
_RANK: dict[PaymentStatus, int] = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.PROCESSING: 1,
    PaymentStatus.SUCCEEDED: 2,
    PaymentStatus.FAILED: 2,
    PaymentStatus.DISPUTED: 3,
    PaymentStatus.TRANSFERRED: 3,
    PaymentStatus.REFUNDED: 4,
}

TRANSFERABLE = PaymentStatus.SUCCEEDED


def can_transition(current: PaymentStatus | str, target: PaymentStatus | str) -> bool:
    return PaymentStatus(target) in ALLOWED[PaymentStatus(current)]


def is_stale(current: PaymentStatus | str, target: PaymentStatus | str) -> bool:
    """True when *target* is an earlier lifecycle step than *current*."""
    return _RANK[PaymentStatus(target)] < _RANK[PaymentStatus(current)]
