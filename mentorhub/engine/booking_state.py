"""
mentorhub.engine.booking_state — Booking Status Transition Table
=================================================================

Booking status changes are resolved by a single lookup into
:data:`TRANSITIONS` keyed by ``(current, incoming)``.  The result is one
of three verdicts:

* ``APPLY``  — write the incoming status.
* ``KEEP``   — leave the status untouched (redelivery, stale open-state
  webhook, or a second terminal status after the first one won).
* ``REJECT`` — the incoming status would reopen a closed booking.  The
  caller raises :class:`~mentorhub.errors.InvariantViolation`.

A booking never seen before accepts any status, so a terminal webhook that
overtakes the creation webhook still lands.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from mentorhub.database.models import BookingStatus

OPEN_STATES = frozenset({BookingStatus.PENDING, BookingStatus.ACCEPTED})
TERMINAL_STATES = frozenset(set(BookingStatus) - OPEN_STATES)


class Verdict(enum.StrEnum):
    APPLY = "apply"
    KEEP = "keep"
    REJECT = "reject"


@dataclass(frozen=True, slots=True)
class Transition:
    verdict: Verdict
    status: BookingStatus

    @property
    def changed(self) -> bool:
        return self.verdict is Verdict.APPLY


def _build_table() -> dict[tuple[BookingStatus, BookingStatus], Verdict]:
    table: dict[tuple[BookingStatus, BookingStatus], Verdict] = {}
    for current in BookingStatus:
        for incoming in BookingStatus:
            if current == incoming:
                verdict = Verdict.KEEP
            elif current is BookingStatus.PENDING:
                verdict = Verdict.APPLY
            elif current is BookingStatus.ACCEPTED:
                # A late PENDING must not walk an accepted booking backwards.
                verdict = Verdict.APPLY if incoming in TERMINAL_STATES else Verdict.KEEP
            elif incoming in OPEN_STATES:
                verdict = Verdict.REJECT
            else:
                # First terminal status wins.
                verdict = Verdict.KEEP
            table[(current, incoming)] = verdict
    return table


TRANSITIONS: dict[tuple[BookingStatus, BookingStatus], Verdict] = _build_table()


def resolve_transition(
    current: BookingStatus | str | None, incoming: BookingStatus | str
) -> Transition:
    """Look up what happens when *incoming* arrives for a booking in *current*."""
    incoming = BookingStatus(incoming)
    if current is None:
        return Transition(Verdict.APPLY, incoming)
    current = BookingStatus(current)
    verdict = TRANSITIONS[(current, incoming)]
    return Transition(verdict, incoming if verdict is Verdict.APPLY else current)


def is_terminal(status: BookingStatus | str) -> bool:
    return BookingStatus(status) in TERMINAL_STATES
