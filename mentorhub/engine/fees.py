"""
mentorhub.engine.fees — Platform Fee Policy
============================================

The single place where a gross charge is split into the mentor's share
and the platform's share.  Pure: no I/O, no clock, no database.

Policy: the platform keeps ``percent`` of the gross amount (rounded half
up to the nearest minor unit), but never less than ``minimum`` and never
more than the gross amount itself.  The mentor receives the remainder,
so ``mentor_fee + platform_fee == amount`` by construction.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from mentorhub.errors import InvariantViolation


@dataclass(frozen=True, slots=True)
class FeePolicy:
    """Configurable platform fee (see ``payments`` in ``config.yaml``)."""

    percent: float = 10.0
    minimum: int = 0  # minor currency units

    @classmethod
    def from_config(cls, payments_cfg) -> FeePolicy:
        return cls(
            percent=float(payments_cfg.platform_fee_percent),
            minimum=int(payments_cfg.platform_fee_minimum),
        )


@dataclass(frozen=True, slots=True)
class FeeSplit:
    amount: int
    mentor_fee: int
    platform_fee: int
    currency: str


def compute_fee_split(amount: int, currency: str, policy: FeePolicy) -> FeeSplit:
    """Split *amount* (minor units) into mentor and platform fees.

    Raises
    ------
    ValueError
        If *amount* is negative or *currency* is not a 3-letter code.
    """
    if amount < 0:
        raise ValueError(f"amount must not be negative, got {amount}")
    if len(currency) != 3 or not currency.isalpha():
        raise ValueError(f"currency must be a 3-letter ISO code, got {currency!r}")

    pct_fee = (Decimal(amount) * Decimal(str(policy.percent)) / Decimal(100)).quantize(
        Decimal(1), rounding=ROUND_HALF_UP
    )
    platform_fee = min(amount, max(int(pct_fee), policy.minimum))
    split = FeeSplit(
        amount=amount,
        mentor_fee=amount - platform_fee,
        platform_fee=platform_fee,
        currency=currency.lower(),
    )
    check_fee_split(split.amount, split.mentor_fee, split.platform_fee)
    return split


def check_fee_split(amount: int, mentor_fee: int, platform_fee: int) -> None:
    """Raise :class:`InvariantViolation` unless the fees add up to *amount*."""
    if mentor_fee < 0 or platform_fee < 0 or mentor_fee + platform_fee != amount:
        raise InvariantViolation(
            f"Fee split mismatch: mentor_fee={mentor_fee} + platform_fee={platform_fee} "
            f"!= amount={amount}"
        )
