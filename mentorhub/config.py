"""
mentorhub.config — YAML Configuration Loader
=============================================

**Why this file exists:**
Non-secret tuning (provider URLs, the platform fee policy, the dispute
window, ranking weights) lives in ``config.yaml``.  Secrets (API keys,
webhook signing secrets, ``DATABASE_URL``) come from the environment and
are never read here.

Usage::

    from mentorhub.config import load_config

    cfg = load_config()                        # reads ./config.yaml
    print(cfg.payments.platform_fee_percent)   # 10
    print(cfg.ranking.decay_factor)            # 0.99
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_RANKING_WEIGHTS: dict[str, float] = {
    "PROFILE_VIEW": 0.3,
    "COMPLETED_BOOKING": 10.0,
    "REVIEW_RECEIVED": 2.0,
    "CANCELLED_BOOKING": -5.0,
}


# ---------------------------------------------------------------------------
# Typed settings objects
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SchedulingConfig:
    """Scheduling provider endpoints and OAuth client identity."""

    api_url: str = "https://api.cal.com/v2"
    client_id: str = ""
    api_version: str = "2024-06-14"
    request_timeout_seconds: float = 10.0
    organization_id: int | None = None
    team_id: int | None = None


@dataclass(frozen=True, slots=True)
class PaymentsConfig:
    """Fee policy, dispute hold and transfer batch tuning."""

    platform_fee_percent: float = 10.0
    platform_fee_minimum: int = 0  # minor currency units
    default_currency: str = "usd"
    dispute_period_days: float = 7.0
    transfer_max_retries: int = 3
    transfer_claim_ttl_seconds: int = 900
    checkout_success_url: str = "http://localhost:3000/checkout/success"
    checkout_cancel_url: str = "http://localhost:3000/checkout/cancel"
    onboarding_return_url: str = "http://localhost:3000/settings/payments"


@dataclass(frozen=True, slots=True)
class RankingConfig:
    """Analytics event weights and score decay."""

    weights: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_RANKING_WEIGHTS)
    )
    decay_factor: float = 0.99
    batch_size: int = 500


@dataclass(frozen=True, slots=True)
class MentorhubConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    payments: PaymentsConfig = field(default_factory=PaymentsConfig)
    ranking: RankingConfig = field(default_factory=RankingConfig)


# ---------------------------------------------------------------------------
# Section builders: unknown keys are ignored, missing keys use defaults
# ---------------------------------------------------------------------------
def _section(cls, raw: dict | None):
    raw = raw or {}
    known = {name for name in cls.__dataclass_fields__}
    return cls(**{k: v for k, v in raw.items() if k in known})


def _ranking_section(raw: dict | None) -> RankingConfig:
    raw = dict(raw or {})
    weights = dict(DEFAULT_RANKING_WEIGHTS)
    weights.update({str(k).upper(): float(v) for k, v in (raw.pop("weights", None) or {}).items()})
    cfg = _section(RankingConfig, raw)
    return RankingConfig(
        weights=weights,
        decay_factor=float(cfg.decay_factor),
        batch_size=int(cfg.batch_size),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> MentorhubConfig:
    """Read *path* and return a :class:`MentorhubConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If a tuning value is out of range.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    cfg = MentorhubConfig(
        scheduling=_section(SchedulingConfig, raw.get("scheduling")),
        payments=_section(PaymentsConfig, raw.get("payments")),
        ranking=_ranking_section(raw.get("ranking")),
    )
    _validate(cfg)
    return cfg


def _validate(cfg: MentorhubConfig) -> None:
    p = cfg.payments
    if not 0 <= p.platform_fee_percent <= 100:
        raise ValueError(f"platform_fee_percent must be within 0..100, got {p.platform_fee_percent}")
    if p.platform_fee_minimum < 0:
        raise ValueError("platform_fee_minimum must not be negative")
    if p.dispute_period_days < 0:
        raise ValueError("dispute_period_days must not be negative")
    if not 0 < cfg.ranking.decay_factor <= 1:
        raise ValueError(f"decay_factor must be within (0, 1], got {cfg.ranking.decay_factor}")
