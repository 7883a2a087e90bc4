"""
mentorhub.api.routes.cron — Externally triggered batch jobs
============================================================

Every endpoint requires ``Authorization: Bearer $CRON_SECRET``.  Each job
is safe to run concurrently with itself and with webhook traffic.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import Engine

from mentorhub.api.deps import get_config, get_engine, get_gateway, require_cron
from mentorhub.config import MentorhubConfig
from mentorhub.services.ranking_service import decay_scores, process_analytics_events
from mentorhub.services.stripe_gateway import StripeGateway
from mentorhub.services.transfer_service import run_transfer_batch

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron)])


@router.post("/transfer-funds")
def transfer_funds(
    engine: Engine = Depends(get_engine),
    cfg: MentorhubConfig = Depends(get_config),
    gateway: StripeGateway = Depends(get_gateway),
):
    return run_transfer_batch(engine, gateway, cfg.payments)


@router.post("/update-mentor-scores")
def update_mentor_scores(
    engine: Engine = Depends(get_engine),
    cfg: MentorhubConfig = Depends(get_config),
):
    return process_analytics_events(engine, cfg.ranking.weights, cfg.ranking.batch_size)


@router.post("/decay-mentor-scores")
def decay_mentor_scores(
    engine: Engine = Depends(get_engine),
    cfg: MentorhubConfig = Depends(get_config),
):
    return decay_scores(engine, cfg.ranking.decay_factor)
