"""
mentorhub.api.routes.webhooks — Inbound provider webhooks
==========================================================

Both endpoints read the raw body (signatures are computed over the exact
bytes) and hand it to the matching service.  Verification and dispatch
failures surface as :class:`~mentorhub.errors.MalformedWebhookError` and
are mapped to 400 by the app's error handler.
"""

from __future__ import annotations

import logging
import os

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy import Engine

from mentorhub.api.deps import (
    get_config,
    get_engine,
    get_gateway,
    get_scheduling_client,
    get_token_manager,
)
from mentorhub.config import MentorhubConfig
from mentorhub.database.engine import run_db
from mentorhub.errors import MentorhubError
from mentorhub.services.checkout_service import fulfil_checkout
from mentorhub.services.payment_webhooks import handle_payment_webhook
from mentorhub.services.scheduling_client import SchedulingClient
from mentorhub.services.scheduling_webhooks import SIGNATURE_HEADER, handle_scheduling_webhook
from mentorhub.services.stripe_gateway import StripeGateway
from mentorhub.services.token_service import TokenLifecycleManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/cal")
async def scheduling_webhook(request: Request, engine: Engine = Depends(get_engine)):
    raw_body = await request.body()
    result = await run_db(
        handle_scheduling_webhook,
        engine,
        raw_body,
        request.headers.get(SIGNATURE_HEADER),
        os.getenv("CALCOM_WEBHOOK_SECRET", ""),
    )
    return {"received": True, **result}


def _fulfil_in_background(
    engine: Engine,
    tokens: TokenLifecycleManager,
    client: SchedulingClient,
    gateway: StripeGateway,
    cfg: MentorhubConfig,
    payment_id: int,
) -> None:
    try:
        result = fulfil_checkout(engine, tokens, client, gateway, cfg.payments, payment_id)
    except MentorhubError as exc:
        logger.error("Fulfilment of payment %d failed: %s", payment_id, exc.message)
        return
    logger.info("Fulfilment of payment %d: %s", payment_id, result["status"])


@router.post("/stripe")
async def payment_webhook(
    request: Request,
    background: BackgroundTasks,
    engine: Engine = Depends(get_engine),
    cfg: MentorhubConfig = Depends(get_config),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
    client: SchedulingClient = Depends(get_scheduling_client),
    gateway: StripeGateway = Depends(get_gateway),
):
    raw_body = await request.body()
    result = await run_db(
        handle_payment_webhook,
        engine,
        cfg.payments,
        raw_body,
        request.headers.get("stripe-signature"),
        os.getenv("STRIPE_WEBHOOK_SECRET", ""),
    )
    payment_id = result.pop("fulfil_payment_id")
    if payment_id is not None:
        background.add_task(
            _fulfil_in_background, engine, tokens, client, gateway, cfg, payment_id
        )
    return {"received": True, **result}
