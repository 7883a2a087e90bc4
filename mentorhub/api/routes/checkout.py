"""
mentorhub.api.routes.checkout — Paid booking checkout
======================================================
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import Engine

from mentorhub.api.deps import get_config, get_engine, get_gateway
from mentorhub.config import MentorhubConfig
from mentorhub.services.checkout_service import start_checkout
from mentorhub.services.stripe_gateway import StripeGateway

router = APIRouter(prefix="/checkout", tags=["checkout"])


class CheckoutIn(BaseModel):
    event_type_id: int
    customer_email: str = Field(min_length=3)
    customer_name: str = Field(min_length=1)
    start_time: datetime
    time_zone: str = "UTC"


@router.post("", status_code=201)
def create_checkout(
    body: CheckoutIn,
    engine: Engine = Depends(get_engine),
    cfg: MentorhubConfig = Depends(get_config),
    gateway: StripeGateway = Depends(get_gateway),
):
    try:
        return start_checkout(
            engine, gateway, cfg.payments,
            event_type_id=body.event_type_id,
            customer_email=body.customer_email,
            customer_name=body.customer_name,
            start_time=body.start_time,
            time_zone=body.time_zone,
        )
    except LookupError as exc:
        raise HTTPException(404, str(exc))
    except ValueError as exc:
        raise HTTPException(422, str(exc))
