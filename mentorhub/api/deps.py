"""
mentorhub.api.deps — FastAPI dependency injection
==================================================
"""

from __future__ import annotations

import hmac
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from mentorhub.config import MentorhubConfig, load_config
from mentorhub.database.engine import create_db_engine
from mentorhub.services.scheduling_client import SchedulingClient
from mentorhub.services.stripe_gateway import StripeGateway
from mentorhub.services.token_service import TokenLifecycleManager

logger = logging.getLogger(__name__)

_WEAK_SECRETS = frozenset({
    "mentorhub-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


# ---------------------------------------------------------------------------
# Shared singletons
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> MentorhubConfig:
    """Load ``$MENTORHUB_CONFIG`` (default ``config.yaml``); built-in defaults if absent."""
    path = Path(os.getenv("MENTORHUB_CONFIG", "config.yaml"))
    if not path.exists():
        logger.warning("%s not found; running with default configuration", path)
        return MentorhubConfig()
    return load_config(path)


@lru_cache(maxsize=1)
def get_scheduling_client() -> SchedulingClient:
    return SchedulingClient(get_config().scheduling, os.getenv("CALCOM_SECRET_KEY", ""))


@lru_cache(maxsize=1)
def get_gateway() -> StripeGateway:
    return StripeGateway(os.getenv("STRIPE_SECRET_KEY", ""))


def get_token_manager(
    engine: Annotated[Engine, Depends(get_engine)],
    client: Annotated[SchedulingClient, Depends(get_scheduling_client)],
) -> TokenLifecycleManager:
    return TokenLifecycleManager(engine, client)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> int:
    """Validate the JWT and return the caller's user id. Raises 401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return int(payload["sub"])
    except (InvalidTokenError, KeyError, TypeError, ValueError):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")


def require_cron(
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Accept only ``Authorization: Bearer $CRON_SECRET``."""
    secret = os.getenv("CRON_SECRET", "")
    if not secret:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "Cron secret not configured")
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unauthorized")
