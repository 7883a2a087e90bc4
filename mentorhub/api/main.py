"""
mentorhub.api.main — FastAPI application entry point
======================================================

Run with::

    uvicorn mentorhub.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from mentorhub.api.deps import get_engine  # noqa: E402
from mentorhub.api.routes.analytics import router as analytics_router  # noqa: E402
from mentorhub.api.routes.checkout import router as checkout_router  # noqa: E402
from mentorhub.api.routes.cron import router as cron_router  # noqa: E402
from mentorhub.api.routes.mentor import router as mentor_router  # noqa: E402
from mentorhub.api.routes.webhooks import router as webhooks_router  # noqa: E402
from mentorhub.errors import (  # noqa: E402
    AuthError,
    InvariantViolation,
    MalformedWebhookError,
    MentorhubError,
    NoCredentialError,
    ProcessorError,
)

logger = logging.getLogger(__name__)


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
        datefmt="%H:%M:%S",
    )


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
def status_for(exc: MentorhubError) -> int:
    if isinstance(exc, NoCredentialError):
        return 409
    if isinstance(exc, AuthError):
        return 502
    if isinstance(exc, MalformedWebhookError):
        return 400
    if isinstance(exc, ProcessorError):
        return 503 if exc.retryable else 502
    if isinstance(exc, InvariantViolation):
        return 500
    return 500


async def handle_mentorhub_error(request: Request, exc: MentorhubError) -> JSONResponse:
    """Log the operator detail; return only the user-facing message."""
    code = status_for(exc)
    log = logger.error if code >= 500 else logger.warning
    log("%s %s → %d %s: %s", request.method, request.url.path, code,
        type(exc).__name__, exc.message)
    return JSONResponse(
        status_code=code,
        content={"error": type(exc).__name__, "detail": exc.user_message},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine."""
    configure_logging()
    engine = get_engine()
    logger.info("Mentorhub API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Mentorhub API shutting down")


app = FastAPI(
    title="Mentorhub Scheduling & Settlement API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(MentorhubError, handle_mentorhub_error)

# Mount routers
app.include_router(webhooks_router, prefix="/api")
app.include_router(cron_router, prefix="/api")
app.include_router(mentor_router, prefix="/api")
app.include_router(analytics_router, prefix="/api")
app.include_router(checkout_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
