"""Korpo billing service — FastAPI entry point.

Thin HTTP adapter over the metering and billing services. Authentication is
done upstream; routes read the user id the auth middleware put on the request.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from korpo_billing.api import billing, plans, usage
from korpo_billing.config import settings
from korpo_billing.database import init_db
from korpo_billing.errors import LimitExceeded, MeteringError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    logger.info("Starting %s v%s", settings.app_name, settings.version)
    await init_db()
    logger.info("Database initialized")
    yield
    logger.info("Shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Usage metering and plan billing",
    lifespan=lifespan,
)


@app.exception_handler(MeteringError)
async def metering_error_handler(request: Request, exc: MeteringError):
    if isinstance(exc, LimitExceeded):
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
    elif exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


# Routes
app.include_router(usage.router, prefix="/api/v1/usage", tags=["usage"])
app.include_router(plans.router, prefix="/api/v1/plans", tags=["plans"])
app.include_router(billing.router, prefix="/api/v1/billing", tags=["billing"])


@app.get("/health")
async def health_check():
    return {
        "status": "ok",
        "version": settings.version,
        "billing_configured": bool(settings.stripe_secret_key),
    }
