"""Shared route dependencies: the authenticated user id and the service graph."""

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from korpo_billing.config import settings
from korpo_billing.database import get_session_factory
from korpo_billing.services.metering import BillingServices, build_services


async def get_current_user_id(request: Request) -> str:
    """User id placed on the request by the upstream auth middleware."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return str(user_id)


async def get_services(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> BillingServices:
    """Service graph, built on first use and cached on the app."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        services = build_services(session_factory, settings=settings)
        request.app.state.services = services
    return services


def require_payments(services: BillingServices = Depends(get_services)) -> BillingServices:
    if services.payments is None:
        raise HTTPException(status_code=503, detail="Billing not configured")
    return services
