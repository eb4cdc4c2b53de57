"""User account lookups shared by the metering, plan and billing services."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from korpo_billing.errors import UserNotFound
from korpo_billing.models import Plan, UserAccount
from korpo_billing.services.limits import LimitsRegistry, PlanLimits


async def get_account(session: AsyncSession, user_id: str, *, for_update: bool = False) -> UserAccount:
    account = await session.get(UserAccount, user_id, with_for_update=for_update or None)
    if account is None:
        raise UserNotFound(user_id)
    return account


def resolve_limits(account: UserAccount, registry: LimitsRegistry) -> PlanLimits:
    """The user's limits snapshot if one was written at a plan change, else the plan's tier."""
    tier = registry.for_plan(account.plan)
    if account.limits:
        return PlanLimits.from_dict(account.limits, fallback=tier)
    return tier


async def list_premium_users(session: AsyncSession) -> list[UserAccount]:
    result = await session.execute(
        select(UserAccount)
        .where(UserAccount.plan.in_([Plan.PREMIUM.value, "premier"]))
        .order_by(UserAccount.id)
    )
    return list(result.scalars().all())


async def find_user_id(
    session: AsyncSession,
    *,
    customer_id: str | None = None,
    subscription_id: str | None = None,
) -> str | None:
    """Resolve a payment-processor reference back to a user id."""
    if subscription_id:
        result = await session.execute(
            select(UserAccount.id).where(UserAccount.stripe_subscription_id == subscription_id)
        )
        user_id = result.scalar_one_or_none()
        if user_id:
            return user_id
    if customer_id:
        result = await session.execute(
            select(UserAccount.id).where(UserAccount.stripe_customer_id == customer_id).limit(1)
        )
        return result.scalar_one_or_none()
    return None
