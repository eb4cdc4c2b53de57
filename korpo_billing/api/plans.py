"""Plan endpoints — current plan, upgrade checkout, downgrade, proration preview."""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from korpo_billing.api.deps import get_current_user_id, get_services, require_payments
from korpo_billing.config import settings
from korpo_billing.models import Plan
from korpo_billing.periods import to_iso
from korpo_billing.services.metering import BillingServices

logger = logging.getLogger(__name__)
router = APIRouter()


# --- Schemas ---

class UpgradeRequest(BaseModel):
    success_url: str | None = None
    cancel_url: str | None = None


class CheckoutResponse(BaseModel):
    checkout_url: str
    session_id: str


class DowngradeRequest(BaseModel):
    reset_daily_usage: bool = False
    reset_monthly_usage: bool = False


class DowngradeResponse(BaseModel):
    plan: str
    new_limits: dict[str, int]
    days_used: int
    final_amount: float
    usage_period: str
    final_invoice_id: str | None = None
    paid_immediately: bool = False
    payment_url: str | None = None


class ProrationResponse(BaseModel):
    period_start: str
    period_end: str
    days_used: int
    total_cost: float
    total_tokens: int
    event_count: int
    platform_fee_included: bool = False
    breakdown: dict[str, dict] | None = None


class PlanStatusResponse(BaseModel):
    plan: str
    subscription_status: str
    billing_anniversary_day: int | None = None
    current_period_start: str | None = None
    current_period_end: str | None = None
    next_billing_date: str | None = None
    current_usage_cost: float
    estimated_next_bill: float
    has_payment_customer: bool


# --- Endpoints ---

@router.get("/current", response_model=PlanStatusResponse)
async def current_plan(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
):
    """Current plan, billing period and what the next bill would be so far."""
    status = await services.plans.current_plan(user_id)
    premium = status.plan == Plan.PREMIUM.value
    estimate = round(settings.platform_fee_usd + status.current_usage_cost, 4) if premium else 0.0
    return PlanStatusResponse(
        plan=status.plan,
        subscription_status=status.subscription_status,
        billing_anniversary_day=status.billing_anniversary_day,
        current_period_start=to_iso(status.current_period_start),
        current_period_end=to_iso(status.current_period_end),
        next_billing_date=status.next_billing_date.isoformat() if status.next_billing_date else None,
        current_usage_cost=status.current_usage_cost,
        estimated_next_bill=estimate,
        has_payment_customer=status.has_payment_customer,
    )


@router.post("/upgrade", response_model=CheckoutResponse)
async def upgrade(
    request: UpgradeRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(require_payments),
):
    """Start a premium checkout. The plan changes when the payment webhook arrives."""
    request = request or UpgradeRequest()
    intent = await services.plans.upgrade_to_premium(
        user_id, success_url=request.success_url, cancel_url=request.cancel_url
    )
    return CheckoutResponse(checkout_url=intent.checkout_url, session_id=intent.session_id)


@router.post("/downgrade", response_model=DowngradeResponse)
async def downgrade(
    request: DowngradeRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(require_payments),
):
    request = request or DowngradeRequest()
    result = await services.plans.downgrade(
        user_id,
        reset_daily_usage=request.reset_daily_usage,
        reset_monthly_usage=request.reset_monthly_usage,
    )
    return DowngradeResponse(
        plan=result.to_plan,
        new_limits=result.new_limits,
        days_used=result.days_used,
        final_amount=result.final_amount,
        usage_period=result.usage_period,
        final_invoice_id=result.final_invoice_id,
        paid_immediately=result.paid_immediately,
        payment_url=result.payment_url,
    )


@router.get("/proration", response_model=ProrationResponse)
async def proration(
    detailed: bool = False,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
):
    """What a downgrade right now would bill. API usage only, never the platform fee."""
    preview = await services.plans.calculate_prorated_usage(user_id, detailed=detailed)
    return ProrationResponse(
        period_start=preview.period_start.isoformat(),
        period_end=preview.period_end.isoformat(),
        days_used=preview.days_used,
        total_cost=preview.total_cost,
        total_tokens=preview.total_tokens,
        event_count=preview.event_count,
        breakdown=preview.breakdown,
    )
