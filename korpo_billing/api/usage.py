"""Usage endpoints — limits, usage summary, token and request reporting."""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from korpo_billing.api.deps import get_current_user_id, get_services
from korpo_billing.services.metering import BillingServices
from korpo_billing.services.usage_ledger import TokenUsageReport

logger = logging.getLogger(__name__)
router = APIRouter()


# --- Schemas ---

class TokenReportRequest(BaseModel):
    model: str
    prompt_tokens: int
    completion_tokens: int
    cached_tokens: int = 0
    timestamp: str = Field(description="ISO-8601 time the upstream call completed")


class UsageOutcomeResponse(BaseModel):
    tokens_added: int
    cost_added: float
    new_daily_total: int
    new_monthly_total: int
    month: str


class RequestCountRequest(BaseModel):
    request_type: str = Field(description="'voice' or 'chat'")
    count: int = 1


class RequestCountResponse(BaseModel):
    request_type: str
    new_daily_count: int
    daily_limit: int
    new_monthly_count: int


class LimitsResponse(BaseModel):
    plan: str
    limits: dict[str, int]
    has_payment_customer: bool


class CanUseResponse(BaseModel):
    allowed: bool
    allowed_chat: bool
    allowed_voice: bool
    remaining_daily_tokens: int
    remaining_monthly_tokens: int
    reason: str | None = None


class UsageSummaryResponse(BaseModel):
    plan: str
    month: str
    daily_used: int
    daily_limit: int
    monthly_used: int
    monthly_limit: int
    total_cost_usd: float
    last_reported_at: str | None = None
    daily_requests: dict[str, int] = {}
    monthly_request_totals: dict[str, int] = {}


# --- Endpoints ---

@router.get("/limits", response_model=LimitsResponse)
async def get_limits(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
):
    user = await services.metering.get_user_limits(user_id)
    return LimitsResponse(
        plan=user.plan,
        limits=user.limits.to_dict(),
        has_payment_customer=bool(user.stripe_customer_id),
    )


@router.get("/can-use", response_model=CanUseResponse)
async def can_use(
    requested_tokens: int = 0,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
):
    """Whether chat and voice requests are currently allowed.

    Pass ``requested_tokens`` to also check the size of the call about to be made.
    """
    result = await services.metering.check_can_use_tokens(user_id, requested_tokens)
    return CanUseResponse(
        allowed=result.allowed,
        allowed_chat=result.allowed_chat,
        allowed_voice=result.allowed_voice,
        remaining_daily_tokens=result.remaining_daily_tokens,
        remaining_monthly_tokens=result.remaining_monthly_tokens,
        reason=result.reason,
    )


@router.get("/summary", response_model=UsageSummaryResponse)
async def usage_summary(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
):
    summary = await services.metering.get_usage_summary(user_id)
    return UsageSummaryResponse(**asdict(summary))


@router.post("/report", response_model=UsageOutcomeResponse)
async def report_usage(
    request: TokenReportRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
):
    """Record token usage of a completed upstream call.

    Limit and duplicate rejections surface through the error handler
    (429 / 400 with a machine-readable code).
    """
    outcome = await services.metering.record_token_usage(
        user_id,
        TokenUsageReport(
            model=request.model,
            prompt_tokens=request.prompt_tokens,
            completion_tokens=request.completion_tokens,
            cached_tokens=request.cached_tokens,
            timestamp=request.timestamp,
        ),
    )
    return UsageOutcomeResponse(
        tokens_added=outcome.tokens_added,
        cost_added=outcome.cost_added,
        new_daily_total=outcome.new_daily_total,
        new_monthly_total=outcome.new_monthly_total,
        month=outcome.month,
    )


@router.post("/requests", response_model=RequestCountResponse)
async def count_request(
    request: RequestCountRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
):
    outcome = await services.metering.record_request(user_id, request.request_type, request.count)
    return RequestCountResponse(
        request_type=outcome.request_type,
        new_daily_count=outcome.new_daily_count,
        daily_limit=outcome.daily_limit,
        new_monthly_count=outcome.new_monthly_count,
    )
