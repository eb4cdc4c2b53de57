"""Metering facade — the operations the routing layer calls.

Resolves each user's limits the same way for checking and for recording, and
wires the pricing table, limits registry, ledger, plan lifecycle and billing
cycle together once per process (``build_services``).
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from korpo_billing.config import Settings
from korpo_billing.config import settings as default_settings
from korpo_billing.database import KeyedLocks
from korpo_billing.errors import RequestTooLarge
from korpo_billing.periods import to_iso, utcnow
from korpo_billing.services.accounts import get_account, resolve_limits
from korpo_billing.services.billing_cycle import BillingCycleReconciler
from korpo_billing.services.limit_enforcer import EnforcementResult, LimitEnforcer
from korpo_billing.services.limits import LimitsRegistry, PlanLimits
from korpo_billing.services.payments import PaymentProcessor, StripePaymentProcessor
from korpo_billing.services.plan_lifecycle import PlanLifecycleManager
from korpo_billing.services.pricing import PricingTable
from korpo_billing.services.usage_hooks import UsageCharge, UsageHookPipeline
from korpo_billing.services.usage_ledger import (
    RequestOutcome,
    TokenUsageReport,
    UsageLedger,
    UsageOutcome,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserLimits:
    plan: str
    limits: PlanLimits
    stripe_customer_id: str | None = None


@dataclass(frozen=True)
class UsageSummary:
    plan: str
    month: str
    daily_used: int
    daily_limit: int
    monthly_used: int
    monthly_limit: int
    total_cost_usd: float
    last_reported_at: str | None
    daily_requests: dict
    monthly_request_totals: dict


class MeteringService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: UsageLedger,
        limits: LimitsRegistry,
        enforcer: LimitEnforcer,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._limits = limits
        self._enforcer = enforcer

    async def get_user_limits(self, user_id: str) -> UserLimits:
        async with self._session_factory() as session:
            account = await get_account(session, user_id)
        return UserLimits(
            plan=account.plan_enum.value,
            limits=resolve_limits(account, self._limits),
            stripe_customer_id=account.stripe_customer_id,
        )

    async def check_can_use_tokens(self, user_id: str, requested_tokens: int = 0) -> EnforcementResult:
        user = await self.get_user_limits(user_id)
        return await self._enforcer.can_use(user_id, user.limits, requested_tokens)

    async def check_request_size(self, user_id: str, requested_tokens: int) -> None:
        """Pre-flight gate for one upstream call. Raises ``RequestTooLarge`` over the plan ceiling."""
        user = await self.get_user_limits(user_id)
        ceiling = user.limits.max_tokens_per_request
        if requested_tokens > ceiling:
            logger.info("Rejecting %d-token request for %s (limit %d)", requested_tokens, user_id, ceiling)
            raise RequestTooLarge(requested_tokens, ceiling)

    async def record_token_usage(
        self,
        user_id: str,
        report: TokenUsageReport,
        daily_limit: int | None = None,
        monthly_limit: int | None = None,
    ) -> UsageOutcome:
        """Record a report against the user's limits. Explicit caps override the resolved ones."""
        user = await self.get_user_limits(user_id)
        return await self._ledger.record_usage(
            user_id,
            report,
            daily_limit if daily_limit is not None else user.limits.chat_tokens_daily,
            monthly_limit if monthly_limit is not None else user.limits.chat_tokens_monthly,
        )

    async def record_request(self, user_id: str, request_type: str, count: int = 1) -> RequestOutcome:
        user = await self.get_user_limits(user_id)
        return await self._ledger.record_request(
            user_id, request_type, user.limits.daily_request_cap(request_type), count
        )

    async def get_usage_summary(self, user_id: str) -> UsageSummary:
        user = await self.get_user_limits(user_id)
        month, today = self._ledger.current_period()
        record = await self._ledger.get_or_create(user_id, month)
        day_counts = record.daily_request_counts.get(today) or {}
        return UsageSummary(
            plan=user.plan,
            month=month,
            daily_used=int(record.daily_token_usage.get(today, 0)),
            daily_limit=user.limits.chat_tokens_daily,
            monthly_used=record.monthly_token_total or 0,
            monthly_limit=user.limits.chat_tokens_monthly,
            total_cost_usd=record.total_cost_usd or 0.0,
            last_reported_at=to_iso(record.last_reported_at),
            daily_requests={"voice": int(day_counts.get("voice", 0)), "chat": int(day_counts.get("chat", 0))},
            monthly_request_totals=record.monthly_request_totals,
        )

    async def record_charge(self, charge: UsageCharge) -> None:
        """Default post-response hook: book a completed call on the ledger."""
        await self.record_token_usage(
            charge.user_id,
            TokenUsageReport(
                model=charge.model,
                prompt_tokens=charge.prompt_tokens,
                completion_tokens=charge.completion_tokens,
                cached_tokens=charge.cached_tokens,
                timestamp=charge.timestamp,
            ),
        )
        if charge.request_type:
            await self.record_request(charge.user_id, charge.request_type)


@dataclass
class BillingServices:
    session_factory: async_sessionmaker[AsyncSession]
    pricing: PricingTable
    limits: LimitsRegistry
    ledger: UsageLedger
    enforcer: LimitEnforcer
    metering: MeteringService
    plans: PlanLifecycleManager
    billing: BillingCycleReconciler
    hooks: UsageHookPipeline
    payments: PaymentProcessor | None = None


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    settings: Settings = default_settings,
    payments: PaymentProcessor | None = None,
    now: Callable[[], datetime] = utcnow,
) -> BillingServices:
    """Build the service graph. Pricing and limits tables are created here, once."""
    pricing = PricingTable.default(settings.pricing_overrides)
    limits = LimitsRegistry()
    if payments is None and settings.stripe_secret_key:
        payments = StripePaymentProcessor(
            settings.stripe_secret_key,
            platform_price_id=settings.stripe_platform_price_id,
            usage_price_id=settings.stripe_usage_price_id,
        )
    if payments is None:
        logger.warning("No payment processor configured, billing operations are disabled")

    account_locks = KeyedLocks()
    ledger = UsageLedger(session_factory, pricing, now=now, max_retries=settings.ledger_max_retries)
    enforcer = LimitEnforcer(ledger)
    metering = MeteringService(session_factory, ledger, limits, enforcer)
    plans = PlanLifecycleManager(
        session_factory,
        ledger,
        limits,
        payments,
        frontend_url=settings.frontend_url,
        locks=account_locks,
        now=now,
        max_retries=settings.ledger_max_retries,
    )
    billing = BillingCycleReconciler(
        session_factory,
        ledger,
        payments,
        platform_fee=settings.platform_fee_usd,
        invoice_due_days=settings.invoice_due_days,
        grace_days=settings.platform_fee_grace_days,
        locks=account_locks,
        now=now,
        max_retries=settings.ledger_max_retries,
    )
    hooks = UsageHookPipeline()
    hooks.register(metering.record_charge)

    return BillingServices(
        session_factory=session_factory,
        pricing=pricing,
        limits=limits,
        ledger=ledger,
        enforcer=enforcer,
        metering=metering,
        plans=plans,
        billing=billing,
        hooks=hooks,
        payments=payments,
    )
