"""Plan lifecycle — free <-> premium transitions.

Upgrades are two-phase: ``upgrade_to_premium`` only opens a checkout, the plan
flips in ``complete_upgrade`` once the payment processor confirms the
subscription. Downgrades bill the API usage accrued since the period start
(never the platform fee), cancel the subscription immediately and drop the
user back to free limits.

The final usage invoice is stored before the subscription is cancelled. A
downgrade retried after a failed cancel only bills usage after the stored
invoice's window, and usage already covered by a monthly invoice is never
prorated again.
"""

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from korpo_billing.database import KeyedLocks, run_in_transaction
from korpo_billing.errors import (
    AlreadyPremium,
    NoActiveSubscription,
    NoPaymentCustomer,
    NotPremium,
    PaymentProcessorError,
)
from korpo_billing.models import (
    Invoice,
    InvoiceKind,
    InvoiceStatus,
    Plan,
    PlanAction,
    PlanChangeEvent,
    SubscriptionStatus,
    UserAccount,
)
from korpo_billing.periods import (
    as_utc,
    day_key,
    month_bounds,
    month_start,
    to_iso,
    upcoming_billing_date,
    utcnow,
)
from korpo_billing.services.accounts import get_account
from korpo_billing.services.limits import LimitsRegistry
from korpo_billing.services.payments import CheckoutIntent, InvoiceLine, PaymentProcessor
from korpo_billing.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

_COST_QUANTUM = Decimal("0.0001")

# Stripe subscription status -> our subscription status
_SUBSCRIPTION_STATUS = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}


@dataclass(frozen=True)
class UpgradeResult:
    new_limits: dict
    billing_anniversary_day: int | None
    already_premium: bool = False
    usage_adjustments: dict | None = None


@dataclass(frozen=True)
class UsagePreview:
    period_start: datetime
    period_end: datetime
    days_used: int
    total_cost: float
    total_tokens: int
    event_count: int
    breakdown: dict | None = None
    # End of the usage already invoiced inside this period, if any
    billed_until: datetime | None = None
    already_billed: float = 0.0

    @property
    def usage_period(self) -> str:
        return f"{day_key(self.period_start)} to {day_key(self.period_end)}"

    @property
    def window_start(self) -> datetime:
        """Start of the usage ``total_cost`` covers."""
        if self.billed_until is None:
            return self.period_start
        return max(self.period_start, self.billed_until)


@dataclass(frozen=True)
class PlanStatus:
    plan: str
    subscription_status: str
    billing_anniversary_day: int | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    next_billing_date: date | None
    current_usage_cost: float
    has_payment_customer: bool


@dataclass(frozen=True)
class DowngradeResult:
    from_plan: str
    to_plan: str
    new_limits: dict
    days_used: int
    final_amount: float
    usage_period: str
    final_invoice_id: str | None = None
    paid_immediately: bool = False
    payment_url: str | None = None
    usage_adjustments: dict = field(default_factory=dict)


class PlanLifecycleManager:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: UsageLedger,
        limits: LimitsRegistry,
        payments: PaymentProcessor | None,
        *,
        frontend_url: str = "http://localhost:3000",
        locks: KeyedLocks | None = None,
        now: Callable[[], datetime] = utcnow,
        max_retries: int = 3,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._limits = limits
        self._payments = payments
        self._frontend_url = frontend_url.rstrip("/")
        self._now = now
        self._max_retries = max_retries
        self._locks = locks or KeyedLocks()

    @property
    def payments(self) -> PaymentProcessor:
        if self._payments is None:
            raise PaymentProcessorError("Billing not configured")
        return self._payments

    async def _read_account(self, user_id: str) -> UserAccount:
        async with self._session_factory() as session:
            return await get_account(session, user_id)

    async def _transaction(self, user_id: str, work):
        return await run_in_transaction(
            self._session_factory, work, retries=self._max_retries, label=f"account {user_id}"
        )

    async def _apply_resets(self, user_id: str, reset_daily: bool, reset_monthly: bool) -> dict:
        adjustments = {}
        if reset_daily:
            adjustments["daily_reset"] = await self._ledger.reset_daily_usage(user_id, reason="plan_change")
        if reset_monthly:
            adjustments["monthly_reset"] = await self._ledger.reset_monthly_usage(user_id, reason="plan_change")
        return adjustments

    # --- Upgrade ---

    async def upgrade_to_premium(
        self,
        user_id: str,
        *,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutIntent:
        """Open a recurring-billing checkout. The plan itself is not changed here."""
        account = await self._read_account(user_id)
        if account.plan_enum == Plan.PREMIUM:
            raise AlreadyPremium()

        intent = await self.payments.create_recurring_checkout(
            user_id,
            email=account.email,
            customer_id=account.stripe_customer_id,
            success_url=success_url or f"{self._frontend_url}/billing/success",
            cancel_url=cancel_url or f"{self._frontend_url}/billing/cancel",
        )

        if intent.customer_id and intent.customer_id != account.stripe_customer_id:
            async def store_customer(session: AsyncSession):
                stored = await get_account(session, user_id, for_update=True)
                stored.stripe_customer_id = intent.customer_id

            async with self._locks("account", user_id):
                await self._transaction(user_id, store_customer)

        logger.info("Checkout created for %s: %s", user_id, intent.session_id)
        return intent

    async def complete_upgrade(
        self,
        user_id: str,
        *,
        subscription_id: str | None = None,
        customer_id: str | None = None,
        reset_daily_usage: bool = False,
        reset_monthly_usage: bool = False,
    ) -> UpgradeResult:
        """Flip the user to premium once payment is confirmed. A second call is a no-op."""
        async with self._locks("account", user_id):
            account = await self._read_account(user_id)
            if account.plan_enum == Plan.PREMIUM:
                logger.info("Upgrade for %s already applied", user_id)
                return UpgradeResult(
                    new_limits=account.limits or self._limits.for_plan(Plan.PREMIUM).to_dict(),
                    billing_anniversary_day=account.billing_anniversary_day,
                    already_premium=True,
                )

            usage_before = await self._ledger.usage_for_plan_change(user_id)
            adjustments = await self._apply_resets(user_id, reset_daily_usage, reset_monthly_usage)
            premium_limits = self._limits.for_plan(Plan.PREMIUM).to_dict()
            now = self._now()

            async def work(session: AsyncSession) -> UpgradeResult:
                stored = await get_account(session, user_id, for_update=True)
                if stored.plan_enum == Plan.PREMIUM:
                    return UpgradeResult(
                        new_limits=stored.limits or premium_limits,
                        billing_anniversary_day=stored.billing_anniversary_day,
                        already_premium=True,
                    )
                from_plan = stored.plan
                stored.plan = Plan.PREMIUM.value
                stored.limits = dict(premium_limits)
                stored.limits_updated_at = now
                stored.billing_anniversary_day = now.day
                stored.subscription_status = SubscriptionStatus.ACTIVE
                stored.upgraded_at = now
                stored.current_period_start = now
                # The checkout charged the first platform fee
                stored.last_platform_fee_paid_at = now
                if subscription_id:
                    stored.stripe_subscription_id = subscription_id
                if customer_id:
                    stored.stripe_customer_id = customer_id

                session.add(
                    PlanChangeEvent(
                        user_id=user_id,
                        action=PlanAction.UPGRADE,
                        from_plan=from_plan,
                        to_plan=Plan.PREMIUM.value,
                        timestamp=now,
                        new_limits=dict(premium_limits),
                        billing_anniversary_day=now.day,
                        usage_before_change=usage_before,
                        usage_adjustments=adjustments or None,
                    )
                )
                return UpgradeResult(
                    new_limits=dict(premium_limits),
                    billing_anniversary_day=now.day,
                    usage_adjustments=adjustments or None,
                )

            result = await self._transaction(user_id, work)

        if not result.already_premium:
            logger.info(
                "User %s upgraded to premium (anniversary day %d)", user_id, result.billing_anniversary_day
            )
        return result

    # --- Proration ---

    def _period_start(self, account: UserAccount, now: datetime) -> datetime:
        candidates = [
            as_utc(value)
            for value in (account.current_period_start, account.upgraded_at)
            if value is not None
        ]
        if candidates:
            return max(candidates)
        return month_start(now)

    async def _final_invoices(self, user_id: str, since: datetime) -> list[Invoice]:
        """Final usage invoices issued since ``since`` by downgrades that never completed."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Invoice)
                .where(
                    Invoice.user_id == user_id,
                    Invoice.kind == InvoiceKind.FINAL_PRORATION,
                    Invoice.period_start >= since,
                )
                .order_by(Invoice.period_end, Invoice.id)
            )
            return list(result.scalars().all())

    async def _monthly_billed_until(self, user_id: str) -> datetime | None:
        """Usage before this instant was billed by a monthly invoice (month M bills M-1)."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Invoice.month)
                .where(Invoice.user_id == user_id, Invoice.kind == InvoiceKind.MONTHLY)
                .order_by(Invoice.month.desc())
                .limit(1)
            )
            latest = result.scalar_one_or_none()
        return month_bounds(latest)[0] if latest else None

    async def calculate_prorated_usage(self, user_id: str, detailed: bool = False) -> UsagePreview:
        """API usage cost in ``[period start, now)``. Platform fee is never prorated."""
        account = await self._read_account(user_id)
        preview, _ = await self._prorate(account, detailed)
        return preview

    async def _prorate(
        self, account: UserAccount, detailed: bool = False
    ) -> tuple[UsagePreview, list[Invoice]]:
        """Preview plus the final invoices already issued in this period."""
        user_id = account.id
        now = as_utc(self._now())
        start = self._period_start(account, now)
        earlier = await self._final_invoices(user_id, start)
        cutoffs = [as_utc(invoice.period_end) for invoice in earlier]
        monthly_cutoff = await self._monthly_billed_until(user_id)
        if monthly_cutoff is not None:
            cutoffs.append(monthly_cutoff)
        billed_until = max(cutoffs) if cutoffs else None
        window_start = max(start, billed_until) if billed_until else start
        events = await self._ledger.events_between(user_id, window_start, now)

        total = Decimal("0")
        tokens = 0
        breakdown: dict[str, dict] = {}
        for usage_event in events:
            cost = Decimal(str(usage_event.cost_usd))
            total += cost
            tokens += usage_event.total_tokens
            if detailed:
                bucket = breakdown.setdefault(
                    day_key(usage_event.occurred_at), {"tokens": 0, "cost": Decimal("0"), "requests": 0}
                )
                bucket["tokens"] += usage_event.total_tokens
                bucket["cost"] += cost
                bucket["requests"] += 1

        elapsed = (now - start).total_seconds()
        days_used = max(0, math.ceil(elapsed / 86400))

        if detailed:
            breakdown = {
                day: {**bucket, "cost": float(bucket["cost"].quantize(_COST_QUANTUM, rounding=ROUND_HALF_UP))}
                for day, bucket in sorted(breakdown.items())
            }

        already_billed = sum((Decimal(str(invoice.api_usage_cost)) for invoice in earlier), Decimal("0"))
        preview = UsagePreview(
            period_start=start,
            period_end=now,
            days_used=days_used,
            total_cost=float(total.quantize(_COST_QUANTUM, rounding=ROUND_HALF_UP)),
            total_tokens=tokens,
            event_count=len(events),
            breakdown=breakdown if detailed else None,
            billed_until=billed_until,
            already_billed=float(already_billed.quantize(_COST_QUANTUM, rounding=ROUND_HALF_UP)),
        )
        return preview, earlier

    # --- Status ---

    async def current_plan(self, user_id: str) -> PlanStatus:
        """Plan, billing period and the usage a downgrade right now would bill."""
        account = await self._read_account(user_id)
        premium = account.plan_enum == Plan.PREMIUM
        usage_cost = 0.0
        next_billing = None
        if premium:
            preview, _ = await self._prorate(account)
            usage_cost = preview.total_cost
            if account.billing_anniversary_day:
                today = as_utc(self._now()).date()
                next_billing = upcoming_billing_date(account.billing_anniversary_day, today)
        return PlanStatus(
            plan=account.plan_enum.value,
            subscription_status=account.subscription_status.value,
            billing_anniversary_day=account.billing_anniversary_day,
            current_period_start=as_utc(account.current_period_start),
            current_period_end=as_utc(account.current_period_end),
            next_billing_date=next_billing,
            current_usage_cost=usage_cost,
            has_payment_customer=bool(account.stripe_customer_id),
        )

    # --- Downgrade ---

    async def _bill_final_usage(self, account: UserAccount, preview: UsagePreview) -> dict:
        """Invoice prorated API usage. Immediate-payment failure falls back to a payment link."""
        if not account.stripe_customer_id:
            raise NoPaymentCustomer()

        billed_period = f"{day_key(preview.window_start)} to {day_key(preview.period_end)}"
        metadata = {
            "user_id": account.id,
            "type": "final_proration",
            "days_used": str(preview.days_used),
            "usage_period": billed_period,
        }
        invoice = await self.payments.create_invoice(
            account.stripe_customer_id,
            [InvoiceLine(f"API usage {billed_period}", preview.total_cost)],
            description=f"Final API usage charge ({preview.days_used} days)",
            metadata=metadata,
            charge_automatically=True,
        )

        billed = {"invoice_id": invoice.invoice_id, "paid": False, "payment_url": None}
        try:
            await self.payments.pay_invoice_immediately(invoice.invoice_id)
            billed["paid"] = True
        except PaymentProcessorError as e:
            logger.warning("Immediate payment of %s failed for %s: %s", invoice.invoice_id, account.id, e)
            try:
                checkout = await self.payments.create_one_off_checkout(
                    account.stripe_customer_id,
                    preview.total_cost,
                    description=f"Final API usage {billed_period}",
                    metadata={**metadata, "invoice_id": invoice.invoice_id},
                    success_url=f"{self._frontend_url}/billing/success",
                    cancel_url=f"{self._frontend_url}/billing/cancel",
                )
                billed["payment_url"] = checkout.checkout_url
            except PaymentProcessorError as checkout_error:
                logger.error(
                    "Payment link for %s failed for %s: %s", invoice.invoice_id, account.id, checkout_error
                )
            if billed["payment_url"] is None:
                billed["payment_url"] = invoice.hosted_url
        return billed

    async def _store_final_invoice(self, user_id: str, preview: UsagePreview, billed: dict) -> None:
        now = self._now()

        async def work(session: AsyncSession) -> None:
            session.add(
                Invoice(
                    user_id=user_id,
                    kind=InvoiceKind.FINAL_PRORATION,
                    period_start=preview.window_start,
                    period_end=preview.period_end,
                    days_used=preview.days_used,
                    platform_fee=0.0,
                    api_usage_cost=preview.total_cost,
                    total_amount=preview.total_cost,
                    status=InvoiceStatus.PAID if billed["paid"] else InvoiceStatus.PENDING_PAYMENT,
                    stripe_invoice_id=billed["invoice_id"],
                    checkout_url=billed["payment_url"],
                    created_at=now,
                    paid_at=now if billed["paid"] else None,
                )
            )

        await self._transaction(user_id, work)
        logger.info("Final usage invoice %s stored for %s", billed["invoice_id"], user_id)

    async def downgrade(
        self,
        user_id: str,
        *,
        reset_daily_usage: bool = False,
        reset_monthly_usage: bool = False,
    ) -> DowngradeResult:
        async with self._locks("account", user_id):
            account = await self._read_account(user_id)
            if account.plan_enum != Plan.PREMIUM:
                raise NotPremium()
            if not account.stripe_subscription_id:
                raise NoActiveSubscription()

            preview, earlier = await self._prorate(account)
            billed = {"invoice_id": None, "paid": False, "payment_url": None}
            if preview.total_cost > 0:
                billed = await self._bill_final_usage(account, preview)
                await self._store_final_invoice(user_id, preview, billed)
            elif earlier:
                # Retry after a failed cancel with nothing new to bill
                latest = earlier[-1]
                billed = {
                    "invoice_id": latest.stripe_invoice_id,
                    "paid": latest.status == InvoiceStatus.PAID,
                    "payment_url": latest.checkout_url,
                }
            final_amount = float(
                (Decimal(str(preview.already_billed)) + Decimal(str(preview.total_cost))).quantize(
                    _COST_QUANTUM, rounding=ROUND_HALF_UP
                )
            )

            await self.payments.cancel_subscription(account.stripe_subscription_id)

            usage_before = await self._ledger.usage_for_plan_change(user_id)
            adjustments = await self._apply_resets(user_id, reset_daily_usage, reset_monthly_usage)
            free_limits = self._limits.for_plan(Plan.FREE).to_dict()
            now = self._now()

            async def work(session: AsyncSession) -> str:
                stored = await get_account(session, user_id, for_update=True)
                from_plan = stored.plan
                stored.previous_plan = from_plan
                stored.previous_subscription_id = stored.stripe_subscription_id
                stored.plan = Plan.FREE.value
                stored.limits = dict(free_limits)
                stored.limits_updated_at = now
                stored.stripe_subscription_id = None
                stored.subscription_status = SubscriptionStatus.CANCELLED
                stored.downgraded_at = now
                stored.current_period_start = None
                stored.current_period_end = None
                session.add(
                    PlanChangeEvent(
                        user_id=user_id,
                        action=PlanAction.DOWNGRADE,
                        from_plan=from_plan,
                        to_plan=Plan.FREE.value,
                        timestamp=now,
                        new_limits=dict(free_limits),
                        final_invoice_id=billed["invoice_id"],
                        final_amount=final_amount,
                        days_used=preview.days_used,
                        usage_period=preview.usage_period,
                        usage_before_change=usage_before,
                        usage_adjustments=adjustments or None,
                    )
                )
                return from_plan

            from_plan = await self._transaction(user_id, work)

        logger.info(
            "User %s downgraded to free: %d days, final usage $%.4f (invoice=%s paid=%s)",
            user_id, preview.days_used, final_amount, billed["invoice_id"], billed["paid"],
        )
        return DowngradeResult(
            from_plan=from_plan,
            to_plan=Plan.FREE.value,
            new_limits=free_limits,
            days_used=preview.days_used,
            final_amount=final_amount,
            usage_period=preview.usage_period,
            final_invoice_id=billed["invoice_id"],
            paid_immediately=billed["paid"],
            payment_url=billed["payment_url"],
            usage_adjustments=adjustments,
        )

    # --- Webhook reconciliation ---

    async def end_subscription(self, user_id: str, subscription_id: str | None = None) -> bool:
        """Subscription ended on the processor side. Returns False when there was nothing to end."""
        free_limits = self._limits.for_plan(Plan.FREE).to_dict()

        async with self._locks("account", user_id):
            usage_before = await self._ledger.usage_for_plan_change(user_id)
            now = self._now()

            async def work(session: AsyncSession) -> bool:
                stored = await get_account(session, user_id, for_update=True)
                if stored.plan_enum != Plan.PREMIUM:
                    return False
                if subscription_id and stored.stripe_subscription_id not in (None, subscription_id):
                    logger.warning(
                        "Ignoring end of subscription %s for %s (current is %s)",
                        subscription_id, user_id, stored.stripe_subscription_id,
                    )
                    return False
                from_plan = stored.plan
                stored.previous_plan = from_plan
                stored.previous_subscription_id = stored.stripe_subscription_id
                stored.plan = Plan.FREE.value
                stored.limits = dict(free_limits)
                stored.limits_updated_at = now
                stored.stripe_subscription_id = None
                stored.subscription_status = SubscriptionStatus.CANCELLED
                stored.downgraded_at = now
                stored.current_period_start = None
                stored.current_period_end = None
                session.add(
                    PlanChangeEvent(
                        user_id=user_id,
                        action=PlanAction.DOWNGRADE,
                        from_plan=from_plan,
                        to_plan=Plan.FREE.value,
                        timestamp=now,
                        new_limits=dict(free_limits),
                        usage_before_change=usage_before,
                    )
                )
                return True

            ended = await self._transaction(user_id, work)

        if ended:
            logger.info("Subscription ended for %s, moved to free", user_id)
        return ended

    async def sync_subscription(
        self,
        user_id: str,
        *,
        status: str,
        current_period_start: datetime | None = None,
        current_period_end: datetime | None = None,
        subscription_id: str | None = None,
    ) -> SubscriptionStatus:
        """Mirror the processor's subscription status and period onto the account."""
        mapped = _SUBSCRIPTION_STATUS.get(status)

        async def work(session: AsyncSession) -> SubscriptionStatus:
            stored = await get_account(session, user_id, for_update=True)
            if mapped is not None:
                stored.subscription_status = mapped
            if current_period_start is not None:
                stored.current_period_start = current_period_start
            if current_period_end is not None:
                stored.current_period_end = current_period_end
            if subscription_id and stored.plan_enum == Plan.PREMIUM:
                stored.stripe_subscription_id = subscription_id
            return stored.subscription_status

        async with self._locks("account", user_id):
            result = await self._transaction(user_id, work)

        if mapped is None:
            logger.warning("Unknown subscription status %r for %s", status, user_id)
        logger.info(
            "Subscription synced for %s: %s (period end %s)",
            user_id, result.value, to_iso(current_period_end),
        )
        return result
