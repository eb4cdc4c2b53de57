"""Billing cycle reconciler — platform fee decisions and monthly invoices.

Premium users pay the platform fee once per billing month, on their
anniversary day. The invoice for billing month M carries the platform fee plus
the premium API usage accrued in M-1. Usage from free stretches of M-1 and usage
already billed by a downgrade's final invoice are left out. The upgrade month
is never invoiced: the fee was collected by the upgrade checkout.

``run_anniversary_billing`` is meant to be driven by an external daily
scheduler.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from korpo_billing.database import KeyedLocks, run_in_transaction
from korpo_billing.errors import InvoiceNotFound, NoPaymentCustomer, PaymentProcessorError, ValidationError
from korpo_billing.models import (
    Invoice,
    InvoiceKind,
    InvoiceStatus,
    Plan,
    PlanAction,
    PlanChangeEvent,
    UserAccount,
)
from korpo_billing.periods import (
    as_utc,
    due_date,
    effective_anniversary,
    month_bounds,
    month_key,
    parse_month,
    shift_month,
    upcoming_billing_date,
    utcnow,
)
from korpo_billing.services.accounts import get_account, list_premium_users
from korpo_billing.services.payments import InvoiceLine, PaymentProcessor
from korpo_billing.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

_COST_QUANTUM = Decimal("0.0001")

Notifier = Callable[[UserAccount, Invoice], Awaitable[None]]


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

Window = tuple[datetime, datetime]


def premium_windows(account: UserAccount, changes: list[PlanChangeEvent], end: datetime) -> list[Window]:
    """``[start, end)`` stretches on premium, from the plan change log ordered by time.

    An account with no logged changes counts as premium since ``upgraded_at``
    (or always) if it is premium now.
    """
    if not changes:
        if account.plan_enum != Plan.PREMIUM:
            return []
        return [(as_utc(account.upgraded_at) or _EPOCH, end)]

    windows = []
    # A log that opens with a downgrade means premium before it
    opened = _EPOCH if changes[0].action == PlanAction.DOWNGRADE else None
    for change in changes:
        at = as_utc(change.timestamp)
        if change.action == PlanAction.UPGRADE and opened is None:
            opened = at
        elif change.action == PlanAction.DOWNGRADE and opened is not None:
            windows.append((opened, at))
            opened = None
    if opened is not None:
        windows.append((opened, end))
    return windows


def _inside(moment: datetime, windows: list[Window]) -> bool:
    return any(start <= moment < end for start, end in windows)


@dataclass(frozen=True)
class PlatformFeeDecision:
    required: bool
    reason: str
    next_billing_date: date | None = None
    billing_anniversary_day: int | None = None
    last_payment_at: datetime | None = None


@dataclass(frozen=True)
class InvoiceOutcome:
    status: str  # created | exists | free_plan | first_month_skipped
    month: str
    invoice: Invoice | None = None


class BillingCycleReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: UsageLedger,
        payments: PaymentProcessor | None,
        *,
        platform_fee: float = 7.00,
        invoice_due_days: int = 30,
        grace_days: int = 0,
        locks: KeyedLocks | None = None,
        now: Callable[[], datetime] = utcnow,
        max_retries: int = 3,
    ):
        self._session_factory = session_factory
        self._ledger = ledger
        self._payments = payments
        self._platform_fee = Decimal(str(platform_fee))
        self._invoice_due_days = invoice_due_days
        self._grace_days = grace_days
        self._now = now
        self._max_retries = max_retries
        self._locks = locks or KeyedLocks()

    async def _transaction(self, label: str, work):
        return await run_in_transaction(
            self._session_factory, work, retries=self._max_retries, label=label
        )

    def _is_billing_day(self, anniversary_day: int, today: date) -> bool:
        """True on the (clamped) anniversary day, or within the configured grace days after it."""
        anniversary = effective_anniversary(anniversary_day, today.year, today.month)
        return anniversary <= today.day <= anniversary + self._grace_days

    # --- Platform fee ---

    async def platform_fee_required(self, user_id: str) -> PlatformFeeDecision:
        async with self._session_factory() as session:
            account = await get_account(session, user_id)

        if account.plan_enum != Plan.PREMIUM:
            return PlatformFeeDecision(required=False, reason="free_plan")

        now = as_utc(self._now())
        today = now.date()
        last = as_utc(account.last_platform_fee_paid_at)
        if last is None:
            return PlatformFeeDecision(
                required=True,
                reason="first_payment",
                billing_anniversary_day=account.billing_anniversary_day,
            )

        anniversary = account.billing_anniversary_day or last.day
        this_month = effective_anniversary(anniversary, today.year, today.month)
        decision = dict(
            billing_anniversary_day=anniversary,
            last_payment_at=last,
            next_billing_date=upcoming_billing_date(anniversary, today),
        )
        if month_key(last) == month_key(now):
            return PlatformFeeDecision(required=False, reason="already_paid_this_month", **decision)
        if today.day == this_month:
            return PlatformFeeDecision(required=True, reason="anniversary", **decision)
        if self._is_billing_day(anniversary, today):
            return PlatformFeeDecision(required=True, reason="anniversary_grace", **decision)
        return PlatformFeeDecision(required=False, reason="not_anniversary", **decision)

    async def record_platform_fee_payment(self, user_id: str, paid_at: datetime | None = None) -> datetime:
        paid_at = as_utc(paid_at or self._now())

        async def work(session: AsyncSession) -> datetime:
            account = await get_account(session, user_id, for_update=True)
            last = as_utc(account.last_platform_fee_paid_at)
            if last is None or paid_at > last:
                account.last_platform_fee_paid_at = paid_at
            if account.billing_anniversary_day is None:
                account.billing_anniversary_day = paid_at.day
            return as_utc(account.last_platform_fee_paid_at)

        async with self._locks("account", user_id):
            result = await self._transaction(f"account {user_id}", work)
        logger.info("Platform fee payment recorded for %s at %s", user_id, paid_at.isoformat())
        return result

    # --- Monthly invoices ---

    @staticmethod
    async def _find_monthly(session: AsyncSession, user_id: str, month: str) -> Invoice | None:
        result = await session.execute(
            select(Invoice).where(
                Invoice.user_id == user_id,
                Invoice.kind == InvoiceKind.MONTHLY,
                Invoice.month == month,
            )
        )
        return result.scalar_one_or_none()

    def _billing_month(self, month: str | None) -> str:
        month = month or month_key(self._now())
        try:
            parse_month(month)
        except ValueError as e:
            raise ValidationError(str(e)) from None
        return month

    async def get_monthly_invoice(self, user_id: str, month: str | None = None) -> Invoice | None:
        """Monthly invoice for ``month`` (default: the current month), or None if not generated yet."""
        month = self._billing_month(month)
        async with self._session_factory() as session:
            await get_account(session, user_id)
            return await self._find_monthly(session, user_id, month)

    async def billable_usage_cost(self, user_id: str, usage_month: str) -> Decimal:
        """Premium API usage in ``usage_month`` not already billed by a final usage invoice."""
        start, end = month_bounds(usage_month)
        async with self._session_factory() as session:
            account = await get_account(session, user_id)
            changes = await session.execute(
                select(PlanChangeEvent)
                .where(PlanChangeEvent.user_id == user_id, PlanChangeEvent.timestamp < end)
                .order_by(PlanChangeEvent.timestamp, PlanChangeEvent.id)
            )
            finals = await session.execute(
                select(Invoice.period_start, Invoice.period_end).where(
                    Invoice.user_id == user_id,
                    Invoice.kind == InvoiceKind.FINAL_PRORATION,
                    Invoice.period_start < end,
                    Invoice.period_end > start,
                )
            )
            premium = premium_windows(account, list(changes.scalars().all()), end)
            billed = [(as_utc(s), as_utc(e)) for s, e in finals.all()]

        total = Decimal("0")
        for usage_event in await self._ledger.events_between(user_id, start, end):
            occurred = as_utc(usage_event.occurred_at)
            if _inside(occurred, premium) and not _inside(occurred, billed):
                total += Decimal(str(usage_event.cost_usd))
        return total.quantize(_COST_QUANTUM, rounding=ROUND_HALF_UP)

    async def generate_monthly_invoice(self, user_id: str, month: str | None = None) -> InvoiceOutcome:
        """Draft the invoice for billing month ``month`` (default: the current month)."""
        month = self._billing_month(month)

        async with self._session_factory() as session:
            account = await get_account(session, user_id)
        if account.plan_enum != Plan.PREMIUM:
            return InvoiceOutcome(status="free_plan", month=month)
        if account.upgraded_at is not None and month_key(account.upgraded_at) == month:
            logger.info("Skipping invoice for %s in %s: upgrade month", user_id, month)
            return InvoiceOutcome(status="first_month_skipped", month=month)

        usage_cost = await self.billable_usage_cost(user_id, shift_month(month, -1))
        total = (self._platform_fee + usage_cost).quantize(_COST_QUANTUM, rounding=ROUND_HALF_UP)
        now = self._now()

        async def work(session: AsyncSession) -> InvoiceOutcome:
            existing = await self._find_monthly(session, user_id, month)
            if existing is not None:
                return InvoiceOutcome(status="exists", month=month, invoice=existing)
            invoice = Invoice(
                user_id=user_id,
                kind=InvoiceKind.MONTHLY,
                month=month,
                platform_fee=float(self._platform_fee),
                api_usage_cost=float(usage_cost),
                total_amount=float(total),
                status=InvoiceStatus.DRAFT,
                due_date=due_date(now, self._invoice_due_days),
                created_at=now,
            )
            session.add(invoice)
            return InvoiceOutcome(status="created", month=month, invoice=invoice)

        async with self._locks("invoice", user_id, month):
            outcome = await self._transaction(f"invoice {user_id}/{month}", work)

        if outcome.status == "created":
            logger.info(
                "Invoice generated for %s %s: fee $%.2f + usage $%.4f = $%.4f",
                user_id, month, self._platform_fee, usage_cost, total,
            )
        return outcome

    async def submit_invoice(self, user_id: str, month: str) -> Invoice:
        """Push a draft monthly invoice to the payment processor. Non-draft invoices are returned as is."""
        if self._payments is None:
            raise PaymentProcessorError("Billing not configured")

        async with self._locks("invoice", user_id, month):
            async with self._session_factory() as session:
                account = await get_account(session, user_id)
                invoice = await self._find_monthly(session, user_id, month)
            if invoice is None:
                raise InvoiceNotFound(user_id, month)
            if invoice.status != InvoiceStatus.DRAFT:
                return invoice
            if not account.stripe_customer_id:
                raise NoPaymentCustomer()

            lines = [InvoiceLine(f"Platform fee {month}", invoice.platform_fee)]
            if invoice.api_usage_cost > 0:
                lines.append(InvoiceLine(f"API usage {shift_month(month, -1)}", invoice.api_usage_cost))
            remote = await self._payments.create_invoice(
                account.stripe_customer_id,
                lines,
                description=f"Monthly invoice {month}",
                metadata={"user_id": user_id, "month": month, "type": "monthly"},
                days_until_due=self._invoice_due_days,
            )

            async def work(session: AsyncSession) -> Invoice:
                stored = await self._find_monthly(session, user_id, month)
                stored.status = InvoiceStatus.PENDING_PAYMENT
                stored.stripe_invoice_id = remote.invoice_id
                stored.checkout_url = remote.hosted_url
                return stored

            submitted = await self._transaction(f"invoice {user_id}/{month}", work)

        logger.info("Invoice %s submitted for %s (%s)", month, user_id, remote.invoice_id)
        return submitted

    async def mark_invoice_paid(
        self,
        user_id: str,
        *,
        month: str | None = None,
        stripe_invoice_id: str | None = None,
        paid_at: datetime | None = None,
    ) -> Invoice:
        """Settle an invoice and, for monthly ones, record the platform fee payment."""
        paid_at = as_utc(paid_at or self._now())

        async def work(session: AsyncSession) -> Invoice:
            query = select(Invoice).where(Invoice.user_id == user_id)
            if stripe_invoice_id:
                query = query.where(Invoice.stripe_invoice_id == stripe_invoice_id)
            elif month:
                query = query.where(Invoice.kind == InvoiceKind.MONTHLY, Invoice.month == month)
            else:
                raise ValidationError("month or stripe_invoice_id is required")
            invoice = (await session.execute(query)).scalar_one_or_none()
            if invoice is None:
                raise InvoiceNotFound(user_id, month)
            if invoice.status == InvoiceStatus.PAID:
                return invoice
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = paid_at
            return invoice

        invoice = await self._transaction(f"invoice {user_id}/{month or stripe_invoice_id}", work)
        if invoice.kind == InvoiceKind.MONTHLY and invoice.platform_fee > 0:
            await self.record_platform_fee_payment(user_id, as_utc(invoice.paid_at))
        logger.info("Invoice %s paid for %s", invoice.month or invoice.stripe_invoice_id, user_id)
        return invoice

    # --- Batch ---

    async def run_anniversary_billing(
        self,
        now: datetime | None = None,
        notify: Notifier | None = None,
    ) -> list[dict]:
        """Invoice every premium user whose anniversary is today. One failure does not stop the batch."""
        now = as_utc(now or self._now())
        today = now.date()
        month = month_key(now)

        async with self._session_factory() as session:
            users = await list_premium_users(session)

        report = []
        for account in users:
            if account.billing_anniversary_day is None:
                continue
            if not self._is_billing_day(account.billing_anniversary_day, today):
                continue
            try:
                outcome = await self.generate_monthly_invoice(account.id, month)
                if outcome.status != "created":
                    report.append({"user_id": account.id, "status": outcome.status})
                    continue
                invoice = outcome.invoice
                if self._payments is not None:
                    invoice = await self.submit_invoice(account.id, month)
                if notify is not None:
                    await notify(account, invoice)
                report.append({
                    "user_id": account.id,
                    "status": "invoiced",
                    "total_amount": invoice.total_amount,
                    "stripe_invoice_id": invoice.stripe_invoice_id,
                })
            except Exception as e:
                logger.exception("Anniversary billing failed for %s", account.id)
                report.append({"user_id": account.id, "status": "failed", "error": str(e)})

        logger.info(
            "Anniversary billing %s: %d users checked, %d invoiced",
            today.isoformat(), len(users), sum(1 for r in report if r["status"] == "invoiced"),
        )
        return report
