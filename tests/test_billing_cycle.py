"""Tests for the billing cycle: platform fee decisions, monthly invoices, anniversary batch."""

from datetime import date

import pytest

from korpo_billing.config import settings
from korpo_billing.errors import InvoiceNotFound, UserNotFound, ValidationError
from korpo_billing.models import InvoiceStatus
from korpo_billing.services.billing_cycle import BillingCycleReconciler
from korpo_billing.services.usage_ledger import TokenUsageReport
from tests.conftest import TestSession, add_usage_event, at, create_account, load_account


async def upgrade_in_january(services, user_id="user-1", customer_id="cus_123"):
    """Upgrade at the fixture clock (2026-01-15) and book $1.10 of January usage in two calls."""
    await create_account(user_id)
    await services.plans.complete_upgrade(user_id, subscription_id=f"sub_{user_id}", customer_id=customer_id)
    await services.metering.record_token_usage(
        user_id, TokenUsageReport("gpt-4o", 40_000, 50_000, "2026-01-15T13:00:00Z")
    )
    await services.metering.record_token_usage(
        user_id, TokenUsageReport("gpt-4o", 0, 50_000, "2026-01-15T13:05:00Z")
    )


# --- platformFeeRequired ---

@pytest.mark.asyncio
async def test_free_user_never_pays_fee(services):
    await create_account("user-1")
    decision = await services.billing.platform_fee_required("user-1")
    assert not decision.required
    assert decision.reason == "free_plan"


@pytest.mark.asyncio
async def test_unknown_user(services):
    with pytest.raises(UserNotFound):
        await services.billing.platform_fee_required("ghost")


@pytest.mark.asyncio
async def test_premium_without_payment_pays_first_fee(services):
    await create_account("user-1", plan="premium", billing_anniversary_day=15)
    decision = await services.billing.platform_fee_required("user-1")
    assert decision.required
    assert decision.reason == "first_payment"


@pytest.mark.asyncio
async def test_fee_schedule_follows_anniversary(services, clock):
    await upgrade_in_january(services)

    decision = await services.billing.platform_fee_required("user-1")
    assert not decision.required
    assert decision.reason == "already_paid_this_month"
    assert decision.next_billing_date == date(2026, 2, 15)

    clock.set(at(10, month=2))
    decision = await services.billing.platform_fee_required("user-1")
    assert not decision.required
    assert decision.reason == "not_anniversary"
    assert decision.next_billing_date == date(2026, 2, 15)

    clock.set(at(15, month=2))
    decision = await services.billing.platform_fee_required("user-1")
    assert decision.required
    assert decision.reason == "anniversary"

    # Missed anniversary: no catch-up by default
    clock.set(at(16, month=2))
    decision = await services.billing.platform_fee_required("user-1")
    assert not decision.required
    assert decision.next_billing_date == date(2026, 3, 15)


@pytest.mark.asyncio
async def test_fee_only_once_per_month(services, clock):
    await upgrade_in_january(services)
    clock.set(at(15, month=2))
    await services.billing.record_platform_fee_payment("user-1")
    decision = await services.billing.platform_fee_required("user-1")
    assert not decision.required
    assert decision.reason == "already_paid_this_month"


@pytest.mark.asyncio
async def test_anniversary_clamps_to_month_end(services, clock):
    await create_account(
        "user-1", plan="premium", billing_anniversary_day=31, last_platform_fee_paid_at=at(31, month=3)
    )
    clock.set(at(30, month=4))
    decision = await services.billing.platform_fee_required("user-1")
    assert decision.required
    assert decision.reason == "anniversary"


@pytest.mark.asyncio
async def test_grace_days_catch_up(services, clock):
    await upgrade_in_january(services)
    billing = BillingCycleReconciler(TestSession, services.ledger, None, grace_days=2, now=clock)

    clock.set(at(17, month=2))
    decision = await billing.platform_fee_required("user-1")
    assert decision.required
    assert decision.reason == "anniversary_grace"

    clock.set(at(18, month=2))
    assert not (await billing.platform_fee_required("user-1")).required


# --- generateMonthlyInvoice ---

@pytest.mark.asyncio
async def test_first_month_is_skipped(services):
    await upgrade_in_january(services)
    outcome = await services.billing.generate_monthly_invoice("user-1", "2026-01")
    assert outcome.status == "first_month_skipped"
    assert outcome.invoice is None


@pytest.mark.asyncio
async def test_following_month_invoices_fee_plus_previous_usage(services, clock):
    await upgrade_in_january(services)
    clock.set(at(15, month=2))

    outcome = await services.billing.generate_monthly_invoice("user-1", "2026-02")

    assert outcome.status == "created"
    invoice = outcome.invoice
    assert invoice.month == "2026-02"
    assert invoice.platform_fee == settings.platform_fee_usd
    assert invoice.api_usage_cost == pytest.approx(1.1)
    assert invoice.total_amount == pytest.approx(8.1)
    assert invoice.status == InvoiceStatus.DRAFT
    assert invoice.due_date is not None


@pytest.mark.asyncio
async def test_monthly_invoice_is_idempotent(services, clock):
    await upgrade_in_january(services)
    clock.set(at(15, month=2))
    first = await services.billing.generate_monthly_invoice("user-1", "2026-02")
    second = await services.billing.generate_monthly_invoice("user-1")
    assert second.status == "exists"
    assert second.invoice.id == first.invoice.id


@pytest.mark.asyncio
async def test_free_user_gets_no_invoice(services):
    await create_account("user-1")
    outcome = await services.billing.generate_monthly_invoice("user-1", "2026-02")
    assert outcome.status == "free_plan"


@pytest.mark.asyncio
async def test_invalid_month(services):
    await create_account("user-1", plan="premium")
    with pytest.raises(ValidationError):
        await services.billing.generate_monthly_invoice("user-1", "2026-13")


@pytest.mark.asyncio
async def test_monthly_invoice_bills_only_unbilled_premium_usage(services, clock):
    """Upgrade Jan 15, downgrade Jan 20, upgrade again Jan 25: the downgrade already billed the first stint."""
    await create_account("user-1")
    await add_usage_event("user-1", 1.00, at(10))      # free
    await services.plans.complete_upgrade("user-1", subscription_id="sub_1", customer_id="cus_123")
    await add_usage_event("user-1", 0.125, at(16))
    clock.set(at(20))
    downgraded = await services.plans.downgrade("user-1")
    assert downgraded.final_amount == 0.125

    await add_usage_event("user-1", 2.00, at(22))      # free
    clock.set(at(25))
    await services.plans.complete_upgrade("user-1", subscription_id="sub_2", customer_id="cus_123")
    await add_usage_event("user-1", 0.50, at(26))
    clock.set(at(25, month=2))

    outcome = await services.billing.generate_monthly_invoice("user-1", "2026-02")

    assert outcome.status == "created"
    assert outcome.invoice.api_usage_cost == 0.5
    assert outcome.invoice.total_amount == pytest.approx(settings.platform_fee_usd + 0.5)


@pytest.mark.asyncio
async def test_monthly_invoice_without_plan_history_bills_whole_month(services):
    await create_account("user-1", plan="premium", billing_anniversary_day=1)
    await add_usage_event("user-1", 0.75, at(3))
    await add_usage_event("user-1", 0.25, at(30))
    outcome = await services.billing.generate_monthly_invoice("user-1", "2026-02")
    assert outcome.invoice.api_usage_cost == 1.0


@pytest.mark.asyncio
async def test_invoice_rows_are_versioned(services, clock):
    await upgrade_in_january(services)
    clock.set(at(15, month=2))
    created = (await services.billing.generate_monthly_invoice("user-1", "2026-02")).invoice
    assert created.version == 1

    await services.billing.submit_invoice("user-1", "2026-02")
    paid = await services.billing.mark_invoice_paid("user-1", month="2026-02")
    assert paid.version == 3


# --- getMonthlyInvoice ---

@pytest.mark.asyncio
async def test_get_monthly_invoice_defaults_to_current_month(services, clock):
    await upgrade_in_january(services)
    clock.set(at(15, month=2))
    assert await services.billing.get_monthly_invoice("user-1") is None

    await services.billing.generate_monthly_invoice("user-1")
    invoice = await services.billing.get_monthly_invoice("user-1")
    assert invoice.month == "2026-02"
    assert await services.billing.get_monthly_invoice("user-1", "2026-01") is None


@pytest.mark.asyncio
async def test_get_monthly_invoice_validates(services):
    with pytest.raises(UserNotFound):
        await services.billing.get_monthly_invoice("ghost", "2026-02")
    await create_account("user-1")
    with pytest.raises(ValidationError):
        await services.billing.get_monthly_invoice("user-1", "02-2026")


# --- submitInvoice / markInvoicePaid ---

@pytest.mark.asyncio
async def test_submit_invoice(services, payments, clock):
    await upgrade_in_january(services)
    clock.set(at(15, month=2))
    await services.billing.generate_monthly_invoice("user-1", "2026-02")

    submitted = await services.billing.submit_invoice("user-1", "2026-02")

    assert submitted.status == InvoiceStatus.PENDING_PAYMENT
    assert submitted.stripe_invoice_id == "in_test_1"
    remote = payments.invoices[0]
    assert [line.amount for line in remote["lines"]] == [7.0, pytest.approx(1.1)]
    assert remote["days_until_due"] == settings.invoice_due_days
    assert not remote["charge_automatically"]

    # Already submitted: no second processor invoice
    await services.billing.submit_invoice("user-1", "2026-02")
    assert len(payments.invoices) == 1


@pytest.mark.asyncio
async def test_submit_missing_invoice(services):
    await create_account("user-1", plan="premium", stripe_customer_id="cus_1")
    with pytest.raises(InvoiceNotFound):
        await services.billing.submit_invoice("user-1", "2026-02")


@pytest.mark.asyncio
async def test_mark_invoice_paid_records_fee(services, clock):
    await upgrade_in_january(services)
    clock.set(at(15, month=2))
    await services.billing.generate_monthly_invoice("user-1", "2026-02")
    await services.billing.submit_invoice("user-1", "2026-02")

    paid = await services.billing.mark_invoice_paid("user-1", stripe_invoice_id="in_test_1")

    assert paid.status == InvoiceStatus.PAID
    account = await load_account("user-1")
    assert account.last_platform_fee_paid_at.month == 2
    decision = await services.billing.platform_fee_required("user-1")
    assert decision.reason == "already_paid_this_month"


@pytest.mark.asyncio
async def test_mark_unknown_invoice_paid(services):
    await create_account("user-1", plan="premium")
    with pytest.raises(InvoiceNotFound):
        await services.billing.mark_invoice_paid("user-1", month="2026-02")


# --- runAnniversaryBilling ---

@pytest.mark.asyncio
async def test_anniversary_batch(services, payments, clock):
    await upgrade_in_january(services, "due-user")
    await upgrade_in_january(services, "no-customer", customer_id=None)
    await create_account(
        "later-user", plan="premium", billing_anniversary_day=20,
        stripe_customer_id="cus_later", upgraded_at=at(20, month=12).replace(year=2025),
    )
    await create_account("free-user")
    clock.set(at(15, month=2))

    notified = []

    async def notify(account, invoice):
        notified.append((account.id, invoice.total_amount))

    report = await services.billing.run_anniversary_billing(notify=notify)

    by_user = {entry["user_id"]: entry for entry in report}
    assert set(by_user) == {"due-user", "no-customer"}
    assert by_user["due-user"]["status"] == "invoiced"
    assert by_user["due-user"]["stripe_invoice_id"] == "in_test_1"
    assert by_user["no-customer"]["status"] == "failed"
    assert notified == [("due-user", pytest.approx(8.1))]

    # Re-running the same day does not invoice twice
    again = await services.billing.run_anniversary_billing()
    assert {entry["status"] for entry in again} == {"exists"}
    assert len(payments.invoices) == 1
