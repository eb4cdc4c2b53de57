"""HTTP tests — routes, error mapping and Stripe webhooks."""

import pytest
import stripe

from korpo_billing.api.deps import get_services
from korpo_billing.config import settings
from korpo_billing.main import app
from korpo_billing.models import Plan
from korpo_billing.services.limits import DEFAULT_LIMITS
from korpo_billing.services.metering import build_services
from tests.conftest import TestSession, add_usage_event, at, create_account, load_account, user_headers


def report(timestamp="2026-01-15T11:00:00Z", prompt=1000, completion=500, model="gpt-4o-mini"):
    return {
        "model": model,
        "prompt_tokens": prompt,
        "completion_tokens": completion,
        "timestamp": timestamp,
    }


async def premium_user(services, user_id="user-1"):
    await create_account(user_id)
    await services.plans.complete_upgrade(user_id, subscription_id="sub_123", customer_id="cus_123")


# --- Health and auth ---

@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_requires_user(client):
    resp = await client.get("/api/v1/usage/limits")
    assert resp.status_code == 401


# --- Usage ---

@pytest.mark.asyncio
async def test_limits(client):
    await create_account("user-1")
    resp = await client.get("/api/v1/usage/limits", headers=user_headers("user-1"))
    assert resp.status_code == 200
    data = resp.json()
    assert data["plan"] == "free"
    assert data["limits"]["chat_tokens_daily"] == DEFAULT_LIMITS[Plan.FREE].chat_tokens_daily
    assert data["has_payment_customer"] is False


@pytest.mark.asyncio
async def test_unknown_user(client):
    resp = await client.get("/api/v1/usage/limits", headers=user_headers("ghost"))
    assert resp.status_code == 404
    assert resp.json()["code"] == "USER_NOT_FOUND"


@pytest.mark.asyncio
async def test_report_then_duplicate(client):
    await create_account("user-1")
    headers = user_headers("user-1")

    resp = await client.post("/api/v1/usage/report", json=report(), headers=headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["tokens_added"] == 1500
    assert data["new_daily_total"] == 1500
    assert data["month"] == "2026-01"

    resp = await client.post("/api/v1/usage/report", json=report(), headers=headers)
    assert resp.status_code == 400
    assert resp.json()["code"] == "DUPLICATE_REPORT"

    summary = (await client.get("/api/v1/usage/summary", headers=headers)).json()
    assert summary["daily_used"] == 1500
    assert summary["monthly_used"] == 1500


@pytest.mark.asyncio
async def test_report_over_daily_limit(client):
    await create_account("user-1", limits={"chat_tokens_daily": 100})
    resp = await client.post("/api/v1/usage/report", json=report(), headers=user_headers("user-1"))
    assert resp.status_code == 429
    assert resp.json()["code"] == "DAILY_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_report_unknown_model(client):
    await create_account("user-1")
    resp = await client.post(
        "/api/v1/usage/report", json=report(model="gpt-9"), headers=user_headers("user-1")
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "UNKNOWN_MODEL"


@pytest.mark.asyncio
async def test_report_schema_error(client):
    await create_account("user-1")
    resp = await client.post(
        "/api/v1/usage/report", json={"model": "gpt-4o"}, headers=user_headers("user-1")
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_can_use(client):
    await create_account("user-1", limits={"chat_tokens_daily": 2000})
    headers = user_headers("user-1")
    await client.post("/api/v1/usage/report", json=report(), headers=headers)

    data = (await client.get("/api/v1/usage/can-use", headers=headers)).json()
    assert data["allowed"] is True
    assert data["remaining_daily_tokens"] == 500


@pytest.mark.asyncio
async def test_can_use_checks_request_size(client):
    await create_account("user-1")
    headers = user_headers("user-1")
    ceiling = DEFAULT_LIMITS[Plan.FREE].max_tokens_per_request

    data = (await client.get(f"/api/v1/usage/can-use?requested_tokens={ceiling}", headers=headers)).json()
    assert data["allowed"] is True

    data = (await client.get(f"/api/v1/usage/can-use?requested_tokens={ceiling + 1}", headers=headers)).json()
    assert data["allowed"] is False
    assert data["allowed_chat"] is False
    assert data["reason"] == "Request exceeds per-request token limit"


@pytest.mark.asyncio
async def test_report_larger_than_request_ceiling_is_recorded(client):
    await create_account("user-1")
    resp = await client.post(
        "/api/v1/usage/report", json=report(prompt=30_000, completion=30_000), headers=user_headers("user-1")
    )
    assert resp.status_code == 200
    assert resp.json()["tokens_added"] == 60_000


@pytest.mark.asyncio
async def test_request_counting_hits_cap(client):
    await create_account("user-1", limits={"voice_requests_daily": 2})
    headers = user_headers("user-1")

    resp = await client.post(
        "/api/v1/usage/requests", json={"request_type": "voice", "count": 2}, headers=headers
    )
    assert resp.status_code == 200
    assert resp.json()["new_daily_count"] == 2

    resp = await client.post("/api/v1/usage/requests", json={"request_type": "voice"}, headers=headers)
    assert resp.status_code == 429
    assert resp.json()["code"] == "REQUEST_LIMIT_EXCEEDED"

    data = (await client.get("/api/v1/usage/can-use", headers=headers)).json()
    assert data["allowed_voice"] is False
    assert data["allowed_chat"] is True


# --- Plans ---

@pytest.mark.asyncio
async def test_current_plan_premium(client, services, clock):
    await premium_user(services)
    await add_usage_event("user-1", 1.25, at(16))
    clock.set(at(18))

    resp = await client.get("/api/v1/plans/current", headers=user_headers("user-1"))

    assert resp.status_code == 200
    data = resp.json()
    assert data["plan"] == "premium"
    assert data["subscription_status"] == "active"
    assert data["billing_anniversary_day"] == 15
    assert data["next_billing_date"] == "2026-02-15"
    assert data["current_usage_cost"] == 1.25
    assert data["estimated_next_bill"] == settings.platform_fee_usd + 1.25
    assert data["has_payment_customer"] is True


@pytest.mark.asyncio
async def test_current_plan_free(client):
    await create_account("user-1")
    data = (await client.get("/api/v1/plans/current", headers=user_headers("user-1"))).json()
    assert data["plan"] == "free"
    assert data["next_billing_date"] is None
    assert data["estimated_next_bill"] == 0.0


@pytest.mark.asyncio
async def test_current_plan_unknown_user(client):
    resp = await client.get("/api/v1/plans/current", headers=user_headers("ghost"))
    assert resp.status_code == 404
    assert resp.json()["code"] == "USER_NOT_FOUND"


@pytest.mark.asyncio
async def test_upgrade_checkout(client, payments):
    await create_account("user-1")
    resp = await client.post("/api/v1/plans/upgrade", headers=user_headers("user-1"))
    assert resp.status_code == 200
    assert resp.json()["checkout_url"] == "https://checkout.test/user-1"
    assert payments.checkouts[0]["user_id"] == "user-1"
    # Nothing changes until the payment webhook arrives
    assert (await load_account("user-1")).plan == "free"


@pytest.mark.asyncio
async def test_upgrade_already_premium(client, services):
    await premium_user(services)
    resp = await client.post("/api/v1/plans/upgrade", headers=user_headers("user-1"))
    assert resp.status_code == 409
    assert resp.json()["code"] == "ALREADY_PREMIUM"


@pytest.mark.asyncio
async def test_plans_without_billing_configured(client, clock):
    unconfigured = build_services(TestSession, settings=settings, payments=None, now=clock)
    app.dependency_overrides[get_services] = lambda: unconfigured
    await create_account("user-1")

    resp = await client.post("/api/v1/plans/upgrade", headers=user_headers("user-1"))
    assert resp.status_code == 503
    resp = await client.post("/api/v1/plans/downgrade", headers=user_headers("user-1"))
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_downgrade(client, services, payments, clock):
    await premium_user(services)
    await add_usage_event("user-1", 2.50, at(16))
    clock.set(at(18))

    resp = await client.post(
        "/api/v1/plans/downgrade", json={"reset_daily_usage": True}, headers=user_headers("user-1")
    )

    assert resp.status_code == 200
    data = resp.json()
    assert data["plan"] == "free"
    assert data["days_used"] == 3
    assert data["final_amount"] == 2.5
    assert data["paid_immediately"] is True
    assert data["usage_period"] == "2026-01-15 to 2026-01-18"
    assert payments.cancelled == ["sub_123"]


@pytest.mark.asyncio
async def test_downgrade_free_user(client):
    await create_account("user-1")
    resp = await client.post("/api/v1/plans/downgrade", headers=user_headers("user-1"))
    assert resp.status_code == 409
    assert resp.json()["code"] == "NOT_PREMIUM"


@pytest.mark.asyncio
async def test_proration_preview(client, services, clock):
    await premium_user(services)
    await add_usage_event("user-1", 1.25, at(16), model="gpt-4o")
    await add_usage_event("user-1", 0.75, at(17), model="gpt-4o-mini")
    clock.set(at(18))

    resp = await client.get("/api/v1/plans/proration?detailed=true", headers=user_headers("user-1"))

    assert resp.status_code == 200
    data = resp.json()
    assert data["total_cost"] == 2.0
    assert data["event_count"] == 2
    assert data["platform_fee_included"] is False
    assert set(data["breakdown"]) == {"2026-01-16", "2026-01-17"}
    assert data["breakdown"]["2026-01-16"]["cost"] == 1.25


# --- Billing ---

@pytest.mark.asyncio
async def test_platform_fee_status(client, services, clock):
    await premium_user(services)
    clock.set(at(15, month=2))
    data = (await client.get("/api/v1/billing/platform-fee", headers=user_headers("user-1"))).json()
    assert data["required"] is True
    assert data["reason"] == "anniversary"
    assert data["amount"] == settings.platform_fee_usd
    assert data["billing_anniversary_day"] == 15


@pytest.mark.asyncio
async def test_platform_fee_free_user(client):
    await create_account("user-1")
    data = (await client.get("/api/v1/billing/platform-fee", headers=user_headers("user-1"))).json()
    assert data["required"] is False
    assert data["amount"] == 0.0


@pytest.mark.asyncio
async def test_monthly_invoice(client, services, clock):
    await premium_user(services)
    await add_usage_event("user-1", 0.40, at(20))
    clock.set(at(15, month=2))
    await services.billing.generate_monthly_invoice("user-1")

    resp = await client.get("/api/v1/billing/invoice", headers=user_headers("user-1"))

    assert resp.status_code == 200
    data = resp.json()
    assert data["month"] == "2026-02"
    assert data["platform_fee"] == settings.platform_fee_usd
    assert data["api_usage_cost"] == 0.4
    assert data["status"] == "draft"
    assert data["stripe_invoice_id"] is None

    resp = await client.get("/api/v1/billing/invoice?month=2026-02", headers=user_headers("user-1"))
    assert resp.json()["month"] == "2026-02"


@pytest.mark.asyncio
async def test_monthly_invoice_missing(client, services, clock):
    await premium_user(services)
    resp = await client.get("/api/v1/billing/invoice?month=2026-01", headers=user_headers("user-1"))
    assert resp.status_code == 404
    assert resp.json()["code"] == "INVOICE_NOT_FOUND"

    resp = await client.get("/api/v1/billing/invoice?month=2026-1x", headers=user_headers("user-1"))
    assert resp.status_code == 400


# --- Webhooks ---

def fake_event(monkeypatch, event_type, data):
    def construct_event(payload, sig_header, secret):
        assert secret == settings.stripe_webhook_secret
        return {"type": event_type, "data": {"object": data}}

    monkeypatch.setattr(stripe.Webhook, "construct_event", construct_event)


@pytest.mark.asyncio
async def test_webhook_not_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", "")
    resp = await client.post("/api/v1/billing/webhook", content=b"{}", headers={"stripe-signature": "t=1"})
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_webhook_missing_signature(client):
    resp = await client.post("/api/v1/billing/webhook", content=b"{}")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_webhook_bad_signature(client):
    resp = await client.post(
        "/api/v1/billing/webhook", content=b'{"type": "x"}', headers={"stripe-signature": "t=1,v1=bad"}
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_webhook_checkout_completes_upgrade(client, monkeypatch):
    await create_account("user-1")
    fake_event(monkeypatch, "checkout.session.completed", {
        "mode": "subscription",
        "subscription": "sub_new",
        "customer": "cus_new",
        "metadata": {"user_id": "user-1"},
    })

    resp = await client.post("/api/v1/billing/webhook", content=b"{}", headers={"stripe-signature": "sig"})

    assert resp.status_code == 200
    account = await load_account("user-1")
    assert account.plan == "premium"
    assert account.stripe_subscription_id == "sub_new"
    assert account.stripe_customer_id == "cus_new"
    assert account.billing_anniversary_day == 15


@pytest.mark.asyncio
async def test_webhook_subscription_deleted_resolves_by_customer(client, services, monkeypatch):
    await premium_user(services)
    fake_event(monkeypatch, "customer.subscription.deleted", {"id": "sub_123", "customer": "cus_123"})

    resp = await client.post("/api/v1/billing/webhook", content=b"{}", headers={"stripe-signature": "sig"})

    assert resp.status_code == 200
    assert (await load_account("user-1")).plan == "free"


@pytest.mark.asyncio
async def test_webhook_error_is_acknowledged(client, monkeypatch):
    fake_event(monkeypatch, "checkout.session.completed", {
        "mode": "subscription",
        "subscription": "sub_x",
        "metadata": {"user_id": "ghost"},
    })
    resp = await client.post("/api/v1/billing/webhook", content=b"{}", headers={"stripe-signature": "sig"})
    assert resp.status_code == 200
    assert resp.json() == {"received": True}


@pytest.mark.parametrize("event_type", ["invoice.payment_failed", "customer.created"])
@pytest.mark.asyncio
async def test_webhook_other_events(client, monkeypatch, event_type):
    fake_event(monkeypatch, event_type, {"id": "evt", "customer": "cus_1"})
    resp = await client.post("/api/v1/billing/webhook", content=b"{}", headers={"stripe-signature": "sig"})
    assert resp.status_code == 200
