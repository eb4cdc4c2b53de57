"""Billing endpoints — platform fee status, monthly invoices and Stripe webhooks."""

import logging
from datetime import datetime, timezone

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from korpo_billing.api.deps import get_current_user_id, get_services
from korpo_billing.config import settings
from korpo_billing.errors import InvoiceNotFound, MeteringError
from korpo_billing.periods import to_iso
from korpo_billing.services.accounts import find_user_id
from korpo_billing.services.metering import BillingServices

logger = logging.getLogger(__name__)
router = APIRouter()


# --- Schemas ---

class PlatformFeeResponse(BaseModel):
    required: bool
    reason: str
    amount: float
    next_billing_date: str | None = None
    billing_anniversary_day: int | None = None


class InvoiceResponse(BaseModel):
    month: str
    platform_fee: float
    api_usage_cost: float
    total_amount: float
    status: str
    due_date: str | None = None
    stripe_invoice_id: str | None = None
    checkout_url: str | None = None
    created_at: str
    paid_at: str | None = None


# --- Endpoints ---

@router.get("/platform-fee", response_model=PlatformFeeResponse)
async def platform_fee(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
):
    """Whether the platform fee is due for the current user today."""
    decision = await services.billing.platform_fee_required(user_id)
    return PlatformFeeResponse(
        required=decision.required,
        reason=decision.reason,
        amount=settings.platform_fee_usd if decision.required else 0.0,
        next_billing_date=decision.next_billing_date.isoformat() if decision.next_billing_date else None,
        billing_anniversary_day=decision.billing_anniversary_day,
    )


@router.get("/invoice", response_model=InvoiceResponse)
async def monthly_invoice(
    month: str | None = None,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
):
    """Monthly invoice for ``month`` (YYYY-MM, default: the current month)."""
    invoice = await services.billing.get_monthly_invoice(user_id, month)
    if invoice is None:
        raise InvoiceNotFound(user_id, month)
    return InvoiceResponse(
        month=invoice.month,
        platform_fee=invoice.platform_fee,
        api_usage_cost=invoice.api_usage_cost,
        total_amount=invoice.total_amount,
        status=invoice.status.value,
        due_date=to_iso(invoice.due_date),
        stripe_invoice_id=invoice.stripe_invoice_id,
        checkout_url=invoice.checkout_url,
        created_at=to_iso(invoice.created_at),
        paid_at=to_iso(invoice.paid_at),
    )


@router.post("/webhook")
async def stripe_webhook(request: Request, services: BillingServices = Depends(get_services)):
    """Handle Stripe webhook events."""
    if not settings.stripe_webhook_secret:
        raise HTTPException(status_code=503, detail="Webhook not configured")

    body = await request.body()
    sig = request.headers.get("stripe-signature")
    if not sig:
        raise HTTPException(status_code=400, detail="Missing signature")

    try:
        event = stripe.Webhook.construct_event(body, sig, settings.stripe_webhook_secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error("Webhook signature verification failed: %s", e)
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_type = event["type"]
    data = event["data"]["object"]
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.debug("Ignoring webhook event %s", event_type)
        return {"received": True}

    try:
        await handler(services, data)
    except MeteringError as e:
        logger.error("Webhook %s not applied: %s (%s)", event_type, e.message, e.code)
    return {"received": True}


# --- Webhook handlers ---

def _metadata(data) -> dict:
    return dict(data.get("metadata") or {})


def _from_unix(value) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


async def _resolve_user(services: BillingServices, data, subscription_id: str | None = None) -> str | None:
    user_id = _metadata(data).get("user_id")
    if user_id:
        return user_id
    async with services.session_factory() as session:
        return await find_user_id(
            session, customer_id=data.get("customer"), subscription_id=subscription_id
        )


async def _handle_checkout_completed(services: BillingServices, data):
    metadata = _metadata(data)
    user_id = metadata.get("user_id")
    if not user_id:
        logger.error("Checkout completed with no user_id in metadata")
        return

    if data.get("mode") == "subscription":
        await services.plans.complete_upgrade(
            user_id,
            subscription_id=data.get("subscription"),
            customer_id=data.get("customer"),
        )
    elif metadata.get("type") == "final_proration" and metadata.get("invoice_id"):
        await services.billing.mark_invoice_paid(user_id, stripe_invoice_id=metadata["invoice_id"])


async def _handle_subscription_created(services: BillingServices, data):
    user_id = await _resolve_user(services, data, data.get("id"))
    if not user_id:
        logger.warning("Subscription %s created for unknown user", data.get("id"))
        return
    await services.plans.complete_upgrade(
        user_id, subscription_id=data.get("id"), customer_id=data.get("customer")
    )


async def _handle_subscription_updated(services: BillingServices, data):
    user_id = await _resolve_user(services, data, data.get("id"))
    if not user_id:
        logger.warning("Subscription %s updated for unknown user", data.get("id"))
        return
    await services.plans.sync_subscription(
        user_id,
        status=data.get("status", ""),
        current_period_start=_from_unix(data.get("current_period_start")),
        current_period_end=_from_unix(data.get("current_period_end")),
        subscription_id=data.get("id"),
    )


async def _handle_subscription_deleted(services: BillingServices, data):
    user_id = await _resolve_user(services, data, data.get("id"))
    if not user_id:
        return
    await services.plans.end_subscription(user_id, data.get("id"))


async def _handle_invoice_paid(services: BillingServices, data):
    metadata = _metadata(data)
    user_id = await _resolve_user(services, data, data.get("subscription"))
    if not user_id:
        logger.warning("Invoice %s paid for unknown user", data.get("id"))
        return

    paid_at = _from_unix((data.get("status_transitions") or {}).get("paid_at"))
    if metadata.get("type") in ("monthly", "final_proration"):
        await services.billing.mark_invoice_paid(
            user_id, stripe_invoice_id=data.get("id"), paid_at=paid_at
        )
    elif data.get("billing_reason") in ("subscription_create", "subscription_cycle"):
        await services.billing.record_platform_fee_payment(user_id, paid_at)


async def _handle_invoice_failed(services: BillingServices, data):
    logger.warning("Payment failed for customer %s (invoice %s)", data.get("customer"), data.get("id"))


_HANDLERS = {
    "checkout.session.completed": _handle_checkout_completed,
    "customer.subscription.created": _handle_subscription_created,
    "customer.subscription.updated": _handle_subscription_updated,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.payment_succeeded": _handle_invoice_paid,
    "invoice.payment_failed": _handle_invoice_failed,
}
